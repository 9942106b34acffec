"""Constants for the Yamaha YNC integration."""

DOMAIN = "yamaha_ync"

DEFAULT_PORT = 80
DEFAULT_NAME = "Yamaha Receiver"
DEFAULT_SCAN_INTERVAL = 30  # seconds
MIN_SCAN_INTERVAL = 10  # seconds (prevent hammering device)
MAX_SCAN_INTERVAL = 300  # seconds (5 minutes max)
DEFAULT_TIMEOUT = 5.0  # seconds per request
MIN_TIMEOUT = 1.0
MAX_TIMEOUT = 30.0
DEFAULT_CONFIRM_MODE = "pessimistic"
DISCOVERY_TIMEOUT = 5.0

CONF_HOST = "host"
CONF_PORT = "port"
CONF_DEVICE_ID = "device_id"
CONF_MODEL = "model"
CONF_SCAN_INTERVAL = "scan_interval"
CONF_TIMEOUT = "timeout"
CONF_REALTIME = "realtime"
CONF_ZONES = "zones"
CONF_CONFIRM_MODE = "confirm_mode"

CONFIRM_MODES = ["pessimistic", "optimistic"]

ZONE_NAMES = {
    "main": "Main Zone",
    "zone2": "Zone 2",
    "zone3": "Zone 3",
    "zone4": "Zone 4",
}

# Device-wide flags exposed as switches on the main zone device
SYSTEM_SWITCHES = ("party_mode",)
ZONE_SWITCHES = ("pure_direct", "ypao_volume")
