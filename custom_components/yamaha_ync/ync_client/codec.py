"""Yamaha YNC XML command codec.

Request format (POST to /YamahaRemoteControl/ctrl):
    <YAMAHA_AV cmd="GET|PUT"><Main_Zone>...path...</Main_Zone></YAMAHA_AV>

Response format:
    <YAMAHA_AV rsp="GET|PUT" RC="0"><Main_Zone>...values...</Main_Zone></YAMAHA_AV>
    - RC="0" means success, anything else is a device-side rejection
    - GET responses mirror the request path with values substituted

The vocabulary is table-driven: zones map to YNC subunit tags in ZONE_TAGS
and fields map to element paths and value converters in FIELDS. New zones or
parameters are added to these tables only.
"""

import logging
import xml.etree.ElementTree as ET
from typing import Any, Callable, Dict, Iterable, NamedTuple, Optional, Set, Tuple

from defusedxml import DefusedXmlException
from defusedxml import ElementTree as SafeET

from .exceptions import DecodeError, ResponseError
from .models import SYSTEM, CommandIntent

_LOGGER = logging.getLogger(__name__)

ROOT_TAG = "YAMAHA_AV"
GET_PARAM = "GetParam"
XML_DECLARATION = '<?xml version="1.0" encoding="utf-8"?>'

ZONE_TAGS = {
    "main": "Main_Zone",
    "zone2": "Zone_2",
    "zone3": "Zone_3",
    "zone4": "Zone_4",
    SYSTEM: "System",
}
TAG_ZONES = {tag: zone for zone, tag in ZONE_TAGS.items()}

# Zone reads are wrapped in Basic_Status, writes and echoes are not
STATUS_WRAPPER = "Basic_Status"

# Listed with the sound programs, set through its own On/Off switch
STRAIGHT = "Straight"


# ============================================================================
# VALUE CONVERTERS
# ============================================================================


class Converter(NamedTuple):
    """Writes a value into a leaf element and reads it back."""

    write: Callable[[ET.Element, Any], None]
    read: Callable[[ET.Element], Any]


def _malformed(elem: ET.Element, expected: str) -> DecodeError:
    return DecodeError("malformed", f"{elem.tag}={elem.text!r}, expected {expected}")


def _write_text(elem: ET.Element, value: Any) -> None:
    elem.text = str(value)


def _read_text(elem: ET.Element) -> Any:
    return (elem.text or "").strip()


def _bool_converter(on: str, off: str) -> Converter:
    def write(elem: ET.Element, value: Any) -> None:
        elem.text = on if value else off

    def read(elem: ET.Element) -> Any:
        text = (elem.text or "").strip()
        if text == on:
            return True
        if text == off:
            return False
        raise _malformed(elem, f"{on}/{off}")

    return Converter(write, read)


def _read_mute(elem: ET.Element) -> Any:
    # Some firmwares report attenuation steps ("Att -20 dB") instead of On
    text = (elem.text or "").strip()
    if text == "Off":
        return False
    if text == "On" or text.startswith("Att"):
        return True
    raise _malformed(elem, "On/Off")


def _write_volume(elem: ET.Element, value: Any) -> None:
    ET.SubElement(elem, "Val").text = str(int(round(float(value) * 10)))
    ET.SubElement(elem, "Exp").text = "1"
    ET.SubElement(elem, "Unit").text = "dB"


def _read_volume(elem: ET.Element) -> Any:
    val = elem.findtext("Val")
    exp = elem.findtext("Exp", "1")
    if val is None:
        raise _malformed(elem, "<Val>")
    try:
        return int(val) / (10 ** int(exp))
    except ValueError as err:
        raise DecodeError("malformed", f"volume {val!r}/{exp!r}") from err


ON_OFF = _bool_converter("On", "Off")
POWER = _bool_converter("On", "Standby")
MUTE = Converter(ON_OFF.write, _read_mute)
TEXT = Converter(_write_text, _read_text)
VOLUME = Converter(_write_volume, _read_volume)


class FieldSpec(NamedTuple):
    """Where a field lives and how its value is converted."""

    path: Tuple[str, ...]
    converter: Converter
    scope: str = "zone"  # "zone" or "system"
    feature: Optional[str] = None  # capability flag that gates the field


FIELDS: Dict[str, FieldSpec] = {
    "power": FieldSpec(("Power_Control", "Power"), POWER),
    "volume": FieldSpec(("Volume", "Lvl"), VOLUME),
    "mute": FieldSpec(("Volume", "Mute"), MUTE),
    "input": FieldSpec(("Input", "Input_Sel"), TEXT),
    "sound_program": FieldSpec(
        ("Surround", "Program_Sel", "Current", "Sound_Program"), TEXT
    ),
    "straight": FieldSpec(("Surround", "Program_Sel", "Current", "Straight"), ON_OFF),
    "pure_direct": FieldSpec(
        ("Sound_Video", "Pure_Direct", "Mode"), ON_OFF, feature="pure_direct"
    ),
    "ypao_volume": FieldSpec(
        ("Sound_Video", "YPAO_Volume"), ON_OFF, feature="ypao_volume"
    ),
    "party_mode": FieldSpec(
        ("Party_Mode", "Mode"), ON_OFF, scope="system", feature="party_mode"
    ),
}

# Define entries in desc.xml that reveal optional features
FEATURE_MARKERS = {
    "pure_direct": "Pure_Direct",
    "ypao_volume": "YPAO_Volume",
    "party_mode": "Party_Mode",
}


def fields_for(zone: str) -> Tuple[str, ...]:
    """Field names addressable in a zone or in the system scope."""
    scope = "system" if zone == SYSTEM else "zone"
    return tuple(name for name, spec in FIELDS.items() if spec.scope == scope)


class Shape(NamedTuple):
    """Expected response layout: which scope and which fields to extract."""

    zone: str
    fields: Tuple[str, ...]


def status_shape(zone: str) -> Shape:
    """Shape of a full status read for a zone or the system scope."""
    return Shape(zone, fields_for(zone))


# ============================================================================
# ENCODING
# ============================================================================


def _zone_tag(zone: str) -> str:
    try:
        return ZONE_TAGS[zone]
    except KeyError:
        raise ValueError(f"Unknown zone: {zone}") from None


def _document(cmd: str, zone: str) -> Tuple[ET.Element, ET.Element]:
    root = ET.Element(ROOT_TAG, cmd=cmd)
    return root, ET.SubElement(root, _zone_tag(zone))


def _build_path(parent: ET.Element, path: Iterable[str]) -> ET.Element:
    elem = parent
    for tag in path:
        elem = ET.SubElement(elem, tag)
    return elem


def _serialize(root: ET.Element) -> str:
    return XML_DECLARATION + ET.tostring(root, encoding="unicode")


def encode(intent: CommandIntent) -> str:
    """Encode a command intent as a PUT document.

    Example: CommandIntent("main", "input", "HDMI1") ->
        <YAMAHA_AV cmd="PUT"><Main_Zone><Input><Input_Sel>HDMI1</Input_Sel>
        </Input></Main_Zone></YAMAHA_AV>
    """
    spec = FIELDS.get(intent.field)
    if spec is None:
        raise ValueError(f"Unknown field: {intent.field}")
    if (spec.scope == "system") != (intent.zone == SYSTEM):
        raise ValueError(f"Field {intent.field} is not addressable in {intent.zone}")

    root, zone_elem = _document("PUT", intent.zone)
    leaf = _build_path(zone_elem, spec.path)
    spec.converter.write(leaf, intent.value)
    return _serialize(root)


def encode_query(zone: str, path: Iterable[str]) -> str:
    """Encode a GET for an arbitrary path below a zone tag."""
    root, zone_elem = _document("GET", zone)
    _build_path(zone_elem, path).text = GET_PARAM
    return _serialize(root)


def encode_status_query(zone: str) -> str:
    """Basic_Status read for a zone, or the system-scope field reads."""
    if zone == SYSTEM:
        # System has no Basic_Status; read the system fields one container at a time
        root, zone_elem = _document("GET", SYSTEM)
        containers = []
        for name in fields_for(SYSTEM):
            container = FIELDS[name].path[0]
            if container not in containers:
                containers.append(container)
                ET.SubElement(zone_elem, container).text = GET_PARAM
        return _serialize(root)
    return encode_query(zone, (STATUS_WRAPPER,))


def encode_input_list_query(zone: str) -> str:
    """Input_Sel_Item read listing the selectable inputs of a zone."""
    return encode_query(zone, ("Input", "Input_Sel_Item"))


def encode_system_config_query() -> str:
    """System/Config read (model name, system id, firmware version)."""
    return encode_query(SYSTEM, ("Config",))


# ============================================================================
# DECODING
# ============================================================================


def parse(payload) -> ET.Element:
    """Parse a YAMAHA_AV document and check the response code.

    Raises:
        DecodeError: malformed or truncated XML, wrong root element
        ResponseError: RC attribute present and not "0"
    """
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8", errors="replace")
    if not payload or not payload.strip():
        raise DecodeError("malformed", "empty payload")

    try:
        root = SafeET.fromstring(payload)
    except ET.ParseError as err:
        raise DecodeError("malformed", str(err)) from err
    except DefusedXmlException as err:
        raise DecodeError("malformed", f"forbidden construct: {err}") from err

    if root.tag != ROOT_TAG:
        raise DecodeError("malformed", f"unexpected root element {root.tag}")

    code = root.get("RC")
    if code is not None and code != "0":
        raise ResponseError(code, payload)

    return root


def _find_field(zone_elem: ET.Element, spec: FieldSpec) -> Optional[ET.Element]:
    path = "/".join(spec.path)
    elem = zone_elem.find(f"{STATUS_WRAPPER}/{path}")
    if elem is None:
        elem = zone_elem.find(path)
    return elem


def _is_placeholder(elem: ET.Element) -> bool:
    return len(elem) == 0 and (elem.text or "").strip() in ("", GET_PARAM)


def _extract(zone_elem: ET.Element, names: Iterable[str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for name in names:
        spec = FIELDS.get(name)
        if spec is None:
            continue
        elem = _find_field(zone_elem, spec)
        if elem is None or _is_placeholder(elem):
            continue
        values[name] = spec.converter.read(elem)
    return values


def decode(payload, shape: Shape) -> Dict[str, Any]:
    """Decode the fields named by shape from a response.

    Missing fields are left out of the result (unknown), extra elements are
    ignored. Raises DecodeError only for structural failures.
    """
    root = parse(payload)
    zone_elem = root.find(_zone_tag(shape.zone))
    if zone_elem is None:
        _LOGGER.debug("Response has no %s element", shape.zone)
        return {}
    return _extract(zone_elem, shape.fields)


def decode_status(payload, zone: str) -> Dict[str, Any]:
    """Decode a full status read for a zone."""
    return decode(payload, status_shape(zone))


class PushEvent(NamedTuple):
    """Decoded realtime notification."""

    values: Dict[str, Dict[str, Any]]
    touched: Set[str]  # zones that reported changes without values


def decode_event(payload) -> PushEvent:
    """Decode a pushed notification.

    Notifications either carry values in the usual layout, or only list the
    changed containers in <Property> elements. Zones of the second kind are
    reported in touched so the caller can read them.
    """
    root = parse(payload)
    values: Dict[str, Dict[str, Any]] = {}
    touched: Set[str] = set()
    for zone_elem in root:
        zone = TAG_ZONES.get(zone_elem.tag)
        if zone is None:
            continue
        zone_values = _extract(zone_elem, fields_for(zone))
        if zone_values:
            values[zone] = zone_values
        if zone_elem.find("Property") is not None or not zone_values:
            touched.add(zone)
    return PushEvent(values, touched)


def decode_system_config(payload) -> Dict[str, Optional[str]]:
    """Model name, system id and firmware version from System/Config."""
    root = parse(payload)
    config = root.find("System/Config")
    if config is None:
        return {"model": None, "system_id": None, "firmware": None}
    return {
        "model": config.findtext("Model_Name"),
        "system_id": config.findtext("System_ID"),
        "firmware": config.findtext("Version"),
    }


def decode_input_list(payload, zone: str) -> Tuple[str, ...]:
    """Selectable input parameters from an Input_Sel_Item read."""
    root = parse(payload)
    items = root.find(f"{_zone_tag(zone)}/Input/Input_Sel_Item")
    if items is None:
        return ()
    inputs = []
    for item in items:
        param = item.findtext("Param")
        if param:
            inputs.append(param.strip())
    return tuple(inputs)


class UnitDescription(NamedTuple):
    """Capabilities declared in desc.xml."""

    zones: Tuple[str, ...]
    sound_programs: Dict[str, Tuple[str, ...]]
    features: frozenset


def decode_unit_description(payload) -> UnitDescription:
    """Parse /YamahaRemoteControl/desc.xml."""
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8", errors="replace")
    try:
        root = SafeET.fromstring(payload)
    except (ET.ParseError, DefusedXmlException) as err:
        raise DecodeError("malformed", f"desc.xml: {err}") from err

    zones = []
    programs: Dict[str, Tuple[str, ...]] = {}
    for subunit in root.findall('.//*[@Func="Subunit"]'):
        zone = TAG_ZONES.get(subunit.get("YNC_Tag", ""))
        if zone is None or zone == SYSTEM:
            continue
        zones.append(zone)

        names = []
        setup = subunit.find('.//Menu[@Title_1="Setup"]')
        if setup is not None:
            if setup.find(f'.//*[@Title_1="{STRAIGHT}"]/Put_1') is not None:
                names.append(STRAIGHT)
            param = setup.find('.//*[@Title_1="Program"]/Put_2/Param_1')
            if param is not None:
                names.extend(d.text for d in param.findall(".//Direct") if d.text)
        programs[zone] = tuple(names)

    defines = [d.text or "" for d in root.iter("Define")]
    features = frozenset(
        feature
        for feature, marker in FEATURE_MARKERS.items()
        if any(marker in text for text in defines)
    )
    return UnitDescription(tuple(zones), programs, features)
