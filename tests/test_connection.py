"""Tests for the single-session arbiter against the fake receiver."""

import asyncio
import socket
import time

import pytest

from fake_device.server import FakeYamahaDevice, FakeYamahaServer
from ync_client.codec import encode_status_query, parse
from ync_client.connection import SessionArbiter, classify_error
from ync_client.exceptions import ArbiterError, ArbiterErrorKind


def _free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def test_request_returns_device_document(fake_server):
    arbiter = SessionArbiter(fake_server.host, fake_server.port, timeout=2.0)
    try:
        body = await arbiter.request(encode_status_query("main"))
    finally:
        await arbiter.close()

    assert parse(body).find("Main_Zone/Basic_Status") is not None


async def test_concurrent_callers_never_overlap(fake_server):
    arbiter = SessionArbiter(fake_server.host, fake_server.port, timeout=2.0)
    fake_server.device.delay = 0.02
    try:
        await asyncio.gather(
            *(arbiter.request(encode_status_query("main")) for _ in range(6))
        )
    finally:
        await arbiter.close()

    assert fake_server.device.max_in_flight == 1
    assert arbiter.max_in_flight == 1
    assert arbiter.in_flight == 0


async def test_callers_are_served_in_submission_order(fake_server):
    arbiter = SessionArbiter(fake_server.host, fake_server.port, timeout=2.0)
    order = []

    async def caller(index):
        async def _fn(session):
            order.append(index)
            await session.request(encode_status_query("main"))

        await arbiter.with_session(_fn)

    try:
        tasks = []
        for index in range(5):
            tasks.append(asyncio.ensure_future(caller(index)))
            await asyncio.sleep(0)  # submit in a known order
        await asyncio.gather(*tasks)
    finally:
        await arbiter.close()

    assert order == [0, 1, 2, 3, 4]


async def test_timeout_releases_slot_for_next_caller():
    server = FakeYamahaServer(FakeYamahaDevice(mode="hang", count=1))
    await server.start()
    arbiter = SessionArbiter(server.host, server.port, timeout=0.3)
    try:
        start = time.monotonic()
        first = asyncio.ensure_future(arbiter.request(encode_status_query("main")))
        await asyncio.sleep(0)
        second = asyncio.ensure_future(arbiter.request(encode_status_query("main")))

        with pytest.raises(ArbiterError) as err:
            await first
        assert err.value.kind == ArbiterErrorKind.TIMEOUT

        body = await second
        assert parse(body) is not None
        # One timeout bound plus one normal exchange
        assert time.monotonic() - start < 2.0
    finally:
        await arbiter.close()
        await server.stop()


async def test_lease_timeout_releases_stuck_holder(fake_server):
    arbiter = SessionArbiter(fake_server.host, fake_server.port, lease_timeout=0.2)

    async def _stuck(session):
        await asyncio.sleep(10)

    try:
        with pytest.raises(ArbiterError) as err:
            await arbiter.with_session(_stuck)
        assert err.value.kind == ArbiterErrorKind.TIMEOUT
        assert arbiter.is_lock_available

        body = await arbiter.request(encode_status_query("main"))
        assert parse(body) is not None
    finally:
        await arbiter.close()


async def test_cancelled_holder_releases_slot(fake_server):
    arbiter = SessionArbiter(fake_server.host, fake_server.port)
    entered = asyncio.Event()

    async def _hold(session):
        entered.set()
        await asyncio.sleep(10)

    task = asyncio.ensure_future(arbiter.with_session(_hold))
    await entered.wait()
    assert not arbiter.is_lock_available

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert arbiter.is_lock_available
    await arbiter.close()


async def test_connection_refused_is_classified():
    arbiter = SessionArbiter("127.0.0.1", _free_port(), timeout=2.0)
    try:
        with pytest.raises(ArbiterError) as err:
            await arbiter.request(encode_status_query("main"))
    finally:
        await arbiter.close()

    assert err.value.kind == ArbiterErrorKind.CONNECTION_REFUSED
    assert arbiter.is_lock_available


async def test_http_error_status_is_unreachable(fake_server):
    arbiter = SessionArbiter(fake_server.host, fake_server.port)
    try:
        with pytest.raises(ArbiterError) as err:
            await arbiter.with_session(lambda s: s.fetch("/missing.xml"))
    finally:
        await arbiter.close()

    assert err.value.kind == ArbiterErrorKind.UNREACHABLE


async def test_session_is_unusable_after_release(fake_server):
    arbiter = SessionArbiter(fake_server.host, fake_server.port)
    async with arbiter.session() as session:
        pass

    with pytest.raises(RuntimeError):
        await session.request(encode_status_query("main"))
    await arbiter.close()


async def test_update_address_redirects_requests(fake_server):
    arbiter = SessionArbiter("127.0.0.1", _free_port())
    arbiter.update_address(fake_server.host, fake_server.port)
    try:
        body = await arbiter.request(encode_status_query("main"))
    finally:
        await arbiter.close()

    assert parse(body) is not None


def test_classify_error():
    assert classify_error(asyncio.TimeoutError()) == ArbiterErrorKind.TIMEOUT
    assert classify_error(ConnectionRefusedError()) == ArbiterErrorKind.CONNECTION_REFUSED
    assert classify_error(socket.gaierror(-2, "Name or service not known")) == (
        ArbiterErrorKind.ADDRESS_UNRESOLVED
    )
    assert classify_error(OSError("No route to host")) == ArbiterErrorKind.UNREACHABLE
