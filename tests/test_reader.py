from __future__ import annotations

import asyncio
from dataclasses import replace
from pathlib import Path

import pytest
from fakes import FAST_OPTIONS, FILTERS, RCS300_S, FakeBackend, FakeUsbDevice, polling_response

from idmctl.core.errors import ErrorCode, NFCError, TransportConnectError
from idmctl.core.model import ReaderState
from idmctl.core.reader import ReaderSession


def _reader(*devices: FakeUsbDevice, **options: float) -> ReaderSession:
    return ReaderSession(
        FakeBackend(devices),
        options=replace(FAST_OPTIONS, **options),
        device_filters=FILTERS,
    )


def test_read_returns_idm_and_records_last_read() -> None:
    reader = _reader(FakeUsbDevice())

    async def scenario() -> str:
        await reader.connect()
        return await reader.read_idm()

    idm = asyncio.run(scenario())

    assert idm == "01 02 03 04 05 06 07 08"
    state = reader.get_state()
    assert state.is_connected
    assert not state.is_reading
    assert state.error is None
    assert state.last_read is not None
    assert state.last_read.idm == idm


def test_short_response_keeps_previous_last_read() -> None:
    device = FakeUsbDevice(scan_responses=[polling_response(), polling_response(length=45)])
    reader = _reader(device)

    async def scenario() -> tuple[ReaderState, NFCError]:
        await reader.connect()
        await reader.read_idm()
        before = reader.get_state()
        with pytest.raises(NFCError) as excinfo:
            await reader.read_idm()
        return before, excinfo.value

    before, error = asyncio.run(scenario())

    assert error.code is ErrorCode.INVALID_RESPONSE
    after = reader.get_state()
    assert after.last_read == before.last_read
    assert after.error == error.message
    assert after.is_connected
    assert not after.is_reading


def test_connect_without_devices_is_device_not_found() -> None:
    reader = _reader()

    with pytest.raises(NFCError) as excinfo:
        asyncio.run(reader.connect())

    assert excinfo.value.code is ErrorCode.DEVICE_NOT_FOUND
    state = reader.get_state()
    assert not state.is_connected
    assert state.error == excinfo.value.message


def test_two_reads_produce_independent_results() -> None:
    device = FakeUsbDevice(
        scan_responses=[polling_response(range(1, 9)), polling_response(range(9, 17))]
    )
    reader = _reader(device, receive_delay_s=0.001)

    async def scenario() -> tuple[ReaderState, ReaderState]:
        await reader.connect()
        await reader.read_idm()
        first = reader.get_state()
        await reader.read_idm()
        return first, reader.get_state()

    first, second = asyncio.run(scenario())

    assert first.last_read is not None and second.last_read is not None
    assert first.last_read.idm == "01 02 03 04 05 06 07 08"
    assert second.last_read.idm == "09 0A 0B 0C 0D 0E 0F 10"
    assert second.last_read.timestamp > first.last_read.timestamp


def test_read_before_connect_is_connection_failed() -> None:
    reader = _reader(FakeUsbDevice())

    with pytest.raises(NFCError) as excinfo:
        asyncio.run(reader.read_idm())

    assert excinfo.value.code is ErrorCode.CONNECTION_FAILED


def test_error_is_cleared_by_next_read() -> None:
    device = FakeUsbDevice(scan_responses=[polling_response(length=10)])
    reader = _reader(device)

    async def scenario() -> None:
        await reader.connect()
        with pytest.raises(NFCError):
            await reader.read_idm()
        assert reader.get_state().error is not None
        await reader.read_idm()

    asyncio.run(scenario())

    assert reader.get_state().error is None


def test_disconnect_is_idempotent() -> None:
    device = FakeUsbDevice()
    reader = _reader(device)

    async def scenario() -> tuple[ReaderState, ReaderState]:
        await reader.connect()
        await reader.read_idm()
        await reader.disconnect()
        first = reader.get_state()
        await reader.disconnect()
        return first, reader.get_state()

    first, second = asyncio.run(scenario())

    assert first == second == ReaderState()
    assert device.close_count == 1


def test_disconnect_swallows_close_failure() -> None:
    device = FakeUsbDevice()
    device.fail["close"] = TransportConnectError("already gone")
    reader = _reader(device)

    async def scenario() -> None:
        await reader.connect()
        await reader.disconnect()

    asyncio.run(scenario())

    assert reader.get_state() == ReaderState()


def test_state_snapshots_are_not_live() -> None:
    reader = _reader(FakeUsbDevice())

    async def scenario() -> ReaderState:
        await reader.connect()
        snapshot = reader.get_state()
        await reader.read_idm()
        return snapshot

    snapshot = asyncio.run(scenario())

    assert snapshot.last_read is None
    assert reader.get_state().last_read is not None
    with pytest.raises(AttributeError):
        snapshot.is_connected = False  # type: ignore[misc]


def test_reader_reports_busy_while_reading() -> None:
    reader = _reader(FakeUsbDevice())

    async def scenario() -> list[object]:
        await reader.connect()
        return await asyncio.gather(reader.read_idm(), reader.read_idm(), return_exceptions=True)

    first, second = asyncio.run(scenario())

    assert first == "01 02 03 04 05 06 07 08"
    assert isinstance(second, NFCError)
    assert second.code is ErrorCode.DEVICE_BUSY
    assert not reader.get_state().is_reading


def test_default_device_table_is_loaded(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))

    reader = ReaderSession(FakeBackend([FakeUsbDevice()]), options=FAST_OPTIONS)

    assert RCS300_S in {f.product_id for f in reader.device_filters}
    assert reader.load_warnings == ()
    asyncio.run(reader.connect())
    assert reader.device_model == 300
