from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace

import pytest
from fakes import FAST_OPTIONS, FILTERS, FakeBackend, FakeUsbDevice, polling_response

from idmctl.core.errors import ErrorCode, InvalidResponseError, NFCError
from idmctl.core.polling import PollingController
from idmctl.core.protocol import POLLING_COMMAND
from idmctl.core.reader import ReaderSession


class GatedRead:
    """Read coroutine that blocks until released, counting attempts."""

    def __init__(self, outcomes: list[object] | None = None) -> None:
        self.calls = 0
        self.gate = asyncio.Event()
        self.outcomes = outcomes or []

    async def __call__(self) -> str:
        self.calls += 1
        await self.gate.wait()
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return str(outcome)
        return "01 02 03 04 05 06 07 08"


def test_second_start_does_not_create_second_loop(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING, logger="idmctl.core.polling")

    async def scenario() -> tuple[int, list[str]]:
        read = GatedRead()
        controller = PollingController(read, interval_s=10.0)
        seen: list[str] = []
        controller.start(seen.append)
        controller.start(seen.append)
        await asyncio.sleep(0.05)
        calls = read.calls
        read.gate.set()
        await asyncio.sleep(0.05)
        controller.stop()
        await controller.wait_closed()
        return calls, seen

    calls, seen = asyncio.run(scenario())

    assert calls == 1
    assert seen == ["01 02 03 04 05 06 07 08"]
    assert "already running" in caplog.text


def test_attempts_repeat_after_interval() -> None:
    async def scenario() -> int:
        read = GatedRead()
        read.gate.set()
        controller = PollingController(read, interval_s=0.02)
        controller.start(lambda idm: None)
        await asyncio.sleep(0.15)
        controller.stop()
        await controller.wait_closed()
        return read.calls

    calls = asyncio.run(scenario())

    assert 2 <= calls <= 8


def test_stop_mid_attempt_lets_attempt_finish_without_rescheduling() -> None:
    async def scenario() -> tuple[int, list[str], bool]:
        read = GatedRead()
        controller = PollingController(read, interval_s=0.0)
        seen: list[str] = []
        controller.start(seen.append)
        await asyncio.sleep(0.01)
        controller.stop()
        active = controller.active
        read.gate.set()
        await controller.wait_closed()
        await asyncio.sleep(0.05)
        return read.calls, seen, active

    calls, seen, active = asyncio.run(scenario())

    assert calls == 1
    assert seen == ["01 02 03 04 05 06 07 08"]
    assert not active


def test_stop_is_idempotent() -> None:
    async def scenario() -> None:
        controller = PollingController(GatedRead(), interval_s=1.0)
        controller.stop()
        controller.start(lambda idm: None)
        controller.stop()
        controller.stop()

    asyncio.run(scenario())


def test_failures_do_not_stop_the_loop() -> None:
    async def scenario() -> tuple[list[str], list[NFCError]]:
        read = GatedRead([InvalidResponseError("short"), RuntimeError("usb gone"), "AA BB CC DD EE FF 00 11"])
        read.gate.set()
        controller = PollingController(read, interval_s=0.0)
        seen: list[str] = []
        errors: list[NFCError] = []

        def on_success(idm: str) -> None:
            seen.append(idm)
            controller.stop()

        controller.start(on_success, errors.append)
        await controller.wait_closed()
        return seen, errors

    seen, errors = asyncio.run(scenario())

    assert seen == ["AA BB CC DD EE FF 00 11"]
    assert [e.code for e in errors] == [ErrorCode.INVALID_RESPONSE, ErrorCode.UNKNOWN_ERROR]
    assert errors[1].cause is not None
    assert errors[1].cause.type_name == "RuntimeError"


def test_failure_without_error_callback_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.ERROR, logger="idmctl.core.polling")

    async def scenario() -> list[str]:
        read = GatedRead([InvalidResponseError("short response")])
        read.gate.set()
        controller = PollingController(read, interval_s=0.0)
        seen: list[str] = []

        def on_success(idm: str) -> None:
            seen.append(idm)
            controller.stop()

        controller.start(on_success)
        await controller.wait_closed()
        return seen

    seen = asyncio.run(scenario())

    assert seen == ["01 02 03 04 05 06 07 08"]
    assert "INVALID_RESPONSE" in caplog.text


def test_callback_errors_are_logged_and_polling_continues(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.ERROR, logger="idmctl.core.polling")

    async def scenario() -> int:
        read = GatedRead()
        read.gate.set()
        controller = PollingController(read, interval_s=0.0)

        def on_success(idm: str) -> None:
            if read.calls >= 3:
                controller.stop()
            raise ValueError("display failed")

        controller.start(on_success)
        await controller.wait_closed()
        return read.calls

    assert asyncio.run(scenario()) == 3
    assert "display failed" in caplog.text


def test_coroutine_callbacks_are_awaited() -> None:
    async def scenario() -> list[str]:
        read = GatedRead()
        read.gate.set()
        controller = PollingController(read, interval_s=0.0)
        seen: list[str] = []

        async def on_success(idm: str) -> None:
            await asyncio.sleep(0)
            seen.append(idm)
            controller.stop()

        controller.start(on_success)
        await controller.wait_closed()
        return seen

    assert asyncio.run(scenario()) == ["01 02 03 04 05 06 07 08"]


def test_restart_after_stop_runs_a_new_loop() -> None:
    async def scenario() -> list[str]:
        read = GatedRead()
        read.gate.set()
        controller = PollingController(read, interval_s=10.0)
        seen: list[str] = []
        controller.start(seen.append)
        await asyncio.sleep(0.02)
        controller.stop()
        await controller.wait_closed()
        controller.start(seen.append)
        await asyncio.sleep(0.02)
        controller.stop()
        await controller.wait_closed()
        return seen

    assert len(asyncio.run(scenario())) == 2


def test_reader_polling_reports_reads_and_disconnect_stops_it() -> None:
    device = FakeUsbDevice(scan_responses=[polling_response(), polling_response(length=3)])
    reader = ReaderSession(
        FakeBackend([device]),
        options=replace(FAST_OPTIONS, polling_interval_s=0.0),
        device_filters=FILTERS,
    )

    async def scenario() -> tuple[list[str], list[NFCError]]:
        seen: list[str] = []
        errors: list[NFCError] = []
        await reader.connect()
        reader.start_polling(seen.append, errors.append)
        while len(seen) < 2:
            await asyncio.sleep(0.005)
        await reader.disconnect()
        await reader.wait_polling_closed()
        return seen, errors

    seen, errors = asyncio.run(scenario())

    assert seen[:2] == ["01 02 03 04 05 06 07 08"] * 2
    assert errors[0].code is ErrorCode.INVALID_RESPONSE
    assert not reader.is_polling
    assert not reader.get_state().is_connected
    assert device.close_count == 1


def test_restart_waits_for_attempt_still_in_flight() -> None:
    async def scenario() -> tuple[int, int, list[str]]:
        read = GatedRead()
        controller = PollingController(read, interval_s=10.0)
        seen: list[str] = []
        controller.start(seen.append)
        await asyncio.sleep(0.01)
        controller.stop()
        controller.start(seen.append)
        await asyncio.sleep(0.02)
        calls_while_blocked = read.calls
        read.gate.set()
        while len(seen) < 2:
            await asyncio.sleep(0.005)
        controller.stop()
        await controller.wait_closed()
        return calls_while_blocked, read.calls, seen

    calls_while_blocked, calls, seen = asyncio.run(scenario())

    assert calls_while_blocked == 1
    assert calls == 2
    assert seen == ["01 02 03 04 05 06 07 08"] * 2


class SlowScanDevice(FakeUsbDevice):
    def transfer_in(self, endpoint: int, length: int, *, timeout_ms: int) -> bytes:
        if self.payloads and self.payloads[-1] == POLLING_COMMAND:
            time.sleep(0.05)
        return super().transfer_in(endpoint, length, timeout_ms=timeout_ms)


def test_reader_restart_during_read_reports_no_busy_error() -> None:
    device = SlowScanDevice()
    reader = ReaderSession(
        FakeBackend([device]),
        options=replace(FAST_OPTIONS, polling_interval_s=10.0),
        device_filters=FILTERS,
    )

    async def scenario() -> tuple[list[str], list[NFCError]]:
        seen: list[str] = []
        errors: list[NFCError] = []
        await reader.connect()
        reader.start_polling(seen.append, errors.append)
        await asyncio.sleep(0.02)
        reader.stop_polling()
        reader.start_polling(seen.append, errors.append)
        while len(seen) + len(errors) < 2:
            await asyncio.sleep(0.005)
        await reader.disconnect()
        await reader.wait_polling_closed()
        return seen, errors

    seen, errors = asyncio.run(scenario())

    assert errors == []
    assert seen == ["01 02 03 04 05 06 07 08"] * 2
    assert device.close_count == 1
