"""Reader session: connection lifecycle, read tracking and polling."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import replace
from datetime import datetime, timezone

from idmctl.core.device_loader import load_device_filters
from idmctl.core.errors import ConnectionFailedError, DeviceBusyError, NFCError, UnknownNFCError
from idmctl.core.model import DeviceFilter, ReaderOptions, ReaderState, ReadResult
from idmctl.core.polling import ErrorCallback, PollingController, SuccessCallback
from idmctl.core.protocol import ProtocolEngine
from idmctl.core.session import TransportSession
from idmctl.transports.base import UsbBackend
from idmctl.transports.usb_bulk import PyUSBBackend

LOGGER = logging.getLogger(__name__)


class ReaderSession:
    """Public entry point used by front ends.

    Calls into one session must be serialized by the caller; polling is the
    only operation that schedules work on its own.
    """

    def __init__(
        self,
        backend: UsbBackend | None = None,
        *,
        options: ReaderOptions | None = None,
        device_filters: Sequence[DeviceFilter] | None = None,
    ) -> None:
        self.options = options or ReaderOptions()
        load_warnings: tuple[str, ...] = ()
        if device_filters is None:
            loaded = load_device_filters()
            device_filters = loaded.filters
            load_warnings = loaded.warnings
        self.load_warnings = load_warnings
        self.device_filters = tuple(device_filters)
        self._session = TransportSession(backend or PyUSBBackend(), self.device_filters, self.options)
        self._engine = ProtocolEngine(self._session, response_length=self.options.receive_length)
        self._polling = PollingController(self.read_idm, interval_s=self.options.polling_interval_s)
        self._state = ReaderState()

    @property
    def is_polling(self) -> bool:
        return self._polling.active

    @property
    def device_model(self) -> int | None:
        return self._session.device_model

    def get_state(self) -> ReaderState:
        return self._state

    async def connect(self) -> None:
        self._state = replace(self._state, error=None)
        try:
            await self._session.connect()
        except NFCError as exc:
            if self._session.connected:
                # Rejected reconnect; the existing connection stays usable.
                self._state = replace(self._state, error=exc.message)
                raise
            self._state = replace(
                self._state, is_connected=False, is_reading=False, error=exc.message
            )
            raise
        self._state = replace(self._state, is_connected=True, is_reading=False)

    async def disconnect(self) -> None:
        self.stop_polling()
        await self._session.close()
        self._state = ReaderState()

    async def read_idm(self) -> str:
        if not self._state.is_connected or not self._session.connected:
            raise ConnectionFailedError("Reader is not connected")
        if self._state.is_reading:
            raise DeviceBusyError("A read is already in progress")

        self._state = replace(self._state, is_reading=True, error=None)
        try:
            idm = await self._engine.read_idm()
        except NFCError as exc:
            self._state = replace(self._state, error=exc.message)
            raise
        except Exception as exc:
            error = UnknownNFCError("IDm read failed", cause=exc)
            self._state = replace(self._state, error=error.message)
            raise error from exc
        finally:
            self._state = replace(self._state, is_reading=False)

        result = ReadResult(idm=idm, timestamp=datetime.now(timezone.utc))
        self._state = replace(self._state, last_read=result)
        LOGGER.info("Read IDm %s", idm)
        return idm

    def start_polling(self, on_success: SuccessCallback, on_error: ErrorCallback | None = None) -> None:
        self._polling.start(on_success, on_error)

    def stop_polling(self) -> None:
        self._polling.stop()

    async def wait_polling_closed(self) -> None:
        await self._polling.wait_closed()
