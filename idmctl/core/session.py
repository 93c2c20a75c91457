"""Transport session: one open reader handle, its bulk endpoints and sequence counter."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from idmctl.core.device_match import filter_supported, model_for_product
from idmctl.core.errors import (
    ConnectionFailedError,
    DeviceBusyError,
    DeviceNotFoundError,
    ErrorCode,
    NFCError,
    TransportPermissionError,
    TransportTimeoutError,
    make_error,
)
from idmctl.core.frame import encode_frame, hex_string
from idmctl.core.model import DeviceFilter, Endpoints, ReaderOptions, UsbInterfaceInfo
from idmctl.transports.base import UsbBackend, UsbDevice

LOGGER = logging.getLogger(__name__)

CONFIGURATION_VALUE = 1
VENDOR_SPECIFIC_CLASS = 0xFF
# Extra time a worker thread gets beyond the transfer timeout it passes to libusb.
THREAD_TIMEOUT_MARGIN_S = 0.5

T = TypeVar("T")


def _wrap_transport_error(exc: BaseException, *, phase: str, action: str) -> NFCError:
    if isinstance(exc, NFCError):
        return exc
    if isinstance(exc, TransportPermissionError):
        return make_error(ErrorCode.PERMISSION_DENIED, f"Access to the reader was denied ({action})", exc)
    timed_out = isinstance(exc, (TransportTimeoutError, TimeoutError))
    if phase == "connect":
        reason = "timed out" if timed_out else "failed"
        return make_error(ErrorCode.CONNECTION_FAILED, f"Reader {action} {reason}", exc)
    if timed_out:
        return make_error(ErrorCode.READ_TIMEOUT, f"Reader {action} timed out", exc)
    return make_error(ErrorCode.UNKNOWN_ERROR, f"Reader {action} failed", exc)


class TransportSession:
    """Owns the device handle between connect and close.

    Frames may only be exchanged from inside ``exclusive()``; a second task
    trying to enter while an exchange is running is rejected with DEVICE_BUSY.
    """

    def __init__(
        self,
        backend: UsbBackend,
        filters: Sequence[DeviceFilter],
        options: ReaderOptions | None = None,
    ) -> None:
        self.backend = backend
        self.filters = tuple(filters)
        self.options = options or ReaderOptions()
        self._device: UsbDevice | None = None
        self._endpoints: Endpoints | None = None
        self._device_model: int | None = None
        self._sequence = 0
        self._lock = asyncio.Lock()
        self._owner: asyncio.Task[Any] | None = None

    @property
    def connected(self) -> bool:
        return self._device is not None and self._endpoints is not None

    @property
    def endpoints(self) -> Endpoints | None:
        return self._endpoints

    @property
    def device_model(self) -> int | None:
        return self._device_model

    @property
    def sequence(self) -> int:
        return self._sequence

    async def connect(self) -> None:
        if self._device is not None:
            raise ConnectionFailedError("Reader is already connected")

        try:
            device = await self._select_device()
            model = model_for_product(device.product_id, self.filters)
            if model is None:
                raise DeviceNotFoundError(
                    f"Unsupported device with product id 0x{device.product_id:04X}"
                )

            self._device = device
            await self._invoke(device.open, phase="connect", action="open")
            await self._invoke(
                device.select_configuration,
                CONFIGURATION_VALUE,
                phase="connect",
                action="configuration",
            )
            interfaces = await self._invoke(device.interfaces, phase="connect", action="interface lookup")
            interface = _vendor_interface(interfaces)
            if interface is None:
                raise ConnectionFailedError("No vendor-specific USB interface found on the reader")

            await self._invoke(
                device.claim_interface,
                interface.number,
                phase="connect",
                action="interface claim",
            )
            self._endpoints = _bulk_endpoints(interface)
            self._device_model = model
        except NFCError:
            await self._cleanup()
            raise
        except Exception as exc:
            await self._cleanup()
            raise ConnectionFailedError("Device connection failed", cause=exc) from exc
        except BaseException:
            await self._cleanup()
            raise

        LOGGER.info(
            "Connected to reader model %s (in=%d out=%d)",
            model,
            self._endpoints.in_endpoint,
            self._endpoints.out_endpoint,
        )

    async def close(self) -> None:
        async with self._lock:
            await self._cleanup()

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[TransportSession]:
        if self._lock.locked():
            raise DeviceBusyError("Another exchange with the reader is in progress")
        async with self._lock:
            self._owner = asyncio.current_task()
            try:
                yield self
            finally:
                self._owner = None

    async def send_raw(self, payload: bytes) -> None:
        device, endpoints = self._checked_handle()
        frame = encode_frame(payload, self._next_sequence())
        LOGGER.debug("Sending frame: %s", hex_string(frame))
        await self._invoke(
            device.transfer_out,
            endpoints.out_endpoint,
            frame,
            timeout_ms=self._timeout_ms,
            phase="transfer",
            action="send",
        )
        await asyncio.sleep(self.options.send_delay_s)

    async def receive_raw(self, max_length: int) -> bytes:
        device, endpoints = self._checked_handle()
        LOGGER.debug("Waiting for up to %d bytes", max_length)
        data = await self._invoke(
            device.transfer_in,
            endpoints.in_endpoint,
            max_length,
            timeout_ms=self._timeout_ms,
            phase="transfer",
            action="receive",
        )
        await asyncio.sleep(self.options.receive_delay_s)
        LOGGER.debug("Received %d bytes: %s", len(data), hex_string(data))
        return bytes(data)

    @property
    def _timeout_ms(self) -> int:
        return int(self.options.transfer_timeout_s * 1000)

    def _next_sequence(self) -> int:
        self._sequence = (self._sequence + 1) & 0xFF
        return self._sequence

    def _checked_handle(self) -> tuple[UsbDevice, Endpoints]:
        if self._device is None or self._endpoints is None:
            raise ConnectionFailedError("Reader is not initialised")
        if self._owner is None or self._owner is not asyncio.current_task():
            raise DeviceBusyError("Reader exchanges must run inside TransportSession.exclusive()")
        return self._device, self._endpoints

    async def _select_device(self) -> UsbDevice:
        authorized = await self._invoke(
            self.backend.list_authorized_devices,
            phase="connect",
            action="enumeration",
        )
        candidates = filter_supported(authorized, self.filters)
        if len(candidates) == 1:
            return candidates[0]

        device = await self._invoke(
            self.backend.request_device,
            self.filters,
            phase="connect",
            action="device selection",
            timed=False,
        )
        if device is None:
            raise DeviceNotFoundError("No reader was selected")
        return device

    async def _invoke(
        self,
        func: Callable[..., T],
        *args: Any,
        phase: str,
        action: str,
        timed: bool = True,
        **kwargs: Any,
    ) -> T:
        call = asyncio.to_thread(func, *args, **kwargs)
        try:
            if timed:
                return await asyncio.wait_for(
                    call, self.options.transfer_timeout_s + THREAD_TIMEOUT_MARGIN_S
                )
            return await call
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise _wrap_transport_error(exc, phase=phase, action=action) from exc

    async def _cleanup(self) -> None:
        device, self._device = self._device, None
        self._endpoints = None
        self._device_model = None
        self._sequence = 0
        if device is not None:
            try:
                await asyncio.wait_for(
                    asyncio.to_thread(device.close),
                    self.options.transfer_timeout_s + THREAD_TIMEOUT_MARGIN_S,
                )
            except Exception as exc:
                LOGGER.warning("Error while closing the reader: %s", exc)
        LOGGER.info("Released reader resources")


def _vendor_interface(interfaces: Sequence[UsbInterfaceInfo]) -> UsbInterfaceInfo | None:
    for interface in interfaces:
        if interface.interface_class == VENDOR_SPECIFIC_CLASS:
            return interface
    return None


def _bulk_endpoints(interface: UsbInterfaceInfo) -> Endpoints:
    in_ep = next(
        (e for e in interface.endpoints if e.direction == "in" and e.transfer_type == "bulk"),
        None,
    )
    out_ep = next(
        (e for e in interface.endpoints if e.direction == "out" and e.transfer_type == "bulk"),
        None,
    )
    if in_ep is None or out_ep is None:
        raise ConnectionFailedError("No bulk IN/OUT endpoint pair found on the reader")
    return Endpoints(in_endpoint=in_ep.number, out_endpoint=out_ep.number)
