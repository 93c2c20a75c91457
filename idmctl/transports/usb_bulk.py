"""USB bulk transport implementation using pyusb (libusb backend)."""

from __future__ import annotations

import errno
import logging
from collections.abc import Callable, Sequence
from typing import Any

import usb.core
import usb.util

from idmctl.core.errors import (
    TransportConnectError,
    TransportPermissionError,
    TransportSendError,
    TransportTimeoutError,
)
from idmctl.core.model import DeviceFilter, UsbEndpointInfo, UsbInterfaceInfo

LOGGER = logging.getLogger(__name__)

DeviceChooser = Callable[[Sequence["PyUSBDevice"]], "PyUSBDevice | None"]


def _translate(exc: Exception, fallback: type[Exception], action: str) -> Exception:
    if isinstance(exc, usb.core.USBTimeoutError):
        return TransportTimeoutError(f"USB {action} timed out: {exc}")
    if isinstance(exc, usb.core.USBError) and exc.errno == errno.EACCES:
        return TransportPermissionError(f"USB {action} denied: {exc}")
    return fallback(f"USB {action} failed: {exc}")


class PyUSBDevice:
    def __init__(self, device: Any) -> None:
        self._device = device
        self.vendor_id: int = device.idVendor
        self.product_id: int = device.idProduct
        self._claimed: list[int] = []

    @property
    def description(self) -> str:
        bus = getattr(self._device, "bus", "?")
        address = getattr(self._device, "address", "?")
        return f"{self.vendor_id:04x}:{self.product_id:04x} (bus {bus} address {address})"

    def open(self) -> None:
        # libusb opens the handle lazily on the first request; touching the
        # active configuration forces it so access errors surface here.
        try:
            self._device.get_active_configuration()
        except usb.core.USBError as exc:
            if exc.errno == errno.EACCES:
                raise TransportPermissionError(f"USB open denied: {exc}") from exc
            # Unconfigured devices report an error here; select_configuration follows.
            LOGGER.debug("No active configuration on %s: %s", self.description, exc)

    def select_configuration(self, value: int) -> None:
        try:
            self._device.set_configuration(value)
        except usb.core.USBError as exc:
            raise _translate(exc, TransportConnectError, "set configuration") from exc

    def interfaces(self) -> list[UsbInterfaceInfo]:
        try:
            config = self._device.get_active_configuration()
        except usb.core.USBError as exc:
            raise _translate(exc, TransportConnectError, "configuration lookup") from exc

        found: list[UsbInterfaceInfo] = []
        for intf in config:
            if intf.bAlternateSetting != 0:
                continue
            endpoints = []
            for ep in intf.endpoints():
                direction = (
                    "in"
                    if usb.util.endpoint_direction(ep.bEndpointAddress) == usb.util.ENDPOINT_IN
                    else "out"
                )
                transfer_type = {
                    usb.util.ENDPOINT_TYPE_BULK: "bulk",
                    usb.util.ENDPOINT_TYPE_INTR: "interrupt",
                    usb.util.ENDPOINT_TYPE_ISO: "isochronous",
                }.get(usb.util.endpoint_type(ep.bmAttributes), "control")
                endpoints.append(
                    UsbEndpointInfo(
                        number=ep.bEndpointAddress & 0x0F,
                        direction=direction,
                        transfer_type=transfer_type,
                    )
                )
            found.append(
                UsbInterfaceInfo(
                    number=intf.bInterfaceNumber,
                    interface_class=intf.bInterfaceClass,
                    endpoints=tuple(endpoints),
                )
            )
        return found

    def claim_interface(self, number: int) -> None:
        try:
            if self._device.is_kernel_driver_active(number):
                self._device.detach_kernel_driver(number)
        except NotImplementedError:
            # Kernel driver queries are Linux-only.
            pass
        except usb.core.USBError as exc:
            raise _translate(exc, TransportConnectError, "kernel driver detach") from exc

        try:
            usb.util.claim_interface(self._device, number)
        except usb.core.USBError as exc:
            raise _translate(exc, TransportConnectError, "claim interface") from exc
        self._claimed.append(number)

    def transfer_out(self, endpoint: int, data: bytes, *, timeout_ms: int) -> int:
        try:
            return self._device.write(endpoint & 0x0F, data, timeout=timeout_ms)
        except usb.core.USBError as exc:
            raise _translate(exc, TransportSendError, "bulk write") from exc

    def transfer_in(self, endpoint: int, length: int, *, timeout_ms: int) -> bytes:
        try:
            data = self._device.read(0x80 | (endpoint & 0x0F), length, timeout=timeout_ms)
        except usb.core.USBError as exc:
            raise _translate(exc, TransportSendError, "bulk read") from exc
        return bytes(data)

    def close(self) -> None:
        try:
            for number in self._claimed:
                usb.util.release_interface(self._device, number)
        except usb.core.USBError as exc:
            raise _translate(exc, TransportConnectError, "release interface") from exc
        finally:
            self._claimed.clear()
            usb.util.dispose_resources(self._device)


class PyUSBBackend:
    def __init__(self, *, chooser: DeviceChooser | None = None) -> None:
        self.chooser = chooser

    def list_authorized_devices(self) -> list[PyUSBDevice]:
        return [PyUSBDevice(device) for device in self._find()]

    def request_device(self, filters: Sequence[DeviceFilter]) -> PyUSBDevice | None:
        wanted = {(f.vendor_id, f.product_id) for f in filters}
        candidates = [
            PyUSBDevice(device)
            for device in self._find()
            if (device.idVendor, device.idProduct) in wanted
        ]
        if not candidates:
            return None
        if self.chooser is not None:
            return self.chooser(candidates)
        if len(candidates) > 1:
            LOGGER.info(
                "Multiple readers attached, using %s", candidates[0].description
            )
        return candidates[0]

    def _find(self) -> list[Any]:
        try:
            return list(usb.core.find(find_all=True))
        except usb.core.NoBackendError as exc:
            raise TransportConnectError(
                "No libusb backend available. Install libusb-1.0 and retry."
            ) from exc
        except usb.core.USBError as exc:
            raise _translate(exc, TransportConnectError, "device enumeration") from exc
