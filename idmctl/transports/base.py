"""Transport interfaces."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from idmctl.core.model import DeviceFilter, UsbInterfaceInfo


class UsbDevice(Protocol):
    vendor_id: int
    product_id: int

    @property
    def description(self) -> str:
        """Human readable label used when choosing between devices."""

    def open(self) -> None: ...

    def select_configuration(self, value: int) -> None: ...

    def interfaces(self) -> Sequence[UsbInterfaceInfo]:
        """Interfaces of the active configuration, described by their active alternate."""

    def claim_interface(self, number: int) -> None: ...

    def transfer_out(self, endpoint: int, data: bytes, *, timeout_ms: int) -> int: ...

    def transfer_in(self, endpoint: int, length: int, *, timeout_ms: int) -> bytes: ...

    def close(self) -> None: ...


class UsbBackend(Protocol):
    def list_authorized_devices(self) -> list[UsbDevice]:
        """Devices already accessible without asking the user."""

    def request_device(self, filters: Sequence[DeviceFilter]) -> UsbDevice | None:
        """Let an external chooser pick one device matching any of the filters."""
