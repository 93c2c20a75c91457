"""Core data models shared by the session, reader, and CLI."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class DeviceFilter:
    vendor_id: int
    product_id: int
    device_model: int
    name: str = ""


@dataclass(frozen=True)
class DeviceTable:
    id: str
    name: str
    model: int
    filters: tuple[DeviceFilter, ...]


@dataclass(frozen=True)
class Endpoints:
    in_endpoint: int
    out_endpoint: int


@dataclass(frozen=True)
class UsbEndpointInfo:
    number: int
    direction: str
    transfer_type: str = "bulk"


@dataclass(frozen=True)
class UsbInterfaceInfo:
    number: int
    interface_class: int
    endpoints: tuple[UsbEndpointInfo, ...]


@dataclass(frozen=True)
class ReadResult:
    idm: str
    timestamp: datetime


@dataclass(frozen=True)
class ReaderState:
    is_connected: bool = False
    is_reading: bool = False
    error: str | None = None
    last_read: ReadResult | None = None


@dataclass(frozen=True)
class ReaderOptions:
    polling_interval_s: float = 1.0
    send_delay_s: float = 0.05
    receive_delay_s: float = 0.01
    transfer_timeout_s: float = 3.0
    receive_length: int = 50
