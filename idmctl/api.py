"""Stable public API for building tooling on top of idmctl.

This module is the supported integration surface for third-party callers.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

from idmctl.core.device_loader import LoadedDevices, load_device_filters
from idmctl.core.errors import (
    ConnectionFailedError,
    DeviceBusyError,
    DeviceNotFoundError,
    DeviceTableError,
    DeviceTableLoadError,
    ErrorCause,
    ErrorCode,
    IdmctlError,
    InvalidResponseError,
    NFCError,
    PermissionDeniedError,
    ReadTimeoutError,
    TransportConnectError,
    TransportError,
    TransportPermissionError,
    TransportSendError,
    TransportTimeoutError,
    UnknownNFCError,
)
from idmctl.core.frame import encode_frame
from idmctl.core.model import DeviceFilter, Endpoints, ReaderOptions, ReaderState, ReadResult
from idmctl.core.protocol import extract_idm, is_valid_idm
from idmctl.core.reader import ReaderSession
from idmctl.transports.base import UsbBackend, UsbDevice
from idmctl.transports.usb_bulk import PyUSBBackend

__all__ = [
    "IdmctlError",
    "ErrorCause",
    "ErrorCode",
    "NFCError",
    "DeviceNotFoundError",
    "ConnectionFailedError",
    "ReadTimeoutError",
    "InvalidResponseError",
    "DeviceBusyError",
    "PermissionDeniedError",
    "UnknownNFCError",
    "DeviceTableError",
    "DeviceTableLoadError",
    "TransportError",
    "TransportConnectError",
    "TransportPermissionError",
    "TransportSendError",
    "TransportTimeoutError",
    "DeviceFilter",
    "Endpoints",
    "LoadedDevices",
    "ReaderOptions",
    "ReaderState",
    "ReadResult",
    "ReaderSession",
    "UsbBackend",
    "UsbDevice",
    "PyUSBBackend",
    "encode_frame",
    "extract_idm",
    "is_valid_idm",
    "load_device_filters",
    "read_idm_once",
]


async def read_idm_once(
    backend: UsbBackend | None = None,
    *,
    options: ReaderOptions | None = None,
) -> str:
    """Connect, read a single IDm and always release the reader afterwards."""
    reader = ReaderSession(backend, options=options)
    try:
        await reader.connect()
        return await reader.read_idm()
    finally:
        await reader.disconnect()
