"""Device-to-model matching logic."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from idmctl.core.model import DeviceFilter
from idmctl.transports.base import UsbDevice


def supported_product_ids(filters: Iterable[DeviceFilter]) -> frozenset[int]:
    return frozenset(f.product_id for f in filters)


def filter_supported(devices: Iterable[UsbDevice], filters: Sequence[DeviceFilter]) -> list[UsbDevice]:
    product_ids = supported_product_ids(filters)
    return [device for device in devices if device.product_id in product_ids]


def filter_for_product(product_id: int, filters: Iterable[DeviceFilter]) -> DeviceFilter | None:
    for device_filter in filters:
        if device_filter.product_id == product_id:
            return device_filter
    return None


def model_for_product(product_id: int, filters: Iterable[DeviceFilter]) -> int | None:
    match = filter_for_product(product_id, filters)
    return match.device_model if match else None
