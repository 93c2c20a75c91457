"""Reader device tables: packaged YAML definitions plus XDG user overrides."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterator
from dataclasses import dataclass
from functools import lru_cache
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from idmctl.core.errors import DeviceTableError, DeviceTableLoadError
from idmctl.core.model import DeviceFilter, DeviceTable

LOGGER = logging.getLogger(__name__)

TABLE_SUFFIXES = (".yaml", ".yml")


class UniqueKeyLoader(yaml.SafeLoader):
    """Safe YAML loader that refuses a key repeated within one mapping."""


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise DeviceTableError(
                f"Duplicate key '{key}' at line {key_node.start_mark.line + 1}"
            )
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG, _construct_mapping)


@dataclass(frozen=True)
class LoadedDevices:
    tables: dict[str, DeviceTable]
    filters: tuple[DeviceFilter, ...]
    warnings: tuple[str, ...]


@lru_cache(maxsize=1)
def _schema_validator() -> Any:
    schema_file = resources.files("idmctl.schemas").joinpath("device.schema.json")
    schema = json.loads(schema_file.read_text(encoding="utf-8"))
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _user_table_dirs() -> tuple[Path, Path]:
    config_home = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    data_home = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local/share"))
    return config_home / "idmctl" / "devices", data_home / "idmctl" / "devices"


def _table_sources() -> Iterator[tuple[str, Path | Traversable]]:
    """Yield ``(origin, path)`` pairs, packaged tables first, then each user dir."""
    packaged = resources.files("idmctl.devices")
    for item in sorted(packaged.iterdir(), key=lambda p: p.name):
        if item.name.endswith(TABLE_SUFFIXES):
            yield "packaged", item

    for directory in _user_table_dirs():
        if not directory.is_dir():
            continue
        for path in sorted(directory.iterdir()):
            if path.suffix in TABLE_SUFFIXES:
                yield str(directory), path


def _parse_table_file(path: Path | Traversable) -> DeviceTable:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise DeviceTableLoadError(f"Could not read device table {path}: {exc}") from exc

    try:
        doc = yaml.load(text, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise DeviceTableError(f"Invalid YAML in device table {path}: {exc}") from exc
    except DeviceTableError as exc:
        raise DeviceTableError(f"{path}: {exc}") from exc

    if not isinstance(doc, dict):
        raise DeviceTableError(f"Device table {path} must be a mapping")

    try:
        _schema_validator().validate(doc)
    except ValidationError as exc:
        location = "/".join(str(part) for part in exc.path) or "<root>"
        raise DeviceTableError(f"Device table {path} is invalid at {location}: {exc.message}") from exc

    # Products without their own name are listed under the table name.
    filters = tuple(
        DeviceFilter(
            vendor_id=doc["vendor_id"],
            product_id=product["product_id"],
            device_model=doc["model"],
            name=product.get("name", doc["name"]),
        )
        for product in doc["products"]
    )
    return DeviceTable(id=doc["id"], name=doc["name"], model=doc["model"], filters=filters)


def _flatten(tables: dict[str, DeviceTable]) -> tuple[DeviceFilter, ...]:
    seen: dict[int, str] = {}
    filters: list[DeviceFilter] = []
    for table in tables.values():
        for device_filter in table.filters:
            owner = seen.get(device_filter.product_id)
            if owner is not None:
                raise DeviceTableError(
                    f"Product id 0x{device_filter.product_id:04X} is declared by both "
                    f"'{owner}' and '{table.id}'"
                )
            seen[device_filter.product_id] = table.id
            filters.append(device_filter)
    return tuple(filters)


def load_device_filters() -> LoadedDevices:
    """Load every device table and flatten it into product filters.

    A later table with the same id replaces an earlier one and records a
    warning naming where the replaced table came from.
    """
    tables: dict[str, DeviceTable] = {}
    origins: dict[str, str] = {}
    warnings: list[str] = []

    for origin, path in _table_sources():
        table = _parse_table_file(path)
        previous = origins.get(table.id)
        if previous is not None:
            label = "packaged table" if previous == "packaged" else f"table from {previous}"
            warning = f"User device table '{table.id}' overrides {label}"
            LOGGER.warning(warning)
            warnings.append(warning)
        tables[table.id] = table
        origins[table.id] = origin

    return LoadedDevices(tables=tables, filters=_flatten(tables), warnings=tuple(warnings))
