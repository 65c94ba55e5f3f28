"""camelCase wire format for dataclass records.

Flow graphs, segment filters and enrollments are stored and exchanged as
camelCase JSON (the shape the flow builder saves). Dataclass fields are
snake_case; ``field(metadata=...)`` tweaks the mapping per field:

- ``key``: explicit wire name when camelizing the field name is wrong
- ``item``: dataclass type of list elements
- ``nested``: dataclass type of a single nested object
- ``parse``: callable applied to the raw value on load
"""
from __future__ import annotations
import dataclasses
from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

from lifecycle_engine.infrastructure.clock import ensure_utc

T = TypeVar("T")


def camelize(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def _wire_name(f: dataclasses.Field) -> str:
    return f.metadata.get("key") or camelize(f.name)


def parse_datetime(raw: Any) -> datetime | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return ensure_utc(raw)
    text = str(raw).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def dump(obj: Any) -> Any:
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {_wire_name(f): dump(getattr(obj, f.name)) for f in dataclasses.fields(obj)}
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, (list, tuple)):
        return [dump(v) for v in obj]
    if isinstance(obj, dict):
        return {k: dump(v) for k, v in obj.items()}
    return obj


def load(cls: type[T], data: dict | None) -> T:
    data = data or {}
    kwargs: dict[str, Any] = {}
    for f in dataclasses.fields(cls):
        if not f.init:
            continue
        key = _wire_name(f)
        if key in data:
            raw = data[key]
        elif f.name in data:
            raw = data[f.name]
        else:
            continue
        has_default = f.default is not dataclasses.MISSING or f.default_factory is not dataclasses.MISSING
        if raw is None and has_default:
            continue
        kwargs[f.name] = _convert(f, raw)
    return cls(**kwargs)


def _convert(f: dataclasses.Field, raw: Any) -> Any:
    if raw is None:
        return None
    item = f.metadata.get("item")
    if item is not None:
        return [load(item, v) if isinstance(v, dict) else v for v in raw]
    nested = f.metadata.get("nested")
    if nested is not None:
        return load(nested, raw) if isinstance(raw, dict) else raw
    parse = f.metadata.get("parse")
    if parse is not None:
        return parse(raw)
    return raw
