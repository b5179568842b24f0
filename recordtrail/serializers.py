"""Codecs for the ``object`` and ``object_changes`` columns.

Attribute values are first reduced to JSON-native primitives. Values JSON
cannot represent (datetimes, decimals, UUIDs, bytes) are wrapped in a small
``{"__type__": ..., "value": ...}`` envelope so they load back with their
original type. Text columns then hold either JSON or YAML, depending on the
configured serializer.
"""
import base64
import enum
import json
import uuid
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any

import yaml

from recordtrail.config import settings
from recordtrail.errors import ConfigurationError

TYPE_KEY = "__type__"


def to_primitive(value: Any) -> Any:
    """Reduce ``value`` to JSON-native types, tagging the ones that need it."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, enum.Enum):
        return to_primitive(value.value)
    if isinstance(value, datetime):
        return {TYPE_KEY: "datetime", "value": value.isoformat()}
    if isinstance(value, date):
        return {TYPE_KEY: "date", "value": value.isoformat()}
    if isinstance(value, time):
        return {TYPE_KEY: "time", "value": value.isoformat()}
    if isinstance(value, Decimal):
        return {TYPE_KEY: "decimal", "value": str(value)}
    if isinstance(value, uuid.UUID):
        return {TYPE_KEY: "uuid", "value": str(value)}
    if isinstance(value, (bytes, bytearray)):
        return {TYPE_KEY: "bytes", "value": base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, dict):
        return {str(k): to_primitive(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_primitive(v) for v in value]
    return str(value)


_LOADERS = {
    "datetime": datetime.fromisoformat,
    "date": date.fromisoformat,
    "time": time.fromisoformat,
    "decimal": Decimal,
    "uuid": uuid.UUID,
    "bytes": lambda raw: base64.b64decode(raw.encode("ascii")),
}


def from_primitive(value: Any) -> Any:
    """Inverse of :func:`to_primitive`."""
    if isinstance(value, dict):
        tag = value.get(TYPE_KEY)
        if tag in _LOADERS and set(value) == {TYPE_KEY, "value"}:
            return _LOADERS[tag](value["value"])
        return {k: from_primitive(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_primitive(v) for v in value]
    return value


class JSONSerializer:
    name = "json"

    def dump(self, attrs: Any) -> str:
        return json.dumps(to_primitive(attrs), sort_keys=True)

    def load(self, text: str) -> Any:
        return from_primitive(json.loads(text))


class YAMLSerializer:
    name = "yaml"

    def dump(self, attrs: Any) -> str:
        return yaml.safe_dump(to_primitive(attrs), sort_keys=True)

    def load(self, text: str) -> Any:
        return from_primitive(yaml.safe_load(text))


SERIALIZERS = {
    JSONSerializer.name: JSONSerializer,
    YAMLSerializer.name: YAMLSerializer,
}

_current = None


def get_serializer():
    """Return the serializer in use, building it from settings on first use."""
    global _current
    if _current is None:
        _current = _build(settings.SERIALIZER)
    return _current


def set_serializer(serializer) -> None:
    """Swap the serializer. Accepts a registered name or an object with dump/load."""
    global _current
    _current = _build(serializer) if isinstance(serializer, str) else serializer


def _build(name: str):
    try:
        return SERIALIZERS[name]()
    except KeyError:
        raise ConfigurationError(
            f"Unknown serializer {name!r}; expected one of {sorted(SERIALIZERS)}"
        ) from None
