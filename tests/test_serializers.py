"""Tests for the object column codecs."""
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from recordtrail import ConfigurationError, JSONSerializer, YAMLSerializer, get_serializer, set_serializer
from recordtrail.serializers import from_primitive, to_primitive


class TestPrimitives:
    def test_typed_values_survive(self):
        attrs = {
            "at": datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc),
            "day": date(2024, 1, 1),
            "price": Decimal("9.99"),
            "ref": uuid.UUID("12345678-1234-5678-1234-567812345678"),
            "blob": b"\x00\x01",
            "count": 3,
            "missing": None,
        }
        assert from_primitive(to_primitive(attrs)) == attrs

    def test_plain_dicts_untouched(self):
        assert from_primitive({"__type__": "datetime"}) == {"__type__": "datetime"}

    def test_tuples_become_lists(self):
        assert to_primitive(("a", 1)) == ["a", 1]


class TestSerializers:
    def test_json_is_text(self):
        text = JSONSerializer().dump({"price": Decimal("1.50")})
        assert isinstance(text, str)
        assert JSONSerializer().load(text) == {"price": Decimal("1.50")}

    def test_yaml(self):
        serializer = YAMLSerializer()
        attrs = {"name": "a", "at": datetime(2024, 1, 1, tzinfo=timezone.utc)}
        assert serializer.load(serializer.dump(attrs)) == attrs

    def test_select_by_name(self):
        set_serializer("yaml")
        assert isinstance(get_serializer(), YAMLSerializer)

    def test_unknown_name(self):
        with pytest.raises(ConfigurationError):
            set_serializer("pickle")
