"""
Unit tests for row key and value encoding.
"""

import pytest

from src.indexing.encoding import (
    ColumnType,
    decode_key,
    decode_value,
    encode_key,
    encode_value,
    tenant_prefix,
    view_index_prefix,
)


class TestEncodeValue:
    """Test single value encoding."""

    def test_integer_encoding_preserves_order(self):
        """Negative, zero and positive integers sort by value."""
        encoded = [encode_value(v, ColumnType.INTEGER) for v in (-5, -1, 0, 1, 300)]
        assert encoded == sorted(encoded)

    def test_bigint_encoding_preserves_order(self):
        encoded = [encode_value(v, ColumnType.BIGINT) for v in (-(2 ** 40), -1, 0, 2 ** 40)]
        assert encoded == sorted(encoded)

    def test_none_encodes_to_empty_bytes(self):
        assert encode_value(None, ColumnType.INTEGER) == b""
        assert decode_value(b"", ColumnType.INTEGER) is None

    def test_decode_inverts_encode(self):
        assert decode_value(encode_value(-42, ColumnType.INTEGER), ColumnType.INTEGER) == -42
        assert decode_value(encode_value(True, ColumnType.BOOLEAN), ColumnType.BOOLEAN) is True

    def test_varchar_rejects_non_string(self):
        with pytest.raises(TypeError):
            encode_value(5, ColumnType.VARCHAR)

    def test_integer_rejects_bool(self):
        with pytest.raises(TypeError):
            encode_value(True, ColumnType.INTEGER)


class TestCompositeKeys:
    """Test composite row key encoding."""

    def test_varchar_fields_are_separated_except_last(self):
        assert encode_key(["a", "b"]) == b"a\x00b"

    def test_fixed_width_fields_are_not_separated(self):
        key = encode_key(["a", 5], [ColumnType.VARCHAR, ColumnType.INTEGER])
        assert key == b"a\x00" + encode_value(5, ColumnType.INTEGER)

    def test_decode_key(self):
        types = [ColumnType.VARCHAR, ColumnType.INTEGER, ColumnType.VARCHAR]
        key = encode_key(["tenant", 7, "x"], types)
        assert decode_key(key, types) == ["tenant", 7, "x"]

    def test_value_count_must_match_types(self):
        with pytest.raises(ValueError):
            encode_key(["a"], [ColumnType.VARCHAR, ColumnType.VARCHAR])

    def test_short_key_raises(self):
        with pytest.raises(ValueError):
            decode_key(b"\x00", [ColumnType.BIGINT])


class TestPrefixes:
    """Test tenant and view index prefixes."""

    def test_tenant_prefix(self):
        assert tenant_prefix("acme") == b"acme\x00"

    def test_empty_tenant_raises(self):
        with pytest.raises(ValueError):
            tenant_prefix("")

    def test_view_index_prefix(self):
        assert view_index_prefix(1) == b"\x00\x01"
        assert view_index_prefix(258) == b"\x01\x02"
