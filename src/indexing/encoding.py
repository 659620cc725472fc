"""
Row Key and Value Encoding

Order-preserving byte encodings for column values and composite row keys.
Variable-length fields are terminated by a zero byte; fixed-width numeric
fields are stored big-endian with the sign bit flipped so that byte order
matches numeric order.
"""

import struct
from enum import Enum
from typing import Any, List, Optional, Sequence

SEPARATOR = b"\x00"


class ColumnType(Enum):
    """Supported column data types."""
    VARCHAR = "VARCHAR"
    INTEGER = "INTEGER"
    BIGINT = "BIGINT"
    BOOLEAN = "BOOLEAN"

    @property
    def fixed_width(self) -> bool:
        return self is not ColumnType.VARCHAR


def encode_value(value: Any, column_type: ColumnType = ColumnType.VARCHAR) -> bytes:
    """
    Encode a single value.

    Args:
        value: Python value (None encodes to an empty byte string)
        column_type: Declared column type

    Returns:
        Encoded bytes

    Raises:
        TypeError: If value does not fit the column type
    """
    if value is None:
        return b""

    if column_type is ColumnType.VARCHAR:
        if not isinstance(value, str):
            raise TypeError(f"VARCHAR value must be str, got {type(value).__name__}")
        return value.encode("utf-8")

    if column_type is ColumnType.BOOLEAN:
        return b"\x01" if value else b"\x00"

    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{column_type.value} value must be int, got {type(value).__name__}")

    if column_type is ColumnType.INTEGER:
        return struct.pack(">I", (value + (1 << 31)) & 0xFFFFFFFF)
    return struct.pack(">Q", (value + (1 << 63)) & 0xFFFFFFFFFFFFFFFF)


def decode_value(data: bytes, column_type: ColumnType = ColumnType.VARCHAR) -> Any:
    """Inverse of encode_value. Empty bytes decode to None."""
    if not data:
        return None
    if column_type is ColumnType.VARCHAR:
        return data.decode("utf-8")
    if column_type is ColumnType.BOOLEAN:
        return data != b"\x00"
    if column_type is ColumnType.INTEGER:
        return struct.unpack(">I", data)[0] - (1 << 31)
    return struct.unpack(">Q", data)[0] - (1 << 63)


def encode_key(values: Sequence[Any], types: Optional[Sequence[ColumnType]] = None) -> bytes:
    """
    Encode a composite row key.

    Variable-length fields are followed by SEPARATOR except in the last
    position; fixed-width fields are never separated.
    """
    types = list(types) if types is not None else [ColumnType.VARCHAR] * len(values)
    if len(types) != len(values):
        raise ValueError(f"Expected {len(types)} key values, got {len(values)}")

    parts: List[bytes] = []
    for i, (value, column_type) in enumerate(zip(values, types)):
        parts.append(encode_value(value, column_type))
        if not column_type.fixed_width and i < len(values) - 1:
            parts.append(SEPARATOR)
    return b"".join(parts)


def tenant_prefix(tenant_id: str) -> bytes:
    """Key prefix of every row owned by a tenant in a multi-tenant table."""
    if not tenant_id:
        raise ValueError("Tenant id must be a non-empty string")
    return encode_value(tenant_id) + SEPARATOR


def view_index_prefix(index_id: int) -> bytes:
    """Two-byte id separating indexes that share one physical table."""
    return struct.pack(">H", index_id & 0xFFFF)


def decode_key(key: bytes, types: Sequence[ColumnType]) -> List[Any]:
    """
    Decode a composite row key produced by encode_key.

    Raises:
        ValueError: If the key is shorter than its fixed-width fields
    """
    widths = {ColumnType.INTEGER: 4, ColumnType.BIGINT: 8, ColumnType.BOOLEAN: 1}
    values: List[Any] = []
    offset = 0
    for i, column_type in enumerate(types):
        if column_type.fixed_width:
            end = offset + widths[column_type]
            if end > len(key):
                raise ValueError(f"Row key too short for {column_type.value} field {i}")
        elif i == len(types) - 1:
            end = len(key)
        else:
            end = key.find(SEPARATOR, offset)
            if end < 0:
                end = len(key)
        values.append(decode_value(key[offset:end], column_type))
        offset = end if column_type.fixed_width else end + 1
    return values
