# src/heapql/snapshot/decode.py
from __future__ import annotations

from typing import Callable, Mapping, Optional, Sequence, Union

from .errors import DecodeError, UnsupportedFieldTypeError
from .schema import EnumType, FieldType, NumberType, ReferenceType, StringType

DecodedValue = Union[str, int, float, None]
Resolver = Callable[[int], DecodedValue]
Resolvers = Mapping[str, Resolver]


def decode_value(
    raw: int,
    field_type: FieldType,
    strings: Sequence[str],
    resolvers: Optional[Resolvers] = None,
    *,
    field: Optional[str] = None,
) -> DecodedValue:
    """
    Turn one raw slot into a typed value.

    Reference-typed slots are handed to ``resolvers[kind]``; the decoder holds
    no resolvers of its own. Pure: no I/O, no state.
    """
    if isinstance(field_type, StringType):
        return _index(strings, raw, "string table", field)
    if isinstance(field_type, NumberType):
        return raw
    if isinstance(field_type, EnumType):
        return _index(field_type.values, raw, "enumeration", field)
    if isinstance(field_type, ReferenceType):
        resolver = (resolvers or {}).get(field_type.kind)
        if resolver is None:
            raise UnsupportedFieldTypeError(field_type, field=field)
        return resolver(raw)
    raise UnsupportedFieldTypeError(field_type, field=field)


class FieldDecoder:
    """Binds a string table to :func:`decode_value` for repeated use over flat arrays."""

    __slots__ = ("strings",)

    def __init__(self, strings: Sequence[str]) -> None:
        self.strings = strings

    def decode(
        self,
        raw: int,
        field_type: FieldType,
        resolvers: Optional[Resolvers] = None,
        *,
        field: Optional[str] = None,
    ) -> DecodedValue:
        return decode_value(raw, field_type, self.strings, resolvers, field=field)

    def field(
        self,
        values: Sequence[int],
        offset: int,
        field_type: FieldType,
        resolvers: Optional[Resolvers] = None,
        *,
        field: Optional[str] = None,
    ) -> DecodedValue:
        if offset < 0 or offset >= len(values):
            raise DecodeError(
                f"offset {offset} outside flat array of length {len(values)}",
                detail={"offset": offset, "length": len(values), "field": field},
            )
        return self.decode(values[offset], field_type, resolvers, field=field)


def _index(values: Sequence[str], raw: int, what: str, field: Optional[str]) -> str:
    if isinstance(raw, bool) or not isinstance(raw, int) or raw < 0 or raw >= len(values):
        where = f" in field {field!r}" if field else ""
        raise DecodeError(
            f"{what} index {raw!r} out of range (size {len(values)}){where}",
            detail={"index": raw, "size": len(values), "field": field},
        )
    return values[raw]
