# src/heapql/snapshot/errors.py
from __future__ import annotations

import enum
from typing import Dict, Optional, Sequence


class ErrorKind(str, enum.Enum):
    # Input / IO
    DUMP_READ = "DUMP_READ"
    # Metadata
    MALFORMED_METADATA = "MALFORMED_METADATA"
    # Decoding
    DECODE = "DECODE"
    UNSUPPORTED_FIELD_TYPE = "UNSUPPORTED_FIELD_TYPE"
    # Structure
    INCONSISTENT_NODE_COUNT = "INCONSISTENT_NODE_COUNT"
    INCONSISTENT_EDGE_COUNT = "INCONSISTENT_EDGE_COUNT"
    # Persistence
    COLUMN_MISMATCH = "COLUMN_MISMATCH"
    STORE = "STORE"


class HeapqlError(Exception):
    """
    Base for every fatal condition raised while importing a dump.

    All of them abort the run; ``kind`` lets callers (CLI, receipts) report the
    category without matching on the class.
    """

    kind: ErrorKind = ErrorKind.DECODE

    def __init__(self, message: str, *, detail: Optional[Dict[str, object]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail: Dict[str, object] = dict(detail or {})

    def to_dict(self) -> Dict[str, object]:
        return {
            "kind": self.kind.value,
            "error": type(self).__name__,
            "message": self.message,
            "detail": dict(self.detail),
        }


class DumpReadError(HeapqlError):
    kind = ErrorKind.DUMP_READ


class MalformedMetadataError(HeapqlError):
    kind = ErrorKind.MALFORMED_METADATA


class DecodeError(HeapqlError):
    kind = ErrorKind.DECODE


class UnsupportedFieldTypeError(DecodeError):
    """Raised for a reference-typed field with no resolver registered for its kind."""

    kind = ErrorKind.UNSUPPORTED_FIELD_TYPE

    def __init__(self, field_type: object, *, field: Optional[str] = None) -> None:
        where = f" for field {field!r}" if field else ""
        super().__init__(
            f"unsupported field type{where}: {field_type!r}",
            detail={"field": field, "field_type": repr(field_type)},
        )
        self.field_type = field_type
        self.field = field


class StructuralConsistencyError(HeapqlError):
    pass


class InconsistentNodeCountError(StructuralConsistencyError):
    kind = ErrorKind.INCONSISTENT_NODE_COUNT


class InconsistentEdgeCountError(StructuralConsistencyError):
    """Declared edge_count values do not exhaust the flat edge array exactly."""

    kind = ErrorKind.INCONSISTENT_EDGE_COUNT


class ColumnMismatchError(HeapqlError):
    kind = ErrorKind.COLUMN_MISMATCH

    def __init__(
        self,
        table: str,
        message: str,
        *,
        unknown: Sequence[str] = (),
        expected: Sequence[str] = (),
    ) -> None:
        super().__init__(
            f"{table}: {message}",
            detail={"table": table, "unknown": list(unknown), "expected": list(expected)},
        )
        self.table = table
        self.unknown = tuple(unknown)
        self.expected = tuple(expected)


class StoreError(HeapqlError):
    kind = ErrorKind.STORE
