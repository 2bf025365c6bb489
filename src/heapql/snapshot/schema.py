# src/heapql/snapshot/schema.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Sequence, Tuple, Union

from .errors import MalformedMetadataError

# Type names the dump uses for plain slots. Everything else that is a string
# names a reference kind and needs a resolver at decode time.
_STRING_TYPE_NAMES = {"string"}
_NUMBER_TYPE_NAMES = {"number"}

# ==============================================================================
# Field types (closed set)
# ==============================================================================


@dataclass(frozen=True)
class StringType:
    """Slot holds an index into the dump's string table."""


@dataclass(frozen=True)
class NumberType:
    """Slot value is used verbatim."""


@dataclass(frozen=True)
class EnumType:
    values: Tuple[str, ...]


@dataclass(frozen=True)
class ReferenceType:
    kind: str


FieldType = Union[StringType, NumberType, EnumType, ReferenceType]

STRING = StringType()
NUMBER = NumberType()


def field_type_from_descriptor(descriptor: object, *, where: str = "") -> FieldType:
    if isinstance(descriptor, str):
        if descriptor in _STRING_TYPE_NAMES:
            return STRING
        if descriptor in _NUMBER_TYPE_NAMES:
            return NUMBER
        if not descriptor:
            raise MalformedMetadataError(f"empty type name{_at(where)}")
        return ReferenceType(kind=descriptor)
    if isinstance(descriptor, list):
        if not all(isinstance(v, str) for v in descriptor):
            raise MalformedMetadataError(f"enumeration values must be strings{_at(where)}")
        return EnumType(values=tuple(descriptor))
    raise MalformedMetadataError(f"unrecognized type descriptor {descriptor!r}{_at(where)}")


# ==============================================================================
# Resolved schema
# ==============================================================================


@dataclass(frozen=True)
class SnapshotSchema:
    node_fields: Tuple[str, ...]
    node_field_types: Tuple[FieldType, ...]
    edge_fields: Tuple[str, ...]
    edge_field_types: Tuple[FieldType, ...]
    strings: Tuple[str, ...]
    node_count: int
    _node_index: Dict[str, int] = field(default_factory=dict, repr=False, compare=False)

    def __post_init__(self) -> None:
        _require_parity("node", self.node_fields, self.node_field_types)
        _require_parity("edge", self.edge_fields, self.edge_field_types)
        if self.node_count < 0:
            raise MalformedMetadataError(f"node_count must be non-negative, got {self.node_count}")
        object.__setattr__(self, "_node_index", {name: i for i, name in enumerate(self.node_fields)})

    @property
    def node_width(self) -> int:
        return len(self.node_fields)

    @property
    def edge_width(self) -> int:
        return len(self.edge_fields)

    def node_field_index(self, name: str) -> int:
        try:
            return self._node_index[name]
        except KeyError:
            raise MalformedMetadataError(
                f"node_fields has no {name!r} field (fields: {list(self.node_fields)})",
                detail={"field": name},
            ) from None

    def node_field_type(self, name: str) -> FieldType:
        return self.node_field_types[self.node_field_index(name)]


def resolve_schema(document: Mapping[str, object]) -> SnapshotSchema:
    """
    Interpret the dump's embedded metadata block.

    Reads ``snapshot.meta`` (field names and type descriptors for nodes and
    edges), ``snapshot.node_count`` and the top-level ``strings`` table. Only the
    structure is validated here; the flat arrays are checked by the builders.
    """
    if not isinstance(document, Mapping):
        raise MalformedMetadataError("dump document must be a JSON object")
    snapshot = _require(document, "snapshot", Mapping, "")
    meta = _require(snapshot, "meta", Mapping, "snapshot.")

    node_fields = _names(_require(meta, "node_fields", list, "snapshot.meta."), "node_fields")
    node_types = _require(meta, "node_types", list, "snapshot.meta.")
    edge_fields = _names(_require(meta, "edge_fields", list, "snapshot.meta."), "edge_fields")
    edge_types = _require(meta, "edge_types", list, "snapshot.meta.")

    # Parity first so a truncated type list reports as such rather than as a
    # bad descriptor further down.
    _require_parity("node", node_fields, node_types)
    _require_parity("edge", edge_fields, edge_types)

    node_count = snapshot.get("node_count")
    if isinstance(node_count, bool) or not isinstance(node_count, int):
        raise MalformedMetadataError(f"snapshot.node_count must be an integer, got {node_count!r}")

    strings = _require(document, "strings", list, "")

    return SnapshotSchema(
        node_fields=tuple(node_fields),
        node_field_types=tuple(
            field_type_from_descriptor(d, where=f"node field {n!r}") for n, d in zip(node_fields, node_types)
        ),
        edge_fields=tuple(edge_fields),
        edge_field_types=tuple(
            field_type_from_descriptor(d, where=f"edge field {n!r}") for n, d in zip(edge_fields, edge_types)
        ),
        strings=tuple(strings),
        node_count=node_count,
    )


# ----------------------------- helpers ----------------------------------------


def _at(where: str) -> str:
    return f" ({where})" if where else ""


def _require(container: Mapping[str, object], key: str, kind: type, prefix: str):
    if key not in container:
        raise MalformedMetadataError(f"missing {prefix}{key}")
    value = container[key]
    if not isinstance(value, kind):
        raise MalformedMetadataError(f"{prefix}{key} has unexpected type {type(value).__name__}")
    return value


def _names(values: List[object], label: str) -> List[str]:
    if not all(isinstance(v, str) and v for v in values):
        raise MalformedMetadataError(f"{label} must be non-empty strings")
    if len(set(values)) != len(values):
        raise MalformedMetadataError(f"{label} contains duplicate names")
    return list(values)  # type: ignore[return-value]


def _require_parity(label: str, fields: Sequence[object], types: Sequence[object]) -> None:
    if len(fields) != len(types):
        raise MalformedMetadataError(
            f"{label}_fields has {len(fields)} entries but {label}_types has {len(types)}",
            detail={"fields": len(fields), "types": len(types)},
        )
