# src/heapql/snapshot/nodes.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Tuple

from .decode import DecodedValue, FieldDecoder
from .errors import DecodeError, InconsistentNodeCountError
from .loader import HeapDump

logger = logging.getLogger(__name__)

ID_FIELD = "id"
EDGE_COUNT_FIELD = "edge_count"


@dataclass(frozen=True)
class NodeRecord:
    index: int
    fields: Tuple[str, ...]
    values: Tuple[DecodedValue, ...]
    id_index: int

    @property
    def id(self) -> DecodedValue:
        return self.values[self.id_index]

    def as_row(self) -> Tuple[DecodedValue, ...]:
        return self.values

    def as_dict(self) -> Dict[str, DecodedValue]:
        return dict(zip(self.fields, self.values))


@dataclass(frozen=True)
class NodeTable:
    """Decoded nodes in index order, plus the per-node edge counts the edge pass walks."""

    fields: Tuple[str, ...]
    records: Tuple[NodeRecord, ...]
    edge_counts: Tuple[int, ...]

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[NodeRecord]:
        return iter(self.records)

    def rows(self) -> List[Tuple[DecodedValue, ...]]:
        return [r.as_row() for r in self.records]


class NodeTableBuilder:
    """
    Walks the flat node array record by record.

    Record ``i`` starts at ``i * node_width``; every slot is decoded against the
    node schema without resolvers. Positions of ``id`` and ``edge_count`` are
    resolved by name once, at construction.
    """

    def __init__(self, dump: HeapDump) -> None:
        self.dump = dump
        self.schema = dump.schema
        self.decoder = FieldDecoder(dump.strings)
        self.id_index = self.schema.node_field_index(ID_FIELD)
        self.edge_count_index = self.schema.node_field_index(EDGE_COUNT_FIELD)

    def build(self) -> NodeTable:
        schema = self.schema
        width = schema.node_width
        flat = self.dump.nodes
        expected = schema.node_count * width
        if len(flat) != expected:
            raise InconsistentNodeCountError(
                f"node array has {len(flat)} slots, expected node_count {schema.node_count} × width {width} = {expected}",
                detail={"slots": len(flat), "expected": expected},
            )

        records: List[NodeRecord] = []
        edge_counts: List[int] = []
        field_specs = list(zip(schema.node_fields, schema.node_field_types))
        for i in range(schema.node_count):
            base = i * width
            values = tuple(
                self.decoder.decode(flat[base + j], ftype, field=name)
                for j, (name, ftype) in enumerate(field_specs)
            )
            edge_counts.append(self._edge_count(i, values[self.edge_count_index]))
            records.append(NodeRecord(index=i, fields=schema.node_fields, values=values, id_index=self.id_index))

        logger.info("Decoded %d nodes (width %d)", len(records), width)
        return NodeTable(fields=schema.node_fields, records=tuple(records), edge_counts=tuple(edge_counts))

    @staticmethod
    def _edge_count(index: int, value: DecodedValue) -> int:
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise DecodeError(
                f"node {index}: edge_count must be a non-negative integer, got {value!r}",
                detail={"node": index, "edge_count": value},
            )
        return value
