# src/heapql/snapshot/edges.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import partial
from typing import Dict, Iterator, List, Tuple

from .decode import DecodedValue, FieldDecoder, Resolvers
from .errors import DecodeError, InconsistentEdgeCountError
from .loader import HeapDump
from .nodes import ID_FIELD, NodeTable, NodeTableBuilder
from .schema import STRING

logger = logging.getLogger(__name__)

FROM_NODE_COLUMN = "from_node"
NODE_REFERENCE = "node"
NAME_OR_INDEX_REFERENCE = "string_or_number"
TYPE_FIELD = "type"

# Edge types whose name_or_index slot is an array index rather than a string id.
INDEX_EDGE_TYPES = frozenset({"element", "hidden"})


@dataclass(frozen=True)
class EdgeRecord:
    from_node: DecodedValue
    fields: Tuple[str, ...]
    values: Tuple[DecodedValue, ...]

    def as_row(self) -> Tuple[DecodedValue, ...]:
        return (self.from_node,) + self.values

    def as_dict(self) -> Dict[str, DecodedValue]:
        out: Dict[str, DecodedValue] = {FROM_NODE_COLUMN: self.from_node}
        out.update(zip(self.fields, self.values))
        return out


@dataclass(frozen=True)
class EdgeTable:
    fields: Tuple[str, ...]
    records: Tuple[EdgeRecord, ...]

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[EdgeRecord]:
        return iter(self.records)

    def rows(self) -> List[Tuple[DecodedValue, ...]]:
        return [r.as_row() for r in self.records]


class EdgeTableBuilder:
    """
    Walks the flat edge array in node order with a running cursor.

    Node ``i`` owns the next ``edge_count(i)`` edges; there is no offset table,
    so the cursor is the only source of positions. ``node``-typed edge slots are
    absolute offsets into the flat node array and resolve to the target's id.
    ``string_or_number`` slots depend on the edge's decoded ``type``: element
    and hidden edges carry an array index, every other type a string id.
    """

    def __init__(self, dump: HeapDump, nodes: NodeTable) -> None:
        self.dump = dump
        self.schema = dump.schema
        self.nodes = nodes
        self.decoder = FieldDecoder(dump.strings)
        self.id_index = dump.schema.node_field_index(ID_FIELD)
        self._id_type = dump.schema.node_field_types[self.id_index]
        fields = dump.schema.edge_fields
        self.type_index = fields.index(TYPE_FIELD) if TYPE_FIELD in fields else None

    def resolvers(self, edge_type: DecodedValue = None) -> Resolvers:
        return {
            NODE_REFERENCE: self.resolve_node,
            NAME_OR_INDEX_REFERENCE: partial(self.resolve_name_or_index, edge_type=edge_type),
        }

    def resolve_name_or_index(self, raw: int, *, edge_type: DecodedValue = None) -> DecodedValue:
        if edge_type in INDEX_EDGE_TYPES:
            return str(raw)
        return self.decoder.decode(raw, STRING, field="name_or_index")

    def resolve_node(self, offset: int) -> DecodedValue:
        width = self.schema.node_width
        flat = self.dump.nodes
        if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0 or offset >= len(flat):
            raise DecodeError(
                f"node reference {offset!r} outside node array of length {len(flat)}",
                detail={"offset": offset, "length": len(flat)},
            )
        if offset % width:
            raise DecodeError(
                f"node reference {offset} is not aligned to node width {width}",
                detail={"offset": offset, "width": width},
            )
        return self.decoder.field(flat, offset + self.id_index, self._id_type, field="id")

    def build(self) -> EdgeTable:
        schema = self.schema
        width = schema.edge_width
        flat = self.dump.edges
        total = len(flat)
        type_spec = schema.edge_field_types[self.type_index] if self.type_index is not None else None
        field_specs = list(zip(schema.edge_fields, schema.edge_field_types))

        records: List[EdgeRecord] = []
        cursor = 0
        for node, count in zip(self.nodes.records, self.nodes.edge_counts):
            owner = node.id
            end = cursor + count * width
            if end > total:
                raise InconsistentEdgeCountError(
                    f"node {node.index} (id {owner!r}) declares {count} edges but the edge array "
                    f"ends at slot {total}, needed {end}",
                    detail={"node": node.index, "edge_count": count, "cursor": cursor, "length": total},
                )
            for _ in range(count):
                edge_type = None
                if type_spec is not None:
                    edge_type = self.decoder.decode(flat[cursor + self.type_index], type_spec, field=TYPE_FIELD)
                resolvers = self.resolvers(edge_type)
                values = tuple(
                    self.decoder.decode(flat[cursor + k], ftype, resolvers, field=name)
                    for k, (name, ftype) in enumerate(field_specs)
                )
                records.append(EdgeRecord(from_node=owner, fields=schema.edge_fields, values=values))
                cursor += width

        if cursor != total:
            raise InconsistentEdgeCountError(
                f"edge_count values cover {cursor} slots but the edge array has {total}",
                detail={"cursor": cursor, "length": total},
            )

        logger.info("Decoded %d edges (width %d)", len(records), width)
        return EdgeTable(fields=schema.edge_fields, records=tuple(records))


def decode_dump(dump: HeapDump) -> Tuple[NodeTable, EdgeTable]:
    """Run both passes in order; the edge pass depends on decoded node identities."""
    nodes = NodeTableBuilder(dump).build()
    edges = EdgeTableBuilder(dump, nodes).build()
    return nodes, edges
