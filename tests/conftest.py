import copy
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))


NODE_TYPES = ["hidden", "array", "string", "object", "code", "closure", "regexp", "number", "native", "synthetic"]
EDGE_TYPES = ["context", "element", "property", "internal", "hidden", "shortcut", "weak"]

# Two nodes (ids 10, 20), the first owning one "property" edge named "foo" to the second.
ROUND_TRIP = {
    "snapshot": {
        "meta": {
            "node_fields": ["id", "name", "type", "self_size", "edge_count", "trace_node_id"],
            "node_types": ["number", "string", ["hidden", "object"], "number", "number", "number"],
            "edge_fields": ["type", "name_or_index", "to_node"],
            "edge_types": [["context", "element", "property"], "string_or_number", "node"],
        },
        "node_count": 2,
        "edge_count": 1,
    },
    "nodes": [
        10, 0, 0, 100, 1, 0,
        20, 1, 1, 50, 0, 0,
    ],
    "edges": [2, 2, 6],
    "strings": ["root", "obj", "foo"],
}

# V8 field order: type, name, id, self_size, edge_count, trace_node_id, detachedness.
# Node 0 (id 1) -> 3 edges, node 1 (id 3) -> 1 edge, node 2 (id 5) -> 0 edges.
V8_LIKE = {
    "snapshot": {
        "meta": {
            "node_fields": ["type", "name", "id", "self_size", "edge_count", "trace_node_id", "detachedness"],
            "node_types": [NODE_TYPES, "string", "number", "number", "number", "number", "number"],
            "edge_fields": ["type", "name_or_index", "to_node"],
            "edge_types": [EDGE_TYPES, "string_or_number", "node"],
            "trace_function_info_fields": ["function_id", "name", "script_name", "script_id", "line", "column"],
        },
        "node_count": 3,
        "edge_count": 4,
        "trace_function_count": 0,
    },
    "nodes": [
        9, 0, 1, 0, 3, 0, 0,
        3, 1, 3, 32, 1, 0, 0,
        2, 2, 5, 16, 0, 0, 0,
    ],
    "edges": [
        5, 3, 7,
        2, 4, 14,
        2, 5, 7,
        0, 6, 14,
    ],
    "strings": ["(GC roots)", "Window", "hello", "(Document)", "document", "greeting", "context_var"],
    "trace_function_infos": [],
    "locations": [],
}


def make_document(base=ROUND_TRIP, **overrides):
    """Deep copy of a fixture document with top-level or ``snapshot.meta`` keys replaced."""
    doc = copy.deepcopy(base)
    meta_keys = {"node_fields", "node_types", "edge_fields", "edge_types"}
    for key, value in overrides.items():
        if key in meta_keys:
            doc["snapshot"]["meta"][key] = value
        elif key == "node_count":
            doc["snapshot"]["node_count"] = value
        else:
            doc[key] = value
    return doc


@pytest.fixture
def round_trip_doc():
    return make_document(ROUND_TRIP)


@pytest.fixture
def v8_doc():
    return make_document(V8_LIKE)
