# src/heapql/snapshot/loader.py
from __future__ import annotations

import gzip
import hashlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Sequence

from .errors import DumpReadError, MalformedMetadataError
from .schema import SnapshotSchema, resolve_schema

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HeapDump:
    """A fully materialized dump: resolved schema plus the two flat arrays."""

    schema: SnapshotSchema
    nodes: Sequence[int]
    edges: Sequence[int]
    path: str = ""
    blob_sha: str = ""

    @property
    def strings(self) -> Sequence[str]:
        return self.schema.strings


def parse_dump(document: Mapping[str, object], *, path: str = "", blob_sha: str = "") -> HeapDump:
    schema = resolve_schema(document)
    nodes = _int_array(document, "nodes")
    edges = _int_array(document, "edges")
    return HeapDump(schema=schema, nodes=nodes, edges=edges, path=path, blob_sha=blob_sha)


def load_dump(path: Path) -> HeapDump:
    """Read a ``.heapsnapshot`` (optionally gzip-compressed) and resolve its schema."""
    path = Path(path)
    raw = _read_bytes(path)
    blob_sha = hashlib.blake2b(raw, digest_size=20).hexdigest()
    try:
        document = json.loads(raw.decode("utf-8"))
    except UnicodeDecodeError as e:
        raise DumpReadError(f"{path}: not UTF-8 text: {e}") from e
    except json.JSONDecodeError as e:
        raise DumpReadError(f"{path}: invalid JSON: {e}") from e

    dump = parse_dump(document, path=str(path), blob_sha=blob_sha)
    logger.info(
        "Loaded %s: %d nodes, %d edge slots, %d strings",
        path.name,
        dump.schema.node_count,
        len(dump.edges),
        len(dump.strings),
    )
    return dump


# ----------------------------- helpers ----------------------------------------


def _read_bytes(path: Path) -> bytes:
    try:
        data = path.read_bytes()
    except OSError as e:
        raise DumpReadError(f"cannot read dump {path}: {e}") from e
    if data[:2] == b"\x1f\x8b":
        try:
            data = gzip.decompress(data)
        except (OSError, EOFError) as e:
            raise DumpReadError(f"{path}: corrupt gzip stream: {e}") from e
    return data


def _int_array(document: Mapping[str, object], key: str) -> Sequence[int]:
    value: Optional[object] = document.get(key)
    if not isinstance(value, list):
        raise MalformedMetadataError(f"missing or non-list {key!r} array")
    return value
