# src/heapql/snapshot/api.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional

from ..core.config import feature_enabled
from .edges import EdgeTableBuilder
from .loader import HeapDump, load_dump
from .nodes import NodeTableBuilder
from .store import HeapStore, edge_columns, node_columns

logger = logging.getLogger(__name__)


def _duckdb_default() -> bool:
    return feature_enabled("feature.store.duckdb", default=True)


@dataclass(frozen=True)
class ImportConfig:
    """Execution knobs for a dump import."""
    zstd_level: int = 7
    roll_rows: int = 2_000_000
    max_store_bytes: Optional[int] = None
    materialize_duckdb: bool = field(default_factory=_duckdb_default)
    keep_backup: bool = True


@dataclass(frozen=True)
class ImportSummary:
    dump_path: str
    blob_sha: str
    out_dir: str
    node_rows: int
    edge_rows: int
    wall_ms: int


def import_dump(
    dump: HeapDump,
    out_dir: Path,
    *,
    cfg: Optional[ImportConfig] = None,
    run_metadata: Optional[Dict] = None,
    on_task: Optional[Callable[[str], None]] = None,
) -> ImportSummary:
    """
    Decode an already-loaded dump and publish the ``node``/``edge`` tables.

    Node pass, node commit, edge pass, edge commit, publish; strictly in that
    order. Any failure discards the staged output and re-raises, so out_dir
    either receives both tables or is left as it was.
    """
    cfg = cfg or ImportConfig()
    start = time.time()
    announce = on_task or (lambda label: None)

    store = HeapStore(
        out_dir,
        zstd_level=cfg.zstd_level,
        roll_rows=cfg.roll_rows,
        max_bytes=cfg.max_store_bytes,
        materialize_duckdb=cfg.materialize_duckdb,
        keep_backup=cfg.keep_backup,
    )
    try:
        announce("Inserting nodes...")
        nodes = NodeTableBuilder(dump).build()
        node_rows = store.bulk_insert("node", node_columns(dump.schema), nodes.rows())

        announce("Inserting edges...")
        edges = EdgeTableBuilder(dump, nodes).build()
        edge_rows = store.bulk_insert("edge", edge_columns(dump.schema), edges.rows())

        store.finalize(
            receipt={
                "run_meta": run_metadata or {},
                "dump": {"path": dump.path, "blob_sha": dump.blob_sha, "node_count": dump.schema.node_count},
                "step": "heap_import",
            }
        )
    except BaseException:
        store.abort()
        raise

    wall_ms = int((time.time() - start) * 1000)
    logger.info("Imported %d nodes and %d edges in %d ms", node_rows, edge_rows, wall_ms)
    return ImportSummary(
        dump_path=dump.path,
        blob_sha=dump.blob_sha,
        out_dir=str(out_dir),
        node_rows=node_rows,
        edge_rows=edge_rows,
        wall_ms=wall_ms,
    )


def build_tables_for_dump(
    dump_path: Path,
    out_dir: Path,
    *,
    cfg: Optional[ImportConfig] = None,
    run_metadata: Optional[Dict] = None,
    on_task: Optional[Callable[[str], None]] = None,
) -> ImportSummary:
    dump = load_dump(Path(dump_path))
    return import_dump(dump, Path(out_dir), cfg=cfg, run_metadata=run_metadata, on_task=on_task)
