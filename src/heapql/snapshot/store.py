# src/heapql/snapshot/store.py
from __future__ import annotations

import hashlib
import json
import logging
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import duckdb
import pyarrow as pa
import pyarrow.parquet as pq

from ..core.config import feature_enabled
from .errors import ColumnMismatchError, StoreError
from .schema import SnapshotSchema

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0"
DUCKDB_FILENAME = "heap.duckdb"

_SQL_TYPES = {
    pa.int64(): "BIGINT",
    pa.string(): "VARCHAR",
}

# Shared by schema.sql and the materialized heap.duckdb.
_INDEX_SQL = (
    "CREATE INDEX idx_node_id ON node(id)",
    "CREATE INDEX idx_edge_from ON edge(from_node)",
    "CREATE INDEX idx_edge_to ON edge(to_node)",
)


# ============================== destinations ==================================

@dataclass(frozen=True)
class Destination:
    """A fixed output relation. Column names and types do not follow the dump."""

    name: str
    schema: pa.Schema

    @property
    def columns(self) -> Tuple[str, ...]:
        return tuple(self.schema.names)


NODE_DESTINATION = Destination(
    name="node",
    schema=pa.schema(
        [
            pa.field("id", pa.int64()),
            pa.field("name", pa.string()),
            pa.field("type", pa.string()),
            pa.field("self_size", pa.int64()),
            pa.field("edge_count", pa.int64()),
            pa.field("trace_node_id", pa.int64()),
            pa.field("detachedness", pa.int64()),
        ]
    ).with_metadata({"version": SCHEMA_VERSION}),
)

EDGE_DESTINATION = Destination(
    name="edge",
    schema=pa.schema(
        [
            pa.field("from_node", pa.int64()),
            pa.field("to_node", pa.int64()),
            pa.field("type", pa.string()),
            pa.field("name_or_index", pa.string()),
        ]
    ).with_metadata({"version": SCHEMA_VERSION}),
)

DESTINATIONS: Dict[str, Destination] = {d.name: d for d in (NODE_DESTINATION, EDGE_DESTINATION)}


def node_columns(schema: SnapshotSchema) -> Tuple[str, ...]:
    return tuple(schema.node_fields)


def edge_columns(schema: SnapshotSchema) -> Tuple[str, ...]:
    return ("from_node",) + tuple(schema.edge_fields)


def check_columns(table: str, columns: Sequence[str]) -> Destination:
    """
    Validate a supplied column list against the fixed destination.

    Every supplied column must exist in the destination; destination columns
    missing from the list are written as NULL and reported by missing_columns().
    """
    dest = DESTINATIONS.get(table)
    if dest is None:
        raise StoreError(f"unknown destination table {table!r}")
    if len(set(columns)) != len(columns):
        raise ColumnMismatchError(table, "duplicate column names", expected=dest.columns)
    unknown = [c for c in columns if c not in dest.columns]
    if unknown:
        raise ColumnMismatchError(
            table,
            f"dump columns {unknown} are not defined by the destination {list(dest.columns)}",
            unknown=unknown,
            expected=dest.columns,
        )
    return dest


def missing_columns(dest: Destination, columns: Sequence[str]) -> List[str]:
    """Destination columns the dump does not supply, in destination order."""
    supplied = set(columns)
    return [c for c in dest.columns if c not in supplied]


# ============================== store =========================================

class HeapStore:
    """
    Parquet store for the decoded ``node``/``edge`` relations with:
      - adaptive buffers (row-count & memory pressure)
      - ZSTD compression
      - verified flushes (read-back row counts)
      - atomic publish (staging -> out_dir); nothing is visible before finalize()
      - query hints (catalog.json, DuckDB schema.sql) and an optional DuckDB database
    """

    def __init__(
        self,
        out_dir: Path,
        *,
        zstd_level: int = 7,
        roll_rows: int = 2_000_000,
        max_bytes: Optional[int] = None,
        staging_suffix: str = ".staging",
        file_prefix: str = "heap",
        max_buffer_memory_mb: int = 128,
        materialize_duckdb: Optional[bool] = None,
        keep_backup: bool = True,
    ) -> None:
        self.out_dir = Path(out_dir)
        self.zstd_level = int(zstd_level)
        self.roll_rows = int(max(1000, roll_rows))
        self.max_bytes = max_bytes
        self.staging_suffix = staging_suffix
        self.file_prefix = file_prefix
        self.max_buffer_memory_mb = max_buffer_memory_mb
        if materialize_duckdb is None:
            materialize_duckdb = feature_enabled("feature.store.duckdb", default=True)
        self.materialize_duckdb = bool(materialize_duckdb)
        self.keep_backup = keep_backup

        # Staging
        self._staging = Path(str(self.out_dir) + self.staging_suffix)
        if self._staging.exists():
            shutil.rmtree(self._staging, ignore_errors=True)
        for name in DESTINATIONS:
            (self._staging / name).mkdir(parents=True, exist_ok=True)

        # Counters
        self._file_idx: Dict[str, int] = {name: 0 for name in DESTINATIONS}
        self._rows_total: Dict[str, int] = {name: 0 for name in DESTINATIONS}
        self._bytes_written = 0
        self._closed = False
        self._column_mismatch: Dict[str, Dict[str, List[str]]] = {}

        self._pq_write_kwargs = dict(
            compression="zstd",
            compression_level=self.zstd_level,
            use_dictionary=True,
            write_statistics=True,
        )

        # Simple transaction log for audit/recovery
        self._transaction_log: List[str] = []

    @property
    def staging_dir(self) -> Path:
        return self._staging

    def rows_written(self, table: str) -> int:
        return self._rows_total.get(table, 0)

    # ----------------------------- append API ---------------------------------

    def bulk_insert(self, table: str, columns: Sequence[str], rows: Iterable[Sequence[object]]) -> int:
        """
        Write one batch of equal-arity rows to ``table``.

        All files written by this call are removed again if any row fails, so
        a batch is either fully staged or not at all. Returns the row count.
        """
        self._require_open()
        columns = tuple(columns)
        dest = check_columns(table, columns)
        missing = missing_columns(dest, columns)
        arity = len(columns)
        buf = _AdaptiveRowBuffer(dest.schema, self.roll_rows, self.max_buffer_memory_mb)
        written: List[Path] = []
        count = 0
        bytes_before = self._bytes_written
        try:
            for row in rows:
                if len(row) != arity:
                    raise ColumnMismatchError(
                        table,
                        f"row {count} has {len(row)} values for {arity} columns",
                        expected=columns,
                    )
                buf.add(dict(zip(columns, row)))
                count += 1
                if buf.should_roll():
                    written.append(self._flush(table, buf))
            if buf or self._file_idx[table] == 0:
                written.append(self._flush(table, buf))
        except BaseException:
            for path in written:
                path.unlink(missing_ok=True)
            self._file_idx[table] -= len(written)
            self._bytes_written = bytes_before
            self._transaction_log.append(f"rolled_back_{table}:{len(written)}_files")
            raise

        self._rows_total[table] += count
        if missing:
            logger.warning("Dump does not supply %s columns %s; writing them as NULL", table, missing)
            self._column_mismatch[table] = {"missing": missing}
        self._transaction_log.append(f"committed_{table}:{count}_rows")
        logger.info("Staged %d %s rows in %d file(s)", count, table, len(written))
        return count

    # ----------------------------- finalize/abort -----------------------------

    def finalize(self, *, receipt: Dict) -> None:
        """
        Write run_receipt.json + query hints (+ DuckDB database), compute integrity
        hashes, then atomically publish the staging contents into out_dir.
        """
        self._require_open()
        for name in DESTINATIONS:
            if self._file_idx[name] == 0:
                empty = _AdaptiveRowBuffer(DESTINATIONS[name].schema, self.roll_rows, self.max_buffer_memory_mb)
                self._flush(name, empty)

        self._write_query_hints()
        if self.materialize_duckdb:
            self._materialize_duckdb()

        meta = {
            "schema_version": SCHEMA_VERSION,
            "node_rows": self._rows_total["node"],
            "edge_rows": self._rows_total["edge"],
            "bytes_written": self._bytes_written,
            "compression": {"algorithm": "zstd", "level": self.zstd_level},
            "files": dict(self._file_idx),
            "duckdb": DUCKDB_FILENAME if self.materialize_duckdb else None,
            "created_at_epoch": int(time.time()),
            "created_at_iso": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "transaction_log": self._transaction_log,
            "column_mismatch": self._column_mismatch,
        }
        meta.update(receipt or {})
        meta["integrity"] = self._compute_integrity_hashes()

        (self._staging / "run_receipt.json").write_text(json.dumps(meta, indent=2), encoding="utf-8")

        self._atomic_publish()
        self._closed = True
        logger.info("Published %s", self.out_dir)

    def abort(self) -> None:
        """Drop everything staged so far; out_dir is left untouched."""
        if self._closed:
            return
        shutil.rmtree(self._staging, ignore_errors=True)
        self._closed = True
        logger.info("Discarded staging directory %s", self._staging)

    # ----------------------------- internals ----------------------------------

    def _require_open(self) -> None:
        if self._closed:
            raise StoreError(f"store for {self.out_dir} is already finalized or aborted")

    def _flush(self, table: str, buf: "_AdaptiveRowBuffer") -> Path:
        idx = self._file_idx[table]
        path = self._staging / table / f"{self.file_prefix}_{table}_{idx:05}.parquet"
        rows = self._verified_write(buf, path)
        self._file_idx[table] = idx + 1
        self._transaction_log.append(f"wrote_{table}:{path.name}")
        logger.debug("Wrote %s (%d rows)", path.name, rows)
        buf.clear()
        return path

    def _verified_write(self, buf: "_AdaptiveRowBuffer", path: Path) -> int:
        """Write Parquet and verify on disk; clean up on failure. Returns row count."""
        try:
            tbl = buf.to_table()
            pq.write_table(tbl, path, **self._pq_write_kwargs)

            if not path.exists() or path.stat().st_size == 0:
                raise StoreError(f"Failed to write {path}")

            written = pq.read_metadata(path).num_rows
            if written != tbl.num_rows:
                raise StoreError(f"Row count mismatch: expected {tbl.num_rows}, got {written}")

            file_size = path.stat().st_size
            self._bytes_written += file_size
            if self.max_bytes is not None and self._bytes_written > self.max_bytes:
                self._bytes_written -= file_size
                path.unlink(missing_ok=True)
                raise StoreError(
                    f"HeapStore exceeded max_bytes={self.max_bytes} (written={self._bytes_written}) at {path.name}"
                )
            return tbl.num_rows

        except StoreError:
            path.unlink(missing_ok=True)
            raise
        except (pa.ArrowException, OSError) as e:
            path.unlink(missing_ok=True)
            raise StoreError(f"Parquet write failed for {path}: {e}") from e
        except BaseException:
            path.unlink(missing_ok=True)
            raise

    def _compute_integrity_hashes(self) -> Dict[str, str]:
        hashes: Dict[str, str] = {}
        for file_path in sorted(self._staging.rglob("*.parquet")):
            with open(file_path, "rb") as f:
                file_hash = hashlib.blake2b(f.read(), digest_size=16).hexdigest()
                hashes[file_path.relative_to(self._staging).as_posix()] = file_hash
        return hashes

    def _write_query_hints(self) -> None:
        catalog = {
            "tables": {
                name: {
                    "path": f"{name}/*.parquet",
                    "schema": str(dest.schema),
                    "columns": list(dest.columns),
                    "row_count": self._rows_total[name],
                }
                for name, dest in DESTINATIONS.items()
            }
        }
        (self._staging / "catalog.json").write_text(json.dumps(catalog, indent=2), encoding="utf-8")

        duckdb_sql = ["-- Auto-generated heap graph schema for DuckDB"]
        for name, dest in DESTINATIONS.items():
            duckdb_sql.append(_create_table_sql(dest))
            cols = ", ".join(dest.columns)
            duckdb_sql.append(f"INSERT INTO {name} SELECT {cols} FROM read_parquet('{name}/*.parquet');")
        duckdb_sql += [f"{stmt};" for stmt in _INDEX_SQL]
        (self._staging / "schema.sql").write_text("\n".join(duckdb_sql), encoding="utf-8")

    def _materialize_duckdb(self) -> None:
        db_path = self._staging / DUCKDB_FILENAME
        try:
            con = duckdb.connect(str(db_path))
            try:
                con.execute("BEGIN TRANSACTION")
                for name, dest in DESTINATIONS.items():
                    con.execute(_create_table_sql(dest))
                    glob = (self._staging / name / "*.parquet").as_posix().replace("'", "''")
                    cols = ", ".join(dest.columns)
                    con.execute(f"INSERT INTO {name} SELECT {cols} FROM read_parquet('{glob}')")
                for stmt in _INDEX_SQL:
                    con.execute(stmt)
                con.execute("COMMIT")
            finally:
                con.close()
        except duckdb.Error as e:
            db_path.unlink(missing_ok=True)
            raise StoreError(f"DuckDB materialization failed: {e}") from e
        self._transaction_log.append(f"wrote_duckdb:{DUCKDB_FILENAME}")

    def _atomic_publish(self) -> None:
        # Replace existing out_dir atomically
        backup = Path(str(self.out_dir) + ".bak")
        try:
            if self.out_dir.exists():
                if backup.exists():
                    shutil.rmtree(backup, ignore_errors=True)
                self.out_dir.replace(backup)
            self.out_dir.parent.mkdir(parents=True, exist_ok=True)
            self._staging.replace(self.out_dir)
        except OSError as e:
            if backup.exists() and not self.out_dir.exists():
                try:
                    backup.replace(self.out_dir)
                except OSError:
                    logger.error("Could not restore %s from %s", self.out_dir, backup)
            raise StoreError(f"Publishing {self._staging} to {self.out_dir} failed: {e}") from e
        if not self.keep_backup and backup.exists():
            shutil.rmtree(backup, ignore_errors=True)


def _create_table_sql(dest: Destination) -> str:
    cols = ", ".join(f"{f.name} {_SQL_TYPES[f.type]}" for f in dest.schema)
    return f"CREATE TABLE {dest.name} ({cols});"


# ============================== buffers =======================================

class _AdaptiveRowBuffer:
    """
    Column buffer for one destination. Rolls over on row count or once the
    estimated Arrow footprint passes the memory cap.

    Destination schemas are fixed, so the footprint is exact for the int64
    columns (8 bytes plus validity per row) and tracked per value for strings.
    """

    __slots__ = ("_schema", "_roll_rows", "_cols", "_string_cols", "_row_bytes", "_count", "_bytes", "_max_bytes")

    def __init__(self, schema: pa.Schema, roll_rows: int, max_memory_mb: int) -> None:
        self._schema = schema
        self._roll_rows = int(roll_rows)
        self._cols: Dict[str, List] = {f.name: [] for f in schema}
        self._string_cols = tuple(f.name for f in schema if f.type == pa.string())
        # int64 payload for fixed-width columns, int32 offset for string columns
        self._row_bytes = sum(4 if f.name in self._string_cols else 8 for f in schema)
        self._count = 0
        self._bytes = 0
        self._max_bytes = int(max_memory_mb) * 1024 * 1024

    def __bool__(self) -> bool:
        return self._count > 0

    def __len__(self) -> int:
        return self._count

    @property
    def estimated_bytes(self) -> int:
        return self._bytes

    def add(self, row: Dict) -> None:
        for f in self._schema:
            self._cols[f.name].append(row.get(f.name))
        self._bytes += self._row_bytes
        for name in self._string_cols:
            value = row.get(name)
            if isinstance(value, str):
                self._bytes += len(value)
        self._count += 1

    def should_roll(self) -> bool:
        return self._count >= self._roll_rows or self._bytes >= self._max_bytes

    def to_table(self) -> pa.Table:
        arrays = [pa.array(self._cols[f.name], type=f.type) for f in self._schema]
        return pa.Table.from_arrays(arrays, schema=self._schema)

    def clear(self) -> None:
        for k in self._cols:
            self._cols[k].clear()
        self._count = 0
        self._bytes = 0
