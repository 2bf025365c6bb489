# src/heapql/snapshot/__main__.py
from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.markup import escape

from .api import ImportConfig, ImportSummary, build_tables_for_dump
from .errors import HeapqlError

console = Console(stderr=True, highlight=False)


def default_out_dir(dump_path: Path) -> Path:
    """``foo.heapsnapshot`` → ``./foo`` (``.gz`` suffixes are dropped first)."""
    name = Path(dump_path).name
    if name.endswith(".gz"):
        name = name[: -len(".gz")]
    return Path(Path(name).stem)


def run_import(
    dump_path: Path,
    *,
    out_dir: Optional[Path] = None,
    cfg: Optional[ImportConfig] = None,
    run_meta: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Import a dump and return a JSON-serializable dict with summary + receipt.
    """
    dump_path = Path(dump_path)
    out_dir = Path(out_dir) if out_dir is not None else default_out_dir(dump_path)

    def task(label: str) -> None:
        console.print(f"[cyan]{label}[/cyan]")

    summary: ImportSummary = build_tables_for_dump(
        dump_path,
        out_dir,
        cfg=cfg or ImportConfig(),
        run_metadata=run_meta or {},
        on_task=task,
    )
    return {
        "summary": asdict(summary),
        "out_dir": str(out_dir),
        "receipt": load_receipt(out_dir),
    }


def load_receipt(out_dir: Path) -> Dict[str, Any]:
    receipt_path = Path(out_dir) / "run_receipt.json"
    if not receipt_path.exists():
        return {}
    return json.loads(receipt_path.read_text(encoding="utf-8"))


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="heapql",
        description="Load a heap snapshot into queryable node/edge tables (Parquet + DuckDB)",
    )
    parser.add_argument("dump", help="Heap snapshot file (.heapsnapshot, optionally gzip-compressed)")
    parser.add_argument("-o", "--out-dir", help="Output directory (default: dump name without extension)")
    parser.add_argument("--no-duckdb", action="store_true", help="Skip building heap.duckdb")
    parser.add_argument("--zstd-level", type=int, default=7, help="Parquet ZSTD compression level")
    parser.add_argument("--json", action="store_true", help="Print the run summary as JSON on stdout")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Increase log verbosity")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = _parser().parse_args(argv)

    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    cfg = ImportConfig(zstd_level=args.zstd_level)
    if args.no_duckdb:
        cfg = ImportConfig(zstd_level=args.zstd_level, materialize_duckdb=False)

    try:
        result = run_import(
            Path(args.dump),
            out_dir=Path(args.out_dir) if args.out_dir else None,
            cfg=cfg,
        )
    except HeapqlError as e:
        console.print(f"[red]{e.kind.value}: {escape(e.message)}[/red]")
        return 1

    summary = result["summary"]
    console.print(
        f"[green]Wrote {summary['node_rows']:,} nodes and {summary['edge_rows']:,} edges "
        f"to {result['out_dir']}[/green]"
    )
    if args.json:
        print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
