import gzip
import json

import pytest

from conftest import make_document

from heapql.snapshot.__main__ import default_out_dir, main
from heapql.snapshot.api import ImportConfig, build_tables_for_dump
from heapql.snapshot.errors import (
    DumpReadError,
    InconsistentEdgeCountError,
    MalformedMetadataError,
    UnsupportedFieldTypeError,
)
from heapql.snapshot.loader import load_dump

pq = pytest.importorskip("pyarrow.parquet")

NO_DUCKDB = ImportConfig(materialize_duckdb=False)


def _write(tmp_path, doc, name="app.heapsnapshot"):
    path = tmp_path / name
    path.write_text(json.dumps(doc), encoding="utf-8")
    return path


def test_import_publishes_node_and_edge_tables(tmp_path, v8_doc):
    dump_path = _write(tmp_path, v8_doc)
    out_dir = tmp_path / "out"

    summary = build_tables_for_dump(dump_path, out_dir, cfg=NO_DUCKDB)

    assert (summary.node_rows, summary.edge_rows) == (3, 4)
    assert summary.blob_sha == load_dump(dump_path).blob_sha
    nodes = pq.read_table(out_dir / "node").to_pylist()
    edges = pq.read_table(out_dir / "edge").to_pylist()
    assert [(n["id"], n["type"], n["name"]) for n in nodes] == [
        (1, "synthetic", "(GC roots)"),
        (3, "object", "Window"),
        (5, "string", "hello"),
    ]
    assert [(e["from_node"], e["to_node"], e["name_or_index"]) for e in edges] == [
        (1, 3, "(Document)"),
        (1, 5, "document"),
        (1, 3, "greeting"),
        (3, 5, "context_var"),
    ]
    receipt = json.loads((out_dir / "run_receipt.json").read_text(encoding="utf-8"))
    assert receipt["dump"]["node_count"] == 3
    assert receipt["step"] == "heap_import"


def test_tasks_are_announced_in_order(tmp_path, round_trip_doc):
    labels = []
    build_tables_for_dump(_write(tmp_path, round_trip_doc), tmp_path / "out", cfg=NO_DUCKDB, on_task=labels.append)
    assert labels == ["Inserting nodes...", "Inserting edges..."]


def test_gzip_dumps_are_read(tmp_path, round_trip_doc):
    path = tmp_path / "app.heapsnapshot.gz"
    path.write_bytes(gzip.compress(json.dumps(round_trip_doc).encode("utf-8")))
    dump = load_dump(path)
    assert dump.schema.node_count == 2
    assert default_out_dir(path).name == "app"


def test_invalid_json_is_a_read_error(tmp_path):
    path = tmp_path / "broken.heapsnapshot"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(DumpReadError, match="invalid JSON"):
        load_dump(path)


def test_missing_file_is_a_read_error(tmp_path):
    with pytest.raises(DumpReadError):
        load_dump(tmp_path / "nope.heapsnapshot")


def test_missing_flat_array_is_malformed(tmp_path, round_trip_doc):
    del round_trip_doc["edges"]
    with pytest.raises(MalformedMetadataError, match="'edges'"):
        load_dump(_write(tmp_path, round_trip_doc))


def test_metadata_mismatch_produces_no_output(tmp_path):
    doc = make_document(node_types=["number"])
    out_dir = tmp_path / "out"
    with pytest.raises(MalformedMetadataError):
        build_tables_for_dump(_write(tmp_path, doc), out_dir, cfg=NO_DUCKDB)
    assert not out_dir.exists()


def test_inconsistent_edges_publish_nothing(tmp_path, round_trip_doc):
    round_trip_doc["edges"] = [2, 2, 6, 2, 2, 6]
    out_dir = tmp_path / "out"
    with pytest.raises(InconsistentEdgeCountError):
        build_tables_for_dump(_write(tmp_path, round_trip_doc), out_dir, cfg=NO_DUCKDB)
    assert not out_dir.exists()
    assert not (tmp_path / "out.staging").exists()


def test_unsupported_edge_type_publishes_nothing(tmp_path):
    doc = make_document(edge_types=[["context", "element", "property"], "string_or_number", "weakref"])
    out_dir = tmp_path / "out"
    with pytest.raises(UnsupportedFieldTypeError):
        build_tables_for_dump(_write(tmp_path, doc), out_dir, cfg=NO_DUCKDB)
    assert not out_dir.exists()


def test_cli_success(tmp_path, v8_doc, capsys):
    dump_path = _write(tmp_path, v8_doc)
    out_dir = tmp_path / "cli-out"

    code = main([str(dump_path), "-o", str(out_dir), "--no-duckdb", "--json"])

    assert code == 0
    result = json.loads(capsys.readouterr().out)
    assert result["summary"]["node_rows"] == 3
    assert result["summary"]["edge_rows"] == 4
    assert result["receipt"]["edge_rows"] == 4


def test_cli_reports_fatal_errors(tmp_path, round_trip_doc, capsys):
    round_trip_doc["edges"] = []
    code = main([str(_write(tmp_path, round_trip_doc)), "-o", str(tmp_path / "out"), "--no-duckdb"])
    assert code == 1
    assert "INCONSISTENT_EDGE_COUNT" in capsys.readouterr().err


def test_cli_requires_a_dump_argument():
    with pytest.raises(SystemExit) as info:
        main([])
    assert info.value.code == 2


def test_import_reports_columns_the_dump_lacks(tmp_path, caplog):
    doc = make_document(
        node_fields=["id", "edge_count"],
        node_types=["number", "number"],
        nodes=[10, 1, 20, 0],
        edges=[2, 2, 2],
    )
    out_dir = tmp_path / "out"
    with caplog.at_level("WARNING"):
        summary = build_tables_for_dump(_write(tmp_path, doc), out_dir, cfg=NO_DUCKDB)

    assert (summary.node_rows, summary.edge_rows) == (2, 1)
    receipt = json.loads((out_dir / "run_receipt.json").read_text(encoding="utf-8"))
    assert receipt["column_mismatch"]["node"]["missing"] == [
        "name",
        "type",
        "self_size",
        "trace_node_id",
        "detachedness",
    ]
    assert "edge" not in receipt["column_mismatch"]
    assert "writing them as NULL" in caplog.text


def test_cli_reports_publish_failures(tmp_path, round_trip_doc, capsys, monkeypatch):
    from pathlib import Path

    def refuse(self, target):
        raise PermissionError("read-only destination")

    dump_path = _write(tmp_path, round_trip_doc)
    monkeypatch.setattr(Path, "replace", refuse)
    code = main([str(dump_path), "-o", str(tmp_path / "out"), "--no-duckdb"])

    assert code == 1
    assert "STORE" in capsys.readouterr().err
    assert not (tmp_path / "out").exists()
    assert not (tmp_path / "out.staging").exists()
