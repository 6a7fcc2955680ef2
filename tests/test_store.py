from __future__ import annotations

import sqlite3
from pathlib import Path

from ranked_trainer.benchmarks import BenchmarkCatalog, DrillSpec
from ranked_trainer.ledger import LEDGER_KEY, RunLedger, RunRecord
from ranked_trainer.scale_mapper import ThresholdTable
from ranked_trainer.store import SCHEMA_VERSION, MemoryStore, SqliteStore, load_json, open_db, save_json


def test_sqlite_store_round_trips_and_overwrites(tmp_path: Path) -> None:
    store = SqliteStore(tmp_path / "kv.sqlite3")
    assert store.get("k") is None

    store.set("k", "one")
    store.set("k", "two")
    assert store.get("k") == "two"

    store.delete("k")
    assert store.get("k") is None
    store.delete("k")


def test_sqlite_store_survives_reopen(tmp_path: Path) -> None:
    path = tmp_path / "kv.sqlite3"
    SqliteStore(path).set("ledger", "[]")
    assert SqliteStore(path).get("ledger") == "[]"


def test_open_db_sets_schema_version(tmp_path: Path) -> None:
    conn = open_db(tmp_path / "kv.sqlite3")
    try:
        (ver,) = conn.execute("PRAGMA user_version;").fetchone()
        assert ver == SCHEMA_VERSION
        open_db(tmp_path / "kv.sqlite3").close()
    finally:
        conn.close()


def test_open_db_migrates_a_blank_file(tmp_path: Path) -> None:
    path = tmp_path / "blank.sqlite3"
    sqlite3.connect(path).close()

    store = SqliteStore(path)
    store.set("a", "b")

    assert store.get("a") == "b"


def test_corrupted_database_file_reads_as_empty(tmp_path: Path) -> None:
    path = tmp_path / "kv.sqlite3"
    store = SqliteStore(path)
    catalog = BenchmarkCatalog(
        {"Medium": [DrillSpec("Scenario A", "Clicking", "Static", ThresholdTable.from_mapping({"Silver": 1000}))]}
    )
    RunLedger(catalog, store=store).register_run(RunRecord(drill_name="Scenario A", score=900, timestamp=1.0))
    assert store.get(LEDGER_KEY) is not None

    path.write_bytes(b"this is not a sqlite database " * 64)

    assert store.get(LEDGER_KEY) is None
    assert load_json(store, LEDGER_KEY, []) == []
    assert len(RunLedger(catalog, store=store)) == 0


def test_json_helpers_fall_back_on_missing_or_corrupt_payloads() -> None:
    store = MemoryStore()
    assert load_json(store, "x", {"fallback": True}) == {"fallback": True}

    store.set("x", "{oops")
    assert load_json(store, "x", []) == []

    save_json(store, "x", {"b": 1, "a": [1.5, None]})
    assert store.get("x") == '{"a":[1.5,null],"b":1}'
    assert load_json(store, "x", None) == {"a": [1.5, None], "b": 1}


def test_memory_store_clear() -> None:
    store = MemoryStore()
    store.set("a", "1")
    store.set("b", "2")
    store.clear()
    assert store.get("a") is None and store.get("b") is None
