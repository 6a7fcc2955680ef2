from __future__ import annotations

from datetime import datetime, timezone

from ranked_trainer.benchmarks import BenchmarkCatalog, DrillSpec
from ranked_trainer.ledger import LEDGER_KEY, LedgerConfig, RunLedger, RunRecord
from ranked_trainer.scale_mapper import ThresholdTable
from ranked_trainer.store import MemoryStore

T0 = 1_739_181_600.0
LADDER = {"Silver": 1000, "Gold": 1500, "Platinum": 2000}


def _catalog() -> BenchmarkCatalog:
    table = ThresholdTable.from_mapping(LADDER)
    return BenchmarkCatalog(
        {
            "Medium": [
                DrillSpec("Scenario A", "Clicking", "Static", table),
                DrillSpec("Scenario B", "Tracking", "Smooth", table),
            ]
        }
    )


def _run(name: str = "Scenario A", score: float = 100.0, ts: float = T0, **kw) -> RunRecord:
    return RunRecord(drill_name=name, score=score, timestamp=ts, **kw)


def test_registering_the_same_run_twice_is_idempotent() -> None:
    ledger = RunLedger(_catalog())
    run = _run()

    first = ledger.register_runs([run])
    second = ledger.register_runs([run])

    assert len(ledger) == 1
    assert (first.accepted, first.duplicates) == (1, 0)
    assert (second.accepted, second.duplicates) == (0, 1)


def test_runs_123ms_apart_are_one_attempt_across_a_session_reset() -> None:
    ledger = RunLedger(_catalog())

    ledger.tag_session("ranked-1")
    ledger.register_run(_run(ts=T0))
    ledger.clear_session_tag()
    ledger.tag_session("ranked-2")
    report = ledger.register_run(_run(ts=T0 + 0.123))

    assert report.duplicates == 1
    assert len(ledger) == 1
    assert ledger.session_runs("ranked-2") == []


def test_runs_inside_the_dedup_window_match_in_either_order() -> None:
    ledger = RunLedger(_catalog())

    ledger.register_runs([_run(ts=T0 + 0.123)])
    ledger.register_runs([_run(ts=T0)])

    assert len(ledger) == 1


def test_dedup_matches_across_a_bucket_edge() -> None:
    ledger = RunLedger(_catalog())

    ledger.register_run(_run(ts=T0 + 0.95))
    ledger.register_run(_run(ts=T0 + 1.05))

    assert len(ledger) == 1


def test_distinct_attempts_are_all_kept() -> None:
    ledger = RunLedger(_catalog())

    report = ledger.register_runs(
        [
            _run(ts=T0),
            _run(ts=T0 + 5.0),
            _run(score=101.0, ts=T0),
            _run(name="Scenario B", ts=T0),
        ]
    )

    assert report.accepted == 4
    assert len(ledger) == 4


def test_dedup_window_is_configurable() -> None:
    ledger = RunLedger(_catalog(), config=LedgerConfig(dedup_window_s=10.0))

    ledger.register_runs([_run(ts=T0), _run(ts=T0 + 5.0)])

    assert len(ledger) == 1


def test_malformed_records_are_counted_not_thrown() -> None:
    ledger = RunLedger(_catalog())

    report = ledger.register_runs(
        [
            {"drill_name": "Scenario A", "timestamp": T0},
            {"drill_name": "Scenario A", "score": "lots", "timestamp": T0},
            {"drill_name": "Scenario A", "score": float("nan"), "timestamp": T0},
            {"drill_name": "Unknown Drill", "score": 10, "timestamp": T0},
            {"score": 10, "timestamp": T0},
            {"drill_name": "Scenario A", "score": 10},
            "not a record",
            _run(ts=T0),
        ]
    )

    assert report.accepted == 1
    assert report.rejected == 7
    assert ledger.rejected_total == 7
    assert len(ledger) == 1


def test_mapping_records_are_normalised() -> None:
    ledger = RunLedger(_catalog())
    when = datetime(2025, 2, 10, 10, 0, tzinfo=timezone.utc)

    ledger.register_run(
        {
            "drill_name": "Scenario B",
            "score": 1750,
            "timestamp": when,
            "drill_metadata": {"accuracy": 0.91},
        }
    )

    (stored,) = ledger.all_runs()
    assert stored.score == 1750.0
    assert stored.timestamp == when.timestamp()
    assert stored.difficulty == "Medium"
    assert stored.drill_metadata == {"accuracy": 0.91}


def test_records_are_stamped_with_the_active_session_tag() -> None:
    ledger = RunLedger(_catalog())

    ledger.register_run(_run(ts=T0))
    ledger.tag_session("ranked-1")
    ledger.register_run(_run(ts=T0 + 10))
    ledger.register_run(_run(name="Scenario B", ts=T0 + 20))

    assert [r.timestamp for r in ledger.session_runs("ranked-1")] == [T0 + 10, T0 + 20]
    assert len(ledger.session_runs("ranked-1", "Scenario B")) == 1
    assert ledger.all_runs()[0].session_id is None


def test_best_for_drill() -> None:
    ledger = RunLedger(_catalog())
    assert ledger.best_for_drill("Scenario A") is None

    ledger.register_runs([_run(score=900, ts=T0), _run(score=1400, ts=T0 + 5), _run(score=1100, ts=T0 + 9)])

    best = ledger.best_for_drill("Scenario A")
    assert best is not None
    assert best.score == 1400.0
    assert len(ledger.runs_for_drill("Scenario A")) == 3


def test_history_survives_reload_from_the_same_store() -> None:
    store = MemoryStore()
    ledger = RunLedger(_catalog(), store=store)
    ledger.register_runs([_run(ts=T0, drill_metadata={"kills": 42}), _run(ts=T0 + 5)])

    reloaded = RunLedger(_catalog(), store=store)

    assert reloaded.all_runs() == ledger.all_runs()
    assert reloaded.all_runs()[0].drill_metadata == {"kills": 42}
    assert reloaded.register_run(_run(ts=T0 + 0.2)).duplicates == 1


def test_corrupt_store_falls_back_to_empty_ledger() -> None:
    store = MemoryStore()
    store.set(LEDGER_KEY, "{definitely not json")
    assert len(RunLedger(_catalog(), store=store)) == 0

    store.set(LEDGER_KEY, '{"drill_name": "Scenario A"}')
    assert len(RunLedger(_catalog(), store=store)) == 0

    store.set(LEDGER_KEY, '[{"drill_name": "Scenario A", "score": 5, "timestamp": 1.0}, {"bad": true}, 3]')
    assert len(RunLedger(_catalog(), store=store)) == 1


def test_reload_drops_runs_for_drills_no_longer_in_the_catalog() -> None:
    store = MemoryStore()
    store.set(
        LEDGER_KEY,
        '[{"drill_name": "Scenario A", "score": 5, "timestamp": 1.0},'
        ' {"drill_name": "Retired Drill", "score": 7, "timestamp": 2.0},'
        ' {"drill_name": "Scenario B"}]',
    )

    ledger = RunLedger(_catalog(), store=store)

    assert [r.drill_name for r in ledger.all_runs()] == ["Scenario A"]
    assert ledger.rejected_total == 2


def test_clear_is_the_only_removal_path() -> None:
    store = MemoryStore()
    ledger = RunLedger(_catalog(), store=store)
    ledger.register_run(_run(ts=T0))

    ledger.clear()

    assert len(ledger) == 0
    assert store.get(LEDGER_KEY) is None
    assert ledger.register_run(_run(ts=T0)).accepted == 1
