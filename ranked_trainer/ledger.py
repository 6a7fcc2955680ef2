from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Any

from .benchmarks import BenchmarkCatalog
from .store import KeyValueStore, MemoryStore, load_json, save_json

logger = logging.getLogger(__name__)

LEDGER_KEY = "run_ledger_v1"


@dataclass(frozen=True, slots=True)
class LedgerConfig:
    # Submissions of the same drill and score closer than this are one attempt.
    dedup_window_s: float = 1.0

    def __post_init__(self) -> None:
        if self.dedup_window_s <= 0:
            raise ValueError("dedup_window_s must be > 0")


@dataclass(frozen=True, slots=True)
class RunRecord:
    drill_name: str
    score: float
    timestamp: float
    difficulty: str | None = None
    drill_metadata: Mapping[str, Any] = field(default_factory=dict, compare=False)
    session_id: str | None = None


@dataclass(frozen=True, slots=True)
class RegistrationReport:
    accepted: int
    duplicates: int
    rejected: int


def _as_timestamp(value: object) -> float | None:
    if isinstance(value, datetime):
        return value.timestamp()
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    ts = float(value)
    return ts if math.isfinite(ts) else None


def _as_score(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    score = float(value)
    return score if math.isfinite(score) else None


def _coerce(raw: RunRecord | Mapping[str, Any]) -> RunRecord | None:
    """Normalise an incoming record; None when it is malformed."""

    if isinstance(raw, RunRecord):
        name, score, ts = raw.drill_name, raw.score, raw.timestamp
        difficulty, metadata, session_id = raw.difficulty, raw.drill_metadata, raw.session_id
    elif isinstance(raw, Mapping):
        name = raw.get("drill_name")
        score = raw.get("score")
        ts = raw.get("timestamp")
        difficulty = raw.get("difficulty")
        metadata = raw.get("drill_metadata") or {}
        session_id = raw.get("session_id")
    else:
        return None

    if not isinstance(name, str) or not name:
        return None
    score_f = _as_score(score)
    ts_f = _as_timestamp(ts)
    if score_f is None or ts_f is None:
        return None
    if not isinstance(metadata, Mapping):
        metadata = {}
    return RunRecord(
        drill_name=name,
        score=score_f,
        timestamp=ts_f,
        difficulty=None if difficulty is None else str(difficulty),
        drill_metadata=dict(metadata),
        session_id=None if session_id is None else str(session_id),
    )


class RunLedger:
    """Append-only, deduplicated history of drill runs.

    Deduplication is checked against the full history, never just the
    current session, so re-importing the same attempt after a session reset
    cannot count it twice.  Records are removed only by :meth:`clear`.
    """

    def __init__(
        self,
        catalog: BenchmarkCatalog,
        store: KeyValueStore | None = None,
        config: LedgerConfig | None = None,
    ) -> None:
        self._catalog = catalog
        self._store: KeyValueStore = store if store is not None else MemoryStore()
        self._config = config if config is not None else LedgerConfig()

        self._records: list[RunRecord] = []
        self._index: dict[tuple[str, float, int], list[float]] = {}
        self._session_tag: str | None = None
        self._rejected_total = 0

        self._load()

    @property
    def session_tag(self) -> str | None:
        return self._session_tag

    @property
    def rejected_total(self) -> int:
        return self._rejected_total

    def __len__(self) -> int:
        return len(self._records)

    def tag_session(self, session_id: str) -> None:
        self._session_tag = str(session_id)

    def clear_session_tag(self) -> None:
        self._session_tag = None

    def register_run(self, record: RunRecord | Mapping[str, Any]) -> RegistrationReport:
        return self.register_runs([record])

    def register_runs(self, records: Iterable[RunRecord | Mapping[str, Any]]) -> RegistrationReport:
        accepted = duplicates = rejected = 0

        for raw in records:
            rec = _coerce(raw)
            if rec is None or not self._catalog.is_known(rec.drill_name):
                rejected += 1
                logger.debug("rejected malformed run record %r", raw)
                continue
            if self._is_duplicate(rec):
                duplicates += 1
                logger.debug("skipped duplicate run %s score=%s", rec.drill_name, rec.score)
                continue

            rec = replace(
                rec,
                difficulty=rec.difficulty or self._catalog.tier_of(rec.drill_name),
                session_id=self._session_tag,
            )
            self._append(rec)
            accepted += 1

        self._rejected_total += rejected
        if accepted:
            self._save()
        return RegistrationReport(accepted=accepted, duplicates=duplicates, rejected=rejected)

    def all_runs(self) -> list[RunRecord]:
        return list(self._records)

    def runs_for_drill(self, drill_name: str) -> list[RunRecord]:
        return [r for r in self._records if r.drill_name == drill_name]

    def session_runs(self, session_id: str, drill_name: str | None = None) -> list[RunRecord]:
        return [
            r
            for r in self._records
            if r.session_id == session_id and (drill_name is None or r.drill_name == drill_name)
        ]

    def best_for_drill(self, drill_name: str) -> RunRecord | None:
        best: RunRecord | None = None
        for r in self._records:
            if r.drill_name == drill_name and (best is None or r.score > best.score):
                best = r
        return best

    def clear(self) -> None:
        """Full ledger reset."""

        self._records.clear()
        self._index.clear()
        self._store.delete(LEDGER_KEY)
        logger.info("run ledger cleared")

    def _bucket(self, timestamp: float) -> int:
        return int(math.floor(timestamp / self._config.dedup_window_s))

    def _is_duplicate(self, rec: RunRecord) -> bool:
        window = self._config.dedup_window_s
        bucket = self._bucket(rec.timestamp)
        # Neighbouring buckets too, so attempts straddling a bucket edge still match.
        for b in (bucket - 1, bucket, bucket + 1):
            for ts in self._index.get((rec.drill_name, rec.score, b), ()):
                if abs(ts - rec.timestamp) < window:
                    return True
        return False

    def _append(self, rec: RunRecord) -> None:
        self._records.append(rec)
        key = (rec.drill_name, rec.score, self._bucket(rec.timestamp))
        self._index.setdefault(key, []).append(rec.timestamp)

    def _load(self) -> None:
        payload = load_json(self._store, LEDGER_KEY, [])
        if not isinstance(payload, list):
            logger.warning("run ledger payload is not a list; starting empty")
            return
        for item in payload:
            rec = _coerce(item) if isinstance(item, Mapping) else None
            if rec is None or not self._catalog.is_known(rec.drill_name):
                self._rejected_total += 1
                logger.debug("dropped stored run record %r", item)
                continue
            if self._is_duplicate(rec):
                continue
            self._append(rec)

    def _save(self) -> None:
        save_json(self._store, LEDGER_KEY, [asdict(r) for r in self._records])
