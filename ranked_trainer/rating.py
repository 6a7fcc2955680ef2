"""Rank estimates, aggregate ranks and rating evolution.

Every query is recomputed from the run ledger, the catalog's threshold
tables, the stored per-drill baselines and the current clock day.  Nothing is
cached, so two reads with the same inputs always agree.

Baselines are the ratings written back at the end of a ranked session.  They
decay slowly with inactivity, but the decay is applied when a baseline is
read and is never written back.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from statistics import fmean
from typing import Protocol

from .benchmarks import BenchmarkCatalog, DrillSpec
from .clock import Clock, whole_days_between
from .ledger import RunLedger
from .scale_mapper import ThresholdTable, rank_unit
from .store import KeyValueStore, MemoryStore, load_json, save_json

logger = logging.getLogger(__name__)

BASELINES_KEY = "rank_baselines_v1"
UNRANKED = "Unranked"

AggregationPolicy = Callable[[Mapping[str, Sequence[float]]], float]


def mean_of_subcategories(groups: Mapping[str, Sequence[float]]) -> float:
    """Arithmetic mean of each subcategory's mean drill RU."""

    return fmean(fmean(values) for values in groups.values())


def minimum_of_subcategories(groups: Mapping[str, Sequence[float]]) -> float:
    """The weakest subcategory's mean drill RU."""

    return min(fmean(values) for values in groups.values())


class DecayPolicy(Protocol):
    def decay(self, value: float, days: int) -> float:
        """Return ``value`` after ``days`` whole days without an update."""
        ...


@dataclass(frozen=True, slots=True)
class LinearDecay:
    per_day: float = 0.05
    max_total: float = 1.0

    def __post_init__(self) -> None:
        if self.per_day < 0 or self.max_total < 0:
            raise ValueError("decay rates must be >= 0")

    def decay(self, value: float, days: int) -> float:
        if days <= 0 or value <= 0.0:
            return value
        return max(0.0, value - min(self.max_total, self.per_day * days))


@dataclass(frozen=True, slots=True)
class NoDecay:
    def decay(self, value: float, days: int) -> float:
        return value


@dataclass(frozen=True, slots=True)
class RatingConfig:
    aggregation: AggregationPolicy = mean_of_subcategories
    decay: DecayPolicy = LinearDecay()


@dataclass(frozen=True, slots=True)
class EstimatedRank:
    rank_name: str
    continuous_value: float
    progress_to_next: int


@dataclass(frozen=True, slots=True)
class DrillRating:
    value: float
    highest_achieved: float
    updated_at: float


def _empty_estimate() -> EstimatedRank:
    return EstimatedRank(rank_name=UNRANKED, continuous_value=0.0, progress_to_next=0)


def describe_value(value: float, ladder: Sequence[str]) -> EstimatedRank:
    """Bucket an RU value onto a rank ladder.

    RU ``k <= value < k + 1`` is the rank at ladder index ``k - 1``; anything
    below 1 is unranked.  Values past the top keep the top rank's name.
    """

    level = int(math.floor(value))
    if level < 1 or not ladder:
        name = UNRANKED
    else:
        name = ladder[min(level, len(ladder)) - 1]
    if value < 0:
        progress = 0
    else:
        progress = min(99, int(round((value - level) * 100)))
    return EstimatedRank(rank_name=name, continuous_value=float(value), progress_to_next=progress)


class RatingEngine:
    def __init__(
        self,
        catalog: BenchmarkCatalog,
        ledger: RunLedger,
        clock: Clock,
        store: KeyValueStore | None = None,
        config: RatingConfig | None = None,
    ) -> None:
        self._catalog = catalog
        self._ledger = ledger
        self._clock = clock
        self._store: KeyValueStore = store if store is not None else MemoryStore()
        self._config = config if config is not None else RatingConfig()

    @staticmethod
    def drill_continuous_value(score: float, thresholds: ThresholdTable | Sequence[float]) -> float:
        return rank_unit(score, thresholds)

    @staticmethod
    def evolved_value(initial_ru: float, achieved_ru: float) -> float:
        """Move halfway toward a better proven result; never lower the rating."""

        return initial_ru + max(0.0, achieved_ru - initial_ru) / 2.0

    @staticmethod
    def third_highest(values: Sequence[float]) -> float | None:
        if len(values) < 3:
            return None
        return sorted(values, reverse=True)[2]

    # Estimates

    def drill_estimate(self, drill_name: str) -> EstimatedRank:
        spec = self._catalog.drill(drill_name)
        if spec is None:
            return _empty_estimate()
        value = self._best_value(spec)
        if value is None:
            return _empty_estimate()
        return describe_value(value, spec.thresholds.names)

    def estimate_for_value(self, value: float, tier: str) -> EstimatedRank:
        return describe_value(value, self._catalog.rank_names(tier))

    def holistic_estimate(self, tier: str) -> EstimatedRank:
        return self._aggregate(tier, self._best_value)

    def overall_rank(self, tier: str, session_scores: Mapping[str, float] | None = None) -> EstimatedRank:
        """Aggregate rank for a tier.

        Without ``session_scores`` this is the holistic estimate over ledger
        bests; with them, the given per-drill scores are aggregated instead.
        """

        if session_scores is None:
            return self.holistic_estimate(tier)

        def value_of(spec: DrillSpec) -> float | None:
            score = session_scores.get(spec.name)
            return None if score is None else rank_unit(score, spec.thresholds)

        return self._aggregate(tier, value_of)

    def session_values(self, session_id: str, drill_name: str) -> list[float]:
        """RU of every attempt at a drill recorded under a session tag."""

        spec = self._catalog.drill(drill_name)
        if spec is None:
            return []
        return [rank_unit(r.score, spec.thresholds) for r in self._ledger.session_runs(session_id, drill_name)]

    # Baselines

    def rating_for(self, drill_name: str) -> DrillRating | None:
        entry = self._baselines().get(drill_name)
        if not isinstance(entry, Mapping):
            return None
        try:
            value = float(entry["value"])
            highest = float(entry.get("highest_achieved", value))
            updated_at = float(entry["updated_at"])
        except (KeyError, TypeError, ValueError):
            return None
        days = whole_days_between(updated_at, self._clock.now())
        return DrillRating(
            value=self._config.decay.decay(value, days),
            highest_achieved=highest,
            updated_at=updated_at,
        )

    def current_value(self, drill_name: str) -> float:
        """Decayed baseline, else the ledger-best RU, else 0."""

        rating = self.rating_for(drill_name)
        if rating is not None:
            return rating.value
        spec = self._catalog.drill(drill_name)
        best = None if spec is None else self._best_value(spec)
        return 0.0 if best is None else best

    def peak_value(self, drill_name: str) -> float:
        rating = self.rating_for(drill_name)
        if rating is not None:
            return max(rating.highest_achieved, rating.value)
        return self.current_value(drill_name)

    def set_baseline(self, drill_name: str, value: float) -> DrillRating:
        baselines = self._baselines()
        previous = self.rating_for(drill_name)
        highest = value if previous is None else max(previous.highest_achieved, value)
        rating = DrillRating(value=float(value), highest_achieved=float(highest), updated_at=self._clock.now())
        baselines[drill_name] = {
            "value": rating.value,
            "highest_achieved": rating.highest_achieved,
            "updated_at": rating.updated_at,
        }
        save_json(self._store, BASELINES_KEY, baselines)
        logger.info("baseline for %s set to %.3f RU", drill_name, rating.value)
        return rating

    def clear_baselines(self) -> None:
        self._store.delete(BASELINES_KEY)

    def _baselines(self) -> dict[str, object]:
        payload = load_json(self._store, BASELINES_KEY, {})
        return payload if isinstance(payload, dict) else {}

    def _best_value(self, spec: DrillSpec) -> float | None:
        best = self._ledger.best_for_drill(spec.name)
        return None if best is None else rank_unit(best.score, spec.thresholds)

    def _aggregate(self, tier: str, value_of: Callable[[DrillSpec], float | None]) -> EstimatedRank:
        drills = self._catalog.drills(tier)
        if not drills:
            return _empty_estimate()

        groups: dict[str, list[float]] = {sub: [] for sub in self._catalog.subcategories(tier)}
        for spec in drills:
            value = value_of(spec)
            if value is not None:
                groups[spec.subcategory].append(value)

        # Every subcategory needs at least one run before a named rank is given.
        if any(not values for values in groups.values()):
            return _empty_estimate()
        return self.estimate_for_value(self._config.aggregation(groups), tier)
