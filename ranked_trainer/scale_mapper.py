"""Piecewise-linear mapping between raw drill scores and Rank Units (RU).

A threshold table is an ordered list of named score targets ``T0 < T1 < ...``.
The Rank Unit scale places threshold ``Ti`` at exactly ``i + 1`` and a virtual
threshold ``T(-1) = 0`` at zero, so every pair of adjacent thresholds is one
RU apart regardless of how far apart their scores are.  Between two
thresholds the scale is linear.  Beyond the top threshold (and below zero)
the nearest segment's slope is extended, which keeps the mapping continuous,
strictly increasing and invertible everywhere.

Degenerate tables are rejected with :class:`ConfigurationError` at the point
they are first supplied, so the arithmetic below never sees a zero-length
segment.
"""

from __future__ import annotations

import math
from bisect import bisect_right
from collections.abc import Mapping, Sequence
from dataclasses import dataclass


class ConfigurationError(ValueError):
    """Raised when threshold or catalog configuration is unusable."""


def _validate_values(values: Sequence[float]) -> tuple[float, ...]:
    if len(values) == 0:
        raise ConfigurationError("threshold table must not be empty")
    out: list[float] = []
    for v in values:
        try:
            f = float(v)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"threshold value {v!r} is not numeric") from exc
        if not math.isfinite(f):
            raise ConfigurationError(f"threshold value {v!r} is not finite")
        out.append(f)
    if out[0] <= 0.0:
        raise ConfigurationError("lowest threshold must be > 0")
    for lo, hi in zip(out, out[1:]):
        if hi <= lo:
            raise ConfigurationError(f"thresholds must be strictly ascending (got {lo} then {hi})")
    return tuple(out)


@dataclass(frozen=True, slots=True)
class ThresholdTable:
    """Ordered rank names and their strictly ascending score thresholds."""

    names: tuple[str, ...]
    values: tuple[float, ...]

    def __post_init__(self) -> None:
        if len(self.names) != len(self.values):
            raise ConfigurationError("threshold names and values differ in length")
        if len(set(self.names)) != len(self.names):
            raise ConfigurationError("threshold rank names must be unique")
        object.__setattr__(self, "names", tuple(str(n) for n in self.names))
        object.__setattr__(self, "values", _validate_values(self.values))

    @classmethod
    def from_mapping(cls, thresholds: Mapping[str, float]) -> ThresholdTable:
        """Build from ``{rank_name: score}``; mapping order is the rank order."""

        return cls(names=tuple(thresholds.keys()), values=tuple(thresholds.values()))

    def __len__(self) -> int:
        return len(self.values)

    def as_mapping(self) -> dict[str, float]:
        return dict(zip(self.names, self.values))


def _threshold_values(thresholds: ThresholdTable | Sequence[float]) -> tuple[float, ...]:
    if isinstance(thresholds, ThresholdTable):
        return thresholds.values
    return _validate_values(thresholds)


def _segment(values: tuple[float, ...], index: int) -> tuple[float, float]:
    # Segment i spans T(i-1)..T(i) with the virtual T(-1) = 0.
    lower = 0.0 if index == 0 else values[index - 1]
    return lower, values[index]


def rank_unit(score: float, thresholds: ThresholdTable | Sequence[float]) -> float:
    """Convert a raw score to its continuous Rank Unit value.

    ``rank_unit(T[i]) == i + 1`` and ``rank_unit(0) == 0``.
    """

    values = _threshold_values(thresholds)
    seg = min(bisect_right(values, float(score)), len(values) - 1)
    lower, upper = _segment(values, seg)
    return seg + (float(score) - lower) / (upper - lower)


def score_for_rank_unit(ru: float, thresholds: ThresholdTable | Sequence[float]) -> float:
    """Inverse of :func:`rank_unit`."""

    values = _threshold_values(thresholds)
    seg = max(0, min(int(math.floor(ru)), len(values) - 1))
    lower, upper = _segment(values, seg)
    return lower + (float(ru) - seg) * (upper - lower)


def horizontal_position(ru: float, min_ru: float, max_ru: float, width_px: float) -> float:
    """Project an RU value linearly onto ``[0, width_px]``."""

    span = max_ru - min_ru
    if span == 0:
        return width_px / 2.0
    return (ru - min_ru) / span * width_px


def aligned_bounds(min_ru: float, max_ru: float) -> tuple[int, int]:
    """Whole-RU view bounds around a value range, at least one RU wide."""

    lo = int(math.floor(min_ru))
    hi = int(math.ceil(max_ru))
    if hi <= lo:
        hi = lo + 1
    return lo, hi
