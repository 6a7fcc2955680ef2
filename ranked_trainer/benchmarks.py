from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from .scale_mapper import ConfigurationError, ThresholdTable


@dataclass(frozen=True, slots=True)
class DrillSpec:
    name: str
    category: str
    subcategory: str
    thresholds: ThresholdTable


class BenchmarkCatalog:
    """Difficulty tiers and the drills (with threshold tables) they contain.

    Validated once at construction; lookups for unknown tiers or drills
    return empty results rather than raising.
    """

    def __init__(self, tiers: Mapping[str, Sequence[DrillSpec]]) -> None:
        self._tiers: dict[str, tuple[DrillSpec, ...]] = {}
        self._by_name: dict[str, DrillSpec] = {}
        self._tier_of: dict[str, str] = {}

        for tier, drills in tiers.items():
            drills = tuple(drills)
            if drills:
                ladder = drills[0].thresholds.names
                for d in drills[1:]:
                    if d.thresholds.names != ladder:
                        raise ConfigurationError(
                            f"drill {d.name!r} does not share the rank ladder of tier {tier!r}"
                        )
            for d in drills:
                if d.name in self._by_name:
                    raise ConfigurationError(f"drill {d.name!r} appears more than once")
                self._by_name[d.name] = d
                self._tier_of[d.name] = str(tier)
            self._tiers[str(tier)] = drills

    def tiers(self) -> list[str]:
        return list(self._tiers)

    def drills(self, tier: str) -> list[DrillSpec]:
        return list(self._tiers.get(tier, ()))

    def drill(self, name: str) -> DrillSpec | None:
        return self._by_name.get(name)

    def is_known(self, name: str) -> bool:
        return name in self._by_name

    def tier_of(self, name: str) -> str | None:
        return self._tier_of.get(name)

    def rank_names(self, tier: str) -> tuple[str, ...]:
        drills = self._tiers.get(tier, ())
        if not drills:
            return ()
        return drills[0].thresholds.names

    def subcategories(self, tier: str) -> list[str]:
        """Required subcategories of a tier, in first-seen order."""

        seen: dict[str, None] = {}
        for d in self._tiers.get(tier, ()):
            seen.setdefault(d.subcategory, None)
        return list(seen)
