"""Ranked session state machine.

    IDLE -> ACTIVE                    (start_session)
    ACTIVE -> COMPLETED               (advance past the last drill)
    COMPLETED -> ACTIVE               (extend_session)
    ACTIVE | COMPLETED -> SUMMARY     (end_session)
    COMPLETED | SUMMARY -> IDLE       (reset)

Every command that is not legal in the current state is a silent no-op: the
state is unchanged and subscribers are not notified.  Timers are derived from
the injected clock on read, so a scheduler rebuilt from persisted state picks
up exactly where it left off.
"""

from __future__ import annotations

import logging
import math
import uuid
from collections.abc import Callable, Collection, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, ClassVar, Union

from .benchmarks import BenchmarkCatalog, DrillSpec
from .clock import Clock
from .ledger import RunLedger
from .rating import RatingEngine
from .store import KeyValueStore, MemoryStore, load_json, save_json

logger = logging.getLogger(__name__)

STATE_KEY = "ranked_session_state_v1"
RECENT_KEY = "ranked_recent_sessions_v1"
_RECENT_KEEP = 10
# Peak minus current RU must exceed this for a drill to count as fallen.
_GAP_EPSILON = 1e-4


class SessionStatus(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    COMPLETED = "completed"
    SUMMARY = "summary"


@dataclass(frozen=True, slots=True)
class SchedulerConfig:
    batch_size: int = 3
    # Drills played in this many most recent sessions are avoided at start.
    anti_repetition_sessions: int = 1
    min_attempts: int = 3
    diversity_margin_ru: float = 1.0

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.anti_repetition_sessions < 0:
            raise ValueError("anti_repetition_sessions must be >= 0")
        if self.min_attempts < 3:
            raise ValueError("min_attempts must be >= 3")
        if self.diversity_margin_ru < 0:
            raise ValueError("diversity_margin_ru must be >= 0")


@dataclass(frozen=True, slots=True)
class DrillEvolution:
    drill_name: str
    initial_value: float
    achieved_value: float | None
    new_value: float | None

    @property
    def skipped(self) -> bool:
        return self.new_value is None


@dataclass(frozen=True, slots=True)
class SessionData:
    session_id: str
    difficulty: str
    sequence: tuple[str, ...]
    current_index: int
    started_at: float
    drill_entered_at: float
    initial_estimates: Mapping[str, float] = field(default_factory=dict)
    played: frozenset[str] = frozenset()
    accumulated_seconds: Mapping[str, float] = field(default_factory=dict)

    @property
    def current_drill(self) -> str | None:
        if 0 <= self.current_index < len(self.sequence):
            return self.sequence[self.current_index]
        return None


@dataclass(frozen=True, slots=True)
class IdleState:
    status: ClassVar[SessionStatus] = SessionStatus.IDLE


@dataclass(frozen=True, slots=True)
class ActiveState:
    data: SessionData
    status: ClassVar[SessionStatus] = SessionStatus.ACTIVE


@dataclass(frozen=True, slots=True)
class CompletedState:
    data: SessionData
    status: ClassVar[SessionStatus] = SessionStatus.COMPLETED


@dataclass(frozen=True, slots=True)
class SummaryState:
    data: SessionData
    ended_at: float
    evolutions: tuple[DrillEvolution, ...] = ()
    status: ClassVar[SessionStatus] = SessionStatus.SUMMARY


SessionState = Union[IdleState, ActiveState, CompletedState, SummaryState]
StateListener = Callable[[SessionState], None]


@dataclass(frozen=True, slots=True)
class SessionSnapshot:
    """View model for the UI (pure data)."""

    status: SessionStatus
    session_id: str | None
    difficulty: str | None
    sequence: tuple[str, ...]
    current_index: int
    current_drill: str | None
    elapsed_seconds: int
    drill_elapsed_seconds: int
    initial_estimates: Mapping[str, float]
    played: frozenset[str]
    evolutions: tuple[DrillEvolution, ...] = ()


def _with_time_banked(data: SessionData, now: float) -> SessionData:
    """Credit time spent on the current drill and restart its entry clock."""

    current = data.current_drill
    if current is None:
        return replace(data, drill_entered_at=now)
    acc = dict(data.accumulated_seconds)
    acc[current] = acc.get(current, 0.0) + max(0.0, now - data.drill_entered_at)
    return replace(data, accumulated_seconds=acc, drill_entered_at=now)


class SessionScheduler:
    def __init__(
        self,
        catalog: BenchmarkCatalog,
        ledger: RunLedger,
        engine: RatingEngine,
        clock: Clock,
        store: KeyValueStore | None = None,
        config: SchedulerConfig | None = None,
    ) -> None:
        self._catalog = catalog
        self._ledger = ledger
        self._engine = engine
        self._clock = clock
        self._store: KeyValueStore = store if store is not None else MemoryStore()
        self._config = config if config is not None else SchedulerConfig()
        self._listeners: list[StateListener] = []

        self._state: SessionState = self._load()
        if isinstance(self._state, (ActiveState, CompletedState)):
            self._ledger.tag_session(self._state.data.session_id)

    # Reads

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def status(self) -> SessionStatus:
        return self._state.status

    @property
    def current_drill(self) -> str | None:
        if isinstance(self._state, ActiveState):
            return self._state.data.current_drill
        return None

    @property
    def elapsed_seconds(self) -> int:
        state = self._state
        if isinstance(state, IdleState):
            return 0
        end = state.ended_at if isinstance(state, SummaryState) else self._clock.now()
        return int(max(0.0, end - state.data.started_at))

    @property
    def drill_elapsed_seconds(self) -> int:
        state = self._state
        if not isinstance(state, ActiveState):
            return 0
        data = state.data
        banked = data.accumulated_seconds.get(data.current_drill or "", 0.0)
        return int(banked + max(0.0, self._clock.now() - data.drill_entered_at))

    def snapshot(self) -> SessionSnapshot:
        state = self._state
        if isinstance(state, IdleState):
            return SessionSnapshot(
                status=state.status,
                session_id=None,
                difficulty=None,
                sequence=(),
                current_index=0,
                current_drill=None,
                elapsed_seconds=0,
                drill_elapsed_seconds=0,
                initial_estimates={},
                played=frozenset(),
            )
        data = state.data
        return SessionSnapshot(
            status=state.status,
            session_id=data.session_id,
            difficulty=data.difficulty,
            sequence=data.sequence,
            current_index=data.current_index,
            current_drill=self.current_drill,
            elapsed_seconds=self.elapsed_seconds,
            drill_elapsed_seconds=self.drill_elapsed_seconds,
            initial_estimates=dict(data.initial_estimates),
            played=data.played,
            evolutions=state.evolutions if isinstance(state, SummaryState) else (),
        )

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a change listener; returns a callable that removes it."""

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # Commands

    def start_session(self, tier: str) -> None:
        if not isinstance(self._state, IdleState):
            logger.debug("start_session ignored in %s", self._state.status)
            return
        batch = self._build_batch(tier, hard_exclude=(), soft_exclude=self._recent_drills())
        if not batch:
            logger.debug("start_session ignored: tier %r has no drills", tier)
            return

        now = self._clock.now()
        session_id = f"ranked-{int(now * 1000)}-{uuid.uuid4().hex[:9]}"
        data = SessionData(
            session_id=session_id,
            difficulty=tier,
            sequence=tuple(batch),
            current_index=0,
            started_at=now,
            drill_entered_at=now,
            initial_estimates={name: self._engine.current_value(name) for name in batch},
        )
        self._ledger.tag_session(session_id)
        logger.info("ranked session %s started on %s: %s", session_id, tier, ", ".join(batch))
        self._commit(ActiveState(data))

    def advance(self) -> None:
        state = self._state
        if not isinstance(state, ActiveState):
            return
        data = _with_time_banked(state.data, self._clock.now())
        current = data.current_drill
        played = data.played if current is None else data.played | {current}
        nxt = data.current_index + 1
        if nxt >= len(data.sequence):
            self._commit(CompletedState(replace(data, current_index=len(data.sequence), played=played)))
            return
        self._commit(ActiveState(replace(data, current_index=nxt, played=played)))

    def retreat(self) -> None:
        state = self._state
        if not isinstance(state, ActiveState) or state.data.current_index <= 0:
            return
        data = _with_time_banked(state.data, self._clock.now())
        self._commit(ActiveState(replace(data, current_index=data.current_index - 1)))

    def extend_session(self) -> None:
        state = self._state
        if not isinstance(state, CompletedState):
            return
        data = state.data
        names = [d.name for d in self._catalog.drills(data.difficulty)]
        hard: Collection[str] = data.played
        if all(n in hard for n in names):
            hard = data.sequence[-self._config.batch_size :]
        batch = self._build_batch(data.difficulty, hard_exclude=hard, soft_exclude=self._recent_drills())
        if not batch:
            return

        initial = dict(data.initial_estimates)
        for name in batch:
            initial.setdefault(name, self._engine.current_value(name))
        logger.info("ranked session %s extended: %s", data.session_id, ", ".join(batch))
        self._commit(
            ActiveState(
                replace(
                    data,
                    sequence=data.sequence + tuple(batch),
                    current_index=len(data.sequence),
                    drill_entered_at=self._clock.now(),
                    initial_estimates=initial,
                )
            )
        )

    def end_session(self) -> None:
        state = self._state
        if not isinstance(state, (ActiveState, CompletedState)):
            return
        now = self._clock.now()
        data = state.data
        if isinstance(state, ActiveState):
            data = _with_time_banked(data, now)
            if data.current_drill is not None:
                data = replace(data, played=data.played | {data.current_drill})

        evolutions = tuple(self._evolve(data, name) for name in self._played_in_order(data))
        self._remember_session(data)
        self._ledger.clear_session_tag()
        logger.info(
            "ranked session %s ended: %d drills evolved, %d skipped",
            data.session_id,
            sum(1 for e in evolutions if not e.skipped),
            sum(1 for e in evolutions if e.skipped),
        )
        self._commit(SummaryState(data=data, ended_at=now, evolutions=evolutions))

    def reset(self) -> None:
        if not isinstance(self._state, (CompletedState, SummaryState)):
            return
        self._ledger.clear_session_tag()
        self._commit(IdleState())

    # Internals

    def _commit(self, state: SessionState) -> None:
        self._state = state
        if isinstance(state, IdleState):
            self._store.delete(STATE_KEY)
        else:
            save_json(self._store, STATE_KEY, _state_to_json(state))
        for listener in list(self._listeners):
            listener(state)

    def _evolve(self, data: SessionData, name: str) -> DrillEvolution:
        initial = data.initial_estimates.get(name)
        if initial is None:
            initial = self._engine.current_value(name)
        values = self._engine.session_values(data.session_id, name)
        if len(values) < self._config.min_attempts:
            return DrillEvolution(drill_name=name, initial_value=initial, achieved_value=None, new_value=None)
        achieved = self._engine.third_highest(values)
        assert achieved is not None
        new_value = self._engine.evolved_value(initial, achieved)
        self._engine.set_baseline(name, new_value)
        return DrillEvolution(drill_name=name, initial_value=initial, achieved_value=achieved, new_value=new_value)

    @staticmethod
    def _played_in_order(data: SessionData) -> list[str]:
        seen: dict[str, None] = {}
        for name in data.sequence:
            if name in data.played:
                seen.setdefault(name, None)
        return list(seen)

    def _build_batch(
        self,
        tier: str,
        *,
        hard_exclude: Collection[str],
        soft_exclude: Collection[str],
    ) -> list[str]:
        """Pick up to ``batch_size`` drills: one strong slot, then weakest first.

        The strong slot goes to the drill that has fallen furthest below its
        peak (ties: higher peak, then name).  It is only filled when the pool
        can fill the whole batch and some drill actually sits below its peak.
        The remaining slots are the weakest drills, with a subcategory
        diversity swap between consecutive weak picks.

        ``hard_exclude`` drills are never picked.  ``soft_exclude`` drills are
        only used to top the batch up when too few others remain.
        """

        size = self._config.batch_size
        values = {d.name: self._engine.current_value(d.name) for d in self._catalog.drills(tier)}
        peaks = {d.name: self._engine.peak_value(d.name) for d in self._catalog.drills(tier)}
        ranked = sorted(
            (d for d in self._catalog.drills(tier) if d.name not in hard_exclude),
            key=lambda d: (values[d.name], peaks[d.name], d.name),
        )
        pool = [d for d in ranked if d.name not in soft_exclude]
        if len(pool) < size:
            pool += [d for d in ranked if d.name in soft_exclude]

        picks: list[DrillSpec] = []
        if size > 1 and len(pool) >= size:
            fallen = [d for d in pool if peaks[d.name] - values[d.name] > _GAP_EPSILON]
            if fallen:
                strong = min(fallen, key=lambda d: (values[d.name] - peaks[d.name], -peaks[d.name], d.name))
                picks.append(strong)
                pool.remove(strong)

        weak: list[DrillSpec] = []
        while pool and len(picks) + len(weak) < size:
            choice = pool[0]
            if weak and choice.subcategory == weak[-1].subcategory:
                alt = next((d for d in pool[1:] if d.subcategory != weak[-1].subcategory), None)
                if alt is not None and values[alt.name] - values[choice.name] < self._config.diversity_margin_ru:
                    choice = alt
            weak.append(choice)
            pool.remove(choice)
        return [d.name for d in picks + weak]

    def _recent_drills(self) -> set[str]:
        k = self._config.anti_repetition_sessions
        if k == 0:
            return set()
        history = load_json(self._store, RECENT_KEY, [])
        if not isinstance(history, list):
            return set()
        out: set[str] = set()
        for played in history[-k:]:
            if isinstance(played, list):
                out.update(str(n) for n in played)
        return out

    def _remember_session(self, data: SessionData) -> None:
        history = load_json(self._store, RECENT_KEY, [])
        if not isinstance(history, list):
            history = []
        history.append(self._played_in_order(data))
        keep = max(_RECENT_KEEP, self._config.anti_repetition_sessions)
        save_json(self._store, RECENT_KEY, history[-keep:])

    def _load(self) -> SessionState:
        payload = load_json(self._store, STATE_KEY, None)
        if payload is None:
            return IdleState()
        try:
            return _state_from_json(payload)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("discarding unreadable ranked session state: %s", exc)
            self._store.delete(STATE_KEY)
            return IdleState()


def _state_to_json(state: SessionState) -> dict[str, Any]:
    if isinstance(state, IdleState):
        return {"status": state.status.value}
    data = state.data
    out: dict[str, Any] = {
        "status": state.status.value,
        "session_id": data.session_id,
        "difficulty": data.difficulty,
        "sequence": list(data.sequence),
        "current_index": data.current_index,
        "started_at": data.started_at,
        "drill_entered_at": data.drill_entered_at,
        "initial_estimates": dict(data.initial_estimates),
        "played": sorted(data.played),
        "accumulated_seconds": dict(data.accumulated_seconds),
    }
    if isinstance(state, SummaryState):
        out["ended_at"] = state.ended_at
        out["evolutions"] = [
            {
                "drill_name": e.drill_name,
                "initial_value": e.initial_value,
                "achieved_value": e.achieved_value,
                "new_value": e.new_value,
            }
            for e in state.evolutions
        ]
    return out


def _finite(value: object) -> float:
    f = float(value)  # type: ignore[arg-type]
    if not math.isfinite(f):
        raise ValueError(f"non-finite value {value!r} in session state")
    return f


def _optional_float(value: object) -> float | None:
    return None if value is None else _finite(value)


def _state_from_json(payload: Mapping[str, Any]) -> SessionState:
    status = SessionStatus(payload["status"])
    if status is SessionStatus.IDLE:
        return IdleState()

    sequence = tuple(str(n) for n in payload["sequence"])
    index = int(payload["current_index"])
    if not sequence or not 0 <= index <= len(sequence):
        raise ValueError("session sequence/index out of range")
    if status is SessionStatus.ACTIVE and index == len(sequence):
        raise ValueError("active session has no current drill")
    if status is SessionStatus.COMPLETED and index != len(sequence):
        raise ValueError("completed session must sit past the last drill")

    data = SessionData(
        session_id=str(payload["session_id"]),
        difficulty=str(payload["difficulty"]),
        sequence=sequence,
        current_index=index,
        started_at=_finite(payload["started_at"]),
        drill_entered_at=_finite(payload["drill_entered_at"]),
        initial_estimates={str(k): _finite(v) for k, v in dict(payload["initial_estimates"]).items()},
        played=frozenset(str(n) for n in payload["played"]),
        accumulated_seconds={str(k): _finite(v) for k, v in dict(payload["accumulated_seconds"]).items()},
    )
    if status is SessionStatus.ACTIVE:
        return ActiveState(data)
    if status is SessionStatus.COMPLETED:
        return CompletedState(data)
    evolutions = tuple(
        DrillEvolution(
            drill_name=str(e["drill_name"]),
            initial_value=_finite(e["initial_value"]),
            achieved_value=_optional_float(e["achieved_value"]),
            new_value=_optional_float(e["new_value"]),
        )
        for e in payload.get("evolutions", [])
    )
    return SummaryState(data=data, ended_at=_finite(payload["ended_at"]), evolutions=evolutions)
