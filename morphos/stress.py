"""
Morphos - morphos/stress.py
Stress accumulation, resistance adaptation, and staged thresholds.
==================================================================
Stack:       Python 3.11+ | Pydantic v2 | numpy | structlog

Architecture notes
------------------
- StressorCatalog holds immutable StressorDef models and the
  stressor -> environment mapping. It is read-only for the engine.
- StressEngine owns one StressLedger per creature. Each ledger carries its
  own lock; events are emitted after the lock is released.
- Time is always an explicit delta_time. Nothing here reads a clock.

Accumulation (per tick, per stressor mapped to the environment):
    added      = accumulation_rate * (1 - resistance[type]) * delta_time
    intensity  = clamp(intensity + added, 0, 1)
    resistance += acquisition_rate * delta_time   once continuous exposure
                                                  reaches adaptation_threshold
Effective stress:
    effective  = clamp(sum(intensity_i * (1 - resistance[type_i])), 0, 1)

Threshold bands fire at most once per continuous occupancy; leaving the
band re-arms them. A CRITICAL crossing marks the ledger extinct and that
flag is never cleared by the engine.
"""

from __future__ import annotations

import threading
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Dict, Iterable, List, Optional, Set, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from morphos.config import THRESHOLD_ORDER, StressConfig, ThresholdConfig, ThresholdType
from morphos.events import EVT_STRESS_EXTINCTION, EVT_STRESS_THRESHOLD, CreatureEvent, EventBus
from morphos.exceptions import UnknownCreatureError
from morphos.log import get_logger

logger = get_logger(__name__)

# How many recent samples have_stabilized() inspects, and the spread allowed.
STABILIZATION_WINDOW: int = 10
STABILIZATION_TOLERANCE: float = 0.02


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


# ============================================================
# STRESSOR DEFINITIONS
# ============================================================

class StressorType(str, Enum):
    THERMAL = "thermal"
    CHEMICAL = "chemical"
    PHYSICAL = "physical"
    RESOURCE = "resource"
    COMPETITION = "competition"
    ENVIRONMENTAL = "environmental"


class ResistanceProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    base_resistance: float = Field(default=0.0, ge=0.0, le=1.0)
    adaptation_threshold: float = Field(default=0.0, ge=0.0)   # continuous exposure before growth
    acquisition_rate: float = Field(default=0.0, ge=0.0)
    resistant_traits: List[str] = Field(default_factory=list)


class StressorDef(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    type: StressorType
    base_intensity: float = Field(default=0.5, ge=0.0, le=1.0)
    accumulation_rate: float = Field(ge=0.0)
    dissipation_rate: float = Field(default=0.1, ge=0.0)
    is_continuous: bool = True
    is_lethal: bool = False
    resistance: ResistanceProfile = Field(default_factory=ResistanceProfile)
    possible_adaptations: List[str] = Field(default_factory=list)


class StressorCatalog:
    """Stressor definitions plus the environment mapping. Not mutated by engines."""

    def __init__(self, stressors: Iterable[StressorDef] = (),
                 environments: Optional[Dict[str, Iterable[str]]] = None) -> None:
        self._stressors: Dict[str, StressorDef] = {}
        self._environments: Dict[str, List[str]] = {}
        for stressor in stressors:
            self.register(stressor)
        for env_id, stressor_ids in (environments or {}).items():
            for sid in stressor_ids:
                self.map_to_environment(sid, env_id)

    def register(self, stressor: StressorDef) -> None:
        self._stressors[stressor.id] = stressor

    def remove(self, stressor_id: str) -> None:
        self._stressors.pop(stressor_id, None)
        for ids in self._environments.values():
            if stressor_id in ids:
                ids.remove(stressor_id)

    def get(self, stressor_id: str) -> StressorDef:
        return self._stressors[stressor_id]

    def __contains__(self, stressor_id: str) -> bool:
        return stressor_id in self._stressors

    def map_to_environment(self, stressor_id: str, environment_id: str) -> None:
        if stressor_id not in self._stressors:
            raise KeyError(f"Unknown stressor: {stressor_id}")
        ids = self._environments.setdefault(environment_id, [])
        if stressor_id not in ids:
            ids.append(stressor_id)

    def unmap_from_environment(self, stressor_id: str, environment_id: str) -> None:
        ids = self._environments.get(environment_id, [])
        if stressor_id in ids:
            ids.remove(stressor_id)

    def stressors_for(self, environment_id: str) -> List[StressorDef]:
        return [self._stressors[sid] for sid in self._environments.get(environment_id, [])]

    def environments(self) -> List[str]:
        return list(self._environments)


# ============================================================
# LEDGER
# ============================================================

@dataclass
class StressEntry:
    stressor_id: str
    stressor_type: StressorType
    current_intensity: float = 0.0
    active_time: float = 0.0
    continuous_time: float = 0.0
    continuous: bool = True
    exposed: bool = False           # exposed since the last dissipate()


@dataclass
class _ThresholdTracker:
    time_above: float = 0.0
    armed: bool = True


@dataclass
class StressLedger:
    creature_id: str
    active_stressors: Dict[str, StressEntry] = field(default_factory=dict)
    accumulated_level: float = 0.0
    resistances: Dict[str, float] = field(default_factory=dict)
    trackers: Dict[ThresholdType, _ThresholdTracker] = field(default_factory=dict)
    extinct: bool = False
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    def resistance_for(self, stressor_type: StressorType) -> float:
        return self.resistances.get(stressor_type.value, 0.0)

    def effective_stress(self) -> float:
        total = sum(
            e.current_intensity * (1.0 - self.resistance_for(e.stressor_type))
            for e in self.active_stressors.values()
        )
        return clamp01(total)


@dataclass(frozen=True)
class ThresholdCrossing:
    creature_id: str
    threshold: ThresholdType
    value: float
    effective_stress: float
    effects: Tuple[str, ...] = ()

    @property
    def is_fatal(self) -> bool:
        return self.threshold is ThresholdType.CRITICAL


@dataclass(frozen=True)
class StressSnapshot:
    creature_id: str
    effective_stress: float
    accumulated_level: float
    intensities: Dict[str, float]
    resistances: Dict[str, float]
    active_thresholds: Tuple[ThresholdType, ...]
    extinct: bool


# ============================================================
# HISTORY
# ============================================================

class StressHistory:
    """Bounded record of effective stress samples with simple trend analysis."""

    def __init__(self, size: int) -> None:
        self._levels: Deque[float] = deque(maxlen=size)
        self._primary: Deque[Optional[str]] = deque(maxlen=size)

    def __len__(self) -> int:
        return len(self._levels)

    def record(self, level: float, primary_stressor: Optional[str] = None) -> None:
        self._levels.append(level)
        self._primary.append(primary_stressor)

    def levels(self) -> np.ndarray:
        return np.fromiter(self._levels, dtype=float, count=len(self._levels))

    def average(self) -> float:
        return float(np.mean(self.levels())) if self._levels else 0.0

    def peak(self) -> float:
        return float(np.max(self.levels())) if self._levels else 0.0

    def trend(self) -> float:
        """Least-squares slope per sample. Positive means worsening."""
        if len(self._levels) < 2:
            return 0.0
        y = self.levels()
        slope, _ = np.polyfit(np.arange(len(y)), y, 1)
        return float(slope)

    def has_stabilized(self, window: int = STABILIZATION_WINDOW,
                       tolerance: float = STABILIZATION_TOLERANCE) -> bool:
        if len(self._levels) < window:
            return False
        recent = self.levels()[-window:]
        return float(np.ptp(recent)) <= tolerance

    def predict_next(self) -> float:
        if not self._levels:
            return 0.0
        return clamp01(self._levels[-1] + self.trend())

    def common_stressors(self, count: int = 3) -> List[str]:
        counts = Counter(s for s in self._primary if s is not None)
        return [sid for sid, _ in counts.most_common(count)]


# ============================================================
# ENGINE
# ============================================================

class StressEngine:
    def __init__(self, catalog: StressorCatalog, config: Optional[StressConfig] = None,
                 bus: Optional[EventBus] = None) -> None:
        self.catalog = catalog
        self.config = config or StressConfig()
        self.bus = bus
        self._thresholds: List[ThresholdConfig] = sorted(
            self.config.thresholds, key=lambda t: THRESHOLD_ORDER.index(t.type)
        )
        self._ledgers: Dict[str, StressLedger] = {}
        self._histories: Dict[str, StressHistory] = {}
        self._registry_lock = threading.Lock()

    # ----------------------------------------------------------
    # Ledger registry
    # ----------------------------------------------------------

    def register_creature(self, creature_id: str,
                          resistances: Optional[Dict[str, float]] = None) -> StressLedger:
        with self._registry_lock:
            ledger = self._ledgers.get(creature_id)
            if ledger is None:
                ledger = StressLedger(creature_id=creature_id)
                self._ledgers[creature_id] = ledger
                self._histories[creature_id] = StressHistory(self.config.history_size)
            for stressor_type, value in (resistances or {}).items():
                ledger.resistances[StressorType(stressor_type).value] = clamp01(value)
            return ledger

    def remove_creature(self, creature_id: str) -> None:
        with self._registry_lock:
            self._ledgers.pop(creature_id, None)
            self._histories.pop(creature_id, None)

    def has_creature(self, creature_id: str) -> bool:
        return creature_id in self._ledgers

    def _ledger(self, creature_id: str) -> StressLedger:
        try:
            return self._ledgers[creature_id]
        except KeyError:
            raise UnknownCreatureError(creature_id) from None

    def history(self, creature_id: str) -> StressHistory:
        self._ledger(creature_id)
        return self._histories[creature_id]

    # ----------------------------------------------------------
    # Exposure and dissipation
    # ----------------------------------------------------------

    def apply_exposure(self, creature_id: str, environment_id: str, delta_time: float,
                       active_periodic: Optional[Set[str]] = None) -> float:
        """
        Accumulate every stressor mapped to environment_id. Periodic stressors
        only accumulate when listed in active_periodic. Returns effective stress.
        """
        ledger = self._ledger(creature_id)
        active_periodic = active_periodic or set()
        with ledger.lock:
            for stressor in self.catalog.stressors_for(environment_id):
                if not stressor.is_continuous and stressor.id not in active_periodic:
                    continue
                self._accumulate(ledger, stressor, delta_time)
            return ledger.effective_stress()

    def _accumulate(self, ledger: StressLedger, stressor: StressorDef, delta_time: float) -> None:
        key = stressor.type.value
        resistance = ledger.resistances.setdefault(key, stressor.resistance.base_resistance)
        entry = ledger.active_stressors.get(stressor.id)
        if entry is None:
            entry = StressEntry(stressor.id, stressor.type, continuous=stressor.is_continuous)
            ledger.active_stressors[stressor.id] = entry

        before = entry.current_intensity
        entry.current_intensity = clamp01(
            before + stressor.accumulation_rate * (1.0 - resistance) * delta_time
        )
        ledger.accumulated_level = clamp01(
            ledger.accumulated_level + (entry.current_intensity - before)
        )
        entry.active_time += delta_time
        entry.continuous_time += delta_time
        entry.exposed = True

        if entry.continuous_time >= stressor.resistance.adaptation_threshold:
            ledger.resistances[key] = clamp01(
                resistance + stressor.resistance.acquisition_rate * delta_time
            )

    def dissipate(self, creature_id: str, delta_time: float) -> None:
        """Decay every entry not exposed since the previous call; drop entries at zero."""
        ledger = self._ledger(creature_id)
        with ledger.lock:
            for sid in list(ledger.active_stressors):
                entry = ledger.active_stressors[sid]
                if entry.exposed:
                    entry.exposed = False
                    continue
                entry.continuous_time = 0.0
                rate = self.catalog.get(sid).dissipation_rate if sid in self.catalog else 1.0
                before = entry.current_intensity
                entry.current_intensity = clamp01(before - rate * delta_time)
                ledger.accumulated_level = clamp01(
                    ledger.accumulated_level - (before - entry.current_intensity)
                )
                if entry.current_intensity <= 0.0:
                    del ledger.active_stressors[sid]

    def decay_resistance(self, creature_id: str, stressor_type: StressorType | str,
                         amount: float) -> float:
        """External resistance decay hook. Returns the new resistance."""
        ledger = self._ledger(creature_id)
        key = StressorType(stressor_type).value
        with ledger.lock:
            ledger.resistances[key] = clamp01(ledger.resistances.get(key, 0.0) - amount)
            return ledger.resistances[key]

    # ----------------------------------------------------------
    # Queries
    # ----------------------------------------------------------

    def calculate_effective_stress(self, creature_id: str) -> float:
        ledger = self._ledger(creature_id)
        with ledger.lock:
            return ledger.effective_stress()

    def is_lethal(self, creature_id: str, environment_id: str) -> bool:
        ledger = self._ledger(creature_id)
        with ledger.lock:
            total = sum(
                ledger.active_stressors[s.id].current_intensity
                for s in self.catalog.stressors_for(environment_id)
                if s.is_lethal and s.id in ledger.active_stressors
            )
        return total > self.config.lethal_threshold

    def is_extinct(self, creature_id: str) -> bool:
        return self._ledger(creature_id).extinct

    def dominant_stressor(self, creature_id: str) -> Optional[str]:
        """Stressor id with the largest resistance-adjusted contribution."""
        ledger = self._ledger(creature_id)
        with ledger.lock:
            if not ledger.active_stressors:
                return None
            return max(
                ledger.active_stressors.values(),
                key=lambda e: e.current_intensity * (1.0 - ledger.resistance_for(e.stressor_type)),
            ).stressor_id

    def get_stress_state(self, creature_id: str) -> StressSnapshot:
        ledger = self._ledger(creature_id)
        with ledger.lock:
            return StressSnapshot(
                creature_id=creature_id,
                effective_stress=ledger.effective_stress(),
                accumulated_level=ledger.accumulated_level,
                intensities={sid: e.current_intensity for sid, e in ledger.active_stressors.items()},
                resistances=dict(ledger.resistances),
                active_thresholds=tuple(
                    t.type for t in self._thresholds
                    if t.type in ledger.trackers and not ledger.trackers[t.type].armed
                ),
                extinct=ledger.extinct,
            )

    # ----------------------------------------------------------
    # Thresholds
    # ----------------------------------------------------------

    def evaluate_thresholds(self, creature_id: str, delta_time: float) -> List[ThresholdCrossing]:
        """
        Advance threshold timers by delta_time at the current effective stress
        and return the crossings that fired this call, lowest band first.
        """
        ledger = self._ledger(creature_id)
        crossings: List[ThresholdCrossing] = []
        with ledger.lock:
            effective = ledger.effective_stress()
            for threshold in self._thresholds:
                tracker = ledger.trackers.setdefault(threshold.type, _ThresholdTracker())
                if effective >= threshold.value:
                    tracker.time_above += delta_time
                    if tracker.armed and tracker.time_above >= threshold.duration:
                        tracker.armed = False
                        tracker.time_above = 0.0
                        crossings.append(ThresholdCrossing(
                            creature_id=creature_id,
                            threshold=threshold.type,
                            value=threshold.value,
                            effective_stress=effective,
                            effects=tuple(threshold.effects),
                        ))
                else:
                    tracker.armed = True
                    if threshold.requires_continuous:
                        tracker.time_above = 0.0
            if any(c.is_fatal for c in crossings):
                ledger.extinct = True
            dominant = max(
                ledger.active_stressors.values(),
                key=lambda e: e.current_intensity,
                default=None,
            )
        self._histories[creature_id].record(effective, dominant.stressor_id if dominant else None)

        for crossing in crossings:
            logger.info(
                "threshold_crossed",
                creature_id=creature_id,
                threshold=crossing.threshold.value,
                effective_stress=round(effective, 4),
            )
            self._emit(EVT_STRESS_THRESHOLD, creature_id, {
                "threshold": crossing.threshold.value,
                "value": crossing.value,
                "effective_stress": effective,
                "effects": list(crossing.effects),
            })
            if crossing.is_fatal:
                logger.warning("creature_extinct", creature_id=creature_id)
                self._emit(EVT_STRESS_EXTINCTION, creature_id, {"effective_stress": effective})
        return crossings

    def _emit(self, key: str, creature_id: str, data: dict) -> None:
        if self.bus is not None:
            self.bus.emit(CreatureEvent(event_key=key, source="stress_engine",
                                        target=creature_id, data=data))
