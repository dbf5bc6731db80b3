"""
Morphos - morphos/synthesis.py
Per-trait synthesis state machine.
==================================
Stack:       Python 3.11+ | threading | structlog

Stage graph (anything else is illegal and reported as SYSTEMIC_FAILURE):

    NONE -> INITIATING -> FORMING -> STABILIZING -> COMPLETE -> NONE
                          FORMING | STABILIZING -> DEGRADING -> CRITICAL -> NONE
    INITIATING .. CRITICAL -> NONE                 (revert)

Per tick, for each trait in progress (at most one transition per trait):
    completion += progress_rate * catalyst_strength * dt        (not while DEGRADING)
    stability  -= stability_decay_rate * (1 - catalyst_strength) * dt  (not while INITIATING)
    INITIATING  -> FORMING      once completion > 0
    FORMING     -> STABILIZING  once completion >= stabilizing_threshold
    FORMING | STABILIZING -> DEGRADING  when stability < rule min_stability
    DEGRADING   -> CRITICAL     when stability < critical_stability
    CRITICAL    -> NONE         on the next tick (synthesis lost)

Synthesis never writes creature state directly. Completion packages the
rule outcome as a Change and hands it to the ChangeEngine after releasing
this engine's lock.
"""

from __future__ import annotations

import copy
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Dict, List, Optional, Tuple

from morphos.change_engine import ChangeEngine, ChangeReport
from morphos.changes import AbilityDelta, Change, ChangePriority, ChangeSource, TraitDelta
from morphos.config import VALUE_PRECISION, SynthesisConfig
from morphos.events import (
    EVT_SYNTHESIS_COMPLETED,
    EVT_SYNTHESIS_FAILED,
    EVT_SYNTHESIS_LOST,
    EVT_SYNTHESIS_STAGE,
    CreatureEvent,
    EventBus,
)
from morphos.exceptions import IllegalTransitionError
from morphos.log import get_logger
from morphos.state import Ability, CreatureState
from morphos.synthesis_rules import CatalystType, SynthesisRule, SynthesisRuleRegistry

logger = get_logger(__name__)


class SynthesisStage(str, Enum):
    NONE = "none"
    INITIATING = "initiating"
    FORMING = "forming"
    STABILIZING = "stabilizing"
    COMPLETE = "complete"
    DEGRADING = "degrading"
    CRITICAL = "critical"


class StabilityClass(str, Enum):
    UNSTABLE = "unstable"
    FLUCTUATING = "fluctuating"
    STABLE = "stable"
    REINFORCED = "reinforced"
    PERMANENT = "permanent"


class SynthesisFailure(str, Enum):
    REQUIREMENTS = "requirements"
    STABILITY = "stability"
    INCOMPATIBLE = "incompatible"
    ENVIRONMENTAL = "environmental"
    CATALYST_WEAK = "catalyst_weak"
    SYSTEMIC_FAILURE = "systemic_failure"


S = SynthesisStage

LEGAL_TRANSITIONS: Dict[SynthesisStage, Tuple[SynthesisStage, ...]] = {
    S.NONE:        (S.INITIATING,),
    S.INITIATING:  (S.FORMING, S.NONE),
    S.FORMING:     (S.STABILIZING, S.DEGRADING, S.NONE),
    S.STABILIZING: (S.COMPLETE, S.DEGRADING, S.NONE),
    S.COMPLETE:    (S.NONE,),
    S.DEGRADING:   (S.CRITICAL, S.NONE),
    S.CRITICAL:    (S.NONE,),
}

IN_PROGRESS = (S.INITIATING, S.FORMING, S.STABILIZING, S.DEGRADING, S.CRITICAL)


def stability_class_for(factor: float, at_max_level: bool = False) -> StabilityClass:
    if at_max_level:
        return StabilityClass.PERMANENT
    if factor < 0.3:
        return StabilityClass.UNSTABLE
    if factor < 0.6:
        return StabilityClass.FLUCTUATING
    if factor < 0.9:
        return StabilityClass.STABLE
    return StabilityClass.REINFORCED


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


# ============================================================
# STATE
# ============================================================

@dataclass
class SynthesisProgress:
    completion_level: float = 0.0
    stability_factor: float = 1.0
    catalyst_strength: float = 0.0


@dataclass(frozen=True)
class SynthesisEvent:
    kind: str                       # "begin" | "stage" | "complete" | "revert" | "lost" | "failed"
    stage_from: SynthesisStage
    stage_to: SynthesisStage
    source_form: str
    target_form: Optional[str] = None
    catalyst_type: Optional[CatalystType] = None
    catalyst_id: Optional[str] = None
    intensity: float = 0.0


@dataclass
class SynthesisState:
    trait_id: str
    current_form: str
    synthesis_level: int = 0
    stage: SynthesisStage = SynthesisStage.NONE
    stability_class: StabilityClass = StabilityClass.STABLE
    progress: SynthesisProgress = field(default_factory=SynthesisProgress)
    target_form: Optional[str] = None
    catalyst_type: Optional[CatalystType] = None
    catalyst_id: Optional[str] = None
    rule: Optional[SynthesisRule] = None
    catalyst_influences: Dict[Tuple[CatalystType, str], float] = field(default_factory=dict)
    history: Deque[SynthesisEvent] = field(default_factory=deque)

    @property
    def in_progress(self) -> bool:
        return self.stage in IN_PROGRESS

    def influence_of(self, catalyst_type: CatalystType) -> float:
        return sum(v for (t, _), v in self.catalyst_influences.items() if t is catalyst_type)


@dataclass(frozen=True)
class SynthesisResult:
    trait_id: str
    success: bool
    stage: SynthesisStage
    failure: Optional[SynthesisFailure] = None
    message: str = ""
    change: Optional[Change] = None
    report: Optional[ChangeReport] = None


@dataclass(frozen=True)
class StageTransition:
    trait_id: str
    stage_from: SynthesisStage
    stage_to: SynthesisStage


# ============================================================
# ENGINE
# ============================================================

class SynthesisEngine:
    """Owns the SynthesisState of every trait of one creature."""

    def __init__(
        self,
        rules: SynthesisRuleRegistry,
        creature: CreatureState,
        config: Optional[SynthesisConfig] = None,
        change_engine: Optional[ChangeEngine] = None,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.rules = rules
        self.creature = creature
        self.config = config or SynthesisConfig()
        self.change_engine = change_engine
        self.bus = bus
        self._states: Dict[str, SynthesisState] = {}
        self._lock = threading.RLock()

    # ----------------------------------------------------------
    # Helpers (call with the lock held)
    # ----------------------------------------------------------

    def _sync(self, trait_id: str) -> Optional[SynthesisState]:
        """State for trait_id, refreshed from the creature while idle."""
        trait = self.creature.traits.traits.get(trait_id)
        state = self._states.get(trait_id)
        if trait is None:
            return state
        if state is None:
            state = SynthesisState(
                trait_id=trait_id,
                current_form=trait.form,
                history=deque(maxlen=self.config.history_size),
            )
            self._states[trait_id] = state
        if state.stage is S.NONE:
            state.current_form = trait.form
            state.synthesis_level = trait.synthesis_level
            state.stability_class = stability_class_for(
                trait.stability, trait.synthesis_level >= self.config.max_synthesis_level
            )
        return state

    def _transition(self, state: SynthesisState, to: SynthesisStage, kind: str,
                    outbox: List[CreatureEvent], intensity: float = 0.0) -> StageTransition:
        if to not in LEGAL_TRANSITIONS[state.stage]:
            raise IllegalTransitionError(state.trait_id, state.stage.value, to.value)
        move = StageTransition(state.trait_id, state.stage, to)
        state.history.append(SynthesisEvent(
            kind=kind,
            stage_from=state.stage,
            stage_to=to,
            source_form=state.current_form,
            target_form=state.target_form,
            catalyst_type=state.catalyst_type,
            catalyst_id=state.catalyst_id,
            intensity=intensity,
        ))
        state.stage = to
        logger.debug(
            "synthesis_stage_changed",
            creature_id=self.creature.creature_id,
            trait_id=state.trait_id,
            stage_from=move.stage_from.value,
            stage_to=to.value,
        )
        outbox.append(self._event(EVT_SYNTHESIS_STAGE, state, {
            "stage_from": move.stage_from.value,
            "stage_to": to.value,
            "kind": kind,
        }))
        return move

    def _clear(self, state: SynthesisState) -> None:
        state.progress = SynthesisProgress()
        state.target_form = None
        state.catalyst_type = None
        state.catalyst_id = None
        state.rule = None

    def _fail(self, trait_id: str, stage: SynthesisStage, failure: SynthesisFailure,
              message: str, outbox: List[CreatureEvent]) -> SynthesisResult:
        logger.info(
            "synthesis_failed",
            creature_id=self.creature.creature_id,
            trait_id=trait_id,
            failure=failure.value,
            reason=message,
        )
        outbox.append(CreatureEvent(
            event_key=EVT_SYNTHESIS_FAILED,
            source="synthesis_engine",
            target=self.creature.creature_id,
            data={"trait_id": trait_id, "failure": failure.value, "message": message},
        ))
        return SynthesisResult(trait_id, False, stage, failure, message)

    # ----------------------------------------------------------
    # Begin
    # ----------------------------------------------------------

    def begin_synthesis(self, trait_id: str, target_form: str, catalyst_type: CatalystType,
                        catalyst_id: str, intensity: float) -> SynthesisResult:
        outbox: List[CreatureEvent] = []
        with self._lock:
            result = self._begin(trait_id, target_form, CatalystType(catalyst_type),
                                 catalyst_id, intensity, outbox)
        self._emit(outbox)
        return result

    def _begin(self, trait_id: str, target_form: str, catalyst_type: CatalystType,
               catalyst_id: str, intensity: float, outbox: List[CreatureEvent]) -> SynthesisResult:
        state = self._sync(trait_id)
        if state is None:
            return self._fail(trait_id, S.NONE, SynthesisFailure.INCOMPATIBLE,
                              f"unknown trait '{trait_id}'", outbox)
        if S.INITIATING not in LEGAL_TRANSITIONS[state.stage]:
            return self._fail(trait_id, state.stage, SynthesisFailure.SYSTEMIC_FAILURE,
                              f"cannot begin from stage {state.stage.value}", outbox)

        trait = self.creature.traits.traits.get(trait_id)
        if trait is None:
            return self._fail(trait_id, state.stage, SynthesisFailure.INCOMPATIBLE,
                              f"unknown trait '{trait_id}'", outbox)
        rule = self.rules.get(state.current_form, catalyst_type, target_form)
        if rule is None:
            return self._fail(trait_id, state.stage, SynthesisFailure.INCOMPATIBLE,
                              f"no path {state.current_form} -[{catalyst_type.value}]-> {target_form}",
                              outbox)
        if trait.suppressed:
            return self._fail(trait_id, state.stage, SynthesisFailure.INCOMPATIBLE,
                              "trait is suppressed", outbox)
        if state.synthesis_level >= self.config.max_synthesis_level:
            return self._fail(trait_id, state.stage, SynthesisFailure.INCOMPATIBLE,
                              "maximum synthesis level reached", outbox)
        if intensity < self.config.min_catalyst_intensity:
            return self._fail(trait_id, state.stage, SynthesisFailure.CATALYST_WEAK,
                              f"catalyst intensity {intensity:.3f} too weak", outbox)
        req = rule.requirement
        if catalyst_type is CatalystType.ENVIRONMENTAL and not req.allows_environment(catalyst_id):
            return self._fail(trait_id, state.stage, SynthesisFailure.ENVIRONMENTAL,
                              f"environment '{catalyst_id}' does not support this path", outbox)
        if trait.stability < req.min_stability:
            return self._fail(trait_id, state.stage, SynthesisFailure.STABILITY,
                              f"stability {trait.stability:.3f} below {req.min_stability:.3f}", outbox)
        if not req.evaluate(intensity, trait.stability, state.synthesis_level,
                            self.creature.traits.available()):
            return self._fail(trait_id, state.stage, SynthesisFailure.REQUIREMENTS,
                              "synthesis requirements not met", outbox)

        state.rule = rule
        state.target_form = target_form
        state.catalyst_type = catalyst_type
        state.catalyst_id = catalyst_id
        state.progress = SynthesisProgress(
            completion_level=0.0,
            stability_factor=self.rules.calculate_stability(state.synthesis_level),
            catalyst_strength=_clamp01(intensity),
        )
        self._accumulate(state, catalyst_type, catalyst_id, intensity)
        self._transition(state, S.INITIATING, "begin", outbox, intensity)
        state.stability_class = stability_class_for(state.progress.stability_factor)
        logger.info(
            "synthesis_started",
            creature_id=self.creature.creature_id,
            trait_id=trait_id,
            source_form=state.current_form,
            target_form=target_form,
            catalyst=catalyst_type.value,
        )
        return SynthesisResult(trait_id, True, state.stage)

    # ----------------------------------------------------------
    # Catalysts
    # ----------------------------------------------------------

    def _accumulate(self, state: SynthesisState, catalyst_type: CatalystType,
                    catalyst_id: str, intensity: float) -> None:
        key = (catalyst_type, catalyst_id)
        state.catalyst_influences[key] = state.catalyst_influences.get(key, 0.0) + intensity

    def record_catalyst_exposure(self, trait_id: str, catalyst_type: CatalystType,
                                 catalyst_id: str, intensity: float) -> bool:
        """
        Accumulate catalyst influence on a trait. When the trait is synthesising
        under the same catalyst type, this also refreshes the catalyst strength
        that drives progress. Returns True if the exposure fed an active synthesis.
        """
        catalyst_type = CatalystType(catalyst_type)
        with self._lock:
            state = self._sync(trait_id)
            if state is None:
                return False
            self._accumulate(state, catalyst_type, catalyst_id, intensity)
            if state.in_progress and state.catalyst_type is catalyst_type:
                state.progress.catalyst_strength = _clamp01(intensity)
                return True
            return False

    # ----------------------------------------------------------
    # Progress
    # ----------------------------------------------------------

    def progress_synthesis(self, delta_time: float) -> List[StageTransition]:
        """Advance every in-progress synthesis by delta_time. Returns the transitions made."""
        outbox: List[CreatureEvent] = []
        moves: List[StageTransition] = []
        with self._lock:
            for trait_id in sorted(self._states):
                state = self._states[trait_id]
                if state.in_progress:
                    move = self._advance(state, delta_time, outbox)
                    if move is not None:
                        moves.append(move)
        self._emit(outbox)
        return moves

    def _advance(self, state: SynthesisState, dt: float,
                 outbox: List[CreatureEvent]) -> Optional[StageTransition]:
        cfg = self.config
        p = state.progress
        strength = p.catalyst_strength

        if state.stage is S.CRITICAL:
            move = self._transition(state, S.NONE, "lost", outbox)
            logger.warning(
                "synthesis_lost",
                creature_id=self.creature.creature_id,
                trait_id=state.trait_id,
                target_form=state.target_form,
            )
            outbox.append(self._event(EVT_SYNTHESIS_LOST, state, {"target_form": state.target_form}))
            self._clear(state)
            self._sync(state.trait_id)
            return move

        if state.stage is not S.DEGRADING:
            p.completion_level = round(
                _clamp01(p.completion_level + cfg.progress_rate * strength * dt), VALUE_PRECISION
            )
        if state.stage is not S.INITIATING:
            p.stability_factor = round(
                _clamp01(p.stability_factor - cfg.stability_decay_rate * (1.0 - strength) * dt),
                VALUE_PRECISION,
            )
        state.stability_class = stability_class_for(p.stability_factor)

        min_stability = state.rule.requirement.min_stability if state.rule else 0.0
        if state.stage is S.INITIATING:
            if p.completion_level > 0.0:
                return self._transition(state, S.FORMING, "stage", outbox)
        elif state.stage in (S.FORMING, S.STABILIZING):
            if p.stability_factor < min_stability:
                return self._transition(state, S.DEGRADING, "stage", outbox)
            if state.stage is S.FORMING and p.completion_level >= cfg.stabilizing_threshold:
                return self._transition(state, S.STABILIZING, "stage", outbox)
        elif state.stage is S.DEGRADING:
            if p.stability_factor < cfg.critical_stability:
                return self._transition(state, S.CRITICAL, "stage", outbox)
        return None

    def ready_to_complete(self) -> List[str]:
        """Trait ids sitting in STABILIZING with full completion."""
        with self._lock:
            return [
                tid for tid in sorted(self._states)
                if self._states[tid].stage is S.STABILIZING
                and self._states[tid].progress.completion_level >= 1.0
            ]

    # ----------------------------------------------------------
    # Completion and revert
    # ----------------------------------------------------------

    def _build_change(self, state: SynthesisState) -> Change:
        trait = self.creature.traits.traits[state.trait_id]
        outcome = state.rule.result
        new_stability = _clamp01(state.progress.stability_factor * outcome.stability_modifier)
        stability_delta = round(new_stability - trait.stability, VALUE_PRECISION)

        present_abilities = self.creature.abilities.abilities
        granted = tuple(
            Ability(id=aid, name=aid.replace("_", " ").title(), granted_by=state.trait_id)
            for aid in outcome.granted_abilities
            if aid not in present_abilities
        )
        suppressed = frozenset(
            tid for tid in outcome.suppressed_traits
            if tid != state.trait_id
            and tid in self.creature.traits.traits
            and not self.creature.traits.traits[tid].suppressed
        )
        return Change.create(
            source=ChangeSource.SYNTHESIS,
            priority=ChangePriority.HIGH,
            description=f"Synthesis of {state.trait_id}: {state.current_form} -> {outcome.result_form}",
            tags=("synthesis", state.trait_id),
            traits=TraitDelta(
                set_forms={state.trait_id: outcome.result_form},
                level_modifiers={state.trait_id: 1},
                stability_modifiers={state.trait_id: stability_delta} if stability_delta else {},
                suppress_traits=suppressed,
            ),
            abilities=AbilityDelta(add_abilities=granted),
        )

    def complete_synthesis(self, trait_id: str) -> SynthesisResult:
        """
        Legal only from STABILIZING at full completion, and not while the change
        engine has a batch open. The outcome is submitted to the change engine
        without holding this engine's lock; if it is not applied the trait
        returns to NONE on its old form.
        """
        outbox: List[CreatureEvent] = []
        with self._lock:
            state = self._states.get(trait_id)
            if state is None or state.stage is not S.STABILIZING \
                    or state.progress.completion_level < 1.0:
                stage = state.stage if state else S.NONE
                result = self._fail(trait_id, stage, SynthesisFailure.SYSTEMIC_FAILURE,
                                    f"cannot complete from stage {stage.value}", outbox)
                change = None
            elif self.change_engine is not None and self.change_engine.in_batch:
                result = self._fail(trait_id, state.stage, SynthesisFailure.SYSTEMIC_FAILURE,
                                    "change engine has an open batch", outbox)
                change = None
            else:
                change = self._build_change(state)
                self._transition(state, S.COMPLETE, "complete", outbox)
        self._emit(outbox)
        if change is None:
            return result

        report = None
        if self.change_engine is not None:
            report = self.change_engine.process_change(self.creature, change)

        outbox = []
        with self._lock:
            state = self._states.get(trait_id)
            if state is None:
                result = self._fail(trait_id, S.NONE, SynthesisFailure.SYSTEMIC_FAILURE,
                                    "synthesis state was reset during completion", outbox)
                result = SynthesisResult(trait_id, False, S.NONE, result.failure,
                                         result.message, change, report)
            elif report is not None and not report.ok:
                self._transition(state, S.NONE, "failed", outbox)
                self._clear(state)
                self._sync(trait_id)
                result = self._fail(trait_id, S.NONE, SynthesisFailure.SYSTEMIC_FAILURE,
                                    f"outcome change {report.result.value}", outbox)
                result = SynthesisResult(trait_id, False, S.NONE, result.failure,
                                         result.message, change, report)
            else:
                target = state.rule.result.result_form
                previous = state.current_form
                self._transition(state, S.NONE, "reset", outbox)
                state.current_form = target
                state.synthesis_level += 1
                self._clear(state)
                logger.info(
                    "synthesis_completed",
                    creature_id=self.creature.creature_id,
                    trait_id=trait_id,
                    source_form=previous,
                    result_form=target,
                    level=state.synthesis_level,
                )
                outbox.append(self._event(EVT_SYNTHESIS_COMPLETED, state, {
                    "source_form": previous,
                    "result_form": target,
                    "synthesis_level": state.synthesis_level,
                    "change_id": change.id,
                }))
                result = SynthesisResult(trait_id, True, S.NONE, change=change, report=report)
        self._emit(outbox)
        return result

    def revert_synthesis(self, trait_id: str) -> SynthesisResult:
        """Abandon an in-progress synthesis. Never produces a Change."""
        outbox: List[CreatureEvent] = []
        with self._lock:
            state = self._states.get(trait_id)
            if state is None or not state.in_progress:
                stage = state.stage if state else S.NONE
                result = self._fail(trait_id, stage, SynthesisFailure.SYSTEMIC_FAILURE,
                                    f"nothing to revert in stage {stage.value}", outbox)
            else:
                self._transition(state, S.NONE, "revert", outbox)
                self._clear(state)
                self._sync(trait_id)
                result = SynthesisResult(trait_id, True, S.NONE)
        self._emit(outbox)
        return result

    # ----------------------------------------------------------
    # Queries
    # ----------------------------------------------------------

    def get_synthesis_state(self, trait_id: str) -> Optional[SynthesisState]:
        """Detached copy of the trait's synthesis state."""
        with self._lock:
            state = self._sync(trait_id)
            return copy.deepcopy(state) if state is not None else None

    def active_syntheses(self) -> List[str]:
        with self._lock:
            return [tid for tid in sorted(self._states) if self._states[tid].in_progress]

    def reset(self) -> None:
        with self._lock:
            self._states.clear()

    def _event(self, key: str, state: SynthesisState, data: dict) -> CreatureEvent:
        return CreatureEvent(
            event_key=key,
            source="synthesis_engine",
            target=self.creature.creature_id,
            data={"trait_id": state.trait_id, **data},
        )

    def _emit(self, events: List[CreatureEvent]) -> None:
        if self.bus is None:
            return
        for event in events:
            self.bus.emit(event)
