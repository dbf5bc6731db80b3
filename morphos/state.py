"""
Morphos - morphos/state.py
Creature state: four independently validatable sub-states.
==========================================================

Architecture notes
------------------
- CreatureState owns PhysicalState, AbilityState, TraitState and
  BehaviorState. Each sub-state validates itself; CreatureState adds the
  cross-state relationship checks (ability granted_by -> existing trait).
- State is mutated only through apply(change), which is called by the
  change engine after validation. apply() returns an ApplyReceipt with
  the effective effects and prior values needed to invert the change.
- Application order inside each sub-state: removals, additions, set
  fields, numeric modifiers, toggles, charge consumption.
- Every numeric write is rounded to VALUE_PRECISION decimals so that
  apply followed by undo restores the exact prior value. Open float maps
  (adaptability, behavior modifiers) drop keys that return to zero.
"""

from __future__ import annotations

import copy
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, FrozenSet, List, Optional, Set, Tuple

from morphos.config import (
    MAX_ACTIVE_ABILITIES,
    MAX_TRAIT_STRENGTH,
    MIN_TRAIT_STRENGTH,
    VALUE_PRECISION,
)
from morphos.validation import Validatable, ValidationIssue, ValidationLevel

if TYPE_CHECKING:
    from morphos.changes import AbilityDelta, BehaviorDelta, Change, PhysicalDelta, TraitDelta


def _r(value: float) -> float:
    return round(value, VALUE_PRECISION)


def _bump(mapping: Dict[str, float], key: str, amount: float) -> None:
    """Add amount to an open float map, dropping keys that land on zero."""
    value = _r(mapping.get(key, 0.0) + amount)
    if value == 0.0:
        mapping.pop(key, None)
    else:
        mapping[key] = value


def _error(code: str, message: str, target: str = "") -> ValidationIssue:
    return ValidationIssue(level=ValidationLevel.ERROR, code=code, message=message, target=target)


# ============================================================
# RECORDS
# ============================================================

@dataclass
class Ability:
    id: str
    name: str
    power: float = 1.0
    active: bool = True
    charges: Optional[int] = None           # None = unlimited
    granted_by: Optional[str] = None        # trait id that granted it


@dataclass
class Trait:
    id: str
    name: str
    form: str
    strength: float = 0.5
    stability: float = 1.0
    synthesis_level: int = 0
    suppressed: bool = False
    origin: str = "innate"                  # "innate" | "synthesis" | "acquired"
    category: str = "physical"


@dataclass
class ApplyReceipt:
    """Effective effects of one apply() call. Read-only once returned."""
    added_features: FrozenSet[str] = frozenset()
    removed_features: FrozenSet[str] = frozenset()
    added_abilities: Tuple[str, ...] = ()
    removed_abilities: Tuple[Ability, ...] = ()
    added_traits: Tuple[str, ...] = ()
    removed_traits: Tuple[Trait, ...] = ()
    added_behaviors: FrozenSet[str] = frozenset()
    removed_behaviors: FrozenSet[str] = frozenset()
    prior_values: Dict[str, Optional[str]] = field(default_factory=dict)
    prior_forms: Dict[str, str] = field(default_factory=dict)
    suppressed: FrozenSet[str] = frozenset()
    released: FrozenSet[str] = frozenset()
    consumed: Dict[str, int] = field(default_factory=dict)


# ============================================================
# SUB-STATES
# ============================================================

@dataclass
class PhysicalState:
    size: str = "medium"
    shape: str = "quadruped"
    features: Set[str] = field(default_factory=set)
    adaptability: Dict[str, float] = field(default_factory=dict)

    def validate(self) -> List[ValidationIssue]:
        issues = []
        if not self.size or not self.shape:
            issues.append(_error("blank_value", "physical size and shape must be set"))
        for key, value in self.adaptability.items():
            if not math.isfinite(value) or not -1.0 <= value <= 1.0:
                issues.append(_error("out_of_range", f"adaptability '{key}' = {value}", key))
        return issues

    def apply(self, delta: "PhysicalDelta", receipt: ApplyReceipt) -> None:
        removed = delta.remove_features & self.features
        added = delta.add_features - self.features
        self.features -= removed
        self.features |= added
        receipt.removed_features = frozenset(removed)
        receipt.added_features = frozenset(added)
        for name in ("size", "shape"):
            value = getattr(delta, name)
            if value is not None:
                receipt.prior_values[name] = getattr(self, name)
                setattr(self, name, value)
        for key, amount in delta.adaptability_modifiers.items():
            _bump(self.adaptability, key, amount)


@dataclass
class AbilityState:
    abilities: Dict[str, Ability] = field(default_factory=dict)

    def active_count(self) -> int:
        return sum(1 for a in self.abilities.values() if a.active)

    def validate(self) -> List[ValidationIssue]:
        issues = []
        for aid, ability in self.abilities.items():
            if ability.power < 0.0 or not math.isfinite(ability.power):
                issues.append(_error("out_of_range", f"ability '{aid}' power {ability.power}", aid))
            if ability.charges is not None and ability.charges < 0:
                issues.append(_error("out_of_range", f"ability '{aid}' charges {ability.charges}", aid))
        if self.active_count() > MAX_ACTIVE_ABILITIES:
            issues.append(_error("too_many_active",
                                 f"{self.active_count()} active abilities exceed {MAX_ACTIVE_ABILITIES}"))
        return issues

    def apply(self, delta: "AbilityDelta", receipt: ApplyReceipt) -> None:
        removed = []
        for aid in sorted(delta.remove_abilities):
            if aid in self.abilities:
                removed.append(self.abilities.pop(aid))
        receipt.removed_abilities = tuple(removed)

        added = []
        for ability in delta.add_abilities:
            if ability.id not in self.abilities:
                self.abilities[ability.id] = copy.deepcopy(ability)
                added.append(ability.id)
        receipt.added_abilities = tuple(added)

        for aid, amount in delta.power_modifiers.items():
            ability = self.abilities[aid]
            ability.power = _r(ability.power + amount)
        for aid in delta.toggle_active:
            ability = self.abilities[aid]
            ability.active = not ability.active
        for aid, amount in delta.consume_charges.items():
            ability = self.abilities[aid]
            ability.charges -= amount
            receipt.consumed[aid] = amount


@dataclass
class TraitState:
    traits: Dict[str, Trait] = field(default_factory=dict)

    def available(self) -> List[str]:
        """Trait ids eligible as synthesis sources."""
        return [tid for tid, t in self.traits.items() if not t.suppressed]

    def validate(self) -> List[ValidationIssue]:
        issues = []
        for tid, trait in self.traits.items():
            if not MIN_TRAIT_STRENGTH <= trait.strength <= MAX_TRAIT_STRENGTH:
                issues.append(_error("out_of_range", f"trait '{tid}' strength {trait.strength}", tid))
            if not 0.0 <= trait.stability <= 1.0:
                issues.append(_error("out_of_range", f"trait '{tid}' stability {trait.stability}", tid))
            if trait.synthesis_level < 0:
                issues.append(_error("out_of_range", f"trait '{tid}' level {trait.synthesis_level}", tid))
            if not trait.form:
                issues.append(_error("blank_value", f"trait '{tid}' has no form", tid))
        return issues

    def apply(self, delta: "TraitDelta", receipt: ApplyReceipt) -> None:
        removed = []
        for tid in sorted(delta.remove_traits):
            if tid in self.traits:
                removed.append(self.traits.pop(tid))
        receipt.removed_traits = tuple(removed)

        added = []
        for trait in delta.add_traits:
            if trait.id not in self.traits:
                self.traits[trait.id] = copy.deepcopy(trait)
                added.append(trait.id)
        receipt.added_traits = tuple(added)

        for tid, form in delta.set_forms.items():
            receipt.prior_forms[tid] = self.traits[tid].form
            self.traits[tid].form = form

        suppressed, released = set(), set()
        for tid in delta.suppress_traits:
            if not self.traits[tid].suppressed:
                self.traits[tid].suppressed = True
                suppressed.add(tid)
        for tid in delta.release_traits:
            if self.traits[tid].suppressed:
                self.traits[tid].suppressed = False
                released.add(tid)
        receipt.suppressed = frozenset(suppressed)
        receipt.released = frozenset(released)

        for tid, amount in delta.strength_modifiers.items():
            self.traits[tid].strength = _r(self.traits[tid].strength + amount)
        for tid, amount in delta.stability_modifiers.items():
            self.traits[tid].stability = _r(self.traits[tid].stability + amount)
        for tid, amount in delta.level_modifiers.items():
            self.traits[tid].synthesis_level += int(amount)


@dataclass
class BehaviorState:
    intelligence: str = "animal"
    aggression: str = "neutral"
    social_structure: str = "solitary"
    behaviors: Set[str] = field(default_factory=set)
    modifiers: Dict[str, float] = field(default_factory=dict)
    stress_responses: Dict[str, float] = field(default_factory=dict)

    def validate(self) -> List[ValidationIssue]:
        issues = []
        for name in ("intelligence", "aggression", "social_structure"):
            if not getattr(self, name):
                issues.append(_error("blank_value", f"behavior {name} must be set", name))
        for mapping in (self.modifiers, self.stress_responses):
            for key, value in mapping.items():
                if not math.isfinite(value):
                    issues.append(_error("non_finite", f"behavior modifier '{key}' = {value}", key))
        return issues

    def apply(self, delta: "BehaviorDelta", receipt: ApplyReceipt) -> None:
        removed = delta.remove_behaviors & self.behaviors
        added = delta.add_behaviors - self.behaviors
        self.behaviors -= removed
        self.behaviors |= added
        receipt.removed_behaviors = frozenset(removed)
        receipt.added_behaviors = frozenset(added)
        for name in ("intelligence", "aggression", "social_structure"):
            value = getattr(delta, name)
            if value is not None:
                receipt.prior_values[name] = getattr(self, name)
                setattr(self, name, value)
        for key, amount in delta.behavior_modifiers.items():
            _bump(self.modifiers, key, amount)
        for key, amount in delta.stress_response_modifiers.items():
            _bump(self.stress_responses, key, amount)


# ============================================================
# CREATURE STATE
# ============================================================

@dataclass
class CreatureState:
    creature_id: str
    physical: PhysicalState = field(default_factory=PhysicalState)
    abilities: AbilityState = field(default_factory=AbilityState)
    traits: TraitState = field(default_factory=TraitState)
    behavior: BehaviorState = field(default_factory=BehaviorState)

    def sub_states(self) -> Tuple[Validatable, ...]:
        return (self.physical, self.abilities, self.traits, self.behavior)

    def validate(self) -> List[ValidationIssue]:
        issues: List[ValidationIssue] = []
        for sub_state in self.sub_states():
            issues += sub_state.validate()
        for aid, ability in self.abilities.abilities.items():
            if ability.granted_by is not None and ability.granted_by not in self.traits.traits:
                issues.append(_error("dangling_grant",
                                     f"ability '{aid}' granted by missing trait '{ability.granted_by}'",
                                     aid))
        return issues

    def is_valid(self) -> bool:
        return not any(i.level >= ValidationLevel.ERROR for i in self.validate())

    def apply(self, change: "Change") -> ApplyReceipt:
        """Mutate in place. Callers validate first; unknown targets raise KeyError."""
        receipt = ApplyReceipt()
        if change.physical is not None:
            self.physical.apply(change.physical, receipt)
        if change.abilities is not None:
            self.abilities.apply(change.abilities, receipt)
        if change.traits is not None:
            self.traits.apply(change.traits, receipt)
        if change.behavior is not None:
            self.behavior.apply(change.behavior, receipt)
        return receipt

    def copy(self) -> "CreatureState":
        return copy.deepcopy(self)

    def snapshot(self) -> dict:
        """Plain-dict view for logging and narrative output."""
        return {
            "creature_id": self.creature_id,
            "size": self.physical.size,
            "shape": self.physical.shape,
            "features": sorted(self.physical.features),
            "traits": {tid: t.form for tid, t in self.traits.traits.items()},
            "abilities": sorted(self.abilities.abilities),
            "behaviors": sorted(self.behavior.behaviors),
        }
