"""
Morphos - morphos/changes.py
Change model: atomic, immutable deltas to creature state.
========================================================

Architecture notes
------------------
- A Change is four independently optional sub-deltas plus metadata.
  Emptiness is derived from presence alone: an empty sub-delta is
  normalised to None at construction, so there are no separate flags.
- Changes are immutable and handed around by value. Containers passed in
  are copied (dicts) or frozen (sets, tuples) in __post_init__.
- Conflicts are detected through claims: (target kind, target name) ->
  claimed value. Two changes conflict when they claim the same target
  with different values. Numeric modifiers are additive and never claim.
- Inverses are derived field by field from the Change and the receipt
  the state produced while applying it. Charge consumption is the only
  effect with no inverse.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field, fields, replace
from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Any, Callable, Dict, FrozenSet, Iterable, Optional, Tuple

if TYPE_CHECKING:
    from morphos.state import Ability, ApplyReceipt, Trait


class ChangeSource(str, Enum):
    ENVIRONMENT = "environment"
    EVOLUTION = "evolution"
    SYNTHESIS = "synthesis"
    STRESS = "stress"
    MANUAL = "manual"
    CORRECTION = "correction"


class ChangePriority(IntEnum):
    COSMETIC = 0
    LOW = 25
    NORMAL = 50
    HIGH = 75
    CRITICAL = 100


class ChangeResult(str, Enum):
    APPLIED = "applied"
    REJECTED = "rejected"
    PARTIAL = "partial"
    CONFLICTING = "conflicting"
    INVALID_STATE = "invalid_state"
    PENDING = "pending"


ADD = "add"
REMOVE = "remove"
TOGGLE = "toggle"

ClaimKey = Tuple[str, str]


def _new_change_id() -> str:
    return uuid.uuid4().hex[:12]


def _negate(modifiers: Dict[str, Any], skip: Iterable[str] = ()) -> Dict[str, Any]:
    skipped = set(skip)
    return {k: -v for k, v in modifiers.items() if k not in skipped}


# ============================================================
# METADATA
# ============================================================

@dataclass(frozen=True)
class ChangeMetadata:
    id: str = field(default_factory=_new_change_id)
    source: ChangeSource = ChangeSource.MANUAL
    priority: ChangePriority = ChangePriority.NORMAL
    description: str = ""
    tags: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "source", ChangeSource(self.source))
        object.__setattr__(self, "priority", ChangePriority(self.priority))
        object.__setattr__(self, "tags", tuple(self.tags))


# ============================================================
# SUB-DELTAS
# ============================================================

class _Delta:
    """Shared freezing and emptiness logic for the four sub-delta kinds."""

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, dict):
                object.__setattr__(self, f.name, dict(value))
            elif isinstance(value, (set, frozenset)):
                object.__setattr__(self, f.name, frozenset(value))
            elif isinstance(value, list):
                object.__setattr__(self, f.name, tuple(value))

    def is_empty(self) -> bool:
        return all(not getattr(self, f.name) for f in fields(self))

    def numeric_values(self) -> Iterable[float]:
        for f in fields(self):
            if f.name.endswith("_modifiers"):
                yield from getattr(self, f.name).values()


@dataclass(frozen=True)
class PhysicalDelta(_Delta):
    size: Optional[str] = None
    shape: Optional[str] = None
    add_features: FrozenSet[str] = frozenset()
    remove_features: FrozenSet[str] = frozenset()
    adaptability_modifiers: Dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class AbilityDelta(_Delta):
    add_abilities: Tuple["Ability", ...] = ()
    remove_abilities: FrozenSet[str] = frozenset()
    power_modifiers: Dict[str, float] = field(default_factory=dict)
    toggle_active: FrozenSet[str] = frozenset()
    consume_charges: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class TraitDelta(_Delta):
    add_traits: Tuple["Trait", ...] = ()
    remove_traits: FrozenSet[str] = frozenset()
    set_forms: Dict[str, str] = field(default_factory=dict)
    suppress_traits: FrozenSet[str] = frozenset()
    release_traits: FrozenSet[str] = frozenset()
    strength_modifiers: Dict[str, float] = field(default_factory=dict)
    stability_modifiers: Dict[str, float] = field(default_factory=dict)
    level_modifiers: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class BehaviorDelta(_Delta):
    intelligence: Optional[str] = None
    aggression: Optional[str] = None
    social_structure: Optional[str] = None
    add_behaviors: FrozenSet[str] = frozenset()
    remove_behaviors: FrozenSet[str] = frozenset()
    behavior_modifiers: Dict[str, float] = field(default_factory=dict)
    stress_response_modifiers: Dict[str, float] = field(default_factory=dict)


_BEHAVIOR_SET_FIELDS = ("intelligence", "aggression", "social_structure")
_PHYSICAL_SET_FIELDS = ("size", "shape")


# ============================================================
# CHANGE
# ============================================================

@dataclass(frozen=True)
class Change:
    metadata: ChangeMetadata = field(default_factory=ChangeMetadata)
    physical: Optional[PhysicalDelta] = None
    abilities: Optional[AbilityDelta] = None
    traits: Optional[TraitDelta] = None
    behavior: Optional[BehaviorDelta] = None

    def __post_init__(self) -> None:
        for name in ("physical", "abilities", "traits", "behavior"):
            delta = getattr(self, name)
            if delta is not None and delta.is_empty():
                object.__setattr__(self, name, None)

    @classmethod
    def create(cls, *, source: ChangeSource = ChangeSource.MANUAL,
               priority: ChangePriority = ChangePriority.NORMAL,
               description: str = "", tags: Iterable[str] = (),
               change_id: Optional[str] = None, **deltas: Any) -> "Change":
        """Convenience constructor: Change.create(traits=TraitDelta(...), priority=...)."""
        metadata = ChangeMetadata(
            id=change_id or _new_change_id(),
            source=source,
            priority=priority,
            description=description,
            tags=tuple(tags),
        )
        return cls(metadata=metadata, **deltas)

    @property
    def id(self) -> str:
        return self.metadata.id

    @property
    def priority(self) -> ChangePriority:
        return self.metadata.priority

    @property
    def source(self) -> ChangeSource:
        return self.metadata.source

    def is_empty(self) -> bool:
        return (self.physical is None and self.abilities is None
                and self.traits is None and self.behavior is None)

    def targets(self) -> FrozenSet[str]:
        """Names of the sub-states this change touches."""
        return frozenset(
            name for name in ("physical", "abilities", "traits", "behavior")
            if getattr(self, name) is not None
        )

    def has_non_finite_values(self) -> bool:
        for delta in (self.physical, self.abilities, self.traits, self.behavior):
            if delta is None:
                continue
            if any(not math.isfinite(v) for v in delta.numeric_values()):
                return True
        return False

    # ----------------------------------------------------------
    # Conflicts
    # ----------------------------------------------------------

    def claims(self) -> Dict[ClaimKey, Any]:
        out: Dict[ClaimKey, Any] = {}
        p = self.physical
        if p is not None:
            for name in _PHYSICAL_SET_FIELDS:
                if getattr(p, name) is not None:
                    out[("physical." + name, "")] = getattr(p, name)
            out.update({("feature", f): ADD for f in p.add_features})
            out.update({("feature", f): REMOVE for f in p.remove_features})
        a = self.abilities
        if a is not None:
            out.update({("ability", ab.id): ADD for ab in a.add_abilities})
            out.update({("ability", aid): REMOVE for aid in a.remove_abilities})
            out.update({("ability.active", aid): TOGGLE for aid in a.toggle_active})
        t = self.traits
        if t is not None:
            out.update({("trait", tr.id): ADD for tr in t.add_traits})
            out.update({("trait", tid): REMOVE for tid in t.remove_traits})
            out.update({("trait.form", tid): form for tid, form in t.set_forms.items()})
            out.update({("trait.suppressed", tid): True for tid in t.suppress_traits})
            out.update({("trait.suppressed", tid): False for tid in t.release_traits})
        b = self.behavior
        if b is not None:
            for name in _BEHAVIOR_SET_FIELDS:
                if getattr(b, name) is not None:
                    out[("behavior." + name, "")] = getattr(b, name)
            out.update({("behavior", x): ADD for x in b.add_behaviors})
            out.update({("behavior", x): REMOVE for x in b.remove_behaviors})
        return out

    def conflicts_with(self, other: "Change") -> bool:
        """True when both changes claim one target with incompatible values."""
        if not (self.targets() & other.targets()):
            return False
        mine = self.claims()
        theirs = other.claims()
        return any(key in theirs and theirs[key] != value for key, value in mine.items())

    # ----------------------------------------------------------
    # Undo
    # ----------------------------------------------------------

    def is_invertible(self) -> bool:
        """False when the only effects present are one-shot charge consumption."""
        if self.physical is not None or self.traits is not None or self.behavior is not None:
            return True
        if self.abilities is None:
            return False
        return not replace(self.abilities, consume_charges={}).is_empty()

    def generate_undo(self, receipt: Optional["ApplyReceipt"] = None) -> Optional["Change"]:
        """
        Structurally derive the inverse change.
        additions -> removals, removals -> re-additions of the receipt snapshots,
        numeric modifiers -> negation, toggles -> the same toggles,
        set-valued fields -> their previous values from the receipt.
        Returns None when nothing invertible remains.

        Without a receipt only purely additive changes (additions, modifiers,
        toggles) can be inverted.
        """
        if not self.is_invertible():
            return None
        if receipt is None:
            if self._needs_receipt():
                return None
            receipt = self._assumed_receipt()

        undo = Change(
            metadata=ChangeMetadata(
                id=f"undo-{self.id}",
                source=ChangeSource.CORRECTION,
                priority=self.priority,
                description=f"Undo: {self.metadata.description}".strip(),
                tags=self.metadata.tags + ("undo",),
            ),
            physical=self._undo_physical(receipt),
            abilities=self._undo_abilities(receipt),
            traits=self._undo_traits(receipt),
            behavior=self._undo_behavior(receipt),
        )
        return None if undo.is_empty() else undo

    def _needs_receipt(self) -> bool:
        p, a, t, b = self.physical, self.abilities, self.traits, self.behavior
        if p is not None and (p.remove_features or p.size is not None or p.shape is not None):
            return True
        if a is not None and a.remove_abilities:
            return True
        if t is not None and (t.remove_traits or t.set_forms or t.suppress_traits or t.release_traits):
            return True
        if b is not None and (b.remove_behaviors or any(getattr(b, n) is not None for n in _BEHAVIOR_SET_FIELDS)):
            return True
        return False

    def _assumed_receipt(self) -> "ApplyReceipt":
        from morphos.state import ApplyReceipt

        receipt = ApplyReceipt()
        if self.physical is not None:
            receipt.added_features = frozenset(self.physical.add_features)
        if self.abilities is not None:
            receipt.added_abilities = tuple(ab.id for ab in self.abilities.add_abilities)
        if self.traits is not None:
            receipt.added_traits = tuple(tr.id for tr in self.traits.add_traits)
        if self.behavior is not None:
            receipt.added_behaviors = frozenset(self.behavior.add_behaviors)
        return receipt

    def _undo_physical(self, r: "ApplyReceipt") -> Optional[PhysicalDelta]:
        p = self.physical
        if p is None:
            return None
        return PhysicalDelta(
            size=r.prior_values.get("size") if p.size is not None else None,
            shape=r.prior_values.get("shape") if p.shape is not None else None,
            add_features=r.removed_features,
            remove_features=r.added_features,
            adaptability_modifiers=_negate(p.adaptability_modifiers),
        )

    def _undo_abilities(self, r: "ApplyReceipt") -> Optional[AbilityDelta]:
        a = self.abilities
        if a is None:
            return None
        added = set(r.added_abilities)
        return AbilityDelta(
            add_abilities=r.removed_abilities,
            remove_abilities=frozenset(added),
            power_modifiers=_negate(a.power_modifiers, skip=added),
            toggle_active=frozenset(a.toggle_active - added),
        )

    def _undo_traits(self, r: "ApplyReceipt") -> Optional[TraitDelta]:
        t = self.traits
        if t is None:
            return None
        added = set(r.added_traits)
        return TraitDelta(
            add_traits=r.removed_traits,
            remove_traits=frozenset(added),
            set_forms={tid: form for tid, form in r.prior_forms.items() if tid not in added},
            suppress_traits=frozenset(r.released - added),
            release_traits=frozenset(r.suppressed - added),
            strength_modifiers=_negate(t.strength_modifiers, skip=added),
            stability_modifiers=_negate(t.stability_modifiers, skip=added),
            level_modifiers=_negate(t.level_modifiers, skip=added),
        )

    def _undo_behavior(self, r: "ApplyReceipt") -> Optional[BehaviorDelta]:
        b = self.behavior
        if b is None:
            return None
        restored = {
            name: r.prior_values.get(name)
            for name in _BEHAVIOR_SET_FIELDS
            if getattr(b, name) is not None
        }
        return BehaviorDelta(
            add_behaviors=r.removed_behaviors,
            remove_behaviors=r.added_behaviors,
            behavior_modifiers=_negate(b.behavior_modifiers),
            stress_response_modifiers=_negate(b.stress_response_modifiers),
            **restored,
        )


def sort_by_priority(items: Iterable[Any], key: Optional[Callable[[Any], Change]] = None) -> list:
    """Descending priority; ties keep submission order (sorted() is stable)."""
    key = key or (lambda c: c)
    return sorted(items, key=lambda item: key(item).priority, reverse=True)
