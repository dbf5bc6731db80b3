"""
Morphos - morphos/validation.py
Validation levels, issues, and pre-application change checks.
=============================================================

A Change is checked against the state it is about to touch. Issues carry a
level; the change engine rejects changes whose worst issue reaches its
configured minimum level and applies the rest (PARTIAL when lesser issues
were raised). Issues in UNAPPLIABLE_CODES always reject.

  SUCCESS   nothing to report
  WARNING   the effect is a no-op (adding a present member, removing an
            absent one)
  ERROR     the effect cannot be applied (unknown target, self-conflict)
  CRITICAL  the change is malformed (empty, non-finite values)

State invariants (ranges, relationships) are not checked here. The change
engine projects the change onto a copy and validates the result.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import TYPE_CHECKING, Iterable, List, Protocol, Set

if TYPE_CHECKING:
    from morphos.changes import Change
    from morphos.state import CreatureState


class ValidationLevel(IntEnum):
    SUCCESS = 0
    WARNING = 1
    ERROR = 2
    CRITICAL = 3

    @classmethod
    def parse(cls, name: str) -> "ValidationLevel":
        return cls[name.upper()]


@dataclass(frozen=True)
class ValidationIssue:
    level: ValidationLevel
    code: str
    message: str
    target: str = ""

    def as_dict(self) -> dict:
        return {
            "level": self.level.name.lower(),
            "code": self.code,
            "message": self.message,
            "target": self.target,
        }


class Validatable(Protocol):
    def validate(self) -> List[ValidationIssue]: ...


# Effects that cannot be applied at all. These block a change whatever the
# configured minimum level is.
UNAPPLIABLE_CODES = frozenset({
    "unknown_target",
    "not_consumable",
    "self_conflict",
    "duplicate_addition",
})


def blocking_issues(issues: Iterable[ValidationIssue],
                    min_level: ValidationLevel) -> List[ValidationIssue]:
    """Issues that stop a change: at or above min_level, or unappliable."""
    return [i for i in issues if i.level >= min_level or i.code in UNAPPLIABLE_CODES]


def highest_level(issues: Iterable[ValidationIssue]) -> ValidationLevel:
    return max((i.level for i in issues), default=ValidationLevel.SUCCESS)


def _issue(level: ValidationLevel, code: str, message: str, target: str = "") -> ValidationIssue:
    return ValidationIssue(level=level, code=code, message=message, target=target)


def _check_set_members(kind: str, present: Set[str], add: Iterable[str],
                       remove: Iterable[str],
                       duplicate_level: ValidationLevel = ValidationLevel.WARNING) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    add, remove = set(add), set(remove)
    for name in sorted(add & remove):
        issues.append(_issue(ValidationLevel.ERROR, "self_conflict",
                             f"{kind} '{name}' is both added and removed", name))
    for name in sorted(add - remove):
        if name in present:
            issues.append(_issue(duplicate_level, "already_present",
                                 f"{kind} '{name}' is already present", name))
    for name in sorted(remove - add):
        if name not in present:
            issues.append(_issue(ValidationLevel.WARNING, "not_present",
                                 f"{kind} '{name}' is not present", name))
    return issues


def _check_targets(kind: str, known: Set[str], names: Iterable[str]) -> List[ValidationIssue]:
    return [
        _issue(ValidationLevel.ERROR, "unknown_target", f"unknown {kind} '{name}'", name)
        for name in sorted(set(names))
        if name not in known
    ]


# ============================================================
# CHANGE VALIDATION
# ============================================================

def validate_change(state: "CreatureState", change: "Change") -> List[ValidationIssue]:
    """All issues raised by applying change to state. Does not touch state."""
    if change.is_empty():
        return [_issue(ValidationLevel.CRITICAL, "empty_change", "change has no effects")]
    if change.has_non_finite_values():
        return [_issue(ValidationLevel.CRITICAL, "non_finite", "change carries NaN or infinite values")]

    issues: List[ValidationIssue] = []

    p = change.physical
    if p is not None:
        for name in ("size", "shape"):
            value = getattr(p, name)
            if value is not None and not value.strip():
                issues.append(_issue(ValidationLevel.ERROR, "blank_value",
                                     f"physical {name} cannot be blank", name))
        issues += _check_set_members("feature", state.physical.features,
                                     p.add_features, p.remove_features)

    a = change.abilities
    if a is not None:
        added_ids = [ab.id for ab in a.add_abilities]
        if len(added_ids) != len(set(added_ids)):
            issues.append(_issue(ValidationLevel.ERROR, "duplicate_addition",
                                 "ability added twice in one change"))
        present = set(state.abilities.abilities)
        issues += _check_set_members("ability", present, added_ids, a.remove_abilities,
                                     duplicate_level=ValidationLevel.ERROR)
        reachable = (present | set(added_ids)) - set(a.remove_abilities)
        issues += _check_targets("ability", reachable,
                                 [*a.power_modifiers, *a.toggle_active, *a.consume_charges])
        incoming = {ab.id: ab for ab in a.add_abilities}
        for aid, amount in sorted(a.consume_charges.items()):
            if amount <= 0:
                issues.append(_issue(ValidationLevel.ERROR, "bad_charge_amount",
                                     f"charge consumption for '{aid}' must be positive", aid))
            existing = incoming.get(aid) or state.abilities.abilities.get(aid)
            if existing is not None and existing.charges is None:
                issues.append(_issue(ValidationLevel.ERROR, "not_consumable",
                                     f"ability '{aid}' has no charges", aid))

    t = change.traits
    if t is not None:
        added_ids = [tr.id for tr in t.add_traits]
        if len(added_ids) != len(set(added_ids)):
            issues.append(_issue(ValidationLevel.ERROR, "duplicate_addition",
                                 "trait added twice in one change"))
        present = set(state.traits.traits)
        issues += _check_set_members("trait", present, added_ids, t.remove_traits,
                                     duplicate_level=ValidationLevel.ERROR)
        reachable = (present | set(added_ids)) - set(t.remove_traits)
        issues += _check_targets("trait", reachable, [
            *t.set_forms, *t.suppress_traits, *t.release_traits,
            *t.strength_modifiers, *t.stability_modifiers, *t.level_modifiers,
        ])
        for tid in sorted(t.suppress_traits & t.release_traits):
            issues.append(_issue(ValidationLevel.ERROR, "self_conflict",
                                 f"trait '{tid}' is both suppressed and released", tid))
        for tid, form in sorted(t.set_forms.items()):
            if not form.strip():
                issues.append(_issue(ValidationLevel.ERROR, "blank_value",
                                     f"form for trait '{tid}' cannot be blank", tid))

    b = change.behavior
    if b is not None:
        for name in ("intelligence", "aggression", "social_structure"):
            value = getattr(b, name)
            if value is not None and not value.strip():
                issues.append(_issue(ValidationLevel.ERROR, "blank_value",
                                     f"behavior {name} cannot be blank", name))
        issues += _check_set_members("behavior", state.behavior.behaviors,
                                     b.add_behaviors, b.remove_behaviors)

    return issues


def validate_state(state: "CreatureState") -> List[ValidationIssue]:
    return state.validate()
