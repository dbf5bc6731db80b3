"""
Morphos - tests/test_synthesis_rules.py
Rule registry lookups, requirement evaluation and stability curve.
"""

import pytest
from pydantic import ValidationError

from morphos.config import StabilityFactors
from morphos.synthesis_rules import (
    CatalystType,
    SynthesisOutcome,
    SynthesisRequirement,
    SynthesisRule,
    SynthesisRuleRegistry,
)


def test_lookup_by_source_catalyst_and_target(rules):
    rule = rules.get("claws", CatalystType.ENVIRONMENTAL, "venom-claws")
    assert rule is not None
    assert rule.result.granted_abilities == ["venomous_strike"]
    assert rules.get("claws", "environmental", "venom-claws") is rule
    assert rules.get("claws", CatalystType.STRESS, "venom-claws") is None


def test_possible_targets_and_paths(rules):
    rules.register(SynthesisRule(source_form="claws", catalyst_type=CatalystType.ENVIRONMENTAL,
                                 target_form="ice-claws"))
    assert sorted(rules.possible_targets("claws", CatalystType.ENVIRONMENTAL)) == ["ice-claws", "venom-claws"]
    assert rules.has_path("hide", CatalystType.STRESS)
    assert not rules.has_path("hide", CatalystType.THEMATIC)
    assert rules.possible_targets("wings", CatalystType.FORCED) == []


def test_registering_same_key_replaces_rule(rules):
    replacement = SynthesisRule(
        source_form="claws", catalyst_type=CatalystType.ENVIRONMENTAL, target_form="venom-claws",
        requirement=SynthesisRequirement(min_intensity=0.9),
    )
    rules.register(replacement)
    assert len(rules) == 2
    assert rules.get("claws", CatalystType.ENVIRONMENTAL, "venom-claws").requirement.min_intensity == 0.9


def test_rule_without_outcome_defaults_to_target_form():
    rule = SynthesisRule(source_form="hide", catalyst_type=CatalystType.STRESS, target_form="scaled_hide")
    assert rule.result == SynthesisOutcome(result_form="scaled_hide")
    assert rule.key == ("hide", CatalystType.STRESS, "scaled_hide")


@pytest.mark.parametrize("intensity, stability, level, traits, expected", [
    (0.6, 0.6, 1, ["claws"], True),
    (0.4, 0.6, 1, ["claws"], False),
    (0.6, 0.4, 1, ["claws"], False),
    (0.6, 0.6, 0, ["claws"], False),
    (0.6, 0.6, 1, ["hide"], False),
])
def test_requirement_evaluation(intensity, stability, level, traits, expected):
    req = SynthesisRequirement(min_intensity=0.5, min_stability=0.5, min_level=1, required_traits=["claws"])
    assert req.evaluate(intensity, stability, level, traits) is expected


def test_environment_restriction():
    assert SynthesisRequirement().allows_environment("anywhere")
    req = SynthesisRequirement(environments=["swamp"])
    assert req.allows_environment("swamp")
    assert not req.allows_environment("volcanic")


def test_stability_curve_is_clamped():
    registry = SynthesisRuleRegistry(stability=StabilityFactors(
        base_stability=1.0, catalyst_multiplier=1.0, level_penalty=0.25, min_stability=0.2,
    ))
    assert registry.calculate_stability(0) == 1.0
    assert registry.calculate_stability(2) == pytest.approx(0.5)
    assert registry.calculate_stability(10) == 0.2

    boosted = SynthesisRuleRegistry(stability=StabilityFactors(catalyst_multiplier=1.5))
    assert boosted.calculate_stability(0) == 1.0


def test_rules_are_immutable(rules):
    rule = rules.rules()[0]
    with pytest.raises(ValidationError):
        rule.target_form = "other"
