"""
Morphos - morphos/synthesis_rules.py
Declarative synthesis paths: (source form, catalyst, target form) -> rule.
==========================================================================
Stack:       Python 3.11+ | Pydantic v2

Rules are immutable once registered. The registry is a pure lookup and
evaluation layer; it never holds per-creature state.

Stability for a completed synthesis at a given level:
    clamp(base_stability * catalyst_multiplier - level_penalty * level,
          min_stability, 1)
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from morphos.config import StabilityFactors


class CatalystType(str, Enum):
    ENVIRONMENTAL = "environmental"
    STRESS = "stress"
    THEMATIC = "thematic"
    FORCED = "forced"
    EXTERNAL = "external"


class SynthesisRequirement(BaseModel):
    model_config = ConfigDict(frozen=True)

    min_intensity: float = Field(default=0.0, ge=0.0)
    min_stability: float = Field(default=0.0, ge=0.0, le=1.0)
    min_level: int = Field(default=0, ge=0)
    required_traits: List[str] = Field(default_factory=list)
    environments: List[str] = Field(default_factory=list)     # empty = any

    def evaluate(self, intensity: float, stability: float, level: int,
                 available_traits: Sequence[str]) -> bool:
        available = set(available_traits)
        return (
            intensity >= self.min_intensity
            and stability >= self.min_stability
            and level >= self.min_level
            and all(t in available for t in self.required_traits)
        )

    def allows_environment(self, environment_id: str) -> bool:
        return not self.environments or environment_id in self.environments


class SynthesisOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    result_form: str
    granted_abilities: List[str] = Field(default_factory=list)
    stability_modifier: float = Field(default=1.0, ge=0.0)
    suppressed_traits: List[str] = Field(default_factory=list)


class SynthesisRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    source_form: str
    catalyst_type: CatalystType
    target_form: str
    requirement: SynthesisRequirement = Field(default_factory=SynthesisRequirement)
    outcome: Optional[SynthesisOutcome] = None

    @property
    def key(self) -> Tuple[str, CatalystType, str]:
        return (self.source_form, self.catalyst_type, self.target_form)

    @property
    def result(self) -> SynthesisOutcome:
        """Outcome, defaulting to the target form with no side effects."""
        return self.outcome or SynthesisOutcome(result_form=self.target_form)


RuleKey = Tuple[str, CatalystType, str]


class SynthesisRuleRegistry:
    def __init__(self, rules: Iterable[SynthesisRule] = (),
                 stability: Optional[StabilityFactors] = None) -> None:
        self.stability = stability or StabilityFactors()
        self._rules: Dict[RuleKey, SynthesisRule] = {}
        for rule in rules:
            self.register(rule)

    def __len__(self) -> int:
        return len(self._rules)

    def register(self, rule: SynthesisRule) -> None:
        """Register a path. A second rule for the same key replaces the first."""
        self._rules[rule.key] = rule

    def get(self, source_form: str, catalyst_type: CatalystType,
            target_form: str) -> Optional[SynthesisRule]:
        return self._rules.get((source_form, CatalystType(catalyst_type), target_form))

    def possible_targets(self, source_form: str, catalyst_type: CatalystType) -> List[str]:
        catalyst_type = CatalystType(catalyst_type)
        return [
            target for (source, catalyst, target) in self._rules
            if source == source_form and catalyst is catalyst_type
        ]

    def has_path(self, source_form: str, catalyst_type: CatalystType) -> bool:
        return bool(self.possible_targets(source_form, catalyst_type))

    def rules(self) -> List[SynthesisRule]:
        return list(self._rules.values())

    def calculate_stability(self, synthesis_level: int) -> float:
        f = self.stability
        raw = f.base_stability * f.catalyst_multiplier - f.level_penalty * synthesis_level
        return max(f.min_stability, min(1.0, raw))
