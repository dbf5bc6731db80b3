"""
Morphos - morphos/config.py
Design variables, config models, and runtime settings.
======================================================
Stack:       Python 3.11+ | Pydantic v2 | pydantic-settings | tomllib

Design Variables (all values configurable - do not hardcode)
-------------------------------------------------------------
  HISTORY_CAPACITY          100    - ChangeRecords kept before FIFO eviction
  CONFLICT_WINDOW           10     - most recent live records scanned for conflicts
  MIN_VALIDATION_LEVEL      "error" - issues at or above this level reject a change
  VALUE_PRECISION           6      - decimals kept on every numeric state write
  MIN_TRAIT_STRENGTH        0.1    - hard floor for trait strength
  MAX_TRAIT_STRENGTH        1.0
  MAX_ACTIVE_ABILITIES      10
  LETHAL_STRESS_THRESHOLD   0.9    - sum of lethal stressor intensities that kills
  STRESS_HISTORY_SIZE       200
  STABILIZING_THRESHOLD     0.67   - completion at which Forming -> Stabilizing
  SYNTHESIS_PROGRESS_RATE   0.25   - completion per unit time at catalyst strength 1
  STABILITY_DECAY_RATE      0.05   - stability loss per unit time at catalyst strength 0
  CRITICAL_STABILITY        0.1    - below this a Degrading synthesis goes Critical
  MIN_CATALYST_INTENSITY    0.05   - weaker catalysts fail with CatalystWeak
  MAX_SYNTHESIS_LEVEL       4
  SYNTHESIS_HISTORY_SIZE    50
  Stability factors         base 1.0, catalyst multiplier 1.0,
                            level penalty 0.1, min stability 0.2

Threshold stages are ordered MINOR_ADAPTATION < MAJOR_ADAPTATION <
SYNTHESIS_ENABLED < EXTINCTION_RISK < CRITICAL. Their default values are
representative, not tuned.
"""

from __future__ import annotations

import tomllib
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from morphos.exceptions import ConfigError

# ============================================================
# DESIGN VARIABLE DEFAULTS
# Change here or override via config TOML. Never hardcode elsewhere.
# ============================================================

HISTORY_CAPACITY: int = 100
CONFLICT_WINDOW: int = 10
MIN_VALIDATION_LEVEL: str = "error"
VALUE_PRECISION: int = 6

MIN_TRAIT_STRENGTH: float = 0.1
MAX_TRAIT_STRENGTH: float = 1.0
MAX_ACTIVE_ABILITIES: int = 10

LETHAL_STRESS_THRESHOLD: float = 0.9
STRESS_HISTORY_SIZE: int = 200

STABILIZING_THRESHOLD: float = 0.67
SYNTHESIS_PROGRESS_RATE: float = 0.25
STABILITY_DECAY_RATE: float = 0.05
CRITICAL_STABILITY: float = 0.1
MIN_CATALYST_INTENSITY: float = 0.05
MAX_SYNTHESIS_LEVEL: int = 4
SYNTHESIS_HISTORY_SIZE: int = 50

BASE_STABILITY: float = 1.0
CATALYST_MULTIPLIER: float = 1.0
LEVEL_PENALTY: float = 0.1
MIN_STABILITY: float = 0.2


class ThresholdType(str, Enum):
    MINOR_ADAPTATION = "minor_adaptation"
    MAJOR_ADAPTATION = "major_adaptation"
    SYNTHESIS_ENABLED = "synthesis_enabled"
    EXTINCTION_RISK = "extinction_risk"
    CRITICAL = "critical"


THRESHOLD_ORDER: List[ThresholdType] = [
    ThresholdType.MINOR_ADAPTATION,
    ThresholdType.MAJOR_ADAPTATION,
    ThresholdType.SYNTHESIS_ENABLED,
    ThresholdType.EXTINCTION_RISK,
    ThresholdType.CRITICAL,
]


# ============================================================
# CONFIG MODELS
# ============================================================

class ThresholdConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: ThresholdType
    value: float = Field(ge=0.0, le=1.0)
    duration: float = Field(default=0.0, ge=0.0)
    requires_continuous: bool = True
    effects: List[str] = Field(default_factory=list)


def default_thresholds() -> List[ThresholdConfig]:
    return [
        ThresholdConfig(type=ThresholdType.MINOR_ADAPTATION, value=0.2, duration=3.0,
                        requires_continuous=False, effects=["trait_pressure"]),
        ThresholdConfig(type=ThresholdType.MAJOR_ADAPTATION, value=0.4, duration=5.0,
                        requires_continuous=False, effects=["adaptation_trigger"]),
        ThresholdConfig(type=ThresholdType.SYNTHESIS_ENABLED, value=0.6, duration=3.0,
                        effects=["synthesis_catalyst"]),
        ThresholdConfig(type=ThresholdType.EXTINCTION_RISK, value=0.85, duration=5.0,
                        effects=["population_risk"]),
        ThresholdConfig(type=ThresholdType.CRITICAL, value=0.95, duration=3.0,
                        effects=["extinction"]),
    ]


class ChangeEngineConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    history_capacity: int = Field(default=HISTORY_CAPACITY, ge=1)
    conflict_window: int = Field(default=CONFLICT_WINDOW, ge=0)
    min_validation_level: Literal["warning", "error", "critical"] = MIN_VALIDATION_LEVEL


class StressConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    lethal_threshold: float = Field(default=LETHAL_STRESS_THRESHOLD, ge=0.0)
    history_size: int = Field(default=STRESS_HISTORY_SIZE, ge=2)
    thresholds: List[ThresholdConfig] = Field(default_factory=default_thresholds)

    @model_validator(mode="after")
    def _check_threshold_order(self) -> "StressConfig":
        by_type = {t.type: t for t in self.thresholds}
        if len(by_type) != len(self.thresholds):
            raise ValueError("duplicate threshold type")
        values = [by_type[t].value for t in THRESHOLD_ORDER if t in by_type]
        if values != sorted(values):
            raise ValueError("threshold values must follow threshold order")
        return self


class StabilityFactors(BaseModel):
    model_config = ConfigDict(frozen=True)

    base_stability: float = BASE_STABILITY
    catalyst_multiplier: float = CATALYST_MULTIPLIER
    level_penalty: float = LEVEL_PENALTY
    min_stability: float = Field(default=MIN_STABILITY, ge=0.0, le=1.0)


class SynthesisConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    stabilizing_threshold: float = Field(default=STABILIZING_THRESHOLD, gt=0.0, le=1.0)
    progress_rate: float = Field(default=SYNTHESIS_PROGRESS_RATE, ge=0.0)
    stability_decay_rate: float = Field(default=STABILITY_DECAY_RATE, ge=0.0)
    critical_stability: float = Field(default=CRITICAL_STABILITY, ge=0.0, le=1.0)
    min_catalyst_intensity: float = Field(default=MIN_CATALYST_INTENSITY, ge=0.0)
    max_synthesis_level: int = Field(default=MAX_SYNTHESIS_LEVEL, ge=0)
    history_size: int = Field(default=SYNTHESIS_HISTORY_SIZE, ge=1)
    stability: StabilityFactors = Field(default_factory=StabilityFactors)


class SimulationConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    changes: ChangeEngineConfig = Field(default_factory=ChangeEngineConfig)
    stress: StressConfig = Field(default_factory=StressConfig)
    synthesis: SynthesisConfig = Field(default_factory=SynthesisConfig)


def load_simulation_config(path: Path) -> SimulationConfig:
    """Load a SimulationConfig from TOML. Missing sections keep their defaults."""
    if not path.exists():
        raise ConfigError("Config file not found", source_file=str(path))

    with open(path, "rb") as f:
        try:
            data = tomllib.load(f)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Malformed TOML: {exc}", source_file=str(path)) from exc

    try:
        return SimulationConfig(**data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid simulation config: {exc}", source_file=str(path)) from exc


# ============================================================
# RUNTIME SETTINGS (environment driven)
# ============================================================

class RuntimeSettings(BaseSettings):
    """
    Process-level knobs read from MORPHOS_* environment variables.

    MORPHOS_LOG_LEVEL     DEBUG | INFO | WARNING | ERROR
    MORPHOS_JSON_LOGS     emit JSON log lines instead of console output
    MORPHOS_DATA_DIR      root of the TOML seed data
    MORPHOS_CONFIG_PATH   optional SimulationConfig TOML
    """

    model_config = SettingsConfigDict(env_prefix="MORPHOS_", extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    json_logs: bool = False
    data_dir: Path = Path(__file__).parent.parent / "data"
    config_path: Optional[Path] = None


@lru_cache(maxsize=1)
def get_settings() -> RuntimeSettings:
    return RuntimeSettings()


def clear_settings_cache() -> None:
    get_settings.cache_clear()


def resolve_simulation_config(settings: Optional[RuntimeSettings] = None) -> SimulationConfig:
    """Config from MORPHOS_CONFIG_PATH when set, defaults otherwise."""
    settings = settings or get_settings()
    if settings.config_path is None:
        return SimulationConfig()
    return load_simulation_config(settings.config_path)
