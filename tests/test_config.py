"""
Morphos - tests/test_config.py
SimulationConfig TOML loading and MORPHOS_* runtime settings.
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from morphos.config import (
    HISTORY_CAPACITY,
    RuntimeSettings,
    SimulationConfig,
    ThresholdType,
    get_settings,
    load_simulation_config,
    resolve_simulation_config,
)
from morphos.exceptions import ConfigError

SEED_CONFIG = Path(__file__).parent.parent / "data" / "config.toml"


def test_defaults_match_design_variables():
    config = SimulationConfig()
    assert config.changes.history_capacity == HISTORY_CAPACITY
    assert config.changes.min_validation_level == "error"
    assert config.synthesis.stabilizing_threshold == 0.67
    assert [t.type for t in config.stress.thresholds][0] is ThresholdType.MINOR_ADAPTATION


def test_seed_config_loads():
    config = load_simulation_config(SEED_CONFIG)
    assert config == SimulationConfig()


def test_partial_toml_keeps_defaults(tmp_path):
    path = tmp_path / "sim.toml"
    path.write_text('[changes]\nhistory_capacity = 5\n\n[synthesis]\nprogress_rate = 0.5\n')
    config = load_simulation_config(path)
    assert config.changes.history_capacity == 5
    assert config.changes.conflict_window == 10
    assert config.synthesis.progress_rate == 0.5
    assert len(config.stress.thresholds) == 5


def test_missing_file_raises_config_error(tmp_path):
    with pytest.raises(ConfigError) as excinfo:
        load_simulation_config(tmp_path / "absent.toml")
    assert "source_file" in excinfo.value.details


def test_malformed_toml_raises_config_error(tmp_path):
    path = tmp_path / "broken.toml"
    path.write_text("[changes\nhistory_capacity = ")
    with pytest.raises(ConfigError, match="Malformed TOML"):
        load_simulation_config(path)


def test_invalid_values_raise_config_error(tmp_path):
    path = tmp_path / "bad.toml"
    path.write_text('[changes]\nmin_validation_level = "success"\n')
    with pytest.raises(ConfigError, match="Invalid simulation config"):
        load_simulation_config(path)


def test_config_models_are_frozen():
    config = SimulationConfig()
    with pytest.raises(ValidationError):
        config.changes = None


def test_settings_read_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("MORPHOS_LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("MORPHOS_JSON_LOGS", "true")
    monkeypatch.setenv("MORPHOS_DATA_DIR", str(tmp_path))
    settings = get_settings()
    assert settings.log_level == "DEBUG"
    assert settings.json_logs is True
    assert settings.data_dir == tmp_path
    assert get_settings() is settings


def test_resolve_without_config_path_uses_defaults():
    assert resolve_simulation_config(RuntimeSettings(config_path=None)) == SimulationConfig()


def test_resolve_with_config_path(tmp_path):
    path = tmp_path / "sim.toml"
    path.write_text("[stress]\nlethal_threshold = 0.5\n")
    config = resolve_simulation_config(RuntimeSettings(config_path=path))
    assert config.stress.lethal_threshold == 0.5
