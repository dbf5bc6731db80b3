"""
Morphos - tests/test_stress.py
Stress accumulation, resistance, dissipation and history.
"""

import pytest

from conftest import make_stressor
from morphos.config import StressConfig
from morphos.exceptions import UnknownCreatureError
from morphos.stress import StressEngine, StressHistory, StressorCatalog, StressorType


def _engine(*stressors, environments=None, config=None):
    catalog = StressorCatalog(stressors, environments=environments or {"desert": [s.id for s in stressors]})
    return StressEngine(catalog, config)


def test_intensity_reaches_one_after_five_ticks(thermal_catalog):
    engine = StressEngine(thermal_catalog)
    engine.register_creature("c1")
    for _ in range(5):
        engine.apply_exposure("c1", "desert", 1.0)
    assert engine.get_stress_state("c1").intensities["heat"] == pytest.approx(1.0)
    assert engine.calculate_effective_stress("c1") == pytest.approx(1.0)


def test_intensity_and_effective_stress_stay_clamped(thermal_catalog):
    engine = StressEngine(thermal_catalog)
    engine.register_creature("c1")
    for _ in range(12):
        level = engine.apply_exposure("c1", "desert", 1.0)
        assert 0.0 <= level <= 1.0
    snap = engine.get_stress_state("c1")
    assert snap.intensities["heat"] == 1.0
    assert snap.accumulated_level <= 1.0


def test_effective_stress_sums_across_stressors():
    engine = _engine(make_stressor("heat", rate=0.5), make_stressor("smoke", type="chemical", rate=0.7))
    engine.register_creature("c1")
    assert engine.apply_exposure("c1", "desert", 1.0) == 1.0


def test_initial_resistance_scales_accumulation():
    engine = _engine(make_stressor("heat", rate=0.2, base_resistance=0.5))
    engine.register_creature("c1")
    engine.apply_exposure("c1", "desert", 1.0)
    snap = engine.get_stress_state("c1")
    assert snap.intensities["heat"] == pytest.approx(0.1)
    assert snap.resistances["thermal"] == 0.5
    assert snap.effective_stress == pytest.approx(0.05)


def test_registered_resistances_override_the_stressor_default():
    engine = _engine(make_stressor("heat", rate=0.2, base_resistance=0.5))
    engine.register_creature("c1", {"thermal": 0.75})
    engine.apply_exposure("c1", "desert", 1.0)
    assert engine.get_stress_state("c1").intensities["heat"] == pytest.approx(0.05)


def test_resistance_grows_only_after_adaptation_threshold():
    engine = _engine(make_stressor("heat", rate=0.1, adaptation_threshold=2.0, acquisition_rate=0.1))
    engine.register_creature("c1")

    seen = []
    for _ in range(4):
        engine.apply_exposure("c1", "desert", 1.0)
        seen.append(engine.get_stress_state("c1").resistances["thermal"])

    assert seen == pytest.approx([0.0, 0.1, 0.2, 0.3])
    assert seen == sorted(seen)


def test_periodic_stressor_only_accumulates_when_active():
    famine = make_stressor("famine", type="resource", rate=0.3, continuous=False)
    engine = _engine(famine)
    engine.register_creature("c1")

    engine.apply_exposure("c1", "desert", 1.0)
    assert "famine" not in engine.get_stress_state("c1").intensities

    engine.apply_exposure("c1", "desert", 1.0, active_periodic={"famine"})
    assert engine.get_stress_state("c1").intensities["famine"] == pytest.approx(0.3)


def test_dissipation_skips_entries_exposed_this_tick(thermal_catalog):
    engine = StressEngine(thermal_catalog)
    engine.register_creature("c1")
    engine.apply_exposure("c1", "desert", 1.0)

    engine.dissipate("c1", 1.0)
    assert engine.get_stress_state("c1").intensities["heat"] == pytest.approx(0.2)

    engine.dissipate("c1", 1.0)
    assert engine.get_stress_state("c1").intensities["heat"] == pytest.approx(0.1)

    engine.dissipate("c1", 5.0)
    snap = engine.get_stress_state("c1")
    assert "heat" not in snap.intensities
    assert snap.effective_stress == 0.0


def test_decay_resistance_is_clamped():
    engine = _engine(make_stressor("heat", base_resistance=0.3))
    engine.register_creature("c1")
    engine.apply_exposure("c1", "desert", 1.0)
    assert engine.decay_resistance("c1", StressorType.THERMAL, 0.1) == pytest.approx(0.2)
    assert engine.decay_resistance("c1", "thermal", 5.0) == 0.0


def test_lethal_exposure_above_threshold():
    engine = _engine(make_stressor("lava", rate=0.5, lethal=True), config=StressConfig(lethal_threshold=0.9))
    engine.register_creature("c1")
    engine.apply_exposure("c1", "desert", 1.0)
    assert not engine.is_lethal("c1", "desert")
    engine.apply_exposure("c1", "desert", 1.0)
    assert engine.is_lethal("c1", "desert")


def test_non_lethal_stressors_never_kill(thermal_catalog):
    engine = StressEngine(thermal_catalog)
    engine.register_creature("c1")
    for _ in range(10):
        engine.apply_exposure("c1", "desert", 1.0)
    assert not engine.is_lethal("c1", "desert")


def test_dominant_stressor_uses_adjusted_contribution():
    engine = _engine(
        make_stressor("heat", rate=0.4, base_resistance=0.9),
        make_stressor("rivals", type="competition", rate=0.2),
    )
    engine.register_creature("c1")
    assert engine.dominant_stressor("c1") is None
    engine.apply_exposure("c1", "desert", 1.0)
    assert engine.dominant_stressor("c1") == "rivals"


def test_unknown_creature_raises(thermal_catalog):
    engine = StressEngine(thermal_catalog)
    with pytest.raises(UnknownCreatureError):
        engine.apply_exposure("ghost", "desert", 1.0)
    with pytest.raises(KeyError):
        engine.get_stress_state("ghost")


def test_removed_creature_is_forgotten(thermal_catalog):
    engine = StressEngine(thermal_catalog)
    engine.register_creature("c1")
    engine.remove_creature("c1")
    assert not engine.has_creature("c1")


# ----------------------------------------------------------
# Catalog
# ----------------------------------------------------------

def test_catalog_rejects_mapping_unknown_stressor(thermal_catalog):
    with pytest.raises(KeyError):
        thermal_catalog.map_to_environment("blizzard", "desert")


def test_catalog_remove_unmaps_stressor(thermal_catalog):
    thermal_catalog.remove("heat")
    assert "heat" not in thermal_catalog
    assert thermal_catalog.stressors_for("desert") == []
    assert thermal_catalog.stressors_for("tundra") == []


def test_catalog_unmap(thermal_catalog):
    thermal_catalog.unmap_from_environment("heat", "desert")
    assert thermal_catalog.stressors_for("desert") == []
    assert thermal_catalog.get("heat").type is StressorType.THERMAL


# ----------------------------------------------------------
# History
# ----------------------------------------------------------

def test_history_statistics():
    history = StressHistory(size=5)
    for level, primary in [(0.1, "heat"), (0.2, "heat"), (0.3, "rivals")]:
        history.record(level, primary)

    assert len(history) == 3
    assert history.average() == pytest.approx(0.2)
    assert history.peak() == pytest.approx(0.3)
    assert history.trend() == pytest.approx(0.1)
    assert history.predict_next() == pytest.approx(0.4)
    assert history.common_stressors(1) == ["heat"]


def test_history_is_bounded_and_detects_plateaus():
    history = StressHistory(size=4)
    for level in (0.9, 0.5, 0.5, 0.51, 0.5):
        history.record(level)
    assert len(history) == 4
    assert history.has_stabilized(window=4)
    assert not StressHistory(size=4).has_stabilized(window=4)


def test_empty_history_defaults():
    history = StressHistory(size=3)
    assert history.average() == 0.0
    assert history.trend() == 0.0
    assert history.predict_next() == 0.0
