"""
Morphos - run.py
Headless demo: spawns the seed creatures and narrates a short simulation.
"""

import argparse
import sys
from pathlib import Path

# Ensure we can import morphos packages
project_root = Path(__file__).parent.resolve()
sys.path.insert(0, str(project_root))

from morphos import data_loader
from morphos.config import get_settings, resolve_simulation_config
from morphos.ecs.components import CreatureIdentity
from morphos.events import EventRecorder
from morphos.log import clear_context, configure_logging
from morphos.loop import SimulationLoop
from morphos.narrative import NarrativeGenerator

def main(argv=None):
    parser = argparse.ArgumentParser(description="Run a headless Morphos simulation.")
    parser.add_argument("--ticks", type=int, default=40)
    parser.add_argument("--dt", type=float, default=1.0)
    parser.add_argument("creatures", nargs="*", default=["marsh_stalker", "ash_crawler"])
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(level=settings.log_level, json_format=settings.json_logs)
    data_loader.set_data_dir(settings.data_dir)

    sim = SimulationLoop(config=resolve_simulation_config(settings))
    recorder = EventRecorder(sim.bus)
    for template_id in args.creatures:
        sim.spawn_from_template(template_id)

    names = {
        e.components[CreatureIdentity].creature_id: e.components[CreatureIdentity].name
        for e in sim.registry.Q.all_of(components=[CreatureIdentity])
    }

    for _ in range(args.ticks):
        summary = sim.tick(args.dt)
        for line in NarrativeGenerator.chronicle_to_text(recorder.events, names):
            print(f"[{summary.tick:03d}] {line}")
        recorder.clear()

    clear_context()
    for cid, name in names.items():
        snap = sim.get_stress_state(cid)
        status = "extinct" if snap.extinct or sim.is_extinct(cid) else "alive"
        print(f"{name}: stress {snap.effective_stress:.2f} ({status})")

if __name__ == "__main__":
    main()
