"""
Morphos - morphos/ecs/components.py
ECS Component Definitions for python-tcod-ecs.
==============================================
Stack:       Python 3.11+ | python-tcod-ecs

Besides the dataclasses below, each creature entity carries its
CreatureState, ChangeEngine and SynthesisEngine instances as components
keyed by their own classes.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Optional, Set

@dataclass
class CreatureIdentity:
    creature_id: str
    name: str
    template_origin: Optional[str] = None

@dataclass
class Habitat:
    environment_id: str
    periodic: Dict[str, int] = field(default_factory=dict)     # stressor id -> every N ticks
    active_periodic: Set[str] = field(default_factory=set)     # refreshed each tick

@dataclass
class Extinct:
    cause: str                      # "critical_stress" | "lethal_exposure"
    tick: int = 0
