"""
Morphos - morphos/narrative.py
NarrativeGenerator: Translates engine events into human-readable prose.
"""

from typing import Dict, List, Optional

from morphos.events import (
    EVT_BATCH_COMMITTED,
    EVT_BATCH_DISCARDED,
    EVT_CHANGE_APPLIED,
    EVT_CHANGE_CONFLICTING,
    EVT_CHANGE_REJECTED,
    EVT_CHANGE_UNDONE,
    EVT_STRESS_EXTINCTION,
    EVT_STRESS_THRESHOLD,
    EVT_SYNTHESIS_COMPLETED,
    EVT_SYNTHESIS_FAILED,
    EVT_SYNTHESIS_LOST,
    EVT_SYNTHESIS_STAGE,
    CreatureEvent,
)

_THRESHOLD_PHRASES = {
    "minor_adaptation": "begins to strain against its surroundings",
    "major_adaptation": "is being reshaped by relentless pressure",
    "synthesis_enabled": "is primed for transformation",
    "extinction_risk": "teeters at the edge of collapse",
    "critical": "can endure no more",
}

def _pretty(token: Optional[str]) -> str:
    return (token or "something").replace("_", " ")

class NarrativeGenerator:
    @staticmethod
    def event_to_text(event: CreatureEvent, names: Optional[Dict[str, str]] = None) -> str:
        """Translates a single CreatureEvent into a sentence."""
        names = names or {}
        who = names.get(event.target or "", event.target or "Something")
        data = event.data
        etype = event.event_key

        # Stress
        if etype == EVT_STRESS_THRESHOLD:
            phrase = _THRESHOLD_PHRASES.get(data.get("threshold"), "feels the pressure mount")
            return f"{who} {phrase}."

        if etype == EVT_STRESS_EXTINCTION:
            if data.get("cause") == "lethal_exposure":
                return f"{who} succumbed to a lethal environment."
            return f"{who} has perished under unbearable stress."

        # Synthesis
        if etype == EVT_SYNTHESIS_STAGE:
            trait = _pretty(data.get("trait_id"))
            stage = data.get("stage_to")
            if stage == "initiating":
                return f"The {trait} of {who} stirs with change."
            if stage == "degrading":
                return f"The {trait} of {who} begins to lose its new shape."
            if stage == "critical":
                return f"The {trait} of {who} is on the verge of unravelling."
            if stage == "complete":
                return f"The {trait} of {who} takes its final shape."
            if stage == "none":
                if data.get("kind") == "reset":
                    return f"The {trait} of {who} is at rest in its new form."
                return f"The {trait} of {who} settles back into its old form."
            return f"The {trait} of {who} is {_pretty(stage)}."

        if etype == EVT_SYNTHESIS_COMPLETED:
            return (f"{who}'s {_pretty(data.get('source_form'))} "
                    f"has become {_pretty(data.get('result_form'))}.")

        if etype == EVT_SYNTHESIS_LOST:
            return f"{who} failed to hold the {_pretty(data.get('target_form'))} form."

        if etype == EVT_SYNTHESIS_FAILED:
            return f"{who} resisted change ({_pretty(data.get('failure'))})."

        # Changes
        if etype == EVT_CHANGE_APPLIED:
            desc = data.get("description") or "a change"
            return f"{who} underwent {desc}."

        if etype in (EVT_CHANGE_REJECTED, EVT_CHANGE_CONFLICTING):
            return f"A change to {who} was {_pretty(data.get('result'))}."

        if etype == EVT_CHANGE_UNDONE:
            return f"A change to {who} was reversed."

        if etype == EVT_BATCH_COMMITTED:
            return f"{len(data.get('applied', []))} changes took hold in {who}."

        if etype == EVT_BATCH_DISCARDED:
            return f"A set of changes to {who} fell apart."

        # Fallback
        return f"{who}: {etype}."

    @staticmethod
    def chronicle_to_text(events: List[CreatureEvent], names: Optional[Dict[str, str]] = None) -> List[str]:
        """Translates a sequence of events into narrative lines, skipping bookkeeping noise."""
        skip = {EVT_CHANGE_REJECTED, EVT_SYNTHESIS_FAILED}
        return [NarrativeGenerator.event_to_text(e, names) for e in events if e.event_key not in skip]
