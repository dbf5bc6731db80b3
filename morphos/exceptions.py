"""
Morphos - morphos/exceptions.py
Exception hierarchy for programmer errors and bad configuration.
================================================================

Data-driven failures (validation, conflicts, synthesis failures) are
returned as result values by the engines and never raised. Exceptions
here cover broken inputs: unreadable config, missing data files,
queries for unknown creatures, and internal invariant guards.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class MorphosError(Exception):
    """Base exception. Carries an optional details dict rendered into the message."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v!r}" for k, v in self.details.items())
            return f"{self.message} [{detail_str}]"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, details={self.details!r})"


class ConfigError(MorphosError):
    """Raised when a config or data file fails schema validation."""

    def __init__(self, message: str, *, source_file: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None) -> None:
        combined = dict(details or {})
        if source_file:
            combined["source_file"] = source_file
        super().__init__(message, details=combined)


class DataNotFoundError(MorphosError, FileNotFoundError):
    """Raised when a single named TOML definition does not exist."""


class UnknownCreatureError(MorphosError, KeyError):
    """Raised when an engine is asked about a creature it never tracked."""

    def __init__(self, creature_id: str) -> None:
        self.creature_id = creature_id
        super().__init__("Unknown creature", details={"creature_id": creature_id})

    def __str__(self) -> str:
        return self.message if not self.details else self._format_message()


class IllegalTransitionError(MorphosError):
    """
    Internal guard for the synthesis stage graph.
    Public engine methods convert it into a SystemicFailure result.
    """

    def __init__(self, trait_id: str, stage_from: str, stage_to: str) -> None:
        self.trait_id = trait_id
        self.stage_from = stage_from
        self.stage_to = stage_to
        super().__init__(
            "Illegal synthesis stage transition",
            details={"trait_id": trait_id, "from": stage_from, "to": stage_to},
        )
