"""
Morphos - morphos/change_engine.py
Transactional change engine: validate, resolve, apply, batch, undo.
===================================================================
Stack:       Python 3.11+ | threading | structlog

Architecture notes
------------------
- One ChangeEngine per creature. Every public mutating call runs under a
  single re-entrant lock; events are collected while the lock is held and
  emitted after it is released.
- Pipeline for a single change, in order:
    1. empty change                         -> REJECTED
    2. issues at or above min level,
       or any unappliable issue             -> REJECTED (no mutation)
    3. batch open                           -> PENDING
    4. conflict with a live record of
       strictly higher priority             -> CONFLICTING
       (otherwise the change wins and the conflicting records are
       marked superseded once it applies)
    5. projected state invalid              -> INVALID_STATE
    6. apply + record                       -> APPLIED, or PARTIAL when
                                               lesser issues were raised
- Changes submitted together (process_changes or a batch) are resolved
  against each other before any of them applies: losers are discarded
  whole and reported CONFLICTING. A conflict window of 0 disables all
  conflict checks.
- Batches resolve conflicts first, then project all survivors onto a copy
  of the state. An invalid projection discards the whole batch and leaves
  the state untouched.
- History is a bounded deque. Eviction drops the oldest record; every
  record still present keeps the receipt needed to invert it.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple

from morphos.changes import Change, ChangeResult, sort_by_priority
from morphos.config import ChangeEngineConfig
from morphos.events import (
    EVT_BATCH_COMMITTED,
    EVT_BATCH_DISCARDED,
    EVT_CHANGE_APPLIED,
    EVT_CHANGE_CONFLICTING,
    EVT_CHANGE_REJECTED,
    EVT_CHANGE_UNDONE,
    CreatureEvent,
    EventBus,
)
from morphos.log import get_logger
from morphos.state import ApplyReceipt, CreatureState
from morphos.validation import ValidationIssue, ValidationLevel, blocking_issues, validate_change

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _resolve_within(changes: List[Change], order: List[int]) -> Tuple[List[int], Set[int]]:
    """
    Resolve conflicts among changes submitted together. order must be sorted
    by descending priority with ties in arrival order. A strictly higher
    priority survivor beats a newcomer; otherwise the newcomer displaces the
    survivors it conflicts with. Returns (survivors in order, beaten).
    """
    survivors: List[int] = []
    beaten: Set[int] = set()
    for index in order:
        change = changes[index]
        rivals = [s for s in survivors if changes[s].conflicts_with(change)]
        if any(changes[s].priority > change.priority for s in rivals):
            beaten.add(index)
            continue
        for s in rivals:
            survivors.remove(s)
            beaten.add(s)
        survivors.append(index)
    return survivors, beaten


@dataclass(frozen=True)
class ChangeReport:
    change_id: str
    result: ChangeResult
    issues: Tuple[ValidationIssue, ...] = ()
    superseded: Tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.result in (ChangeResult.APPLIED, ChangeResult.PARTIAL)


@dataclass
class ChangeRecord:
    sequence: int
    change: Change
    receipt: ApplyReceipt
    applied_at: datetime
    reverted: bool = False
    superseded: bool = False

    @property
    def live(self) -> bool:
        return not (self.reverted or self.superseded)


class ChangeEngine:
    def __init__(
        self,
        config: Optional[ChangeEngineConfig] = None,
        bus: Optional[EventBus] = None,
        clock: Optional[Clock] = None,
        creature_id: Optional[str] = None,
    ) -> None:
        self.config = config or ChangeEngineConfig()
        self.bus = bus
        self.creature_id = creature_id
        self._clock = clock or _utc_now
        self._min_level = ValidationLevel.parse(self.config.min_validation_level)
        self._lock = threading.RLock()
        self._history: Deque[ChangeRecord] = deque(maxlen=self.config.history_capacity)
        self._sequence = 0
        self._in_batch = False
        self._pending: List[Change] = []
        self._batch_state: Optional[CreatureState] = None
        self.last_batch_reports: List[ChangeReport] = []

    # ----------------------------------------------------------
    # Single changes
    # ----------------------------------------------------------

    def process_change(self, state: CreatureState, change: Change) -> ChangeReport:
        outbox: List[CreatureEvent] = []
        with self._lock:
            report = self._process(state, change, outbox)
        self._emit(outbox)
        return report

    def process_changes(self, state: CreatureState, changes: Iterable[Change]) -> List[ChangeReport]:
        """
        One report per change, in input order. Changes are processed in
        descending priority (ties keep submission order), so a lower
        priority change never pre-empts a higher one later in the list.
        """
        changes = list(changes)
        outbox: List[CreatureEvent] = []
        reports: Dict[int, ChangeReport] = {}
        with self._lock:
            order = sort_by_priority(range(len(changes)), key=lambda i: changes[i])
            if self._in_batch or not self.config.conflict_window:
                contenders = []
            else:
                # Changes rejected outright take no part in resolution.
                contenders = [
                    i for i in order
                    if not changes[i].is_empty()
                    and not blocking_issues(validate_change(state, changes[i]), self._min_level)
                ]
            _, beaten = _resolve_within(changes, contenders)
            for index in order:
                if index in beaten:
                    reports[index] = self._reject(changes[index], ChangeResult.CONFLICTING, (), outbox)
                else:
                    reports[index] = self._process(state, changes[index], outbox)
        self._emit(outbox)
        return [reports[i] for i in range(len(changes))]

    def has_conflicting_changes(self, change: Change) -> bool:
        with self._lock:
            return any(r.change.conflicts_with(change) for r in self._conflict_window())

    def _process(self, state: CreatureState, change: Change,
                 outbox: List[CreatureEvent]) -> ChangeReport:
        issues = tuple(validate_change(state, change))
        if change.is_empty() or blocking_issues(issues, self._min_level):
            return self._reject(change, ChangeResult.REJECTED, issues, outbox)

        if self._in_batch:
            self._pending.append(change)
            if self._batch_state is None:
                self._batch_state = state
            return ChangeReport(change.id, ChangeResult.PENDING, issues)

        losers = self._losers_to(change)
        if losers is None:
            return self._reject(change, ChangeResult.CONFLICTING, issues, outbox)

        projected = state.copy()
        projected.apply(change)
        invalid = [i for i in projected.validate() if i.level >= ValidationLevel.ERROR]
        if invalid:
            return self._reject(change, ChangeResult.INVALID_STATE, issues + tuple(invalid), outbox)

        return self._commit(state, change, issues, losers, outbox)

    def _losers_to(self, change: Change) -> Optional[List[ChangeRecord]]:
        """Live records this change would supersede, or None if it loses."""
        losers = []
        for record in self._conflict_window():
            if not record.change.conflicts_with(change):
                continue
            if record.change.priority > change.priority:
                return None
            losers.append(record)
        return losers

    def _conflict_window(self) -> List[ChangeRecord]:
        live = [r for r in reversed(self._history) if r.live]
        return live[: self.config.conflict_window]

    def _commit(self, state: CreatureState, change: Change, issues: Tuple[ValidationIssue, ...],
                losers: List[ChangeRecord], outbox: List[CreatureEvent]) -> ChangeReport:
        receipt = state.apply(change)
        for record in losers:
            record.superseded = True
        self._sequence += 1
        self._history.append(ChangeRecord(
            sequence=self._sequence,
            change=change,
            receipt=receipt,
            applied_at=self._clock(),
        ))
        result = ChangeResult.PARTIAL if issues else ChangeResult.APPLIED
        report = ChangeReport(change.id, result, issues, tuple(r.change.id for r in losers))
        logger.info(
            "change_applied",
            creature_id=self.creature_id,
            change_id=change.id,
            result=result.value,
            source=change.source.value,
            priority=change.priority.name,
            superseded=list(report.superseded),
        )
        outbox.append(self._event(EVT_CHANGE_APPLIED, report, change))
        return report

    def _reject(self, change: Change, result: ChangeResult, issues: Tuple[ValidationIssue, ...],
                outbox: List[CreatureEvent]) -> ChangeReport:
        report = ChangeReport(change.id, result, issues)
        logger.info(
            "change_rejected",
            creature_id=self.creature_id,
            change_id=change.id,
            result=result.value,
            issues=[i.code for i in issues],
        )
        key = EVT_CHANGE_CONFLICTING if result is ChangeResult.CONFLICTING else EVT_CHANGE_REJECTED
        outbox.append(self._event(key, report, change))
        return report

    # ----------------------------------------------------------
    # Batches
    # ----------------------------------------------------------

    @property
    def in_batch(self) -> bool:
        return self._in_batch

    def pending_changes(self) -> Tuple[Change, ...]:
        with self._lock:
            return tuple(self._pending)

    def start_batch(self) -> None:
        with self._lock:
            self._in_batch = True

    def rollback_batch(self) -> None:
        with self._lock:
            dropped = len(self._pending)
            self._reset_batch()
        logger.info("batch_rolled_back", creature_id=self.creature_id, dropped=dropped)

    def _reset_batch(self) -> None:
        self._in_batch = False
        self._pending = []
        self._batch_state = None

    def commit_batch(self, state: Optional[CreatureState] = None) -> bool:
        """
        Resolve, project and apply every pending change as one transaction.
        Returns False, leaving state untouched, when the projected post-batch
        state is invalid. Per-change outcomes land in last_batch_reports.
        """
        outbox: List[CreatureEvent] = []
        with self._lock:
            if not self._in_batch:
                return False
            pending = self._pending
            target = state if state is not None else self._batch_state
            self._reset_batch()
            if not pending:
                self.last_batch_reports = []
                return True
            committed = self._commit_pending(target, pending, outbox)
        self._emit(outbox)
        return committed

    def _commit_pending(self, state: CreatureState, pending: List[Change],
                        outbox: List[CreatureEvent]) -> bool:
        reports: Dict[int, ChangeReport] = {}

        # Conflict resolution against history, then among the batch itself.
        contenders: List[int] = []
        losers: Dict[int, List[ChangeRecord]] = {}
        for index in sort_by_priority(range(len(pending)), key=lambda i: pending[i]):
            history_losers = self._losers_to(pending[index])
            if history_losers is None:
                reports[index] = ChangeReport(pending[index].id, ChangeResult.CONFLICTING)
                continue
            contenders.append(index)
            losers[index] = history_losers
        if self.config.conflict_window:
            survivors, beaten = _resolve_within(pending, contenders)
        else:
            survivors, beaten = contenders, set()
        for index in beaten:
            reports[index] = ChangeReport(pending[index].id, ChangeResult.CONFLICTING)

        # Projection of the survivors onto a copy.
        projected = state.copy()
        applied: List[int] = []
        issues_for: Dict[int, Tuple[ValidationIssue, ...]] = {}
        for index in survivors:
            change = pending[index]
            issues = tuple(validate_change(projected, change))
            if blocking_issues(issues, self._min_level):
                reports[index] = ChangeReport(change.id, ChangeResult.REJECTED, issues)
                continue
            projected.apply(change)
            applied.append(index)
            issues_for[index] = issues

        invalid = tuple(i for i in projected.validate() if i.level >= ValidationLevel.ERROR)
        if invalid:
            for index in applied:
                reports[index] = ChangeReport(pending[index].id, ChangeResult.INVALID_STATE, invalid)
            self.last_batch_reports = [reports[i] for i in range(len(pending))]
            logger.warning(
                "batch_discarded",
                creature_id=self.creature_id,
                size=len(pending),
                issues=[i.code for i in invalid],
            )
            outbox.append(CreatureEvent(
                event_key=EVT_BATCH_DISCARDED,
                source="change_engine",
                target=self.creature_id,
                data={"size": len(pending), "issues": [i.as_dict() for i in invalid]},
            ))
            return False

        for index in applied:
            change = pending[index]
            live_losers = [r for r in losers[index] if r.live]
            reports[index] = self._commit(state, change, issues_for[index], live_losers, outbox)
        self.last_batch_reports = [reports[i] for i in range(len(pending))]
        logger.info(
            "batch_committed",
            creature_id=self.creature_id,
            size=len(pending),
            applied=len(applied),
        )
        outbox.append(CreatureEvent(
            event_key=EVT_BATCH_COMMITTED,
            source="change_engine",
            target=self.creature_id,
            data={"size": len(pending), "applied": [pending[i].id for i in applied]},
        ))
        return True

    # ----------------------------------------------------------
    # Undo
    # ----------------------------------------------------------

    def _last_unreverted(self) -> Optional[ChangeRecord]:
        for record in reversed(self._history):
            if not record.reverted:
                return record
        return None

    def can_undo(self) -> bool:
        with self._lock:
            record = self._last_unreverted()
            return record is not None and record.change.generate_undo(record.receipt) is not None

    def undo(self, state: CreatureState) -> bool:
        """Invert the most recent non-reverted record. False leaves everything untouched."""
        outbox: List[CreatureEvent] = []
        with self._lock:
            record = self._last_unreverted()
            if record is None:
                return False
            inverse = record.change.generate_undo(record.receipt)
            if inverse is None:
                logger.info("undo_unavailable", creature_id=self.creature_id,
                            change_id=record.change.id)
                return False
            issues = validate_change(state, inverse)
            if blocking_issues(issues, ValidationLevel.ERROR):
                return False
            projected = state.copy()
            projected.apply(inverse)
            if not projected.is_valid():
                return False
            state.apply(inverse)
            record.reverted = True
            logger.info("change_undone", creature_id=self.creature_id, change_id=record.change.id)
            outbox.append(CreatureEvent(
                event_key=EVT_CHANGE_UNDONE,
                source="change_engine",
                target=self.creature_id,
                data={"change_id": record.change.id, "sequence": record.sequence},
            ))
        self._emit(outbox)
        return True

    # ----------------------------------------------------------
    # History queries
    # ----------------------------------------------------------

    def get_history(self) -> List[ChangeRecord]:
        with self._lock:
            return list(self._history)

    def get_recent_changes(self, count: int = 10) -> List[Change]:
        """Most recent applied changes, oldest first."""
        with self._lock:
            records = list(self._history)[-count:] if count > 0 else []
            return [r.change for r in records]

    def clear_history(self) -> None:
        with self._lock:
            self._history.clear()

    def reset(self) -> None:
        """Drop history and any open batch. Called when the creature is destroyed."""
        with self._lock:
            self._history.clear()
            self._reset_batch()
            self.last_batch_reports = []

    # ----------------------------------------------------------
    # Events
    # ----------------------------------------------------------

    def _event(self, key: str, report: ChangeReport, change: Change) -> CreatureEvent:
        return CreatureEvent(
            event_key=key,
            source="change_engine",
            target=self.creature_id,
            data={
                "change_id": report.change_id,
                "result": report.result.value,
                "source": change.source.value,
                "priority": change.priority.name,
                "description": change.metadata.description,
                "issues": [i.as_dict() for i in report.issues],
                "superseded": list(report.superseded),
            },
        )

    def _emit(self, events: List[CreatureEvent]) -> None:
        if self.bus is None:
            return
        for event in events:
            self.bus.emit(event)
