"""Schema propagation coordinator.

Remembers which (workflow, source, target, sheet) edges were propagated
recently so that noisy events do not re-propagate the same schema, and
collapses bursts of tracking calls behind a debounce timer. Also carries
the per-edge lock/backoff state used by SchemaPropagator.
"""

import asyncio
import time
from typing import Any, Callable, Dict, Optional, Tuple

from sheetflow.constants import DEFAULT_SHEET_NAME
from sheetflow.core.config import Settings
from sheetflow.core.logging import get_logger
from sheetflow.models.schema import (
    PropagationRecord,
    PropagationState,
    SchemaLike,
    normalize_workflow_id,
    schema_hash,
)

logger = get_logger(__name__)

MIN_DEBOUNCE_INTERVAL = 2.0
MAX_ERROR_BACKOFF = 60.0

PropagationKey = Tuple[str, str, str, str]


class PropagationCoordinator:
    """Dedup, debounce and scheduling state for schema propagation."""

    def __init__(self, settings: Optional[Settings] = None, clock: Callable[[], float] = time.time):
        settings = settings or Settings()
        self._clock = clock
        self.debounce_interval = max(settings.propagation_debounce_interval, MIN_DEBOUNCE_INTERVAL)
        self.default_max_age = settings.propagation_max_age
        self.cooldown = settings.propagation_cooldown
        self.include_types = settings.propagation_hash_types

        self._records: Dict[PropagationKey, PropagationRecord] = {}
        self._pending: Dict[PropagationKey, asyncio.TimerHandle] = {}
        self._pending_records: Dict[PropagationKey, PropagationRecord] = {}
        self._states: Dict[PropagationKey, PropagationState] = {}
        self._recorded_total = 0
        self._last_sweep = clock()

    @staticmethod
    def make_key(workflow_id: str, source_node_id: str, target_node_id: str,
                 sheet_name: Optional[str] = None) -> PropagationKey:
        return (
            normalize_workflow_id(workflow_id),
            source_node_id,
            target_node_id,
            sheet_name or DEFAULT_SHEET_NAME,
        )

    # =========================================================================
    # Dedup and debounce
    # =========================================================================

    def track_successful_propagation(self, workflow_id: str, source_node_id: str, target_node_id: str,
                                     sheet_name: Optional[str] = None,
                                     version: Optional[int] = None,
                                     schema: Optional[SchemaLike] = None,
                                     debounce: bool = False) -> None:
        """Record that a schema reached target from source.

        With debounce the write is deferred; a later call for the same key
        inside the window cancels the pending timer and replaces it.
        """
        key = self.make_key(workflow_id, source_node_id, target_node_id, sheet_name)
        record = PropagationRecord(
            source_node_id=source_node_id,
            target_node_id=target_node_id,
            sheet_name=sheet_name,
            timestamp=self._clock(),
            data_hash=schema_hash(schema, include_types=self.include_types),
            version=version,
        )

        if not debounce:
            self._cancel_pending(key)
            self._commit(key, record)
            return

        self._cancel_pending(key)
        loop = asyncio.get_running_loop()
        self._pending_records[key] = record
        self._pending[key] = loop.call_later(self.debounce_interval, self._flush_key, key)
        logger.debug("Propagation tracking debounced", key=":".join(key), interval=self.debounce_interval)

    def was_recently_propagated(self, workflow_id: str, source_node_id: str, target_node_id: str,
                                sheet_name: Optional[str] = None,
                                max_age: Optional[float] = None,
                                schema: Optional[SchemaLike] = None) -> bool:
        """True when a debounce is pending, a record is younger than max_age,
        or a record with the same schema hash is younger than twice max_age."""
        max_age = self.default_max_age if max_age is None else max_age
        key = self.make_key(workflow_id, source_node_id, target_node_id, sheet_name)

        if key in self._pending:
            return True

        record = self._records.get(key)
        if record is None:
            return False

        age = self._clock() - record.timestamp
        if age <= max_age:
            return True

        if schema is not None and record.data_hash and age <= 2 * max_age:
            return schema_hash(schema, include_types=self.include_types) == record.data_hash

        return False

    def _cancel_pending(self, key: PropagationKey) -> None:
        handle = self._pending.pop(key, None)
        if handle is not None:
            handle.cancel()
        self._pending_records.pop(key, None)

    def _flush_key(self, key: PropagationKey) -> None:
        self._pending.pop(key, None)
        record = self._pending_records.pop(key, None)
        if record is not None:
            # stamp at commit time so the dedup window starts when the burst settles
            record.timestamp = self._clock()
            self._commit(key, record)

    def _commit(self, key: PropagationKey, record: PropagationRecord) -> None:
        self._records[key] = record
        self._recorded_total += 1
        logger.debug("Propagation tracked", key=":".join(key), data_hash=record.data_hash)
        if record.timestamp - self._last_sweep >= self.default_max_age:
            self.sweep()

    def flush_pending(self) -> int:
        """Commit every pending debounced record now. Returns how many were flushed."""
        keys = list(self._pending)
        for key in keys:
            handle = self._pending[key]
            handle.cancel()
            self._flush_key(key)
        return len(keys)

    def get_record(self, workflow_id: str, source_node_id: str, target_node_id: str,
                   sheet_name: Optional[str] = None) -> Optional[PropagationRecord]:
        return self._records.get(self.make_key(workflow_id, source_node_id, target_node_id, sheet_name))

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def recorded_total(self) -> int:
        return self._recorded_total

    # =========================================================================
    # Scheduling (lock, cooldown, error backoff)
    # =========================================================================

    def _state(self, key: PropagationKey) -> PropagationState:
        state = self._states.get(key)
        if state is None:
            state = self._states[key] = PropagationState()
        return state

    def should_propagate(self, workflow_id: str, source_node_id: str, target_node_id: str,
                         sheet_name: Optional[str] = None, force: bool = False,
                         cooldown: Optional[float] = None) -> bool:
        """False while a propagation for the edge runs, inside the cooldown
        after the last attempt, or before an error backoff has elapsed."""
        if force:
            return True

        key = self.make_key(workflow_id, source_node_id, target_node_id, sheet_name)
        state = self._states.get(key)
        if state is None:
            return True
        if state.in_progress:
            return False

        now = self._clock()
        if state.next_retry_at is not None and now < state.next_retry_at:
            return False

        cooldown = self.cooldown if cooldown is None else cooldown
        if state.last_success is not None and now - state.last_success < cooldown:
            return False
        return True

    def mark_started(self, workflow_id: str, source_node_id: str, target_node_id: str,
                     sheet_name: Optional[str] = None) -> None:
        key = self.make_key(workflow_id, source_node_id, target_node_id, sheet_name)
        state = self._state(key)
        state.in_progress = True
        state.last_attempt = self._clock()

    def mark_success(self, workflow_id: str, source_node_id: str, target_node_id: str,
                     sheet_name: Optional[str] = None,
                     version: Optional[int] = None,
                     schema: Optional[SchemaLike] = None,
                     debounce: bool = False) -> None:
        key = self.make_key(workflow_id, source_node_id, target_node_id, sheet_name)
        state = self._state(key)
        state.in_progress = False
        state.last_success = self._clock()
        state.last_error = None
        state.retry_count = 0
        state.next_retry_at = None
        self.track_successful_propagation(
            workflow_id, source_node_id, target_node_id,
            sheet_name=sheet_name, version=version, schema=schema, debounce=debounce,
        )

    def mark_error(self, workflow_id: str, source_node_id: str, target_node_id: str,
                   error: str, sheet_name: Optional[str] = None) -> float:
        """Release the edge lock and schedule a retry. Returns the backoff in seconds."""
        key = self.make_key(workflow_id, source_node_id, target_node_id, sheet_name)
        state = self._state(key)
        backoff = min(1.0 * (2 ** state.retry_count), MAX_ERROR_BACKOFF)
        state.in_progress = False
        state.last_error = error
        state.retry_count += 1
        state.next_retry_at = self._clock() + backoff
        logger.warning("Propagation failed", key=":".join(key), error=error,
                       retry_count=state.retry_count, backoff=backoff)
        return backoff

    def sweep(self) -> int:
        """Forget records and edge states that can no longer change a decision.

        A record older than twice max_age suppresses nothing. A state is idle
        when it is not running, its backoff and cooldown have passed, and any
        error is older than twice the backoff ceiling. Returns the records removed.
        """
        now = self._clock()
        self._last_sweep = now
        horizon = 2 * self.default_max_age

        stale = [key for key, record in self._records.items() if now - record.timestamp > horizon]
        for key in stale:
            del self._records[key]

        def _idle(state: PropagationState) -> bool:
            if state.in_progress:
                return False
            if state.next_retry_at is not None and now < state.next_retry_at:
                return False
            if state.last_success is not None and now - state.last_success < self.cooldown:
                return False
            return state.last_error is None or now - state.last_attempt > 2 * MAX_ERROR_BACKOFF

        idle = [key for key, state in self._states.items() if _idle(state)]
        for key in idle:
            del self._states[key]

        if stale or idle:
            logger.debug("Propagation history swept", records=len(stale), states=len(idle))
        return len(stale)

    def clear_history(self, workflow_id: Optional[str] = None) -> int:
        """Forget records, pending timers and states of one workflow, or of all."""
        normalized = normalize_workflow_id(workflow_id) if workflow_id else None

        def _selected(key: PropagationKey) -> bool:
            return normalized is None or key[0] == normalized

        removed = 0
        for key in [k for k in self._pending if _selected(k)]:
            self._cancel_pending(key)
        for key in [k for k in self._records if _selected(k)]:
            del self._records[key]
            removed += 1
        for key in [k for k in self._states if _selected(k)]:
            del self._states[key]
        return removed

    def get_stats(self) -> Dict[str, Any]:
        now = self._clock()
        return {
            "records": len(self._records),
            "recorded_total": self._recorded_total,
            "pending_debounce": len(self._pending),
            "in_progress": sum(1 for s in self._states.values() if s.in_progress),
            "backing_off": sum(
                1 for s in self._states.values()
                if s.next_retry_at is not None and s.next_retry_at > now
            ),
        }
