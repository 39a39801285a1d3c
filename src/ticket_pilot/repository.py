from __future__ import annotations

from dataclasses import fields as dataclass_fields, replace
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Protocol

from ticket_pilot.domain.events import EventType, normalize_event_type
from ticket_pilot.domain.models import RunRecord, RunStatus, can_transition
from ticket_pilot.errors import RunNotFoundError, RunStateError

_MUTABLE_FIELDS = frozenset(
    f.name for f in dataclass_fields(RunRecord) if f.name not in {'run_id', 'created_at', 'input', 'status'}
)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def check_merge_fields(fields: dict[str, Any]) -> None:
    unknown = sorted(set(fields) - _MUTABLE_FIELDS)
    if unknown:
        raise ValueError(f'fields cannot be merged into a run record: {", ".join(unknown)}')


def apply_merge(record: RunRecord, fields: dict[str, Any]) -> RunRecord:
    check_merge_fields(fields)
    return replace(record, updated_at=_utc_now_iso(), **fields)


def apply_transition(record: RunRecord, status: RunStatus | str, fields: dict[str, Any]) -> RunRecord:
    target = RunStatus(status)
    if not can_transition(record.status, target):
        raise RunStateError(
            f'run {record.run_id} cannot move from {record.status.value} to {target.value}',
            run_id=record.run_id,
            status=record.status.value,
        )
    check_merge_fields(fields)
    return replace(record, status=target, updated_at=_utc_now_iso(), **fields)


class RunRepository(Protocol):
    def put(self, record: RunRecord) -> RunRecord:
        ...

    def get(self, run_id: str) -> RunRecord:
        ...

    def list_runs(self, *, limit: int = 100) -> list[RunRecord]:
        ...

    def merge_update(self, run_id: str, /, **fields: Any) -> RunRecord:
        """Replace the named fields of one run atomically; status is not mergeable."""
        ...

    def transition(self, run_id: str, status: RunStatus | str, /, **fields: Any) -> RunRecord:
        """Move a run to *status* along a legal edge, merging *fields* in the same step.

        Raises ``RunStateError`` when the edge is not allowed from the current status.
        """
        ...

    def append_event(self, run_id: str, *, event_type: str | EventType, payload: dict) -> dict:
        ...

    def list_events(self, run_id: str) -> list[dict]:
        ...


class InMemoryRunRepository:
    def __init__(self):
        self._lock = RLock()
        self.items: dict[str, RunRecord] = {}
        self.events: dict[str, list[dict]] = {}

    def put(self, record: RunRecord) -> RunRecord:
        with self._lock:
            stored = record if record.updated_at else replace(record, updated_at=record.created_at)
            self.items[record.run_id] = stored
            self.events.setdefault(record.run_id, [])
            return stored

    def get(self, run_id: str) -> RunRecord:
        with self._lock:
            record = self.items.get(run_id)
        if record is None:
            raise RunNotFoundError(run_id)
        return record

    def list_runs(self, *, limit: int = 100) -> list[RunRecord]:
        with self._lock:
            rows = list(self.items.values())
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return rows[:max(0, int(limit))]

    def merge_update(self, run_id: str, /, **fields: Any) -> RunRecord:
        with self._lock:
            updated = apply_merge(self.get(run_id), fields)
            self.items[run_id] = updated
            return updated

    def transition(self, run_id: str, status: RunStatus | str, /, **fields: Any) -> RunRecord:
        with self._lock:
            updated = apply_transition(self.get(run_id), status, fields)
            self.items[run_id] = updated
            return updated

    def append_event(self, run_id: str, *, event_type: str | EventType, payload: dict) -> dict:
        with self._lock:
            if run_id not in self.items:
                raise RunNotFoundError(run_id)
            events = self.events.setdefault(run_id, [])
            event = {
                'seq': len(events) + 1,
                'run_id': run_id,
                'type': normalize_event_type(event_type),
                'payload': dict(payload),
                'created_at': _utc_now_iso(),
            }
            events.append(event)
            return dict(event)

    def list_events(self, run_id: str) -> list[dict]:
        with self._lock:
            if run_id not in self.items:
                raise RunNotFoundError(run_id)
            return [dict(e) for e in self.events.get(run_id, [])]
