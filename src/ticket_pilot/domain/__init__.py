from __future__ import annotations

from ticket_pilot.domain.events import EventType, normalize_event_type
from ticket_pilot.domain.gate import GateOutcome, evaluate_unit_test_gate
from ticket_pilot.domain.models import RunStatus, TrackerKind, can_transition

__all__ = [
    'EventType',
    'GateOutcome',
    'RunStatus',
    'TrackerKind',
    'can_transition',
    'evaluate_unit_test_gate',
    'normalize_event_type',
]
