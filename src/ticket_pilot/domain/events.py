from __future__ import annotations

from enum import Enum


class EventType(str, Enum):
    DECISION_RECORDED = 'decision_recorded'
    GATE_FAILED = 'gate_failed'
    GATE_PASSED = 'gate_passed'
    RESPONSE_REJECTED = 'response_rejected'
    RUN_FAILED = 'run_failed'
    RUN_FINISHED = 'run_finished'
    RUN_STARTED = 'run_started'
    STAGE_COMPLETED = 'stage_completed'
    STAGE_SKIPPED = 'stage_skipped'
    STAGE_STARTED = 'stage_started'
    STAGED_EDITS_REUSED = 'staged_edits_reused'
    VERIFICATION_COMPLETED = 'verification_completed'


def normalize_event_type(value: str | EventType) -> str:
    if isinstance(value, EventType):
        return value.value
    text = str(value or '').strip().lower()
    if not text:
        raise ValueError('event_type is required')
    return text
