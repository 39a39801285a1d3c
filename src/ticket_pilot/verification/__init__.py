from __future__ import annotations

from ticket_pilot.verification.coverage import CoverageAggregate, CoverageFormat
from ticket_pilot.verification.engine import VerificationEngine
from ticket_pilot.verification.executor import BoundedCommandExecutor, CommandOutcome
from ticket_pilot.verification.strategy import TestStrategy, resolve_test_strategy

__all__ = [
    'BoundedCommandExecutor',
    'CommandOutcome',
    'CoverageAggregate',
    'CoverageFormat',
    'TestStrategy',
    'VerificationEngine',
    'resolve_test_strategy',
]
