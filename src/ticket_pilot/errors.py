from __future__ import annotations


class TicketPilotError(Exception):
    pass


class ConfigurationError(TicketPilotError):
    """Required credentials or settings for an external service are missing."""


class TransportError(TicketPilotError):
    """A tracker, publisher or reasoning-service call did not complete."""


class ResponseFormatError(TicketPilotError):
    def __init__(self, message: str, *, preview: str = ''):
        super().__init__(message)
        self.preview = preview


class GateExhaustedError(TicketPilotError):
    def __init__(self, message: str, *, reason: str, attempts: int):
        super().__init__(message)
        self.reason = reason
        self.attempts = attempts


class VerificationExecutionError(TicketPilotError):
    """The test/coverage command could not be run to completion."""


class WorktreeStateError(TicketPilotError):
    pass


class VcsError(TicketPilotError):
    pass


class RunNotFoundError(KeyError):
    def __init__(self, run_id: str):
        super().__init__(run_id)
        self.run_id = run_id

    def __str__(self) -> str:
        return f'run not found: {self.run_id}'


class RunStateError(TicketPilotError):
    def __init__(self, message: str, *, run_id: str, status: str):
        super().__init__(message)
        self.run_id = run_id
        self.status = status


class InputValidationError(ValueError):
    def __init__(self, message: str, *, field: str | None = None, code: str = 'validation_error'):
        super().__init__(message)
        self.message = message
        self.field = field
        self.code = code
