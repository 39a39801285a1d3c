from __future__ import annotations

import logging

from ticket_pilot.adapters import ReasoningRunner
from ticket_pilot.api import create_app
from ticket_pilot.config import Settings, load_settings
from ticket_pilot.db import Database, SqlRunRepository
from ticket_pilot.instructions import InstructionLibrary
from ticket_pilot.integrations import GitLabPublisher, TrackerClient
from ticket_pilot.observability import configure_observability
from ticket_pilot.pipeline import RunPipeline
from ticket_pilot.repository import InMemoryRunRepository, RunRepository
from ticket_pilot.service import RunService
from ticket_pilot.storage.feedback import FeedbackMemory
from ticket_pilot.tools.repo_scan import RepositoryScanner
from ticket_pilot.tools.vcs import GitWorkspace
from ticket_pilot.verification import VerificationEngine

_log = logging.getLogger(__name__)


def build_repository(settings: Settings) -> RunRepository:
    if not settings.database_url:
        return InMemoryRunRepository()
    try:
        db = Database(settings.database_url)
        db.create_schema()
        return SqlRunRepository(db)
    except Exception:
        _log.exception('database bootstrap failed; falling back to in-memory repository')
        return InMemoryRunRepository()


def build_service(settings: Settings, *, repository: RunRepository | None = None) -> RunService:
    feedback_memory = FeedbackMemory(history_limit=settings.feedback_history_limit)
    pipeline = RunPipeline(
        tracker=TrackerClient.from_settings(settings),
        scanner=RepositoryScanner(),
        feedback_memory=feedback_memory,
        vcs=GitWorkspace(),
        reasoning=ReasoningRunner.from_settings(settings),
        verifier=VerificationEngine(
            timeout_seconds=settings.test_timeout_seconds,
            max_output_bytes=settings.test_output_max_bytes,
        ),
        publisher=GitLabPublisher.from_settings(settings),
        instructions=InstructionLibrary(settings.instructions_dir),
        max_attempts=settings.draft_max_attempts,
        backend=settings.workflow_backend,
    )
    return RunService(
        repository=repository or build_repository(settings),
        pipeline=pipeline,
        feedback_memory=feedback_memory,
    )


def build_app():
    settings = load_settings()
    configure_observability(
        service_name=settings.service_name,
        otlp_endpoint=settings.otel_endpoint,
    )
    return create_app(service=build_service(settings))


app = build_app()
