from __future__ import annotations

from contextlib import contextmanager
import json
import logging
import sys
from contextvars import ContextVar
from threading import Lock
from typing import Iterator

from opentelemetry import trace

_run_id_var: ContextVar[str | None] = ContextVar('run_id', default=None)
_stage_var: ContextVar[str | None] = ContextVar('stage', default=None)


def set_run_context(run_id: str | None = None, stage: str | None = None) -> None:
    """Set correlation context for structured log output."""
    _run_id_var.set(run_id)
    _stage_var.set(stage)


def get_run_id() -> str | None:
    return _run_id_var.get(None)


def get_stage() -> str | None:
    return _stage_var.get(None)


@contextmanager
def stage_context(stage: str) -> Iterator[None]:
    token = _stage_var.set(stage)
    try:
        yield
    finally:
        _stage_var.reset(token)


class _JsonFormatter(logging.Formatter):
    """Emit one JSON object per log line with correlation fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            'ts': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'logger': record.name,
            'msg': record.getMessage(),
        }
        run_id = getattr(record, 'run_id', None) or _run_id_var.get(None)
        if run_id:
            payload['run_id'] = run_id
        stage = getattr(record, 'stage', None) or _stage_var.get(None)
        if stage:
            payload['stage'] = stage
        if record.exc_info and record.exc_info[1] is not None:
            payload['exc'] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


_configured = False
_configured_otlp_endpoint: str | None = None
_configure_lock = Lock()


def get_logger(name: str) -> logging.Logger:
    """Return a logger. Safe to call before configure_observability."""
    return logging.getLogger(name)


def get_tracer(name: str = 'ticket_pilot') -> trace.Tracer:
    return trace.get_tracer(name)


def configure_observability(*, service_name: str, otlp_endpoint: str | None) -> None:
    global _configured
    global _configured_otlp_endpoint
    with _configure_lock:
        if not _configured:
            root = logging.getLogger('ticket_pilot')
            has_json_handler = any(
                isinstance(handler, logging.StreamHandler)
                and isinstance(getattr(handler, 'formatter', None), _JsonFormatter)
                for handler in root.handlers
            )
            if not has_json_handler:
                handler = logging.StreamHandler(sys.stderr)
                handler.setFormatter(_JsonFormatter())
                root.addHandler(handler)
            root.setLevel(logging.INFO)
            _configured = True

    if not otlp_endpoint:
        return
    endpoint = str(otlp_endpoint).strip()
    if not endpoint:
        return

    with _configure_lock:
        if _configured_otlp_endpoint == endpoint:
            return

    try:
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except Exception:
        logging.getLogger('ticket_pilot.observability').warning(
            'OpenTelemetry SDK import failed; tracing disabled', exc_info=True,
        )
        return

    provider = TracerProvider(resource=Resource.create({'service.name': service_name}))
    exporter = OTLPSpanExporter(endpoint=endpoint)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    with _configure_lock:
        _configured_otlp_endpoint = endpoint
