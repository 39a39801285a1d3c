from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path


@dataclass(frozen=True)
class Settings:
    database_url: str
    service_name: str
    otel_endpoint: str | None
    workflow_backend: str
    reasoning_provider: str
    reasoning_command: str
    planner_model: str
    fast_model: str
    reasoning_timeout_seconds: int
    reasoning_timeout_retries: int
    test_timeout_seconds: int
    test_output_max_bytes: int
    draft_max_attempts: int
    instructions_dir: Path
    feedback_history_limit: int
    http_timeout_seconds: int
    jira_base_url: str | None
    jira_email: str | None
    jira_api_token: str | None
    gitlab_base_url: str | None
    gitlab_token: str | None
    gitlab_project_id: str | None


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = (os.getenv(name, '') or '').strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_optional(name: str) -> str | None:
    text = str(os.getenv(name, '') or '').strip()
    return text or None


def _env_url(name: str) -> str | None:
    text = _env_optional(name)
    if text is None:
        return None
    return text.rstrip('/')


def load_settings() -> Settings:
    database_url = str(os.getenv('TICKET_PILOT_DATABASE_URL', '') or '').strip()
    service_name = os.getenv('TICKET_PILOT_SERVICE_NAME', 'ticket-pilot')
    otel_endpoint = os.getenv('TICKET_PILOT_OTEL_EXPORTER_OTLP_ENDPOINT')
    workflow_backend = str(os.getenv('TICKET_PILOT_WORKFLOW_BACKEND', 'langgraph') or 'langgraph').strip().lower()
    if workflow_backend not in {'langgraph', 'classic'}:
        workflow_backend = 'langgraph'
    reasoning_provider = str(os.getenv('TICKET_PILOT_REASONING_PROVIDER', 'gemini') or 'gemini').strip().lower()
    reasoning_command = str(os.getenv('TICKET_PILOT_REASONING_COMMAND', '') or '').strip()
    planner_model = str(os.getenv('GEMINI_MODEL_PLANNER', '') or '').strip() or 'gemini-3-pro-preview'
    fast_model = str(os.getenv('GEMINI_MODEL_FAST', '') or '').strip() or 'gemini-2.5-flash'
    reasoning_timeout_seconds = _env_int('TICKET_PILOT_REASONING_TIMEOUT_SECONDS', 600, minimum=10)
    reasoning_timeout_retries = _env_int('TICKET_PILOT_REASONING_TIMEOUT_RETRIES', 1, minimum=0)
    # Test runs are bounded to 15 minutes and 10 MiB of captured output by default.
    test_timeout_seconds = _env_int('TICKET_PILOT_TEST_TIMEOUT_SECONDS', 900, minimum=10)
    test_output_max_bytes = _env_int('TICKET_PILOT_TEST_OUTPUT_MAX_BYTES', 10 * 1024 * 1024, minimum=1024)
    draft_max_attempts = _env_int('TICKET_PILOT_DRAFT_MAX_ATTEMPTS', 2, minimum=1)
    instructions_dir = Path(os.getenv('TICKET_PILOT_INSTRUCTIONS_DIR', 'instructions/llm')).resolve()
    feedback_history_limit = _env_int('TICKET_PILOT_FEEDBACK_HISTORY_LIMIT', 200, minimum=1)
    http_timeout_seconds = _env_int('TICKET_PILOT_HTTP_TIMEOUT_SECONDS', 30, minimum=1)
    return Settings(
        database_url=database_url,
        service_name=service_name,
        otel_endpoint=otel_endpoint,
        workflow_backend=workflow_backend,
        reasoning_provider=reasoning_provider,
        reasoning_command=reasoning_command,
        planner_model=planner_model,
        fast_model=fast_model,
        reasoning_timeout_seconds=reasoning_timeout_seconds,
        reasoning_timeout_retries=reasoning_timeout_retries,
        test_timeout_seconds=test_timeout_seconds,
        test_output_max_bytes=test_output_max_bytes,
        draft_max_attempts=draft_max_attempts,
        instructions_dir=instructions_dir,
        feedback_history_limit=feedback_history_limit,
        http_timeout_seconds=http_timeout_seconds,
        jira_base_url=_env_url('JIRA_BASE_URL'),
        jira_email=_env_optional('JIRA_EMAIL'),
        jira_api_token=_env_optional('JIRA_API_TOKEN'),
        gitlab_base_url=_env_url('GITLAB_BASE_URL'),
        gitlab_token=_env_optional('GITLAB_TOKEN'),
        gitlab_project_id=_env_optional('GITLAB_PROJECT_ID'),
    )
