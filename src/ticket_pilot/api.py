from __future__ import annotations

from ipaddress import ip_address
import logging
import os
from typing import Literal

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ticket_pilot.domain.models import RunRecord
from ticket_pilot.errors import InputValidationError, RunNotFoundError, RunStateError
from ticket_pilot.service import RunService, StartRunInput

_log = logging.getLogger(__name__)


class StartRunRequest(BaseModel):
    task_id: str = Field(min_length=1, max_length=255)
    tracker: Literal['jira', 'gitlab']
    repo_path: str = Field(min_length=1)
    target_branch: str = Field(default='develop', min_length=1, max_length=255)
    dry_run: bool = Field(default=True)


class DecisionRequest(BaseModel):
    approved: bool
    feedback: str | None = Field(default=None, max_length=20000)


class RunResponse(BaseModel):
    run_id: str
    created_at: str
    updated_at: str
    status: str
    input: dict
    task: dict | None = None
    repo: dict | None = None
    proposal: dict | None = None
    staged_edits: list[dict] | None = None
    branch_name: str | None = None
    diff_preview: str | None = None
    test_report: dict | None = None
    compilation_analysis: dict | None = None
    feedback_history: list[str] = Field(default_factory=list)
    final_summary: str | None = None
    merge_request_url: str | None = None
    error: str | None = None


class EventResponse(BaseModel):
    seq: int
    run_id: str
    type: str
    payload: dict
    created_at: str


class AppState:
    def __init__(self, service: RunService):
        self.service = service


def _to_run_response(record: RunRecord) -> RunResponse:
    return RunResponse(**record.to_dict())


def create_app(
    *,
    service: RunService,
    allow_remote_api: bool | None = None,
    api_access_token: str | None = None,
    api_access_token_header: str = 'x-ticket-pilot-token',
) -> FastAPI:
    app = FastAPI(title='ticket-pilot api', version='0.3.0')
    app.state.container = AppState(service=service)

    resolved_allow_remote_api = allow_remote_api
    if resolved_allow_remote_api is None:
        resolved_allow_remote_api = str(os.getenv('TICKET_PILOT_API_ALLOW_REMOTE', '')).strip().lower() in {
            '1', 'true', 'yes', 'on',
        }
    resolved_api_access_token = api_access_token
    if resolved_api_access_token is None:
        resolved_api_access_token = str(os.getenv('TICKET_PILOT_API_TOKEN', '')).strip() or None
    resolved_api_access_token_header = str(api_access_token_header).strip().lower()

    def _field_from_loc(loc: tuple | list | None) -> str | None:
        if not loc:
            return None
        parts = list(loc)
        if parts and str(parts[0]) in {'body', 'query', 'path', 'header', 'cookie'}:
            parts = parts[1:]
        field = ''
        for part in parts:
            if isinstance(part, int):
                field += f'[{part}]'
            elif field:
                field += f'.{part}'
            else:
                field = str(part)
        return field or None

    def _error_payload(*, message: str, field: str | None = None, code: str = 'validation_error') -> dict:
        payload: dict[str, str] = {
            'code': code,
            'message': message,
        }
        if field:
            payload['field'] = field
        return payload

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):  # noqa: ARG001
        details = exc.errors()
        if details:
            first = details[0]
            message = str(first.get('msg') or 'invalid request body')
            field = _field_from_loc(first.get('loc'))
        else:
            message = 'invalid request body'
            field = None
        return JSONResponse(status_code=400, content=_error_payload(message=message, field=field))

    @app.exception_handler(InputValidationError)
    async def handle_input_validation_error(request: Request, exc: InputValidationError):  # noqa: ARG001
        return JSONResponse(
            status_code=400,
            content=_error_payload(message=str(exc), field=exc.field, code=exc.code),
        )

    @app.exception_handler(RunStateError)
    async def handle_run_state_error(request: Request, exc: RunStateError):  # noqa: ARG001
        return JSONResponse(
            status_code=409,
            content={'code': 'invalid_state', 'message': str(exc), 'status': exc.status},
        )

    def get_service() -> RunService:
        return app.state.container.service

    def _is_loopback_host(host: str | None) -> bool:
        text = str(host or '').strip().lower()
        if not text:
            return False
        if text in {'localhost', 'testclient'}:
            return True
        if text.startswith('::ffff:'):
            text = text[7:]
        try:
            return ip_address(text).is_loopback
        except ValueError:
            return False

    @app.middleware('http')
    async def enforce_api_access_controls(request: Request, call_next):
        if request.url.path.startswith('/api/'):
            client_host = request.client.host if request.client is not None else ''
            if not resolved_allow_remote_api and not _is_loopback_host(client_host):
                return JSONResponse(
                    status_code=403,
                    content=_error_payload(code='forbidden', message='api access denied'),
                )
            if resolved_api_access_token:
                token = request.headers.get(resolved_api_access_token_header)
                if token != resolved_api_access_token:
                    return JSONResponse(
                        status_code=401,
                        content=_error_payload(code='unauthorized', message='invalid api token'),
                    )
        return await call_next(request)

    @app.get('/healthz')
    def healthz() -> dict[str, str]:
        return {'status': 'ok'}

    @app.post('/api/runs', response_model=RunResponse, status_code=201)
    def start_run(payload: StartRunRequest, service: RunService = Depends(get_service)) -> RunResponse:
        record = service.start_run(
            StartRunInput(
                task_id=payload.task_id,
                tracker=payload.tracker,
                repo_path=payload.repo_path,
                target_branch=payload.target_branch,
                dry_run=payload.dry_run,
            )
        )
        return _to_run_response(record)

    @app.get('/api/runs', response_model=list[RunResponse])
    def list_runs(
        service: RunService = Depends(get_service),
        limit: int = Query(default=100, ge=1, le=500),
    ) -> list[RunResponse]:
        return [_to_run_response(r) for r in service.list_runs(limit=limit)]

    @app.get('/api/runs/{run_id}', response_model=RunResponse)
    def get_run(run_id: str, service: RunService = Depends(get_service)) -> RunResponse:
        try:
            record = service.get_run(run_id)
        except RunNotFoundError as exc:
            raise HTTPException(status_code=404, detail='run not found') from exc
        return _to_run_response(record)

    @app.post('/api/runs/{run_id}/decision', response_model=RunResponse)
    def submit_decision(
        run_id: str,
        payload: DecisionRequest,
        service: RunService = Depends(get_service),
    ) -> RunResponse:
        try:
            record = service.submit_decision(run_id, approved=payload.approved, feedback=payload.feedback)
        except RunNotFoundError as exc:
            raise HTTPException(status_code=404, detail='run not found') from exc
        _log.info('decision_submitted run_id=%s approved=%s status=%s', run_id, payload.approved, record.status.value)
        return _to_run_response(record)

    @app.get('/api/runs/{run_id}/events', response_model=list[EventResponse])
    def list_events(run_id: str, service: RunService = Depends(get_service)) -> list[EventResponse]:
        try:
            rows = service.list_events(run_id)
        except RunNotFoundError as exc:
            raise HTTPException(status_code=404, detail='run not found') from exc
        return [
            EventResponse(
                seq=int(row['seq']),
                run_id=str(row['run_id']),
                type=str(row['type']),
                payload=dict(row.get('payload', {})),
                created_at=str(row['created_at']),
            )
            for row in rows
        ]

    return app
