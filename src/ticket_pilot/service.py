from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

from ticket_pilot.domain.events import EventType
from ticket_pilot.domain.models import RunInput, RunRecord, RunStatus, TrackerKind
from ticket_pilot.errors import InputValidationError, RunStateError
from ticket_pilot.observability import get_logger, set_run_context
from ticket_pilot.pipeline import RunPipeline
from ticket_pilot.repository import RunRepository

_log = get_logger('ticket_pilot.service')

REJECTED_SUMMARY = 'Run rejected by reviewer.'
REJECTED_WITHOUT_FEEDBACK = 'Rejected without detailed feedback.'
APPROVED_WITHOUT_FEEDBACK = 'Approved'


@dataclass(frozen=True)
class StartRunInput:
    task_id: str
    tracker: str
    repo_path: str
    target_branch: str = 'develop'
    dry_run: bool = True


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class RunService:
    def __init__(self, *, repository: RunRepository, pipeline: RunPipeline, feedback_memory):
        self.repository = repository
        self.pipeline = pipeline
        self.feedback_memory = feedback_memory
        if pipeline.on_event is None:
            pipeline.on_event = self.record_event
        if pipeline.on_diff is None:
            pipeline.on_diff = self.record_diff

    def record_event(self, run_id: str, event_type: EventType | str, payload: dict) -> None:
        self.repository.append_event(run_id, event_type=event_type, payload=payload)

    def record_diff(self, run_id: str, diff: str) -> None:
        self.repository.merge_update(run_id, diff_preview=diff)

    @staticmethod
    def validate_input(payload: StartRunInput) -> RunInput:
        task_id = str(payload.task_id or '').strip()
        if not task_id:
            raise InputValidationError('task_id is required', field='task_id')
        try:
            tracker = TrackerKind(str(payload.tracker or '').strip().lower())
        except ValueError as exc:
            raise InputValidationError(
                'tracker must be one of: jira, gitlab',
                field='tracker',
                code='invalid_tracker',
            ) from exc
        raw_path = str(payload.repo_path or '').strip()
        if not raw_path:
            raise InputValidationError('repo_path is required', field='repo_path')
        repo_root = Path(raw_path).resolve()
        if not repo_root.exists() or not repo_root.is_dir():
            raise InputValidationError('repo_path must be an existing directory', field='repo_path')
        target_branch = str(payload.target_branch or '').strip() or 'develop'
        return RunInput(
            task_id=task_id,
            tracker=tracker,
            repo_path=str(repo_root),
            target_branch=target_branch,
            dry_run=bool(payload.dry_run),
        )

    def start_run(self, payload: StartRunInput) -> RunRecord:
        run_input = self.validate_input(payload)
        run_id = uuid4().hex
        now = _utc_now_iso()
        self.repository.put(
            RunRecord(run_id=run_id, created_at=now, updated_at=now, input=run_input, status=RunStatus.RUNNING)
        )
        set_run_context(run_id)
        self.record_event(run_id, EventType.RUN_STARTED, {
            'task_id': run_input.task_id,
            'tracker': run_input.tracker.value,
            'repo_path': run_input.repo_path,
            'target_branch': run_input.target_branch,
            'dry_run': run_input.dry_run,
        })
        _log.info('run_started run_id=%s task_id=%s tracker=%s', run_id, run_input.task_id, run_input.tracker.value)
        try:
            fields = self.pipeline.run_initial(run_id, run_input)
        except Exception as exc:
            return self._fail(run_id, exc, phase='initial')
        updated = self.repository.transition(run_id, RunStatus.AWAITING_APPROVAL, **fields)
        _log.info('run_awaiting_approval run_id=%s edits=%d', run_id, len(updated.staged_edits or ()))
        return updated

    def submit_decision(self, run_id: str, *, approved: bool, feedback: str | None = None) -> RunRecord:
        run = self.repository.get(run_id)
        set_run_context(run_id)
        if run.status != RunStatus.AWAITING_APPROVAL:
            raise RunStateError(
                f'run {run_id} is {run.status.value}; decisions are accepted only while awaiting_approval',
                run_id=run_id,
                status=run.status.value,
            )
        feedback_text = str(feedback or '').strip()
        if not approved:
            note = feedback_text or REJECTED_WITHOUT_FEEDBACK
            updated = self.repository.transition(
                run_id,
                RunStatus.REJECTED,
                feedback_history=(*run.feedback_history, note),
                final_summary=REJECTED_SUMMARY,
            )
            self.record_event(run_id, EventType.DECISION_RECORDED, {'approved': False, 'feedback': note})
            self._remember(run, note, accepted=False)
            _log.info('run_rejected run_id=%s', run_id)
            return updated

        history = (*run.feedback_history, feedback_text) if feedback_text else run.feedback_history
        # entering applying is the single point that admits one approval per run
        applying = self.repository.transition(run_id, RunStatus.APPLYING, feedback_history=history)
        self.record_event(run_id, EventType.DECISION_RECORDED, {'approved': True, 'feedback': feedback_text or None})
        try:
            outcome = self.pipeline.run_finalize(applying, feedback_text)
        except Exception as exc:
            return self._fail(run_id, exc, phase='finalize')
        updated = self.repository.transition(
            run_id,
            RunStatus.DONE,
            final_summary=outcome['summary'],
            merge_request_url=outcome.get('merge_request_url'),
        )
        self.record_event(run_id, EventType.RUN_FINISHED, {
            'changed_files': list(outcome.get('changed_files') or ()),
            'commit_sha': outcome.get('commit_sha'),
            'merge_request_url': outcome.get('merge_request_url'),
            'dry_run': run.input.dry_run,
        })
        self._remember(run, feedback_text or APPROVED_WITHOUT_FEEDBACK, accepted=True)
        _log.info('run_finished run_id=%s dry_run=%s', run_id, run.input.dry_run)
        return updated

    def get_run(self, run_id: str) -> RunRecord:
        return self.repository.get(run_id)

    def list_runs(self, *, limit: int = 100) -> list[RunRecord]:
        return self.repository.list_runs(limit=limit)

    def list_events(self, run_id: str) -> list[dict]:
        return self.repository.list_events(run_id)

    def _fail(self, run_id: str, exc: Exception, *, phase: str) -> RunRecord:
        message = str(exc)
        _log.exception('run_failed run_id=%s phase=%s error=%s', run_id, phase, message)
        updated = self.repository.transition(run_id, RunStatus.FAILED, error=message)
        self.record_event(run_id, EventType.RUN_FAILED, {
            'phase': phase,
            'error': message,
            'error_type': type(exc).__name__,
        })
        return updated

    def _remember(self, run: RunRecord, feedback: str, *, accepted: bool) -> None:
        try:
            self.feedback_memory.record(
                run.input.repo_path,
                run_id=run.run_id,
                task_id=run.input.task_id,
                feedback=feedback,
                accepted=accepted,
            )
        except OSError:
            _log.warning('feedback_memory_write_failed run_id=%s', run.run_id, exc_info=True)
