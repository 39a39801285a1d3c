from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timezone
import json
from pathlib import Path

from ticket_pilot.domain.models import FeedbackRecord
from ticket_pilot.observability import get_logger

_log = get_logger('ticket_pilot.storage.feedback')

MEMORY_DIR = '.agent-memory'
MEMORY_FILE = 'feedback-history.json'
SUMMARY_WINDOW = 30
SUMMARY_EXCERPT_MAX_CHARS = 3000
NO_HISTORY_SUMMARY = 'No previous feedback history.'


class FeedbackMemory:
    """Reviewer feedback persisted inside each target repository."""

    def __init__(self, *, history_limit: int = 200):
        self.history_limit = max(1, int(history_limit))

    @staticmethod
    def memory_path(repo_path: str | Path) -> Path:
        return Path(repo_path) / MEMORY_DIR / MEMORY_FILE

    def read(self, repo_path: str | Path) -> list[FeedbackRecord]:
        path = self.memory_path(repo_path)
        try:
            payload = json.loads(path.read_text(encoding='utf-8'))
        except FileNotFoundError:
            return []
        except (OSError, ValueError):
            _log.warning('feedback_history_unreadable path=%s', path, exc_info=True)
            return []
        if not isinstance(payload, list):
            return []
        records: list[FeedbackRecord] = []
        for item in payload:
            if not isinstance(item, dict):
                continue
            records.append(
                FeedbackRecord(
                    timestamp=str(item.get('timestamp') or ''),
                    run_id=str(item.get('run_id') or item.get('runId') or ''),
                    task_id=str(item.get('task_id') or item.get('taskId') or ''),
                    feedback=str(item.get('feedback') or ''),
                    accepted=bool(item.get('accepted')),
                )
            )
        return records

    def append(self, repo_path: str | Path, record: FeedbackRecord) -> None:
        path = self.memory_path(repo_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        history = self.read(repo_path)
        history.append(record)
        kept = [asdict(item) for item in history[-self.history_limit:]]
        path.write_text(json.dumps(kept, ensure_ascii=True, indent=2), encoding='utf-8')
        _log.info('feedback_recorded run_id=%s accepted=%s total=%d', record.run_id, record.accepted, len(kept))

    def record(self, repo_path: str | Path, *, run_id: str, task_id: str, feedback: str, accepted: bool) -> FeedbackRecord:
        entry = FeedbackRecord(
            timestamp=datetime.now(timezone.utc).isoformat(),
            run_id=run_id,
            task_id=task_id,
            feedback=feedback,
            accepted=accepted,
        )
        self.append(repo_path, entry)
        return entry

    def summarize_bias(self, repo_path: str | Path) -> str:
        history = self.read(repo_path)
        if not history:
            return NO_HISTORY_SUMMARY
        recent = history[-SUMMARY_WINDOW:]
        rejected = sum(1 for item in recent if not item.accepted)
        accepted = len(recent) - rejected
        excerpts = '\n'.join(item.feedback for item in recent)[:SUMMARY_EXCERPT_MAX_CHARS]
        return '\n'.join([
            f'Recent accepted: {accepted}',
            f'Recent rejected: {rejected}',
            'Feedback excerpts:',
            excerpts,
        ])
