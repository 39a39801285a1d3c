from __future__ import annotations

import json
from pathlib import Path

from ticket_pilot.storage.feedback import NO_HISTORY_SUMMARY, FeedbackMemory


def test_summary_without_history(tmp_path: Path):
    assert FeedbackMemory().summarize_bias(tmp_path) == NO_HISTORY_SUMMARY


def test_record_appends_and_summarizes_recent_window(tmp_path: Path):
    memory = FeedbackMemory()
    memory.record(tmp_path, run_id='r1', task_id='PROJ-1', feedback='Prefer small diffs', accepted=True)
    memory.record(tmp_path, run_id='r2', task_id='PROJ-2', feedback='Missing tests', accepted=False)

    stored = json.loads((tmp_path / '.agent-memory' / 'feedback-history.json').read_text(encoding='utf-8'))
    assert [item['run_id'] for item in stored] == ['r1', 'r2']
    assert stored[1]['accepted'] is False

    summary = memory.summarize_bias(tmp_path)
    assert summary.splitlines()[:3] == ['Recent accepted: 1', 'Recent rejected: 1', 'Feedback excerpts:']
    assert summary.endswith('Prefer small diffs\nMissing tests')


def test_history_is_capped_at_limit(tmp_path: Path):
    memory = FeedbackMemory(history_limit=3)
    for index in range(5):
        memory.record(tmp_path, run_id=f'r{index}', task_id='T', feedback=f'note {index}', accepted=True)
    assert [item.run_id for item in memory.read(tmp_path)] == ['r2', 'r3', 'r4']


def test_summary_uses_last_thirty_entries_and_clips_excerpts(tmp_path: Path):
    memory = FeedbackMemory()
    for index in range(35):
        memory.record(tmp_path, run_id=f'r{index}', task_id='T', feedback='z' * 200, accepted=index % 2 == 0)
    summary = memory.summarize_bias(tmp_path)
    assert 'Recent accepted: 15' in summary
    assert 'Recent rejected: 15' in summary
    excerpts = summary.split('Feedback excerpts:\n', 1)[1]
    assert len(excerpts) == 3000


def test_unreadable_or_foreign_history_is_treated_as_empty(tmp_path: Path):
    path = tmp_path / '.agent-memory' / 'feedback-history.json'
    path.parent.mkdir()
    path.write_text('{broken', encoding='utf-8')
    assert FeedbackMemory().read(tmp_path) == []

    path.write_text(json.dumps({'not': 'a list'}), encoding='utf-8')
    assert FeedbackMemory().read(tmp_path) == []


def test_camel_case_history_entries_are_accepted(tmp_path: Path):
    path = tmp_path / '.agent-memory' / 'feedback-history.json'
    path.parent.mkdir()
    path.write_text(json.dumps([
        {'timestamp': '2026-01-01T00:00:00Z', 'runId': 'old-run', 'taskId': 'PROJ-9', 'feedback': 'ok', 'accepted': True},
        'garbage',
    ]), encoding='utf-8')
    records = FeedbackMemory().read(tmp_path)
    assert len(records) == 1
    assert records[0].run_id == 'old-run'
    assert records[0].task_id == 'PROJ-9'
