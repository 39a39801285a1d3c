from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class RunStatus(str, Enum):
    RUNNING = 'running'
    AWAITING_APPROVAL = 'awaiting_approval'
    APPLYING = 'applying'
    DONE = 'done'
    REJECTED = 'rejected'
    FAILED = 'failed'


class TrackerKind(str, Enum):
    JIRA = 'jira'
    GITLAB = 'gitlab'


TERMINAL_STATUSES = frozenset({RunStatus.DONE, RunStatus.REJECTED, RunStatus.FAILED})

_ALLOWED_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.RUNNING: frozenset({RunStatus.AWAITING_APPROVAL, RunStatus.FAILED}),
    RunStatus.AWAITING_APPROVAL: frozenset({RunStatus.APPLYING, RunStatus.REJECTED}),
    RunStatus.APPLYING: frozenset({RunStatus.DONE, RunStatus.FAILED}),
}


def can_transition(current: RunStatus | str, target: RunStatus | str) -> bool:
    return RunStatus(target) in _ALLOWED_TRANSITIONS.get(RunStatus(current), frozenset())


def _str_tuple(values: Any) -> tuple[str, ...]:
    if not isinstance(values, (list, tuple)):
        return ()
    return tuple(str(v) for v in values if isinstance(v, (str, int, float)) and str(v).strip())


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class TrackerTask:
    id: str
    title: str
    description: str
    labels: tuple[str, ...] = ()
    priority: str | None = None
    url: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> 'TrackerTask':
        return cls(
            id=str(data.get('id') or ''),
            title=str(data.get('title') or ''),
            description=str(data.get('description') or ''),
            labels=_str_tuple(data.get('labels')),
            priority=_optional_str(data.get('priority')),
            url=_optional_str(data.get('url')),
        )


@dataclass(frozen=True)
class RepoSnapshot:
    file_count: int
    top_level_entries: tuple[str, ...]
    language_summary: dict[str, int]
    sample_files: tuple[str, ...]
    tech_stack: tuple[str, ...]
    testing_guidance: tuple[str, ...]

    @classmethod
    def from_dict(cls, data: dict) -> 'RepoSnapshot':
        return cls(
            file_count=int(data.get('file_count') or 0),
            top_level_entries=_str_tuple(data.get('top_level_entries')),
            language_summary={str(k): int(v) for k, v in dict(data.get('language_summary') or {}).items()},
            sample_files=_str_tuple(data.get('sample_files')),
            tech_stack=_str_tuple(data.get('tech_stack')),
            testing_guidance=_str_tuple(data.get('testing_guidance')),
        )


@dataclass(frozen=True)
class ProposedEdit:
    path: str
    summary: str = ''


@dataclass(frozen=True)
class DesignProposal:
    requirements: tuple[str, ...] = ()
    assumptions: tuple[str, ...] = ()
    implementation_plan: tuple[str, ...] = ()
    tests_and_grounding: tuple[str, ...] = ()
    proposed_edits: tuple[ProposedEdit, ...] = ()
    branch_name_suggestion: str = ''
    commit_title: str = ''
    pr_title: str = ''

    @classmethod
    def from_dict(cls, data: dict) -> 'DesignProposal':
        """Accept both the stored snake_case shape and the camelCase shape the
        reasoning service is prompted to return."""

        def pick(snake: str, camel: str) -> Any:
            return data.get(snake) if snake in data else data.get(camel)

        edits: list[ProposedEdit] = []
        for item in pick('proposed_edits', 'proposedEdits') or []:
            if not isinstance(item, dict):
                continue
            path = str(item.get('path') or '').strip()
            if path:
                edits.append(ProposedEdit(path=path, summary=str(item.get('summary') or '')))
        return cls(
            requirements=_str_tuple(data.get('requirements')),
            assumptions=_str_tuple(data.get('assumptions')),
            implementation_plan=_str_tuple(pick('implementation_plan', 'implementationPlan')),
            tests_and_grounding=_str_tuple(pick('tests_and_grounding', 'testsAndGrounding')),
            proposed_edits=tuple(edits),
            branch_name_suggestion=str(pick('branch_name_suggestion', 'branchNameSuggestion') or ''),
            commit_title=str(pick('commit_title', 'commitTitle') or ''),
            pr_title=str(pick('pr_title', 'prTitle') or ''),
        )


@dataclass(frozen=True)
class DraftEdit:
    path: str
    content: str
    rationale: str = ''


@dataclass(frozen=True)
class EditPayload:
    edits: tuple[DraftEdit, ...]
    summary: str = ''
    commit_title: str | None = None
    pr_description: str | None = None


@dataclass(frozen=True)
class FileCoverage:
    path: str
    covered_lines: int
    total_lines: int
    line_coverage_percent: float | None


@dataclass(frozen=True)
class TestExecutionReport:
    __test__ = False

    executed: bool
    success: bool
    command: str | None = None
    failure_cause: str | None = None
    overall_line_coverage_percent: float | None = None
    file_coverage: tuple[FileCoverage, ...] = ()
    notes: tuple[str, ...] = ()
    stdout_snippet: str | None = None
    stderr_snippet: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> 'TestExecutionReport':
        coverage = tuple(
            FileCoverage(
                path=str(item.get('path') or ''),
                covered_lines=int(item.get('covered_lines') or 0),
                total_lines=int(item.get('total_lines') or 0),
                line_coverage_percent=item.get('line_coverage_percent'),
            )
            for item in data.get('file_coverage') or []
            if isinstance(item, dict)
        )
        return cls(
            executed=bool(data.get('executed')),
            success=bool(data.get('success')),
            command=_optional_str(data.get('command')),
            failure_cause=_optional_str(data.get('failure_cause')),
            overall_line_coverage_percent=data.get('overall_line_coverage_percent'),
            file_coverage=coverage,
            notes=_str_tuple(data.get('notes')),
            stdout_snippet=data.get('stdout_snippet'),
            stderr_snippet=data.get('stderr_snippet'),
        )


@dataclass(frozen=True)
class CompilationErrorAnalysis:
    detected: bool
    summary: str
    root_cause: str
    potential_solutions: tuple[str, ...] = ()
    follow_up_checks: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict) -> 'CompilationErrorAnalysis':
        return cls(
            detected=bool(data.get('detected', True)),
            summary=str(data.get('summary') or ''),
            root_cause=str(data.get('root_cause') or ''),
            potential_solutions=_str_tuple(data.get('potential_solutions')),
            follow_up_checks=_str_tuple(data.get('follow_up_checks')),
        )


@dataclass(frozen=True)
class RunInput:
    task_id: str
    tracker: TrackerKind
    repo_path: str
    target_branch: str = 'develop'
    dry_run: bool = True


@dataclass(frozen=True)
class FeedbackRecord:
    timestamp: str
    run_id: str
    task_id: str
    feedback: str
    accepted: bool


@dataclass(frozen=True)
class RunRecord:
    run_id: str
    created_at: str
    input: RunInput
    status: RunStatus
    updated_at: str = ''
    task: TrackerTask | None = None
    repo: RepoSnapshot | None = None
    proposal: DesignProposal | None = None
    staged_edits: tuple[DraftEdit, ...] | None = None
    branch_name: str | None = None
    diff_preview: str | None = None
    test_report: TestExecutionReport | None = None
    compilation_analysis: CompilationErrorAnalysis | None = None
    feedback_history: tuple[str, ...] = field(default_factory=tuple)
    final_summary: str | None = None
    merge_request_url: str | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data['status'] = self.status.value
        data['input']['tracker'] = self.input.tracker.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'RunRecord':
        raw_input = dict(data.get('input') or {})
        staged = data.get('staged_edits')
        return cls(
            run_id=str(data['run_id']),
            created_at=str(data.get('created_at') or ''),
            updated_at=str(data.get('updated_at') or ''),
            input=RunInput(
                task_id=str(raw_input.get('task_id') or ''),
                tracker=TrackerKind(str(raw_input.get('tracker') or 'jira')),
                repo_path=str(raw_input.get('repo_path') or ''),
                target_branch=str(raw_input.get('target_branch') or 'develop'),
                dry_run=bool(raw_input.get('dry_run', True)),
            ),
            status=RunStatus(str(data.get('status') or RunStatus.RUNNING.value)),
            task=TrackerTask.from_dict(data['task']) if data.get('task') else None,
            repo=RepoSnapshot.from_dict(data['repo']) if data.get('repo') else None,
            proposal=DesignProposal.from_dict(data['proposal']) if data.get('proposal') else None,
            staged_edits=(
                tuple(
                    DraftEdit(
                        path=str(item.get('path') or ''),
                        content=str(item.get('content') or ''),
                        rationale=str(item.get('rationale') or ''),
                    )
                    for item in staged
                    if isinstance(item, dict)
                )
                if isinstance(staged, (list, tuple))
                else None
            ),
            branch_name=_optional_str(data.get('branch_name')),
            diff_preview=data.get('diff_preview'),
            test_report=TestExecutionReport.from_dict(data['test_report']) if data.get('test_report') else None,
            compilation_analysis=(
                CompilationErrorAnalysis.from_dict(data['compilation_analysis'])
                if data.get('compilation_analysis')
                else None
            ),
            feedback_history=tuple(str(item) for item in data.get('feedback_history') or []),
            final_summary=data.get('final_summary'),
            merge_request_url=data.get('merge_request_url'),
            error=data.get('error'),
        )
