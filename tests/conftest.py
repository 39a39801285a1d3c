from __future__ import annotations

from pathlib import Path
import sys
from types import SimpleNamespace

import pytest


def _prepend_repo_src_to_syspath() -> None:
    src = Path(__file__).resolve().parents[1] / 'src'
    if not src.is_dir():
        return
    src_text = str(src)
    key = src_text.replace('\\', '/').lower()
    sys.path[:] = [src_text, *(item for item in sys.path if str(item).replace('\\', '/').lower() != key)]


_prepend_repo_src_to_syspath()

from ticket_pilot.domain.models import RepoSnapshot, TestExecutionReport, TrackerTask  # noqa: E402
from ticket_pilot.instructions import InstructionLibrary  # noqa: E402
from ticket_pilot.locks import RepositoryLocks  # noqa: E402
from ticket_pilot.pipeline import RunPipeline  # noqa: E402
from ticket_pilot.repository import InMemoryRunRepository  # noqa: E402
from ticket_pilot.service import RunService  # noqa: E402
from ticket_pilot.storage.feedback import FeedbackMemory  # noqa: E402

TYPESCRIPT_REPO = RepoSnapshot(
    file_count=3,
    top_level_entries=('package.json', 'src'),
    language_summary={'TypeScript': 2},
    sample_files=('package.json', 'src/a.ts'),
    tech_stack=('JavaScript/Node.js', 'TypeScript'),
    testing_guidance=('Use jest or vitest.',),
)

PROPOSAL_RESPONSE = """Here is the plan:
{
  "requirements": ["Return 2 from a"],
  "assumptions": [],
  "implementationPlan": ["Change a", "Add a test"],
  "testsAndGrounding": ["src/a.test.ts"],
  "proposedEdits": [{"path": "src/a.ts", "summary": "bump"}, {"path": "src/a.test.ts", "summary": "test"}],
  "branchNameSuggestion": "codex/proj-7",
  "commitTitle": "PROJ-7: bump a",
  "prTitle": "Bump a to 2"
}"""

SOURCE_ONLY_RESPONSE = '{"edits": [{"path": "src/a.ts", "content": "export const a = 2;\\n"}], "summary": "source only"}'

WITH_TEST_RESPONSE = (
    '```json\n'
    '{"edits": ['
    '{"path": "src/a.ts", "content": "export const a = 2;\\n", "rationale": "bump"},'
    '{"path": "src/a.test.ts", "content": "test(\\"a\\", () => {});\\n"}'
    '], "summary": "bumped a with test", "commitTitle": "PROJ-7: bump a", "prDescription": "Bumps a."}\n'
    '```'
)


class FakeTracker:
    def __init__(self, task: TrackerTask | None = None, error: Exception | None = None):
        self.task = task or TrackerTask(id='PROJ-7', title='Bump a', description='a must be 2', labels=('backend',))
        self.error = error
        self.calls: list[tuple[str, str]] = []

    def fetch_task(self, tracker, task_id: str) -> TrackerTask:
        self.calls.append((getattr(tracker, 'value', tracker), task_id))
        if self.error is not None:
            raise self.error
        return self.task


class FakeScanner:
    def __init__(self, snapshot: RepoSnapshot = TYPESCRIPT_REPO):
        self.snapshot = snapshot

    def scan(self, repo_path) -> RepoSnapshot:
        return self.snapshot


class FakeVcs:
    def __init__(self, diff: str = 'diff --git a/src/a.ts b/src/a.ts\n'):
        self.diff = diff
        self.calls: list[tuple] = []

    def create_or_checkout_branch(self, repo_path, branch_name, target_branch, *, dry_run):
        self.calls.append(('checkout', branch_name, target_branch, dry_run))

    def get_diff(self, repo_path) -> str:
        self.calls.append(('diff',))
        return self.diff

    def stage_commit_and_get_sha(self, repo_path, commit_message) -> str:
        self.calls.append(('commit', commit_message))
        return 'c0ffee1'

    def push_branch(self, repo_path, branch_name) -> None:
        self.calls.append(('push', branch_name))

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]


class ScriptedReasoning:
    """Replays canned responses; fast-model calls are answered separately."""

    def __init__(self, responses: list[str], fast_response: str = '{}'):
        self.responses = list(responses)
        self.fast_response = fast_response
        self.prompts: list[str] = []
        self.fast_prompts: list[str] = []

    def generate_text(self, prompt: str, *, fast: bool = False) -> str:
        if fast:
            self.fast_prompts.append(prompt)
            return self.fast_response
        self.prompts.append(prompt)
        if not self.responses:
            raise AssertionError('reasoning service called more often than scripted')
        return self.responses.pop(0)


class FakeVerifier:
    def __init__(self, report: TestExecutionReport | None = None, error: Exception | None = None):
        self.report = report or TestExecutionReport(
            executed=True,
            success=True,
            command='npm run test:coverage',
            overall_line_coverage_percent=90.0,
            notes=('Tests executed successfully with coverage.',),
        )
        self.error = error
        self.calls: list[tuple] = []

    def verify(self, repo_path, repo, edits) -> TestExecutionReport:
        self.calls.append((str(repo_path), tuple(edit.path for edit in edits)))
        if self.error is not None:
            raise self.error
        return self.report


class FakePublisher:
    def __init__(self, url: str = 'https://gitlab.example.com/acme/app/-/merge_requests/12'):
        self.url = url
        self.calls: list[dict] = []

    def create_merge_request(self, **kwargs) -> str:
        self.calls.append(kwargs)
        return self.url


@pytest.fixture
def target_repo(tmp_path: Path) -> Path:
    repo = tmp_path / 'target'
    (repo / 'src').mkdir(parents=True)
    (repo / 'src' / 'a.ts').write_text('export const a = 1;\n', encoding='utf-8')
    (repo / 'package.json').write_text('{"name": "target"}\n', encoding='utf-8')
    return repo


@pytest.fixture
def fakes() -> dict:
    return {
        'tracker': FakeTracker(),
        'scanner': FakeScanner(),
        'vcs': FakeVcs(),
        'reasoning': ScriptedReasoning([PROPOSAL_RESPONSE, WITH_TEST_RESPONSE]),
        'verifier': FakeVerifier(),
        'publisher': FakePublisher(),
    }


@pytest.fixture
def build_service(tmp_path: Path, fakes: dict):
    """Factory wiring a RunService over the fakes; keyword overrides replace them."""

    def factory(*, backend: str = 'classic', max_attempts: int = 2, **overrides) -> RunService:
        parts = {**fakes, **overrides}
        feedback_memory = FeedbackMemory()
        pipeline = RunPipeline(
            tracker=parts['tracker'],
            scanner=parts['scanner'],
            feedback_memory=feedback_memory,
            vcs=parts['vcs'],
            reasoning=parts['reasoning'],
            verifier=parts['verifier'],
            publisher=parts['publisher'],
            instructions=InstructionLibrary(tmp_path / 'no-instructions'),
            max_attempts=max_attempts,
            backend=backend,
            locks=RepositoryLocks(),
        )
        return RunService(
            repository=InMemoryRunRepository(),
            pipeline=pipeline,
            feedback_memory=feedback_memory,
        )

    return factory


@pytest.fixture
def canned() -> SimpleNamespace:
    return SimpleNamespace(
        repo=TYPESCRIPT_REPO,
        proposal=PROPOSAL_RESPONSE,
        source_only=SOURCE_ONLY_RESPONSE,
        with_test=WITH_TEST_RESPONSE,
    )


@pytest.fixture
def doubles() -> SimpleNamespace:
    return SimpleNamespace(
        tracker=FakeTracker,
        scanner=FakeScanner,
        vcs=FakeVcs,
        reasoning=ScriptedReasoning,
        verifier=FakeVerifier,
        publisher=FakePublisher,
    )
