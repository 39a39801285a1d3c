from __future__ import annotations

from pathlib import Path
import shutil
import subprocess
import sys
import textwrap

import pytest

from ticket_pilot.domain.models import DraftEdit, RepoSnapshot
from ticket_pilot.errors import VerificationExecutionError
from ticket_pilot.locks import RepositoryLocks
from ticket_pilot.tools.vcs import GitWorkspace
from ticket_pilot.verification.coverage import CoverageFormat
from ticket_pilot.verification.engine import (
    VerificationEngine,
    restore_snapshots,
    snapshot_paths,
    truncate,
)
from ticket_pilot.verification.executor import BoundedCommandExecutor, CommandOutcome
from ticket_pilot.verification.strategy import TestStrategy

REPO = RepoSnapshot(
    file_count=2,
    top_level_entries=('src',),
    language_summary={'TypeScript': 2},
    sample_files=('src/a.ts',),
    tech_stack=('Node.js',),
    testing_guidance=(),
)

WRITE_REPORT_SCRIPT = textwrap.dedent(
    """
    from pathlib import Path
    import sys

    body = Path('src/a.ts').read_text(encoding='utf-8')
    print('seen=' + body.strip())
    Path('coverage').mkdir(exist_ok=True)
    Path('coverage/lcov.info').write_text(
        'SF:src/a.ts\\nDA:1,1\\nDA:2,1\\nDA:3,0\\nend_of_record\\n'
        'SF:src/a.test.ts\\nDA:1,1\\nend_of_record\\n',
        encoding='utf-8',
    )
    sys.exit(int(sys.argv[1]) if len(sys.argv) > 1 else 0)
    """
)

SLEEP_SCRIPT = textwrap.dedent(
    """
    from pathlib import Path
    import time

    Path('src/a.ts').read_text(encoding='utf-8')
    time.sleep(30)
    """
)


def _make_repo(tmp_path: Path) -> Path:
    repo = tmp_path / 'repo'
    (repo / 'src').mkdir(parents=True)
    (repo / 'src' / 'a.ts').write_text('export const a = 1;\n', encoding='utf-8')
    (repo / 'run_checks.py').write_text(WRITE_REPORT_SCRIPT, encoding='utf-8')
    (repo / 'sleepy.py').write_text(SLEEP_SCRIPT, encoding='utf-8')
    return repo


def _strategy(*argv: str) -> TestStrategy:
    return TestStrategy(
        name='script',
        argv=(sys.executable, *argv),
        report_path='coverage/lcov.info',
        report_format=CoverageFormat.LCOV,
    )


def _engine(strategy: TestStrategy | None, **kwargs) -> VerificationEngine:
    return VerificationEngine(strategy_resolver=lambda root, repo: strategy, locks=RepositoryLocks(), **kwargs)


def _tree(repo: Path) -> dict[str, bytes]:
    return {
        str(path.relative_to(repo)).replace('\\', '/'): path.read_bytes()
        for path in sorted(repo.rglob('*'))
        if path.is_file()
    }


def _dirs(repo: Path) -> set[str]:
    return {str(p.relative_to(repo)) for p in repo.rglob('*') if p.is_dir()}


EDITS = (
    DraftEdit(path='src/a.ts', content='export const a = 2;\n'),
    DraftEdit(path='src/a.test.ts', content='test("a", () => {});\n'),
    DraftEdit(path='src/deep/new/b.ts', content='export const b = 1;\n'),
)


def test_verify_success_reports_coverage_and_restores_tree(tmp_path: Path):
    repo = _make_repo(tmp_path)
    before_files = _tree(repo)
    before_dirs = _dirs(repo)

    report = _engine(_strategy('run_checks.py', '0')).verify(repo, REPO, EDITS)

    assert report.executed is True
    assert report.success is True
    assert report.failure_cause is None
    assert 'seen=export const a = 2;' in (report.stdout_snippet or '')
    assert report.notes[0] == 'Tests executed successfully with coverage.'
    by_path = {entry.path: entry for entry in report.file_coverage}
    assert [entry.path for entry in report.file_coverage] == ['src/a.ts', 'src/a.test.ts', 'src/deep/new/b.ts']
    assert by_path['src/a.ts'].covered_lines == 2
    assert by_path['src/a.ts'].total_lines == 3
    assert by_path['src/a.ts'].line_coverage_percent == 66.67
    assert by_path['src/deep/new/b.ts'].line_coverage_percent is None
    assert report.overall_line_coverage_percent == 75.0

    assert _tree(repo) == before_files
    assert _dirs(repo) == before_dirs
    assert not (repo / 'coverage').exists()


def test_verify_failure_is_reported_and_tree_is_restored(tmp_path: Path):
    repo = _make_repo(tmp_path)
    before_files = _tree(repo)

    report = _engine(_strategy('run_checks.py', '3')).verify(repo, REPO, EDITS)

    assert report.executed is True
    assert report.success is False
    assert report.failure_cause == 'Test command exited with code 3.'
    assert report.notes[0] == 'Tests failed. Review stderr/stdout before approval.'
    assert report.file_coverage[0].covered_lines == 2
    assert _tree(repo) == before_files


def test_verify_timeout_kills_command_and_restores_tree(tmp_path: Path):
    repo = _make_repo(tmp_path)
    before_files = _tree(repo)
    before_dirs = _dirs(repo)

    report = _engine(_strategy('sleepy.py'), timeout_seconds=1).verify(repo, REPO, EDITS)

    assert report.executed is True
    assert report.success is False
    assert report.failure_cause == 'Test command timed out after 1 seconds and was terminated.'
    assert 'Coverage report not found at coverage/lcov.info.' in report.notes
    assert all(entry.total_lines == 0 for entry in report.file_coverage)
    assert report.overall_line_coverage_percent is None
    assert _tree(repo) == before_files
    assert _dirs(repo) == before_dirs


def test_verify_without_strategy_does_not_execute_or_touch_files(tmp_path: Path):
    repo = _make_repo(tmp_path)
    before_files = _tree(repo)

    report = _engine(None).verify(repo, REPO, EDITS)

    assert report.executed is False
    assert report.success is False
    assert report.notes[0] == 'No supported coverage strategy detected.'
    assert _tree(repo) == before_files


def test_verify_rejects_paths_outside_repository_before_writing(tmp_path: Path):
    repo = _make_repo(tmp_path)
    before_files = _tree(repo)
    edits = (
        DraftEdit(path='src/a.ts', content='changed'),
        DraftEdit(path='../escape.ts', content='nope'),
    )

    report = _engine(_strategy('run_checks.py')).verify(repo, REPO, edits)

    assert report.executed is False
    assert report.failure_cause
    assert not (tmp_path / 'escape.ts').exists()
    assert _tree(repo) == before_files


class RaisingExecutor:
    def run(self, argv, *, cwd, timeout_seconds, max_output_bytes):
        assert (Path(cwd) / 'src' / 'a.ts').read_text(encoding='utf-8') == 'export const a = 2;\n'
        raise VerificationExecutionError('command_not_found command=missing-tool')


def test_verify_captures_executor_errors_as_failure_cause(tmp_path: Path):
    repo = _make_repo(tmp_path)
    before_files = _tree(repo)

    report = _engine(_strategy('run_checks.py'), executor=RaisingExecutor()).verify(repo, REPO, EDITS[:1])

    assert report.executed is True
    assert report.success is False
    assert report.failure_cause == 'command_not_found command=missing-tool'
    assert report.stdout_snippet == ''
    assert _tree(repo) == before_files


class StaleReportExecutor:
    def run(self, argv, *, cwd, timeout_seconds, max_output_bytes):
        return CommandOutcome(command='noop', returncode=0, stdout='x' * 5000, stderr='', duration_seconds=0.1)


def test_verify_flags_stale_report_and_truncates_stdout(tmp_path: Path):
    repo = _make_repo(tmp_path)
    (repo / 'coverage').mkdir()
    (repo / 'coverage' / 'lcov.info').write_text('SF:src/a.ts\nDA:1,1\nend_of_record\n', encoding='utf-8')

    report = _engine(_strategy('run_checks.py'), executor=StaleReportExecutor()).verify(repo, REPO, EDITS[:1])

    assert report.success is True
    assert any('was not refreshed by this run' in note for note in report.notes)
    assert (repo / 'coverage' / 'lcov.info').read_text(encoding='utf-8') == 'SF:src/a.ts\nDA:1,1\nend_of_record\n'
    assert report.stdout_snippet.endswith('\n...<truncated>')
    assert len(report.stdout_snippet) == 4000 + len('\n...<truncated>')


ARTIFACT_SCRIPT = textwrap.dedent(
    """
    from pathlib import Path

    Path('coverage.out').write_text('mode: set\\n', encoding='utf-8')
    Path('.coverage').write_bytes(b'sqlite')
    Path('.pytest_cache/v/cache').mkdir(parents=True)
    Path('.pytest_cache/v/cache/lastfailed').write_text('{}', encoding='utf-8')
    """
)


def _artifact_strategy() -> TestStrategy:
    return TestStrategy(
        name='script',
        argv=(sys.executable, 'artifacts.py'),
        report_path='coverage.out',
        report_format=CoverageFormat.GO_PROFILE,
        artifacts=('.coverage', '.pytest_cache'),
    )


def _listing(repo: Path) -> list[str]:
    return sorted(str(path.relative_to(repo)).replace('\\', '/') for path in repo.rglob('*'))


def test_verify_leaves_directory_listing_identical(tmp_path: Path):
    repo = _make_repo(tmp_path)
    (repo / 'artifacts.py').write_text(ARTIFACT_SCRIPT, encoding='utf-8')
    before = _listing(repo)

    report = _engine(_artifact_strategy()).verify(repo, REPO, EDITS)

    assert report.success is True, report.failure_cause
    assert 'Coverage report not found at coverage.out.' not in report.notes
    assert _listing(repo) == before


def test_verify_keeps_artifacts_that_existed_before_the_run(tmp_path: Path):
    repo = _make_repo(tmp_path)
    (repo / 'artifacts.py').write_text(ARTIFACT_SCRIPT, encoding='utf-8')
    (repo / '.coverage').write_bytes(b'previous')

    _engine(_artifact_strategy()).verify(repo, REPO, EDITS[:1])

    assert (repo / '.coverage').is_file()
    assert not (repo / '.pytest_cache').exists()
    assert not (repo / 'coverage.out').exists()


@pytest.mark.skipif(shutil.which('git') is None, reason='git is not installed')
def test_commit_after_verify_does_not_pick_up_coverage_output(tmp_path: Path):
    repo = _make_repo(tmp_path)
    (repo / 'artifacts.py').write_text(ARTIFACT_SCRIPT, encoding='utf-8')
    for args in (
        ('init',),
        ('config', 'user.email', 'pilot@example.com'),
        ('config', 'user.name', 'Pilot'),
        ('add', '.'),
        ('commit', '-m', 'initial'),
    ):
        subprocess.run(['git', *args], cwd=str(repo), capture_output=True, check=True)
    vcs = GitWorkspace()

    _engine(_artifact_strategy()).verify(repo, REPO, EDITS)

    vcs.ensure_clean_worktree(repo)
    (repo / 'src' / 'a.ts').write_text('export const a = 2;\n', encoding='utf-8')
    vcs.stage_commit_and_get_sha(repo, 'bump a')
    committed = subprocess.run(
        ['git', 'show', '--name-only', '--format=', 'HEAD'],
        cwd=str(repo), capture_output=True, text=True, check=True,
    ).stdout.split()
    assert committed == ['src/a.ts']


def test_snapshot_and_restore_roundtrip_removes_created_directories(tmp_path: Path):
    repo = _make_repo(tmp_path)
    snapshots = snapshot_paths(repo, ['src/a.ts', 'x/y/z.txt', 'src/a.ts'])
    assert len(snapshots) == 2
    (repo / 'src' / 'a.ts').write_text('mutated', encoding='utf-8')
    (repo / 'x' / 'y').mkdir(parents=True)
    (repo / 'x' / 'y' / 'z.txt').write_text('new', encoding='utf-8')

    restore_snapshots(snapshots)

    assert (repo / 'src' / 'a.ts').read_text(encoding='utf-8') == 'export const a = 1;\n'
    assert not (repo / 'x').exists()


def test_snapshot_paths_rejects_escaping_paths(tmp_path: Path):
    repo = _make_repo(tmp_path)
    with pytest.raises(ValueError):
        snapshot_paths(repo, ['../../etc/passwd'])


def test_truncate_marks_clipped_text():
    assert truncate('abc', 5) == 'abc'
    assert truncate('abcdef', 3) == 'abc\n...<truncated>'
    assert truncate('', 3) == ''


def test_bounded_executor_reports_output_cap(tmp_path: Path):
    outcome = BoundedCommandExecutor().run(
        [sys.executable, '-c', 'import sys; sys.stdout.write("y" * 200000)'],
        cwd=tmp_path,
        timeout_seconds=30,
        max_output_bytes=1024,
    )
    assert outcome.output_exceeded is True
    assert outcome.ok is False


def test_bounded_executor_captures_both_streams(tmp_path: Path):
    outcome = BoundedCommandExecutor().run(
        [sys.executable, '-c', 'import sys; print("out"); print("err", file=sys.stderr); sys.exit(2)'],
        cwd=tmp_path,
        timeout_seconds=30,
        max_output_bytes=1024,
    )
    assert outcome.returncode == 2
    assert outcome.stdout.strip() == 'out'
    assert outcome.stderr.strip() == 'err'
    assert outcome.timed_out is False
    assert outcome.ok is False


def test_bounded_executor_raises_for_missing_binary(tmp_path: Path):
    with pytest.raises(VerificationExecutionError) as exc_info:
        BoundedCommandExecutor().run(
            ['ticket-pilot-missing-binary-xyz'],
            cwd=tmp_path,
            timeout_seconds=5,
            max_output_bytes=1024,
        )
    assert 'command_not_found' in str(exc_info.value)
