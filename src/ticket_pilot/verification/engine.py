from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import shutil
from typing import Callable, Sequence

from ticket_pilot.domain.models import DraftEdit, RepoSnapshot, TestExecutionReport
from ticket_pilot.errors import VerificationExecutionError
from ticket_pilot.locks import REPOSITORY_LOCKS, RepositoryLocks
from ticket_pilot.observability import get_logger
from ticket_pilot.tools.repo_scan import resolve_inside_repo
from ticket_pilot.verification.coverage import (
    compute_overall_coverage,
    map_coverage_to_edits,
    parse_coverage_report,
)
from ticket_pilot.verification.executor import BoundedCommandExecutor, CommandOutcome
from ticket_pilot.verification.strategy import UNSUPPORTED_STRATEGY_NOTES, TestStrategy, resolve_test_strategy

_log = get_logger('ticket_pilot.verification.engine')

STDOUT_SNIPPET_CHARS = 4000
STDERR_SNIPPET_CHARS = 2000
FAILURE_STDERR_SNIPPET_CHARS = 4000


def truncate(value: str, max_chars: int) -> str:
    text = value or ''
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + '\n...<truncated>'


@dataclass(frozen=True)
class FileSnapshot:
    path: str
    target: Path
    content: bytes | None
    created_dirs: tuple[Path, ...]


def _missing_parents(target: Path, root: Path) -> tuple[Path, ...]:
    missing: list[Path] = []
    current = target.parent
    while current != root and root in current.parents and not current.exists():
        missing.append(current)
        current = current.parent
    return tuple(missing)


def snapshot_paths(repo_path: Path, paths: Sequence[str]) -> list[FileSnapshot]:
    root = Path(repo_path).resolve()
    snapshots: list[FileSnapshot] = []
    seen: set[Path] = set()
    for path in paths:
        target = resolve_inside_repo(root, path)
        if target in seen:
            continue
        seen.add(target)
        content = target.read_bytes() if target.is_file() else None
        snapshots.append(
            FileSnapshot(path=path, target=target, content=content, created_dirs=_missing_parents(target, root))
        )
    return snapshots


def restore_snapshots(snapshots: Sequence[FileSnapshot]) -> None:
    """Put every snapshotted path back to its captured bytes, or remove it if it was absent.

    All paths are attempted; the first failure is re-raised afterwards.
    """
    first_error: OSError | None = None
    for snapshot in snapshots:
        try:
            if snapshot.content is None:
                snapshot.target.unlink(missing_ok=True)
            else:
                snapshot.target.parent.mkdir(parents=True, exist_ok=True)
                snapshot.target.write_bytes(snapshot.content)
        except OSError as exc:
            _log.exception('snapshot_restore_failed path=%s', snapshot.path)
            if first_error is None:
                first_error = exc
    for snapshot in snapshots:
        # created_dirs is ordered deepest first
        for directory in snapshot.created_dirs:
            try:
                directory.rmdir()
            except FileNotFoundError:
                continue
            except OSError:
                break
    if first_error is not None:
        raise first_error


def absent_artifacts(repo_path: Path, paths: Sequence[str]) -> list[Path]:
    root = Path(repo_path).resolve()
    return [target for target in (resolve_inside_repo(root, path) for path in paths) if not target.exists()]


def remove_artifacts(targets: Sequence[Path]) -> None:
    for target in targets:
        try:
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            else:
                target.unlink(missing_ok=True)
        except OSError:
            _log.exception('artifact_cleanup_failed path=%s', target)
            raise


class VerificationEngine:
    def __init__(
        self,
        *,
        executor: BoundedCommandExecutor | None = None,
        timeout_seconds: float = 900,
        max_output_bytes: int = 10 * 1024 * 1024,
        strategy_resolver: Callable[[Path, RepoSnapshot], TestStrategy | None] = resolve_test_strategy,
        locks: RepositoryLocks | None = None,
    ):
        self.executor = executor or BoundedCommandExecutor()
        self.timeout_seconds = max(0.05, float(timeout_seconds))
        self.max_output_bytes = max(1, int(max_output_bytes))
        self.strategy_resolver = strategy_resolver
        self.locks = locks or REPOSITORY_LOCKS

    def verify(self, repo_path: str | Path, repo: RepoSnapshot, edits: Sequence[DraftEdit]) -> TestExecutionReport:
        root = Path(repo_path).resolve()
        strategy = self.strategy_resolver(root, repo)
        if strategy is None:
            return TestExecutionReport(
                executed=False,
                success=False,
                notes=UNSUPPORTED_STRATEGY_NOTES,
            )

        with self.locks.hold(root):
            try:
                snapshots = snapshot_paths(root, [*(edit.path for edit in edits), strategy.report_path])
                created_artifacts = absent_artifacts(root, strategy.artifacts)
            except ValueError as exc:
                return TestExecutionReport(
                    executed=False,
                    success=False,
                    command=strategy.command,
                    failure_cause=str(exc),
                    notes=('Edits were not applied because a path resolves outside the repository.',),
                )
            report_file = root / strategy.report_path
            report_mtime = report_file.stat().st_mtime_ns if report_file.is_file() else None
            report_found = False
            report_stale = False

            outcome: CommandOutcome | None = None
            failure_cause: str | None = None
            try:
                for edit in edits:
                    target = resolve_inside_repo(root, edit.path)
                    target.parent.mkdir(parents=True, exist_ok=True)
                    with target.open('w', encoding='utf-8', newline='') as handle:
                        handle.write(edit.content)
                try:
                    outcome = self.executor.run(
                        strategy.argv,
                        cwd=root,
                        timeout_seconds=self.timeout_seconds,
                        max_output_bytes=self.max_output_bytes,
                    )
                except VerificationExecutionError as exc:
                    failure_cause = str(exc)
                report_found = report_file.is_file()
                report_stale = report_found and report_mtime is not None and report_file.stat().st_mtime_ns == report_mtime
                aggregates = parse_coverage_report(strategy.report_format, report_file, root)
            finally:
                try:
                    restore_snapshots(snapshots)
                finally:
                    remove_artifacts(created_artifacts)

        file_coverage = map_coverage_to_edits(aggregates, [edit.path for edit in edits])
        notes: list[str] = []
        if outcome is not None and outcome.ok:
            success = True
            notes.append('Tests executed successfully with coverage.')
        else:
            success = False
            if failure_cause is None and outcome is not None:
                failure_cause = self._failure_cause(outcome)
            notes.append('Tests failed. Review stderr/stdout before approval.')
        if not report_found:
            notes.append(f'Coverage report not found at {strategy.report_path}.')
        elif report_stale:
            notes.append(f'Coverage report at {strategy.report_path} was not refreshed by this run; figures may be stale.')

        stdout = outcome.stdout if outcome is not None else ''
        stderr = outcome.stderr if outcome is not None else ''
        report = TestExecutionReport(
            executed=True,
            success=success,
            command=strategy.command,
            failure_cause=failure_cause,
            overall_line_coverage_percent=compute_overall_coverage(file_coverage),
            file_coverage=tuple(file_coverage),
            notes=tuple(notes),
            stdout_snippet=truncate(stdout, STDOUT_SNIPPET_CHARS),
            stderr_snippet=truncate(stderr, STDERR_SNIPPET_CHARS if success else FAILURE_STDERR_SNIPPET_CHARS),
        )
        _log.info(
            'verification_finished strategy=%s success=%s coverage=%s',
            strategy.name, report.success, report.overall_line_coverage_percent,
        )
        return report

    def _failure_cause(self, outcome: CommandOutcome) -> str:
        if outcome.timed_out:
            return f'Test command timed out after {self.timeout_seconds:g} seconds and was terminated.'
        if outcome.output_exceeded:
            return f'Test command output exceeded {self.max_output_bytes} bytes and was terminated.'
        return f'Test command exited with code {outcome.returncode}.'
