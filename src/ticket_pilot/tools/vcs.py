from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import re
import subprocess

from ticket_pilot.errors import VcsError, WorktreeStateError
from ticket_pilot.observability import get_logger

_log = get_logger('ticket_pilot.tools.vcs')

BRANCH_PREFIX = 'codex/'
BRANCH_SLUG_MAX_CHARS = 45
MEMORY_DIRECTORY = '.agent-memory'
_MEMORY_EXCLUDE = f':(exclude){MEMORY_DIRECTORY}'
_GIT_TIMEOUT_SECONDS = 120


@dataclass(frozen=True)
class GitResult:
    argv: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str


def build_branch_name(task_id: str) -> str:
    slug = re.sub(r'[^a-z0-9]+', '-', str(task_id or '').lower()).strip('-')[:BRANCH_SLUG_MAX_CHARS]
    return f'{BRANCH_PREFIX}{slug or "task"}'


class GitWorkspace:
    """Thin wrapper over the git CLI for one working tree."""

    def __init__(self, *, git_binary: str = 'git', timeout_seconds: int = _GIT_TIMEOUT_SECONDS):
        self.git_binary = git_binary
        self.timeout_seconds = timeout_seconds

    def _run(self, repo_path: str | Path, *args: str, allowed_returncodes: tuple[int, ...] = (0,)) -> GitResult:
        argv = (self.git_binary, *args)
        try:
            completed = subprocess.run(
                list(argv),
                cwd=str(repo_path),
                capture_output=True,
                text=True,
                encoding='utf-8',
                errors='replace',
                timeout=self.timeout_seconds,
            )
        except FileNotFoundError as exc:
            raise VcsError(f'git executable not found: {self.git_binary}') from exc
        except subprocess.TimeoutExpired as exc:
            raise VcsError(f'git {" ".join(args)} timed out after {self.timeout_seconds}s') from exc
        result = GitResult(
            argv=argv,
            returncode=completed.returncode,
            stdout=(completed.stdout or '').strip(),
            stderr=(completed.stderr or '').strip(),
        )
        _log.debug('git_command args=%s returncode=%s', ' '.join(args), result.returncode)
        if result.returncode not in allowed_returncodes:
            detail = result.stderr or result.stdout or f'exit code {result.returncode}'
            raise VcsError(f'git {" ".join(args)} failed: {detail}')
        return result

    def ensure_clean_worktree(self, repo_path: str | Path) -> None:
        status = self._run(repo_path, 'status', '--porcelain', '--', '.', _MEMORY_EXCLUDE).stdout
        if status:
            raise WorktreeStateError(
                'Working tree is not clean. Commit/stash existing changes before running the agent.'
            )

    def current_branch(self, repo_path: str | Path) -> str:
        return self._run(repo_path, 'rev-parse', '--abbrev-ref', 'HEAD').stdout

    def create_or_checkout_branch(
        self,
        repo_path: str | Path,
        branch_name: str,
        target_branch: str,
        *,
        dry_run: bool,
    ) -> None:
        if dry_run:
            return
        self.ensure_clean_worktree(repo_path)
        existing = self._run(repo_path, 'branch', '--list', branch_name).stdout
        if existing:
            self._run(repo_path, 'checkout', branch_name)
            _log.info('branch_checked_out branch=%s', branch_name)
            return
        self._run(repo_path, 'checkout', target_branch)
        self._run(repo_path, 'checkout', '-b', branch_name)
        _log.info('branch_created branch=%s from=%s', branch_name, target_branch)

    def untracked_files(self, repo_path: str | Path) -> list[str]:
        listing = self._run(
            repo_path, 'ls-files', '--others', '--exclude-standard', '--', '.', _MEMORY_EXCLUDE,
        ).stdout
        return [line for line in listing.splitlines() if line.strip()]

    def get_diff(self, repo_path: str | Path) -> str:
        """Diff of tracked changes plus new untracked files, relative to HEAD."""
        parts: list[str] = []
        tracked = self._run(repo_path, 'diff', '--', '.', _MEMORY_EXCLUDE).stdout
        if tracked:
            parts.append(tracked)
        for path in self.untracked_files(repo_path):
            # exit code 1 means the files differ
            added = self._run(
                repo_path, 'diff', '--no-index', '--', '/dev/null', path, allowed_returncodes=(0, 1),
            ).stdout
            if added:
                parts.append(added)
        return '\n'.join(parts)

    def stage_commit_and_get_sha(self, repo_path: str | Path, commit_message: str) -> str:
        self._run(repo_path, 'add', '--', '.', _MEMORY_EXCLUDE)
        self._run(repo_path, 'commit', '-m', commit_message)
        sha = self._run(repo_path, 'rev-parse', 'HEAD').stdout
        _log.info('commit_created sha=%s', sha)
        return sha

    def push_branch(self, repo_path: str | Path, branch_name: str) -> None:
        self._run(repo_path, 'push', '-u', 'origin', branch_name)
        _log.info('branch_pushed branch=%s', branch_name)
