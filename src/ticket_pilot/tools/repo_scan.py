from __future__ import annotations

from collections import deque
import os
from pathlib import Path
import subprocess

from ticket_pilot.domain.models import RepoSnapshot
from ticket_pilot.observability import get_logger

_log = get_logger('ticket_pilot.tools.repo_scan')

LANGUAGE_BY_EXTENSION = {
    '.ts': 'TypeScript',
    '.tsx': 'TypeScript',
    '.js': 'JavaScript',
    '.jsx': 'JavaScript',
    '.py': 'Python',
    '.go': 'Go',
    '.java': 'Java',
    '.kt': 'Kotlin',
    '.cs': 'C#',
    '.rb': 'Ruby',
    '.rs': 'Rust',
    '.php': 'PHP',
    '.swift': 'Swift',
    '.scala': 'Scala',
    '.c': 'C',
    '.cpp': 'C++',
    '.h': 'C/C++',
}

IGNORED_DIRECTORIES = frozenset({'.git', 'node_modules', '.next', 'dist', 'build', 'coverage'})
TOP_LEVEL_LIMIT = 25
SAMPLE_FILES_LIMIT = 80
_LIST_TIMEOUT_SECONDS = 60


def resolve_inside_repo(repo_path: str | Path, relative_path: str) -> Path:
    root = Path(repo_path).resolve()
    resolved = (root / str(relative_path or '')).resolve(strict=False)
    if resolved != root and root not in resolved.parents:
        raise ValueError(f'Invalid file path outside repo: {relative_path}')
    return resolved


def is_inside_repo(repo_path: str | Path, relative_path: str) -> bool:
    try:
        resolved = resolve_inside_repo(repo_path, relative_path)
    except ValueError:
        return False
    return resolved != Path(repo_path).resolve()


def read_file_if_exists(repo_path: str | Path, relative_path: str) -> str | None:
    target = resolve_inside_repo(repo_path, relative_path)
    try:
        return target.read_text(encoding='utf-8')
    except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
        return None
    except UnicodeDecodeError:
        return target.read_text(encoding='utf-8', errors='replace')


def write_file(repo_path: str | Path, relative_path: str, content: str) -> Path:
    target = resolve_inside_repo(repo_path, relative_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open('w', encoding='utf-8', newline='') as handle:
        handle.write(content)
    return target


def _run_listing(argv: list[str], cwd: Path) -> list[str]:
    try:
        completed = subprocess.run(
            argv,
            cwd=str(cwd),
            capture_output=True,
            text=True,
            encoding='utf-8',
            errors='replace',
            timeout=_LIST_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.TimeoutExpired):
        return []
    if completed.returncode != 0:
        return []
    return [line.strip() for line in (completed.stdout or '').splitlines() if line.strip()]


def _walk_files(root: Path) -> list[str]:
    files: list[str] = []
    queue: deque[Path] = deque([root])
    while queue:
        current = queue.popleft()
        try:
            entries = sorted(current.iterdir(), key=lambda p: p.name)
        except OSError:
            _log.debug('repo_walk_skip path=%s', current, exc_info=True)
            continue
        for entry in entries:
            if entry.is_dir() and not entry.is_symlink():
                if entry.name not in IGNORED_DIRECTORIES:
                    queue.append(entry)
                continue
            if entry.is_file():
                files.append(entry.relative_to(root).as_posix())
    return files


def list_repository_files(repo_path: str | Path) -> list[str]:
    root = Path(repo_path)
    files = _run_listing(['rg', '--files'], root)
    if files:
        return [f.replace('\\', '/') for f in files]
    files = _run_listing(['git', 'ls-files'], root)
    if files:
        return files
    return _walk_files(root)


def summarize_languages(files: list[str]) -> dict[str, int]:
    summary: dict[str, int] = {}
    for file in files:
        language = LANGUAGE_BY_EXTENSION.get(os.path.splitext(file)[1].lower(), 'Other')
        summary[language] = summary.get(language, 0) + 1
    return summary


def detect_tech_stack(files: list[str], language_summary: dict[str, int]) -> list[str]:
    normalized = {file.replace('\\', '/') for file in files}
    stack: list[str] = []

    def add(item: str) -> None:
        if item not in stack:
            stack.append(item)

    if language_summary.get('TypeScript') or 'tsconfig.json' in normalized:
        add('TypeScript')
    if language_summary.get('JavaScript') or 'package.json' in normalized:
        add('JavaScript/Node.js')
    if 'next.config.js' in normalized or 'next.config.ts' in normalized or 'next.config.mjs' in normalized:
        add('Next.js')
    if 'pom.xml' in normalized or 'mvnw' in normalized:
        add('Java (Maven)')
    if {'build.gradle', 'build.gradle.kts', 'gradlew'} & normalized:
        add('Java/Kotlin (Gradle)')
    if 'pyproject.toml' in normalized or 'requirements.txt' in normalized or language_summary.get('Python'):
        add('Python')
    if 'go.mod' in normalized or language_summary.get('Go'):
        add('Go')
    if 'Cargo.toml' in normalized or language_summary.get('Rust'):
        add('Rust')
    if not stack:
        add('Generic polyglot repository')
    return stack


def build_testing_guidance(tech_stack: list[str], language_summary: dict[str, int]) -> list[str]:
    guidance: list[str] = []
    if language_summary.get('TypeScript') or language_summary.get('JavaScript') or 'Next.js' in tech_stack:
        guidance.append('Add or update unit tests using Jest/Vitest and framework-specific test utilities.')
    if language_summary.get('Python'):
        guidance.append('Add or update pytest unit tests for changed modules.')
    if language_summary.get('Go'):
        guidance.append('Add or update *_test.go files for changed packages.')
    if language_summary.get('Java') or language_summary.get('Kotlin'):
        guidance.append('Add or update JUnit tests in src/test/java (or equivalent test source set).')
    if not guidance:
        guidance.append("Add/update tests using the repository's existing test conventions.")
    return guidance


class RepositoryScanner:
    def scan(self, repo_path: str | Path) -> RepoSnapshot:
        root = Path(repo_path)
        files = list_repository_files(root)
        language_summary = summarize_languages(files)
        entries = sorted(entry.name for entry in root.iterdir())
        tech_stack = detect_tech_stack(files, language_summary)
        testing_guidance = build_testing_guidance(tech_stack, language_summary)
        _log.info('repo_scanned path=%s files=%d stack=%s', root, len(files), ','.join(tech_stack))
        return RepoSnapshot(
            file_count=len(files),
            top_level_entries=tuple(entries[:TOP_LEVEL_LIMIT]),
            language_summary=language_summary,
            sample_files=tuple(files[:SAMPLE_FILES_LIMIT]),
            tech_stack=tuple(tech_stack),
            testing_guidance=tuple(testing_guidance),
        )
