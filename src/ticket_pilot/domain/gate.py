from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Iterable

from ticket_pilot.domain.models import DraftEdit, RepoSnapshot

SOURCE_EXTENSIONS = frozenset(
    {
        '.ts', '.tsx', '.mts', '.cts', '.js', '.jsx', '.mjs', '.cjs',
        '.py', '.go', '.java', '.kt', '.kts', '.scala', '.groovy',
        '.cs', '.rb', '.rs', '.php', '.swift',
        '.c', '.cc', '.cpp', '.cxx', '.h', '.hpp',
    }
)

# Languages whose presence in a repository makes unit tests mandatory for source changes.
TEST_REQUIRED_LANGUAGES = frozenset({'TypeScript', 'JavaScript', 'Python', 'Go', 'Java', 'Kotlin'})

TEST_DIRECTORY_NAMES = frozenset({'test', 'tests', '__tests__'})

_CLASS_STYLE_EXTENSIONS = frozenset({'.java', '.kt', '.kts', '.scala', '.groovy', '.cs', '.swift', '.php'})

UNIT_TEST_GATE_FEEDBACK = (
    'The previous edit set changed source files without adding or updating unit tests. '
    'Return a complete edit set that also includes matching unit test files for the changed '
    'source modules, following the repository test conventions and testing guidance.'
)


@dataclass(frozen=True)
class GateOutcome:
    passed: bool
    reason: str
    source_paths: tuple[str, ...] = ()
    test_paths: tuple[str, ...] = ()


def _normalize(path: str) -> PurePosixPath:
    text = str(path or '').strip().replace('\\', '/')
    while text.startswith('./'):
        text = text[2:]
    return PurePosixPath(text)


def is_test_path(path: str) -> bool:
    pure = _normalize(path)
    if any(part.lower() in TEST_DIRECTORY_NAMES for part in pure.parts[:-1]):
        return True
    name = pure.name
    lowered = name.lower()
    if '.test.' in lowered or '.spec.' in lowered:
        return True
    suffix = pure.suffix.lower()
    stem = name[: -len(pure.suffix)] if pure.suffix else name
    stem_lower = stem.lower()
    if stem_lower.endswith('_test') or stem_lower.endswith('_spec'):
        return True
    if suffix == '.py' and stem_lower.startswith('test_'):
        return True
    if suffix in _CLASS_STYLE_EXTENSIONS:
        if stem.endswith(('Test', 'Tests', 'IT', 'Spec')) or (stem.startswith('Test') and stem[4:5].isupper()):
            return True
    return False


def is_source_path(path: str) -> bool:
    pure = _normalize(path)
    if pure.suffix.lower() not in SOURCE_EXTENSIONS:
        return False
    return not is_test_path(path)


def repository_requires_tests(repo: RepoSnapshot | None) -> bool:
    if repo is None:
        return True
    return any(int(repo.language_summary.get(language, 0) or 0) > 0 for language in TEST_REQUIRED_LANGUAGES)


def evaluate_unit_test_gate(edits: Iterable[DraftEdit], repo: RepoSnapshot | None) -> GateOutcome:
    paths = [edit.path for edit in edits]
    if not paths:
        return GateOutcome(passed=False, reason='empty_edit_set')

    source_paths = tuple(path for path in paths if is_source_path(path))
    test_paths = tuple(path for path in paths if is_test_path(path))
    if not source_paths:
        return GateOutcome(passed=True, reason='no_source_changes', test_paths=test_paths)
    if not repository_requires_tests(repo):
        return GateOutcome(passed=True, reason='tests_not_required', source_paths=source_paths, test_paths=test_paths)
    if test_paths:
        return GateOutcome(passed=True, reason='tests_present', source_paths=source_paths, test_paths=test_paths)
    return GateOutcome(passed=False, reason='tests_missing', source_paths=source_paths)
