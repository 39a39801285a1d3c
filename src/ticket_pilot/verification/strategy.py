from __future__ import annotations

from dataclasses import dataclass
import json
from pathlib import Path
import sys

from ticket_pilot.domain.models import RepoSnapshot
from ticket_pilot.observability import get_logger
from ticket_pilot.verification.coverage import CoverageFormat

_log = get_logger('ticket_pilot.verification.strategy')

_PYTHON_MANIFESTS = ('pyproject.toml', 'setup.py', 'setup.cfg', 'requirements.txt', 'pytest.ini', 'tox.ini')
_VENV_INTERPRETERS = (
    '.venv/bin/python',
    'venv/bin/python',
    '.venv/Scripts/python.exe',
    'venv/Scripts/python.exe',
)


@dataclass(frozen=True)
class TestStrategy:
    __test__ = False

    name: str
    argv: tuple[str, ...]
    report_path: str
    report_format: CoverageFormat
    artifacts: tuple[str, ...] = ()

    @property
    def command(self) -> str:
        return ' '.join(self.argv)


def _language_count(repo: RepoSnapshot, *languages: str) -> int:
    return sum(int(repo.language_summary.get(language, 0) or 0) for language in languages)


def detect_package_manager(repo_path: Path) -> str:
    if (repo_path / 'pnpm-lock.yaml').is_file():
        return 'pnpm'
    if (repo_path / 'yarn.lock').is_file():
        return 'yarn'
    return 'npm'


def _read_package_scripts(repo_path: Path) -> dict[str, str]:
    package_json = repo_path / 'package.json'
    if not package_json.is_file():
        return {}
    try:
        payload = json.loads(package_json.read_text(encoding='utf-8'))
    except (OSError, ValueError):
        _log.warning('package_json_unreadable path=%s', package_json, exc_info=True)
        return {}
    scripts = payload.get('scripts') if isinstance(payload, dict) else None
    if not isinstance(scripts, dict):
        return {}
    return {str(k): str(v) for k, v in scripts.items()}


def _node_strategy(repo_path: Path, repo: RepoSnapshot) -> TestStrategy | None:
    if _language_count(repo, 'TypeScript', 'JavaScript') <= 0:
        return None
    scripts = _read_package_scripts(repo_path)
    manager = detect_package_manager(repo_path)
    if scripts.get('test:coverage'):
        argv: tuple[str, ...] = (manager, 'run', 'test:coverage')
    elif scripts.get('coverage'):
        argv = (manager, 'run', 'coverage')
    elif scripts.get('test'):
        argv = (manager, 'run', 'test', '--', '--coverage')
    else:
        return None
    return TestStrategy(
        name='node',
        argv=argv,
        report_path='coverage/lcov.info',
        report_format=CoverageFormat.LCOV,
        artifacts=('coverage', '.nyc_output'),
    )


def python_interpreter(repo_path: Path) -> str:
    """Prefer the repository's own virtualenv; fall back to the running interpreter."""
    for candidate in _VENV_INTERPRETERS:
        path = repo_path / candidate
        if path.is_file():
            return str(path)
    return sys.executable


def _python_strategy(repo_path: Path, repo: RepoSnapshot) -> TestStrategy | None:
    if _language_count(repo, 'Python') <= 0:
        return None
    if not any((repo_path / manifest).is_file() for manifest in _PYTHON_MANIFESTS):
        return None
    return TestStrategy(
        name='python',
        argv=(
            python_interpreter(repo_path), '-B', '-m', 'pytest', '-p', 'no:cacheprovider',
            '--cov=.', '--cov-report=xml:coverage.xml',
        ),
        report_path='coverage.xml',
        report_format=CoverageFormat.COBERTURA_XML,
        artifacts=('.coverage',),
    )


def _go_strategy(repo_path: Path, repo: RepoSnapshot) -> TestStrategy | None:
    _ = repo
    if not (repo_path / 'go.mod').is_file():
        return None
    return TestStrategy(
        name='go',
        argv=('go', 'test', './...', '-coverprofile=coverage.out'),
        report_path='coverage.out',
        report_format=CoverageFormat.GO_PROFILE,
        artifacts=('coverage.out',),
    )


def _jvm_strategy(repo_path: Path, repo: RepoSnapshot) -> TestStrategy | None:
    _ = repo
    if (repo_path / 'build.gradle').is_file() or (repo_path / 'build.gradle.kts').is_file():
        gradle = './gradlew' if (repo_path / 'gradlew').is_file() else 'gradle'
        return TestStrategy(
            name='gradle',
            argv=(gradle, 'test', 'jacocoTestReport'),
            report_path='build/reports/jacoco/test/jacocoTestReport.xml',
            report_format=CoverageFormat.JACOCO_XML,
            artifacts=('build', '.gradle'),
        )
    if (repo_path / 'pom.xml').is_file():
        maven = './mvnw' if (repo_path / 'mvnw').is_file() else 'mvn'
        return TestStrategy(
            name='maven',
            argv=(maven, '-B', 'test', 'jacoco:report'),
            report_path='target/site/jacoco/jacoco.xml',
            report_format=CoverageFormat.JACOCO_XML,
            artifacts=('target',),
        )
    return None


_RESOLVERS = (_node_strategy, _python_strategy, _go_strategy, _jvm_strategy)


def resolve_test_strategy(repo_path: str | Path, repo: RepoSnapshot) -> TestStrategy | None:
    root = Path(repo_path)
    for resolver in _RESOLVERS:
        strategy = resolver(root, repo)
        if strategy is not None:
            return strategy
    return None


UNSUPPORTED_STRATEGY_NOTES = (
    'No supported coverage strategy detected.',
    'Supported: package.json test scripts with lcov output, Python projects with pytest-cov, '
    'Go modules with -coverprofile, Gradle or Maven builds with the JaCoCo plugin.',
)
