from __future__ import annotations

import json
import re
from typing import Callable

from ticket_pilot.domain.models import CompilationErrorAnalysis, RepoSnapshot, TestExecutionReport
from ticket_pilot.errors import TicketPilotError
from ticket_pilot.observability import get_logger
from ticket_pilot.response_parsing import parse_json_object

_log = get_logger('ticket_pilot.analysis.compilation')

_COMPILE_MARKERS = (
    'compilation error',
    'compile failed',
    'cannot find symbol',
    'package does not exist',
    "execution failed for task ':compile",
    'syntaxerror',
)
_TS_DIAGNOSTIC_RE = re.compile(r'\bts\d{4}\b')


def _merged_output(report: TestExecutionReport) -> str:
    return '\n'.join([
        report.failure_cause or '',
        report.stderr_snippet or '',
        report.stdout_snippet or '',
    ]).lower()


def is_compilation_failure(report: TestExecutionReport | None) -> bool:
    if report is None or not report.executed or report.success:
        return False
    merged = _merged_output(report)
    return any(marker in merged for marker in _COMPILE_MARKERS) or bool(_TS_DIAGNOSTIC_RE.search(merged))


def heuristic_analysis(report: TestExecutionReport) -> CompilationErrorAnalysis:
    merged = _merged_output(report)
    if 'cannot find symbol' in merged or ('package' in merged and 'does not exist' in merged):
        return CompilationErrorAnalysis(
            detected=True,
            summary='Build failed due to unresolved classes/imports.',
            root_cause='Missing or incorrect imports/dependencies, or wrong package references.',
            potential_solutions=(
                'Verify class/package names and import statements in changed files.',
                'Confirm required dependency is declared in pom.xml/build.gradle/package.json.',
                'Check module boundaries and visibility (public/package-private) for referenced types.',
            ),
            follow_up_checks=(
                'Re-run the same compile/test command after fixing imports/dependencies.',
                'Run IDE or compiler auto-import and inspect resulting diff.',
            ),
        )
    if 'invalid target release' in merged or 'source option' in merged or 'unsupportedclassversionerror' in merged:
        return CompilationErrorAnalysis(
            detected=True,
            summary='Build failed due to Java toolchain mismatch.',
            root_cause='Project source/target compatibility differs from active JDK version.',
            potential_solutions=(
                'Set JAVA_HOME to the required JDK version for the project.',
                'Align maven-compiler-plugin or Gradle Java toolchain target with installed JDK.',
                'If CI uses a specific JDK, mirror that version locally.',
            ),
            follow_up_checks=(
                'Run `java -version` and `mvn -version`/`gradle -version` to verify toolchain.',
                'Re-run build command after adjusting toolchain settings.',
            ),
        )
    if "execution failed for task ':compile" in merged or 'compilation error' in merged:
        return CompilationErrorAnalysis(
            detected=True,
            summary='Build failed during compilation task.',
            root_cause='Source changes introduced compile-time errors.',
            potential_solutions=(
                'Inspect the first compiler error and fix that before addressing cascading errors.',
                'Verify method signatures, static vs instance usage, and generic/type constraints.',
                'Ensure all changed files compile together with the current project settings.',
            ),
            follow_up_checks=('Re-run compilation/tests and confirm no new compile errors are introduced.',),
        )
    return CompilationErrorAnalysis(
        detected=True,
        summary='Compilation/build failure detected.',
        root_cause=report.failure_cause or 'Build tool reported a compilation failure.',
        potential_solutions=(
            'Inspect first meaningful error line in stderr and address it before secondary errors.',
            'Check dependency declarations, imports, and language version/toolchain settings.',
            'Re-run build with verbose logs to isolate failing module/file.',
        ),
        follow_up_checks=(
            'Re-run the same command after applying fix.',
            'Confirm tests and coverage report generation succeed.',
        ),
    )


def build_analysis_prompt(report: TestExecutionReport, repo: RepoSnapshot, baseline: CompilationErrorAnalysis) -> str:
    schema = {
        'detected': True,
        'summary': 'string',
        'rootCause': 'string',
        'potentialSolutions': ['string'],
        'followUpChecks': ['string'],
    }
    baseline_payload = {
        'detected': baseline.detected,
        'summary': baseline.summary,
        'rootCause': baseline.root_cause,
        'potentialSolutions': list(baseline.potential_solutions),
        'followUpChecks': list(baseline.follow_up_checks),
    }
    return '\n\n'.join([
        'You are diagnosing a software compilation/build failure.',
        'Return JSON only with schema:',
        json.dumps(schema, indent=2),
        'Focus on concrete, practical remediation steps.',
        f'Detected stack: {", ".join(repo.tech_stack)}',
        f'Test/build command: {report.command or "unknown"}',
        f'Failure cause: {report.failure_cause or ""}',
        'stderr excerpt:',
        report.stderr_snippet or '',
        'stdout excerpt:',
        report.stdout_snippet or '',
        'Heuristic baseline analysis:',
        json.dumps(baseline_payload, indent=2),
    ])


def _string_list(value: object) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(str(item) for item in value if isinstance(item, str) and item.strip())


class CompilationAnalyzer:
    """Explain a failed build, refining the heuristic baseline with the fast model."""

    def __init__(self, generate_text: Callable[..., str]):
        self.generate_text = generate_text

    def analyze(self, report: TestExecutionReport, repo: RepoSnapshot) -> CompilationErrorAnalysis:
        baseline = heuristic_analysis(report)
        try:
            raw = self.generate_text(build_analysis_prompt(report, repo, baseline), fast=True)
            parsed = parse_json_object(raw)
        except TicketPilotError as exc:
            _log.warning('compilation_analysis_fallback reason=%s', exc)
            return baseline
        solutions = _string_list(parsed.get('potentialSolutions', parsed.get('potential_solutions')))
        checks = _string_list(parsed.get('followUpChecks', parsed.get('follow_up_checks')))
        return CompilationErrorAnalysis(
            detected=True,
            summary=str(parsed.get('summary') or '') or baseline.summary,
            root_cause=str(parsed.get('rootCause') or parsed.get('root_cause') or '') or baseline.root_cause,
            potential_solutions=solutions or baseline.potential_solutions,
            follow_up_checks=checks or baseline.follow_up_checks,
        )
