from __future__ import annotations

import pytest

from ticket_pilot.analysis.compilation import CompilationAnalyzer, heuristic_analysis, is_compilation_failure
from ticket_pilot.domain.models import RepoSnapshot, TestExecutionReport
from ticket_pilot.errors import TransportError

REPO = RepoSnapshot(
    file_count=1,
    top_level_entries=(),
    language_summary={'Java': 4},
    sample_files=(),
    tech_stack=('Java (Maven)',),
    testing_guidance=(),
)


def _failed(stderr: str = '', stdout: str = '', cause: str = 'Test command exited with code 1.') -> TestExecutionReport:
    return TestExecutionReport(
        executed=True,
        success=False,
        command='mvn -B test jacoco:report',
        failure_cause=cause,
        stderr_snippet=stderr,
        stdout_snippet=stdout,
    )


@pytest.mark.parametrize(
    'stderr',
    [
        '[ERROR] COMPILATION ERROR :',
        'Calc.java:[3,8] cannot find symbol',
        "Execution failed for task ':compileJava'.",
        'src/a.ts(2,3): error TS2304: Cannot find name x.',
        'SyntaxError: Unexpected token',
    ],
)
def test_compilation_failures_are_detected(stderr: str):
    assert is_compilation_failure(_failed(stderr=stderr)) is True


def test_non_compilation_failures_are_ignored():
    assert is_compilation_failure(None) is False
    assert is_compilation_failure(_failed(stderr='AssertionError: expected 2 got 1')) is False
    assert is_compilation_failure(_failed(stderr='tests2024 passed partially')) is False
    passed = TestExecutionReport(executed=True, success=True, stderr_snippet='compilation error')
    assert is_compilation_failure(passed) is False
    unexecuted = TestExecutionReport(executed=False, success=False, stderr_snippet='compilation error')
    assert is_compilation_failure(unexecuted) is False


def test_heuristic_analysis_branches():
    symbols = heuristic_analysis(_failed(stderr='package com.acme.util does not exist'))
    assert symbols.summary == 'Build failed due to unresolved classes/imports.'
    toolchain = heuristic_analysis(_failed(stderr='error: invalid target release: 21'))
    assert toolchain.summary == 'Build failed due to Java toolchain mismatch.'
    task = heuristic_analysis(_failed(stderr="Execution failed for task ':compileKotlin'."))
    assert task.summary == 'Build failed during compilation task.'
    generic = heuristic_analysis(_failed(stderr='error TS2304', cause='Test command exited with code 2.'))
    assert generic.root_cause == 'Test command exited with code 2.'


def test_analyzer_merges_fast_model_answer_over_baseline():
    prompts: list[tuple[str, bool]] = []

    def generate_text(prompt: str, fast: bool = False) -> str:
        prompts.append((prompt, fast))
        return '```json\n{"summary": "Missing import for Money", "rootCause": "Money moved packages", "followUpChecks": []}\n```'

    analysis = CompilationAnalyzer(generate_text).analyze(_failed(stderr='Calc.java:[3,8] cannot find symbol'), REPO)

    assert prompts[0][1] is True
    assert 'Detected stack: Java (Maven)' in prompts[0][0]
    assert 'Heuristic baseline analysis:' in prompts[0][0]
    assert analysis.detected is True
    assert analysis.summary == 'Missing import for Money'
    assert analysis.root_cause == 'Money moved packages'
    assert analysis.potential_solutions[0] == 'Verify class/package names and import statements in changed files.'
    assert len(analysis.follow_up_checks) == 2


@pytest.mark.parametrize('failure', [TransportError('command_timeout provider=gemini'), None])
def test_analyzer_falls_back_to_baseline(failure):
    def generate_text(prompt: str, fast: bool = False) -> str:
        if failure is not None:
            raise failure
        return 'no json here'

    report = _failed(stderr='Calc.java:[3,8] cannot find symbol')
    assert CompilationAnalyzer(generate_text).analyze(report, REPO) == heuristic_analysis(report)
