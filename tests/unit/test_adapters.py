from __future__ import annotations

import subprocess

import pytest

import ticket_pilot.adapters.runner as runner_module
from ticket_pilot.adapters import (
    ClaudeAdapter,
    GeminiAdapter,
    GenericProviderAdapter,
    ReasoningRunner,
    adapter_for,
    has_model_flag,
    has_prompt_flag,
    split_command,
)
from ticket_pilot.errors import ConfigurationError, TransportError


@pytest.fixture(autouse=True)
def _no_path_lookup(monkeypatch):
    monkeypatch.setattr(runner_module.shutil, 'which', lambda name: None)


class _Recorder:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls: list[dict] = []

    def __call__(self, argv, **kwargs):
        self.calls.append({'argv': list(argv), **kwargs})
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def _completed(stdout: str = '', returncode: int = 0, stderr: str = '') -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def test_split_command_and_flag_detection():
    assert split_command('gemini -m "gemini 2.5"') == ['gemini', '-m', 'gemini 2.5']
    assert split_command('  ') == []
    assert split_command('gemini "unterminated') == ['gemini', '"unterminated']
    assert has_model_flag(['gemini', '--model=x']) is True
    assert has_model_flag(['gemini']) is False
    assert has_prompt_flag(['claude', '-p']) is True
    assert has_prompt_flag(['claude', '--prompt=hi']) is True


def test_adapter_for_selects_provider_rules():
    assert isinstance(adapter_for('Gemini'), GeminiAdapter)
    assert isinstance(adapter_for('claude'), ClaudeAdapter)
    assert isinstance(adapter_for('local-llm'), GenericProviderAdapter)
    assert isinstance(ReasoningRunner(provider='claude').adapter, ClaudeAdapter)
    assert isinstance(ReasoningRunner(provider='ollama', command='ollama run llama3').adapter, GenericProviderAdapter)


def test_gemini_adapter_appends_model_and_strips_yolo():
    adapter = adapter_for('gemini', {'model_flag': '-m'})
    assert adapter.build_argv(command='gemini --yolo', model='gemini-2.5-flash') == ['gemini', '-m', 'gemini-2.5-flash']
    assert adapter.build_argv(command='gemini --model pinned', model='other') == ['gemini', '--model', 'pinned']


def test_gemini_adapter_passes_short_prompt_as_flag_and_long_prompt_on_stdin():
    adapter = GeminiAdapter(provider='gemini')
    argv, stdin = adapter.prepare_runtime_invocation(argv=['gemini'], prompt='plan this')
    assert argv == ['gemini', '--prompt', 'plan this']
    assert stdin == ''

    long_prompt = 'x' * 100_001
    argv, stdin = adapter.prepare_runtime_invocation(argv=['gemini'], prompt=long_prompt)
    assert argv == ['gemini']
    assert stdin == long_prompt


def test_claude_adapter_inserts_print_flag():
    adapter = ClaudeAdapter(provider='claude', provider_spec={'model_flag': '--model'})
    assert adapter.build_argv(command='claude', model='sonnet') == ['claude', '-p', '--model', 'sonnet']
    assert adapter.build_argv(command='claude -p', model=None) == ['claude', '-p']


def test_runner_uses_planner_or_fast_model(monkeypatch):
    recorder = _Recorder(_completed('  {"ok": true}  '), _completed('fast'))
    monkeypatch.setattr(runner_module.subprocess, 'run', recorder)
    runner = ReasoningRunner(provider='gemini', planner_model='pro', fast_model='flash')

    assert runner.generate_text('plan') == '{"ok": true}'
    assert runner.generate_text('diagnose', fast=True) == 'fast'

    assert recorder.calls[0]['argv'] == ['gemini', '-m', 'pro', '--prompt', 'plan']
    assert recorder.calls[1]['argv'] == ['gemini', '-m', 'flash', '--prompt', 'diagnose']
    assert recorder.calls[0]['input'] == ''


def test_runner_requires_configured_command():
    runner = ReasoningRunner(provider='local-llm')
    with pytest.raises(ConfigurationError):
        runner.generate_text('hello')


def test_runner_reports_missing_binary(monkeypatch):
    monkeypatch.setattr(runner_module.subprocess, 'run', _Recorder(FileNotFoundError('gemini')))
    with pytest.raises(TransportError) as exc_info:
        ReasoningRunner(provider='gemini').generate_text('hello')
    assert 'command_not_found provider=gemini' in str(exc_info.value)


def test_runner_nonzero_exit_raises_command_failed(monkeypatch):
    monkeypatch.setattr(runner_module.subprocess, 'run', _Recorder(_completed('', 2, 'bad flag')))
    with pytest.raises(TransportError) as exc_info:
        ReasoningRunner(provider='claude').generate_text('hello')
    assert 'command_failed provider=claude' in str(exc_info.value)
    assert 'returncode=2' in str(exc_info.value)


def test_runner_detects_provider_limit_output(monkeypatch):
    monkeypatch.setattr(runner_module.subprocess, 'run', _Recorder(_completed('Quota exceeded for model', 0)))
    with pytest.raises(TransportError) as exc_info:
        ReasoningRunner(provider='gemini').generate_text('hello')
    assert 'provider_limit' in str(exc_info.value)


def test_runner_retries_timeout_with_clipped_prompt(monkeypatch):
    recorder = _Recorder(subprocess.TimeoutExpired(cmd='gemini', timeout=1), _completed('done'))
    monkeypatch.setattr(runner_module.subprocess, 'run', recorder)
    monkeypatch.setattr(runner_module.time, 'sleep', lambda seconds: None)
    runner = ReasoningRunner(provider='claude', timeout_seconds=60, timeout_retries=1)

    assert runner.generate_text('y' * 30_000) == 'done'

    retried = recorder.calls[1]['input']
    assert retried.startswith('y' * 24_000)
    assert retried.endswith('[retry prompt clipped: 6000 chars removed]')


def test_runner_timeout_exhaustion_raises(monkeypatch):
    recorder = _Recorder(subprocess.TimeoutExpired(cmd='gemini', timeout=1))
    monkeypatch.setattr(runner_module.subprocess, 'run', recorder)
    runner = ReasoningRunner(provider='gemini', timeout_seconds=5, timeout_retries=0)
    with pytest.raises(TransportError) as exc_info:
        runner.generate_text('hello')
    assert 'command_timeout provider=gemini' in str(exc_info.value)
    assert 'attempts_made=1' in str(exc_info.value)


def test_runner_command_override_and_attempt_timeout_split():
    runner = ReasoningRunner(provider='gemini', command='gemini --sandbox')
    assert runner.command == 'gemini --sandbox'
    assert ReasoningRunner._compute_attempt_timeout_seconds(remaining_budget=60, attempts_left=2) == 30
    assert ReasoningRunner._compute_attempt_timeout_seconds(remaining_budget=0, attempts_left=2) == 0.0
