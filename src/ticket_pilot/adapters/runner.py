from __future__ import annotations

from pathlib import Path
import random
import shutil
import subprocess
import time

from ticket_pilot.adapters.base import DEFAULT_PROVIDER_REGISTRY, AdapterResult, GenericProviderAdapter, ProviderAdapter
from ticket_pilot.adapters.claude import ClaudeAdapter
from ticket_pilot.adapters.gemini import GeminiAdapter
from ticket_pilot.errors import ConfigurationError, TransportError
from ticket_pilot.observability import get_logger

_log = get_logger('ticket_pilot.adapters.runner')

_LIMIT_PATTERNS = (
    'hit your limit',
    'usage limit',
    'rate limit',
    'ratelimitexceeded',
    'resource_exhausted',
    'model_capacity_exhausted',
    'no capacity available',
    'quota exceeded',
    'insufficient_quota',
)
_MIN_ATTEMPT_TIMEOUT_SECONDS = 0.05
_RETRY_PROMPT_MAX_CHARS = 24_000

_ADAPTERS: dict[str, type[ProviderAdapter]] = {
    'claude': ClaudeAdapter,
    'gemini': GeminiAdapter,
}


def adapter_for(provider: str, provider_spec: dict[str, object] | None = None) -> ProviderAdapter:
    """Pick the invocation rules for a provider; unknown providers run the command as given."""
    key = str(provider or '').strip().lower()
    return _ADAPTERS.get(key, GenericProviderAdapter)(provider=key, provider_spec=provider_spec)


class ReasoningRunner:
    """Invoke the configured reasoning CLI with the planner or the fast model."""

    def __init__(
        self,
        *,
        provider: str = 'gemini',
        command: str | None = None,
        planner_model: str | None = None,
        fast_model: str | None = None,
        timeout_seconds: float = 600,
        timeout_retries: int = 1,
        cwd: Path | None = None,
    ):
        self.provider = str(provider or '').strip().lower() or 'gemini'
        spec = dict(DEFAULT_PROVIDER_REGISTRY.get(self.provider) or {'command': '', 'model_flag': '-m'})
        override = str(command or '').strip()
        if override:
            spec['command'] = override
        self.provider_spec = spec
        self.command = str(spec.get('command') or '').strip()
        self.planner_model = planner_model
        self.fast_model = fast_model
        self.timeout_seconds = max(_MIN_ATTEMPT_TIMEOUT_SECONDS, float(timeout_seconds))
        self.timeout_retries = max(0, int(timeout_retries))
        self.cwd = cwd
        self.adapter = adapter_for(self.provider, self.provider_spec)

    @classmethod
    def from_settings(cls, settings) -> 'ReasoningRunner':
        return cls(
            provider=settings.reasoning_provider,
            command=settings.reasoning_command,
            planner_model=settings.planner_model,
            fast_model=settings.fast_model,
            timeout_seconds=settings.reasoning_timeout_seconds,
            timeout_retries=settings.reasoning_timeout_retries,
        )

    def generate_text(self, prompt: str, fast: bool = False) -> str:
        result = self.run(prompt=prompt, model=self.fast_model if fast else self.planner_model)
        return result.output

    def run(self, *, prompt: str, model: str | None = None) -> AdapterResult:
        if not self.command:
            raise ConfigurationError(f'command_not_configured provider={self.provider}')

        argv = self._resolve_executable(self.adapter.build_argv(command=self.command, model=model))
        effective_command = ' '.join(argv)
        attempts = self.timeout_retries + 1
        current_prompt = prompt
        started = time.monotonic()
        deadline = started + self.timeout_seconds
        completed: subprocess.CompletedProcess | None = None
        attempts_made = 0

        for attempt in range(1, attempts + 1):
            remaining_budget = self._remaining_timeout_budget_seconds(deadline=deadline)
            if remaining_budget <= 0:
                break
            attempt_timeout = self._compute_attempt_timeout_seconds(
                remaining_budget=remaining_budget,
                attempts_left=attempts - attempt + 1,
            )
            attempts_made += 1
            runtime_argv, runtime_input = self.adapter.prepare_runtime_invocation(argv=argv, prompt=current_prompt)
            try:
                completed = subprocess.run(
                    runtime_argv,
                    input=runtime_input,
                    capture_output=True,
                    text=True,
                    encoding='utf-8',
                    errors='replace',
                    cwd=str(self.cwd) if self.cwd else None,
                    timeout=attempt_timeout,
                )
                break
            except FileNotFoundError as exc:
                raise TransportError(
                    f'command_not_found provider={self.provider} command={effective_command}'
                ) from exc
            except subprocess.TimeoutExpired:
                _log.warning(
                    'reasoning_timeout provider=%s attempt=%d timeout=%.1fs', self.provider, attempt, attempt_timeout,
                )
                if attempt >= attempts:
                    break
                current_prompt = self._clip_prompt_for_retry(current_prompt)
                if not self._sleep_before_timeout_retry(attempt=attempt, deadline=deadline):
                    break

        if completed is None:
            raise TransportError(
                f'command_timeout provider={self.provider} command={effective_command} '
                f'timeout_seconds={self.timeout_seconds:g} attempts={attempts} attempts_made={attempts_made}'
            )

        elapsed = time.monotonic() - started
        output = (completed.stdout or '').strip()
        if completed.returncode != 0:
            stderr = (completed.stderr or '').strip()
            output = '\n'.join([part for part in [output, stderr] if part]).strip()

        if self._is_provider_limit_output(output):
            raise TransportError(f'provider_limit provider={self.provider} command={effective_command}')
        if completed.returncode != 0:
            raise TransportError(
                f'command_failed provider={self.provider} command={effective_command} '
                f'returncode={completed.returncode}'
            )

        _log.info(
            'reasoning_completed provider=%s model=%s chars=%d duration=%.2fs',
            self.provider, model or '-', len(output), elapsed,
        )
        return AdapterResult(
            output=self.adapter.normalize_output(output),
            returncode=completed.returncode,
            duration_seconds=elapsed,
        )

    @staticmethod
    def _remaining_timeout_budget_seconds(*, deadline: float) -> float:
        return max(0.0, float(deadline) - time.monotonic())

    @staticmethod
    def _compute_attempt_timeout_seconds(*, remaining_budget: float, attempts_left: int) -> float:
        budget = max(0.0, float(remaining_budget))
        left = max(1, int(attempts_left))
        if budget <= 0:
            return 0.0
        requested = max(min(_MIN_ATTEMPT_TIMEOUT_SECONDS, budget), budget / left)
        return min(budget, requested)

    @staticmethod
    def _timeout_retry_backoff_seconds(*, attempt: int) -> float:
        bounded_attempt = max(1, int(attempt))
        base_delay = min(0.5, 0.15 * bounded_attempt)
        jitter = random.uniform(0.0, 0.1)
        return min(0.75, base_delay + jitter)

    @staticmethod
    def _sleep_before_timeout_retry(*, attempt: int, deadline: float) -> bool:
        remaining = ReasoningRunner._remaining_timeout_budget_seconds(deadline=deadline)
        if remaining <= 0:
            return False
        pause_cap = max(0.0, remaining - min(_MIN_ATTEMPT_TIMEOUT_SECONDS, remaining))
        if pause_cap > 0:
            time.sleep(min(pause_cap, ReasoningRunner._timeout_retry_backoff_seconds(attempt=attempt)))
        return ReasoningRunner._remaining_timeout_budget_seconds(deadline=deadline) > 0

    @staticmethod
    def _clip_prompt_for_retry(prompt: str) -> str:
        text = prompt or ''
        if len(text) <= _RETRY_PROMPT_MAX_CHARS:
            return text
        kept = text[:_RETRY_PROMPT_MAX_CHARS]
        dropped = len(text) - len(kept)
        return kept + f'\n\n[retry prompt clipped: {dropped} chars removed]'

    @staticmethod
    def _is_provider_limit_output(output: str) -> bool:
        text = (output or '').strip().lower()
        if not text:
            return False
        return any(pattern in text for pattern in _LIMIT_PATTERNS)

    @staticmethod
    def _resolve_executable(argv: list[str]) -> list[str]:
        if not argv:
            return argv
        resolved = shutil.which(str(argv[0]).strip())
        if not resolved:
            return argv
        patched = list(argv)
        patched[0] = resolved
        return patched


__all__ = ['ReasoningRunner']
