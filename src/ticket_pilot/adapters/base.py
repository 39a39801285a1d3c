from __future__ import annotations

from abc import ABC
from dataclasses import dataclass
import shlex


@dataclass(frozen=True)
class AdapterResult:
    output: str
    returncode: int
    duration_seconds: float


DEFAULT_PROVIDER_REGISTRY = {
    'gemini': {
        'command': 'gemini',
        'model_flag': '-m',
    },
    'claude': {
        'command': 'claude -p',
        'model_flag': '--model',
    },
}


def split_command(value: str | None) -> list[str]:
    text = str(value or '').strip()
    if not text:
        return []
    try:
        return [str(v) for v in shlex.split(text) if str(v).strip()]
    except ValueError:
        return [v for v in text.split() if v]


def has_model_flag(argv: list[str]) -> bool:
    for token in argv:
        text = str(token).strip()
        if text in {'--model', '-m'}:
            return True
        if text.startswith('--model='):
            return True
    return False


def has_prompt_flag(argv: list[str]) -> bool:
    for token in argv:
        text = str(token).strip()
        if text in {'--prompt', '-p'} or text.startswith('--prompt='):
            return True
    return False


class ProviderAdapter(ABC):
    """Turns a provider command line and model choice into a concrete invocation.

    The default invocation feeds the prompt on stdin and returns stripped stdout.
    """

    def __init__(self, *, provider: str, provider_spec: dict[str, object] | None = None):
        self.provider = str(provider or '').strip().lower()
        self.provider_spec = dict(provider_spec or {})

    def build_argv(self, *, command: str, model: str | None) -> list[str]:
        argv = split_command(command)
        model_text = str(model or '').strip()
        if model_text and not has_model_flag(argv):
            flag = str(self.provider_spec.get('model_flag') or '').strip()
            if flag:
                argv.extend([flag, model_text])
        return self._build_provider_argv(argv=argv)

    def _build_provider_argv(self, *, argv: list[str]) -> list[str]:
        return argv

    def prepare_runtime_invocation(self, *, argv: list[str], prompt: str) -> tuple[list[str], str]:
        return list(argv), prompt

    def normalize_output(self, output: str) -> str:
        return str(output or '').strip()


class GenericProviderAdapter(ProviderAdapter):
    pass


__all__ = [
    'AdapterResult',
    'DEFAULT_PROVIDER_REGISTRY',
    'ProviderAdapter',
    'GenericProviderAdapter',
    'split_command',
    'has_model_flag',
    'has_prompt_flag',
]
