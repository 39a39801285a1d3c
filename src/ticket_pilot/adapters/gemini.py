from __future__ import annotations

from ticket_pilot.adapters.base import ProviderAdapter, has_prompt_flag

# Linux caps a single argv string at 128 KiB; longer prompts go through stdin.
_ARGV_PROMPT_MAX_CHARS = 100_000


class GeminiAdapter(ProviderAdapter):
    def _build_provider_argv(self, *, argv: list[str]) -> list[str]:
        return [token for token in argv if str(token).strip() not in {'-y', '--yolo'}]

    def prepare_runtime_invocation(self, *, argv: list[str], prompt: str) -> tuple[list[str], str]:
        runtime_argv = list(argv)
        if has_prompt_flag(runtime_argv) or len(prompt) > _ARGV_PROMPT_MAX_CHARS:
            return runtime_argv, prompt
        runtime_argv.extend(['--prompt', prompt])
        return runtime_argv, ''


__all__ = ['GeminiAdapter']
