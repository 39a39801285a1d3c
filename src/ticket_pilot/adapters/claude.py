from __future__ import annotations

from ticket_pilot.adapters.base import ProviderAdapter, has_prompt_flag


class ClaudeAdapter(ProviderAdapter):
    def _build_provider_argv(self, *, argv: list[str]) -> list[str]:
        if not has_prompt_flag(argv):
            argv.insert(1, '-p')
        return argv


__all__ = ['ClaudeAdapter']
