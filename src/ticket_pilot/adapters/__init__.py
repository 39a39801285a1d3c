from __future__ import annotations

from ticket_pilot.adapters.base import (
    AdapterResult,
    DEFAULT_PROVIDER_REGISTRY,
    GenericProviderAdapter,
    ProviderAdapter,
    has_model_flag,
    has_prompt_flag,
    split_command,
)
from ticket_pilot.adapters.claude import ClaudeAdapter
from ticket_pilot.adapters.gemini import GeminiAdapter
from ticket_pilot.adapters.runner import ReasoningRunner, adapter_for

__all__ = [
    'AdapterResult',
    'DEFAULT_PROVIDER_REGISTRY',
    'ProviderAdapter',
    'GenericProviderAdapter',
    'ClaudeAdapter',
    'GeminiAdapter',
    'adapter_for',
    'ReasoningRunner',
    'split_command',
    'has_model_flag',
    'has_prompt_flag',
]
