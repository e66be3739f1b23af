"""
Text-generation adapters used by the Coquette engine.

``OllamaAdapter`` talks to an Ollama server on the device or LAN;
``MockLLMAdapter`` answers from a script. ``create_adapter`` picks one by
provider name, reading defaults from the environment.
"""

from adapters.llm.base import (
    GenerationOptions,
    LLMAdapter,
    LLMError,
    LLMMessage,
    LLMResponse,
    MessageRole,
)
from adapters.llm.factory import (
    LLMProvider,
    ProviderDefaults,
    create_adapter,
    get_default_model,
    get_default_provider,
)
from adapters.llm.mock import MockLLMAdapter
from adapters.llm.ollama import OllamaAdapter

__all__ = [
    "GenerationOptions",
    "LLMAdapter",
    "LLMError",
    "LLMMessage",
    "LLMProvider",
    "LLMResponse",
    "MessageRole",
    "MockLLMAdapter",
    "OllamaAdapter",
    "ProviderDefaults",
    "create_adapter",
    "get_default_model",
    "get_default_provider",
]
