"""
Adapter factory.

Module: adapters/llm/factory.py

Builds text-generation adapters by provider name. Explicit arguments win
over environment variables (``LLM_PROVIDER``, ``OLLAMA_MODEL``,
``OLLAMA_ENDPOINT``, ``MOCK_MODEL``), which win over built-in defaults.
A ``.env`` file next to the project is loaded once on import.
"""

import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

from dotenv import load_dotenv

from .base import LLMAdapter

logger = logging.getLogger(__name__)


class LLMProvider(str, Enum):
    """Text-generation providers the engine can talk to."""

    OLLAMA = "ollama"
    MOCK = "mock"


@dataclass(frozen=True)
class ProviderDefaults:
    """Environment keys and fallbacks for one provider."""

    model_env: str
    model: str
    endpoint_env: Optional[str] = None
    endpoint: Optional[str] = None

    def resolve_model(self) -> str:
        value = os.getenv(self.model_env, "").strip()
        return value or self.model

    def resolve_endpoint(self) -> Optional[str]:
        if self.endpoint_env is None:
            return self.endpoint
        value = os.getenv(self.endpoint_env, "").strip()
        return value or self.endpoint


PROVIDER_DEFAULTS: Dict[LLMProvider, ProviderDefaults] = {
    LLMProvider.OLLAMA: ProviderDefaults(
        model_env="OLLAMA_MODEL",
        model="gemma3n:e4b",
        endpoint_env="OLLAMA_ENDPOINT",
        endpoint="http://localhost:11434",
    ),
    LLMProvider.MOCK: ProviderDefaults(model_env="MOCK_MODEL", model="mock-model"),
}


def _load_project_env() -> None:
    """Load the nearest .env above this package, stopping at the project root."""
    here = Path(__file__).resolve().parent
    for directory in (here, *here.parents):
        candidate = directory / ".env"
        if candidate.is_file():
            load_dotenv(candidate, override=False)
            return
        if (directory / "pyproject.toml").is_file():
            break
    load_dotenv(override=False)


_load_project_env()


def get_default_provider() -> LLMProvider:
    """
    Provider named by ``LLM_PROVIDER``.

    Falls back to Ollama when the variable is unset or names an unknown
    provider.
    """
    name = os.getenv("LLM_PROVIDER", "").strip().lower()
    if not name:
        return LLMProvider.OLLAMA
    try:
        return LLMProvider(name)
    except ValueError:
        logger.warning(f"Ignoring unknown LLM_PROVIDER '{name}', falling back to ollama")
        return LLMProvider.OLLAMA


def get_default_model(provider: Optional[LLMProvider] = None) -> str:
    """Model for ``provider`` from the environment, else its built-in default."""
    return PROVIDER_DEFAULTS[provider or get_default_provider()].resolve_model()


def create_adapter(
    provider: Optional[Union[str, LLMProvider]] = None,
    model: Optional[str] = None,
    **kwargs: Any,
) -> LLMAdapter:
    """
    Build an adapter.

    Args:
        provider: Provider name or enum member (defaults to ``LLM_PROVIDER``)
        model: Model identifier (defaults to the provider's env/default model)
        **kwargs: Adapter options, e.g. ``endpoint`` or ``transport`` for Ollama

    Returns:
        LLMAdapter instance

    Raises:
        ValueError: If the provider is unknown
    """
    selected = LLMProvider(provider.lower()) if isinstance(provider, str) else provider
    selected = selected or get_default_provider()
    defaults = PROVIDER_DEFAULTS[selected]
    model = model or defaults.resolve_model()

    if selected == LLMProvider.OLLAMA:
        from .ollama import OllamaAdapter

        endpoint = kwargs.pop("endpoint", None) or defaults.resolve_endpoint()
        logger.info(f"Using ollama model {model} at {endpoint}")
        return OllamaAdapter(model=model, endpoint=endpoint, **kwargs)

    if selected == LLMProvider.MOCK:
        from .mock import MockLLMAdapter

        logger.info(f"Using mock model {model}")
        return MockLLMAdapter(model=model, **kwargs)

    raise ValueError(f"Unsupported provider: {selected}")
