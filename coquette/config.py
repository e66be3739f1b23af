"""
Configuration module for the Coquette agent engine.

Settings are a pydantic-settings model, so values are type-checked on load.
Every field can be set through a ``COQUETTE_``-prefixed variable or a ``.env`` file.
"""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from adapters.llm.factory import LLMProvider

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class CoquetteConfig(BaseSettings):
    """Configuration for the agent engine and its CLI."""

    model_config = SettingsConfigDict(
        env_prefix="COQUETTE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Providers and models
    llm_provider: str = Field(default="ollama", description="Text-generation provider (ollama, mock)")
    ollama_endpoint: str = Field(default="http://localhost:11434", description="Ollama server URL")
    decision_model: str = Field(default="gemma3n:e4b", description="Model for tool decisions")
    recovery_model: Optional[str] = Field(
        default=None, description="Model for failure analysis (defaults to decision_model)"
    )
    synthesis_model: str = Field(
        default="hf.co/janhq/Jan-v1-4B-GGUF:Q8_0", description="Model for the final answer"
    )

    # Sampling
    decision_temperature: float = Field(default=0.1, description="Decision call temperature")
    recovery_temperature: float = Field(default=0.4, description="Recovery call temperature")
    recovery_num_ctx: int = Field(default=8192, description="Recovery call context window")
    synthesis_temperature: float = Field(default=0.7, description="Synthesis call temperature")

    # Timeouts
    llm_timeout_seconds: float = Field(default=120.0, description="Per text-generation call timeout")
    tool_timeout_seconds: float = Field(default=30.0, description="Default per-tool timeout")

    # Recovery
    max_recovery_cycles: int = Field(default=1, ge=0, description="Recovery calls allowed per turn")
    min_recovery_confidence: float = Field(
        default=0.5, ge=0.0, le=1.0, description="Confidence needed to run alternatives"
    )
    recovery_preview_chars: int = Field(
        default=500, description="Failing output characters shown to the recovery model"
    )

    # Context assembly
    history_window: int = Field(default=6, description="Prior messages included in summaries")
    synthesis_context_chars: int = Field(
        default=6000, description="Characters of tool output passed to synthesis"
    )
    snapshot_buffer_size: int = Field(default=64, description="Per-observer snapshot buffer")

    # Result validator thresholds
    code_marker_threshold: int = Field(default=5, description="Code markers tolerated")
    content_marker_floor: int = Field(default=2, description="Content markers required")
    code_check_min_length: int = Field(default=1000, description="Length before code check applies")
    min_extraction_length: int = Field(default=50, description="Shortest usable extraction")

    # Observability
    log_level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)")

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"unknown log level '{v}', expected one of {', '.join(LOG_LEVELS)}")
        return level

    @field_validator("llm_provider")
    @classmethod
    def normalize_llm_provider(cls, v: str) -> str:
        """Provider names follow ``adapters.llm.LLMProvider``."""
        name = v.lower()
        known = [p.value for p in LLMProvider]
        if name not in known:
            raise ValueError(f"unknown provider '{v}', expected one of {', '.join(known)}")
        return name

    @property
    def effective_recovery_model(self) -> str:
        return self.recovery_model or self.decision_model


# Process-wide settings, read once on import
config = CoquetteConfig()
