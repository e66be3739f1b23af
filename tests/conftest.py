"""
Shared fixtures for engine tests.

Module: tests/conftest.py
"""

from typing import Callable

import pytest

from coquette.agent import Tool, ToolRegistry
from coquette.config import CoquetteConfig
from tests.fakes import (
    DESKTOP_URL,
    MOBILE_HTML,
    MOBILE_URL,
    READABLE_TEXT,
    SLASHDOT_HTML,
    EchoTool,
    ExplodingTool,
    ScriptedExtractorTool,
    SlowTool,
    StaticFetchTool,
)


@pytest.fixture
def settings() -> CoquetteConfig:
    """Engine settings with short timeouts."""
    return CoquetteConfig(
        llm_provider="mock",
        llm_timeout_seconds=2.0,
        tool_timeout_seconds=2.0,
        max_recovery_cycles=1,
    )


@pytest.fixture
def fetch_tool() -> StaticFetchTool:
    return StaticFetchTool({DESKTOP_URL: SLASHDOT_HTML, MOBILE_URL: MOBILE_HTML})


@pytest.fixture
def extractor_tool() -> ScriptedExtractorTool:
    return ScriptedExtractorTool({SLASHDOT_HTML: READABLE_TEXT, MOBILE_HTML: READABLE_TEXT})


@pytest.fixture
def registry(fetch_tool: StaticFetchTool, extractor_tool: ScriptedExtractorTool) -> ToolRegistry:
    """Registry with fetch, extraction and generic fakes."""
    return ToolRegistry([fetch_tool, extractor_tool, ExplodingTool(), EchoTool(), SlowTool()])


@pytest.fixture
def make_registry() -> Callable[..., ToolRegistry]:
    def factory(*tools: Tool) -> ToolRegistry:
        return ToolRegistry(tools)

    return factory
