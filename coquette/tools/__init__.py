"""
Reference tools for the agent engine.

- WebFetchTool: downloads a page (produces html)
- ExtractorTool: extracts readable text (consumes html, produces text)
"""

from coquette.tools.extractor import ExtractorTool
from coquette.tools.web_fetch import WebFetchTool

__all__ = ["ExtractorTool", "WebFetchTool", "default_tools"]


def default_tools() -> list:
    """Fresh instances of the bundled tools."""
    return [WebFetchTool(), ExtractorTool()]
