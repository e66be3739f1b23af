"""
HTML text extraction tool.

Turns a page's HTML into readable text, preferring the article or main
content region and dropping scripts, styles and page chrome.
"""

import logging
import re
from typing import Any, Dict, Optional, Tuple

from bs4 import BeautifulSoup

from coquette.agent.tool_registry import (
    ProgressCallback,
    RiskLevel,
    Tool,
    ToolClass,
    ToolParameter,
    ToolResult,
)

from .web_fetch import MAX_PAGE_CHARS

logger = logging.getLogger(__name__)

NOISE_TAGS = ("script", "style", "noscript", "iframe", "svg", "nav", "footer", "form")
CONTENT_REGIONS = ("article", "main")

_SPACES = re.compile(r"[ \t\r\f\v]+")
_BLANK_LINES = re.compile(r"\n{3,}")


class ExtractorTool(Tool):
    """Extract readable text from HTML."""

    name = "ExtractorTool"
    description = "Extract the readable text of an HTML page (articles, headlines, posts)."
    risk_level = RiskLevel.LOW
    tool_class = ToolClass.EXTRACTION
    parameters = [ToolParameter(name="html", description="HTML to extract text from")]
    consumes = "html"
    input_slot = "html"
    produces = "text"
    timeout = 15.0

    MAX_HTML_CHARS = MAX_PAGE_CHARS

    async def execute(self, args: Dict[str, Any]) -> ToolResult:
        return await self.execute_stream(args)

    async def execute_stream(
        self, args: Dict[str, Any], on_progress: Optional[ProgressCallback] = None
    ) -> ToolResult:
        html = str(args["html"])
        truncated = len(html) > self.MAX_HTML_CHARS
        if truncated:
            logger.info(f"Extracting from the first {self.MAX_HTML_CHARS} of {len(html)} chars")
            html = html[: self.MAX_HTML_CHARS]

        if on_progress:
            await on_progress("Parsing HTML")

        text, method, title = self.extract_text(html)
        logger.debug(f"Extracted {len(text)} chars via {method}")

        return ToolResult.ok(
            text,
            title=title,
            word_count=len(text.split()),
            character_count=len(text),
            extraction_method=method,
            truncated=truncated,
        )

    @staticmethod
    def extract_text(html: str) -> Tuple[str, str, str]:
        """
        Extract readable text.

        Returns:
            (text, extraction method, page title)
        """
        soup = BeautifulSoup(html, "html.parser")
        title = soup.title.get_text(strip=True) if soup.title else ""

        for tag in soup(list(NOISE_TAGS)):
            tag.decompose()

        root = None
        method = "body"
        for region in CONTENT_REGIONS:
            found = soup.find_all(region)
            if found:
                root = found
                method = region
                break

        if root is None:
            body = soup.body or soup
            text = body.get_text(separator="\n", strip=True)
        else:
            text = "\n\n".join(node.get_text(separator="\n", strip=True) for node in root)

        text = _SPACES.sub(" ", text)
        text = _BLANK_LINES.sub("\n\n", text).strip()
        if title and not text.startswith(title):
            text = f"{title}\n\n{text}" if text else title
        return text, method, title
