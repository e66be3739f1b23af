"""
Result Validator for tool output.

Fast, local and deterministic checks that decide whether a tool result is
usable before it is chained forward or summarized:
- Extraction output that is mostly script code or too short is rejected
- Fetch output whose title, headings or opening text read like an error
  page is rejected
- Any other output is rejected only when blank
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional, Tuple

from .tool_registry import ToolClass

logger = logging.getLogger(__name__)


CODE_MARKER_THRESHOLD = 5
CONTENT_MARKER_FLOOR = 2
CODE_CHECK_MIN_LENGTH = 1000
MIN_EXTRACTION_LENGTH = 50

# Error wording is looked for in the title, top-level headings and the
# first visible characters of a fetched page, as whole words.
FETCH_ERROR_MARKERS: Tuple[str, ...] = ("404", "error", "not found")
FETCH_LEAD_CHARS = 200

_FETCH_ERROR_PATTERN = re.compile(
    r"\b(?:" + "|".join(re.escape(m) for m in FETCH_ERROR_MARKERS) + r")\b", re.IGNORECASE
)
_SCRIPT_BLOCKS = re.compile(r"<(script|style|noscript)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_HEADINGS = re.compile(r"<(title|h1|h2)\b[^>]*>(.*?)</\1\s*>", re.IGNORECASE | re.DOTALL)
_MARKUP = re.compile(r"<[^>]*>")


@dataclass(frozen=True)
class ValidationThresholds:
    """Tunable limits for the heuristics."""

    code_marker_threshold: int = CODE_MARKER_THRESHOLD
    content_marker_floor: int = CONTENT_MARKER_FLOOR
    code_check_min_length: int = CODE_CHECK_MIN_LENGTH
    min_extraction_length: int = MIN_EXTRACTION_LENGTH


@dataclass(frozen=True)
class ValidationVerdict:
    """Result of validating one tool output."""

    is_valid: bool
    reason: str
    code_markers: int = 0
    content_markers: int = 0

    def __bool__(self) -> bool:
        return self.is_valid


class ResultValidator:
    """
    Heuristic classifier for tool output.

    ``validate`` is a pure function of its arguments and the thresholds the
    validator was built with.
    """

    CODE_MARKERS: Tuple[str, ...] = (
        "window.",
        "document.",
        "function(",
        "var ",
        ".js",
        "script",
        "bizx.cmp",
        "googletag",
        "addeventlistener",
    )

    CONTENT_MARKERS: Tuple[str, ...] = (
        "article",
        "news",
        "story",
        "headline",
        "paragraph",
        "content",
        "text",
        "post",
        "comment",
    )

    def __init__(self, thresholds: Optional[ValidationThresholds] = None) -> None:
        self.thresholds = thresholds or ValidationThresholds()

    @staticmethod
    def count_markers(text: str, markers: Tuple[str, ...]) -> int:
        """Number of distinct markers present, case-insensitively."""
        lowered = text.lower()
        return sum(1 for marker in markers if marker in lowered)

    def validate(
        self,
        tool_class: ToolClass,
        output: str,
        query: str = "",
        success: bool = True,
    ) -> ValidationVerdict:
        """
        Judge a tool output.

        Args:
            tool_class: Family of the tool that produced the output
            output: Tool output text
            query: Original user request (unused by the current heuristics)
            success: Whether the tool reported success

        Returns:
            ValidationVerdict
        """
        if not success:
            return ValidationVerdict(False, "tool reported failure")

        if tool_class == ToolClass.EXTRACTION:
            return self._validate_extraction(output)
        if tool_class == ToolClass.FETCH:
            return self._validate_fetch(output)

        if not output.strip():
            return ValidationVerdict(False, "empty output")
        return ValidationVerdict(True, "output present")

    def _validate_extraction(self, output: str) -> ValidationVerdict:
        limits = self.thresholds
        stripped = output.strip()
        if len(stripped) < limits.min_extraction_length:
            return ValidationVerdict(
                False, f"extracted content too short ({len(stripped)} chars)"
            )

        code = self.count_markers(output, self.CODE_MARKERS)
        content = self.count_markers(output, self.CONTENT_MARKERS)
        if (
            code > limits.code_marker_threshold
            and content < limits.content_marker_floor
            and len(output) > limits.code_check_min_length
        ):
            return ValidationVerdict(
                False,
                f"extracted content looks like script code ({code} code markers, "
                f"{content} content markers)",
                code_markers=code,
                content_markers=content,
            )

        return ValidationVerdict(
            True, "readable content", code_markers=code, content_markers=content
        )

    def _validate_fetch(self, output: str) -> ValidationVerdict:
        if not output.strip():
            return ValidationVerdict(False, "empty page")

        # Scripts routinely mention onerror/console.error; only what a reader sees counts
        readable = _SCRIPT_BLOCKS.sub(" ", output)
        regions = [
            ("heading", _MARKUP.sub(" ", match.group(2)))
            for match in _HEADINGS.finditer(readable)
        ]
        visible = " ".join(_MARKUP.sub(" ", readable).split())
        regions.append(("opening text", visible[:FETCH_LEAD_CHARS]))

        for where, text in regions:
            found = _FETCH_ERROR_PATTERN.search(text)
            if found:
                return ValidationVerdict(
                    False, f"fetched page looks like an error ('{found.group(0).lower()}' in {where})"
                )
        return ValidationVerdict(True, "page fetched")
