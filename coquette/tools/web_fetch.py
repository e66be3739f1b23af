"""
Web page fetch tool.

Downloads a page over HTTPS and returns its HTML for downstream tools.
URLs pointing at the device itself or the local network are refused,
plain ``http://`` is upgraded, and GitHub ``/blob/`` links are rewritten to
their raw file.
"""

import ipaddress
import logging
from typing import Any, Dict, Optional

import httpx

from coquette.agent.tool_registry import (
    ProgressCallback,
    RiskLevel,
    Tool,
    ToolClass,
    ToolParameter,
    ToolResult,
)

logger = logging.getLogger(__name__)

# Shared with ExtractorTool so a fetched page always fits the extractor.
MAX_PAGE_CHARS = 500_000

LOCAL_HOSTNAMES = ("localhost", "localhost.localdomain", "ip6-localhost")
LOCAL_SUFFIXES = (".localhost", ".local", ".internal")


def is_local_host(host: str) -> bool:
    """True for loopback, private, link-local and other non-public hosts."""
    host = host.strip("[]").rstrip(".").lower()
    if host in LOCAL_HOSTNAMES or host.endswith(LOCAL_SUFFIXES):
        return True
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    return not address.is_global


def github_raw_url(url: httpx.URL) -> httpx.URL:
    """Raw file URL for a GitHub ``/blob/`` page, otherwise ``url`` unchanged."""
    if url.host not in ("github.com", "www.github.com") or "/blob/" not in url.path:
        return url
    return url.copy_with(host="raw.githubusercontent.com", path=url.path.replace("/blob/", "/", 1))


class LocalAddressError(ValueError):
    """A request, possibly a redirect hop, targeted a local or private host."""

    def __init__(self, host: str):
        super().__init__(f"refusing to fetch local or private address '{host}'")
        self.host = host


async def _refuse_local_request(request: httpx.Request) -> None:
    if is_local_host(request.url.host):
        raise LocalAddressError(request.url.host)


class WebFetchTool(Tool):
    """Fetch the raw HTML of a web page."""

    name = "WebFetchTool"
    description = "Download a web page and return its raw HTML."
    risk_level = RiskLevel.MEDIUM
    tool_class = ToolClass.FETCH
    parameters = [ToolParameter(name="url", description="Absolute http(s) URL to fetch")]
    produces = "html"
    timeout = 20.0

    USER_AGENT = "Mozilla/5.0 (Linux; Android 14) CoquetteAgent/0.1"
    MAX_CHARS = MAX_PAGE_CHARS

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        """
        Initialize the fetch tool.

        Args:
            transport: Optional httpx transport (used by tests)
        """
        self._transport = transport

    def validate_args(self, args: Dict[str, Any]) -> Optional[str]:
        problem = super().validate_args(args)
        if problem:
            return problem
        url = str(args["url"]).strip()
        try:
            parsed = httpx.URL(url)
        except httpx.InvalidURL as e:
            return f"invalid URL '{url}': {e}"
        if parsed.scheme not in ("http", "https"):
            return f"unsupported URL '{url}'"
        if not parsed.host:
            return f"invalid URL '{url}': missing host"
        if is_local_host(parsed.host):
            return str(LocalAddressError(parsed.host))
        return None

    def resolve_url(self, url: str) -> str:
        """URL actually requested: GitHub blobs as raw files, always HTTPS."""
        parsed = httpx.URL(url)
        target = github_raw_url(parsed)
        if target.scheme == "http":
            target = target.copy_with(scheme="https")
        return url if target == parsed else str(target)

    async def execute(self, args: Dict[str, Any]) -> ToolResult:
        return await self.execute_stream(args)

    async def execute_stream(
        self, args: Dict[str, Any], on_progress: Optional[ProgressCallback] = None
    ) -> ToolResult:
        problem = self.validate_args(args)
        if problem:
            return ToolResult.error(problem)

        requested = str(args["url"]).strip()
        url = self.resolve_url(requested)
        if url != requested:
            logger.debug(f"Rewrote {requested} to {url}")
        if on_progress:
            await on_progress(f"Fetching {url}")

        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                follow_redirects=True,
                headers={"User-Agent": self.USER_AGENT},
                event_hooks={"request": [_refuse_local_request]},
            ) as client:
                response = await client.get(url)
        except LocalAddressError as e:
            logger.warning(f"Fetch of {url} stopped: {e}")
            return ToolResult.error(str(e))

        if response.status_code >= 400:
            logger.info(f"Fetch of {url} returned HTTP {response.status_code}")
            return ToolResult.error(
                f"HTTP {response.status_code} for {url}", status_code=response.status_code
            )

        html = response.text
        content_length = len(html)
        truncated = content_length > self.MAX_CHARS
        if truncated:
            html = html[: self.MAX_CHARS]
            logger.info(f"Page {url} truncated from {content_length} to {self.MAX_CHARS} chars")

        if on_progress:
            await on_progress(f"Received {content_length} characters")

        return ToolResult.ok(
            html,
            url=str(response.url),
            original_url=requested,
            status_code=response.status_code,
            content_type=response.headers.get("content-type", ""),
            content_length=content_length,
            truncated=truncated,
        )
