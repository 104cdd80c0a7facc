"""HTTP GET against an allow-listed set of public domains."""

from __future__ import annotations

import socket
from typing import Any, Mapping
from urllib import error, parse, request

from pydantic import Field

from chat_orchestrator import __version__
from chat_orchestrator.security.sanitizer import is_private_ip, sanitize_url, validate_domain
from chat_orchestrator.tools.base import (
    ActionSpec,
    StrictModel,
    ToolContext,
    ToolResult,
    describe_tool,
    execute_action,
)

MAX_REDIRECTS = 5


class FetchParams(StrictModel):
    url: str = Field(min_length=1)


class _NoRedirect(request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):  # type: ignore[override]
        return None


def build_opener() -> request.OpenerDirector:
    return request.build_opener(_NoRedirect)


class WebSandboxTool:
    name = "web_sandbox"
    description = "Fetch content from allowed web URLs"

    def __init__(
        self,
        allowed_domains: list[str],
        *,
        timeout_s: float = 10.0,
        max_response_mb: float = 5.0,
        opener: request.OpenerDirector | None = None,
    ) -> None:
        self.allowed_domains = list(allowed_domains)
        self.timeout_s = timeout_s
        self.max_response_mb = max_response_mb
        self.opener = opener or build_opener()
        self._actions = {"fetch": ActionSpec("Fetch content from a URL", FetchParams, self._fetch)}

    @property
    def actions(self) -> Mapping[str, ActionSpec]:
        return self._actions

    def get_descriptor(self) -> dict[str, Any]:
        return describe_tool(self)

    def execute(self, action: str, params: dict[str, Any], context: ToolContext) -> ToolResult:
        return execute_action(self, action, params, context)

    def _destination_error(self, url: str) -> str | None:
        hostname = parse.urlsplit(url).hostname or ""
        if is_private_ip(hostname):
            return "Access to private IP addresses is forbidden"
        if not validate_domain(hostname, self.allowed_domains):
            return f"Domain {hostname} is not in allowlist"
        return None

    def _fetch(self, params: FetchParams, _: ToolContext) -> ToolResult:
        current_url = sanitize_url(params.url)
        if current_url is None:
            return ToolResult.fail("Invalid URL format")
        rejection = self._destination_error(current_url)
        if rejection:
            return ToolResult.fail(rejection)

        max_bytes = int(self.max_response_mb * 1024 * 1024)
        for _ in range(MAX_REDIRECTS + 1):
            req = request.Request(
                current_url,
                method="GET",
                headers={"User-Agent": f"chat-orchestrator/{__version__}"},
            )
            try:
                with self.opener.open(req, timeout=self.timeout_s) as response:
                    status = response.status
                    declared = response.headers.get("Content-Length")
                    if declared and declared.isdigit() and int(declared) > max_bytes:
                        return self._too_large()
                    body = response.read(max_bytes + 1)
            except error.HTTPError as exc:
                if 300 <= exc.code < 400:
                    location = exc.headers.get("Location") if exc.headers else None
                    if not location:
                        return ToolResult.fail(f"HTTP {exc.code}: {exc.reason}")
                    next_url = parse.urljoin(current_url, location)
                    rejection = self._destination_error(next_url)
                    if rejection:
                        return ToolResult.fail(rejection)
                    current_url = next_url
                    continue
                return ToolResult.fail(f"HTTP {exc.code}: {exc.reason}")
            except (TimeoutError, socket.timeout):
                return ToolResult.fail(f"Request timeout after {self.timeout_s:g}s")
            except error.URLError as exc:
                return ToolResult.fail(f"Failed to fetch URL: {exc.reason}")

            if len(body) > max_bytes:
                return self._too_large()
            text = body.decode("utf-8", errors="replace")
            return ToolResult.ok(
                {
                    "url": params.url,
                    "final_url": current_url,
                    "status": status,
                    "content": text,
                    "content_length": len(text),
                }
            )

        return ToolResult.fail(f"Too many redirects (max {MAX_REDIRECTS})")

    def _too_large(self) -> ToolResult:
        return ToolResult.fail(f"Response size exceeds maximum of {self.max_response_mb:g}MB")
