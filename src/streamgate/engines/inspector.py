"""
Perimeter request inspection.

Signature-based filtering run before any business logic: blocked user
agents, path traversal, SQL injection and script injection in the URL,
query string and body, plus a body size cap.

This is a heuristic. Injection defense does not depend on it: the query
compiler binds every value as a parameter whether or not anything here
matched.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Pattern, Sequence

from streamgate.core.errors import FailurePolicy

MAX_BODY_BYTES = 1_000_000

SQL_INJECTION_PATTERNS: tuple[str, ...] = (
    r"(\b(union|select|insert|update|delete|drop|alter|create|exec|execute)\b.*\b(from|into|table|database|where)\b)",
    r"(--|#|;)\s*(drop|delete|update|alter|select)",
    r"'\s*(or|and)\s*'?\s*(1|true)\s*=\s*'?\s*(1|true)",
    r"'\s*(or|and)\s*''=",
    r"\bWAITFOR\s+DELAY\b",
    r"\bBENCHMARK\s*\(",
    r"\bSLEEP\s*\(",
)

SCRIPT_INJECTION_PATTERNS: tuple[str, ...] = (
    r"<script[\s>]",
    r"javascript\s*:",
    r"on(error|load|click|mouseover|focus|blur)\s*=",
    r"eval\s*\(",
    r"<iframe",
    r"<object",
    r"<embed",
    r"document\.(cookie|write|location)",
    r"window\.(location|open)",
)

PATH_TRAVERSAL_PATTERNS: tuple[str, ...] = (
    r"\.\./",
    r"\.\.\\",
    r"%2e%2e",
    r"%252e%252e",
    r"etc/passwd",
    r"proc/self",
    r"windows/system32",
)

BAD_USER_AGENT_PATTERNS: tuple[str, ...] = (
    r"sqlmap",
    r"nikto",
    r"nessus",
    r"masscan",
    r"zgrab",
    r"dirbuster",
    r"gobuster",
    r"nuclei",
    r"hydra",
    r"havij",
)


@dataclass(frozen=True)
class InspectionResult:
    """Verdict of an inspection. rule is a stable identifier for observability."""

    blocked: bool
    rule: str | None = None
    reason: str | None = None


PASSED = InspectionResult(blocked=False)


@dataclass
class InspectionRequest:
    """The parts of an inbound request the inspector looks at."""

    url: str = ""
    query: Mapping[str, Any] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Any = None
    # Body patterns run against this when set; the size cap always measures body
    scan_body: Any = None

    @property
    def user_agent(self) -> str:
        for key, value in self.headers.items():
            if key.lower() == "user-agent":
                return value or ""
        return ""


def serialize_body(body: Any) -> bytes:
    """
    Body as the inspector measures it.

    Raw bytes and strings are taken as sent; decoded JSON is re-serialized
    compactly (no whitespace, UTF-8).
    """
    if body is None:
        return b""
    if isinstance(body, (bytes, bytearray)):
        return bytes(body)
    if isinstance(body, str):
        return body.encode("utf-8")
    return json.dumps(
        body, separators=(",", ":"), ensure_ascii=False, default=str
    ).encode("utf-8")


def _compile(patterns: Sequence[str]) -> tuple[Pattern[str], ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


class RequestInspector:
    """
    Ordered, short-circuiting request filter.

    Rules, first match wins:
        bad-ua, path-traversal, sqli, xss   (user agent, URL and query)
        size, sqli-body, xss-body           (body, or scan_body when given)

    Usage:
        inspector = RequestInspector()
        result = inspector.inspect(InspectionRequest(url=..., body=payload))
        if result.blocked:
            raise InspectionBlocked(result.rule, result.reason)
    """

    failure_policy = FailurePolicy.CLOSED

    def __init__(self, *, max_body_bytes: int = MAX_BODY_BYTES) -> None:
        self._max_body_bytes = max_body_bytes
        self._bad_agents = _compile(BAD_USER_AGENT_PATTERNS)
        self._traversal = _compile(PATH_TRAVERSAL_PATTERNS)
        self._sqli = _compile(SQL_INJECTION_PATTERNS)
        self._xss = _compile(SCRIPT_INJECTION_PATTERNS)

    @property
    def max_body_bytes(self) -> int:
        return self._max_body_bytes

    def inspect(self, request: InspectionRequest) -> InspectionResult:
        if self._matches(self._bad_agents, request.user_agent):
            return InspectionResult(True, "bad-ua", "Blocked user agent")

        query_text = " ".join(str(v) for v in request.query.values())
        target = f"{request.url} {query_text}"

        if self._matches(self._traversal, target):
            return InspectionResult(True, "path-traversal", "Path traversal detected")
        if self._matches(self._sqli, target):
            return InspectionResult(True, "sqli", "SQL injection pattern detected")
        if self._matches(self._xss, target):
            return InspectionResult(True, "xss", "XSS pattern detected")

        if request.body is None:
            return PASSED

        raw = serialize_body(request.body)
        if len(raw) > self._max_body_bytes:
            return InspectionResult(True, "size", "Payload too large")

        if request.scan_body is not None:
            raw = serialize_body(request.scan_body)
        text = raw.decode("utf-8", errors="replace")
        if self._matches(self._sqli, text):
            return InspectionResult(True, "sqli-body", "SQL injection in body")
        if self._matches(self._xss, text):
            return InspectionResult(True, "xss-body", "XSS in body")

        return PASSED

    @staticmethod
    def _matches(patterns: Sequence[Pattern[str]], text: str) -> bool:
        return bool(text) and any(p.search(text) for p in patterns)


SECURITY_HEADERS: dict[str, str] = {
    "Content-Security-Policy": "default-src 'self'",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=(), payment=()",
}
