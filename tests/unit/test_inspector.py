"""Unit tests for the perimeter request inspector."""

import pytest

from streamgate.core.errors import FailurePolicy
from streamgate.engines.inspector import (
    MAX_BODY_BYTES,
    PASSED,
    SECURITY_HEADERS,
    InspectionRequest,
    RequestInspector,
    serialize_body,
)


@pytest.fixture
def inspector() -> RequestInspector:
    return RequestInspector()


class TestRuleOrder:
    """Rules run in a fixed order and the first match wins."""

    def test_fails_closed(self) -> None:
        assert RequestInspector.failure_policy is FailurePolicy.CLOSED

    def test_clean_request_passes(self, inspector: RequestInspector) -> None:
        result = inspector.inspect(
            InspectionRequest(
                url="/api/query",
                headers={"User-Agent": "Mozilla/5.0"},
                body={"table": "films", "operation": "select", "limit": 20},
            )
        )
        assert result == PASSED
        assert not result.blocked

    def test_bad_user_agent_first(self, inspector: RequestInspector) -> None:
        """User agent is checked before anything else."""
        result = inspector.inspect(
            InspectionRequest(
                url="/../../etc/passwd",
                headers={"user-agent": "sqlmap/1.7"},
            )
        )
        assert result.blocked
        assert result.rule == "bad-ua"

    def test_traversal_before_injection(self, inspector: RequestInspector) -> None:
        result = inspector.inspect(
            InspectionRequest(url="/files/../secret", query={"q": "1 UNION SELECT pw FROM users"})
        )
        assert result.rule == "path-traversal"

    @pytest.mark.parametrize("url", ["/a/%2e%2e/b", "/proc/self/environ", "/x/..\\y"])
    def test_traversal_variants(self, inspector: RequestInspector, url: str) -> None:
        assert inspector.inspect(InspectionRequest(url=url)).rule == "path-traversal"

    def test_sqli_in_query_string(self, inspector: RequestInspector) -> None:
        result = inspector.inspect(
            InspectionRequest(url="/api/films", query={"id": "1 UNION SELECT password FROM users"})
        )
        assert result.rule == "sqli"

    def test_xss_in_url(self, inspector: RequestInspector) -> None:
        result = inspector.inspect(InspectionRequest(url="/search?q=<script>alert(1)</script>"))
        assert result.rule == "xss"


class TestBody:
    """Body rules: size cap, then injection signatures."""

    def test_stacked_statement_in_body(self, inspector: RequestInspector) -> None:
        result = inspector.inspect(
            InspectionRequest(
                url="/api/query",
                body={"table": "films; DROP TABLE users; --", "operation": "select"},
            )
        )
        assert result.blocked
        assert result.rule == "sqli-body"

    def test_script_in_body(self, inspector: RequestInspector) -> None:
        result = inspector.inspect(
            InspectionRequest(url="/api/query", body={"data": {"bio": "<iframe src=x>"}})
        )
        assert result.rule == "xss-body"

    def test_scan_body_replaces_body_for_signatures(self, inspector: RequestInspector) -> None:
        body = {"operation": "select", "table": "films"}
        assert inspector.inspect(InspectionRequest(body=body)).rule == "sqli-body"
        assert not inspector.inspect(InspectionRequest(body=body, scan_body={})).blocked

    def test_scan_body_signatures_still_apply(self, inspector: RequestInspector) -> None:
        result = inspector.inspect(
            InspectionRequest(
                body={"table": "films", "filters": [{"column": "title", "value": "x' OR 1=1"}]},
                scan_body={"filters": ["x' OR 1=1"]},
            )
        )
        assert result.rule == "sqli-body"

    def test_size_measures_full_body_when_scanning_subset(self) -> None:
        inspector = RequestInspector(max_body_bytes=20)
        result = inspector.inspect(
            InspectionRequest(body={"table": "films", "padding": "x" * 20}, scan_body={})
        )
        assert result.rule == "size"

    def test_body_at_cap_passes(self, inspector: RequestInspector) -> None:
        """Exactly 1,000,000 serialized bytes is allowed."""
        overhead = len(serialize_body({"p": ""}))
        body = {"p": "a" * (MAX_BODY_BYTES - overhead)}
        assert len(serialize_body(body)) == MAX_BODY_BYTES
        assert not inspector.inspect(InspectionRequest(body=body)).blocked

    def test_body_over_cap_blocked(self, inspector: RequestInspector) -> None:
        overhead = len(serialize_body({"p": ""}))
        body = {"p": "a" * (MAX_BODY_BYTES - overhead + 1)}
        result = inspector.inspect(InspectionRequest(body=body))
        assert result.rule == "size"

    def test_size_checked_before_body_signatures(self) -> None:
        inspector = RequestInspector(max_body_bytes=10)
        result = inspector.inspect(InspectionRequest(body="<script>alert(1)</script>"))
        assert result.rule == "size"

    def test_multibyte_characters_counted_in_bytes(self) -> None:
        inspector = RequestInspector(max_body_bytes=4)
        assert inspector.inspect(InspectionRequest(body="éé")).blocked is False
        assert inspector.inspect(InspectionRequest(body="ééé")).rule == "size"


class TestSerializeBody:
    """Tests for the measured body form."""

    def test_compact_json(self) -> None:
        assert serialize_body({"a": [1, 2], "b": "é"}) == '{"a":[1,2],"b":"é"}'.encode("utf-8")

    def test_raw_passthrough(self) -> None:
        assert serialize_body(b"raw") == b"raw"
        assert serialize_body("text") == b"text"
        assert serialize_body(None) == b""


def test_security_headers() -> None:
    """Responses carry the standard hardening headers."""
    assert SECURITY_HEADERS["X-Frame-Options"] == "DENY"
    assert SECURITY_HEADERS["X-Content-Type-Options"] == "nosniff"
    assert "Content-Security-Policy" in SECURITY_HEADERS
