"""Unit tests for request parsing, identity and the allow-list."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from streamgate.core.allowlist import DEFAULT_ALLOW_LIST, AllowListEntry, TableAllowList, sanitize_identifier
from streamgate.core.errors import NotAllowedError, ValidationError
from streamgate.core.identity import Principal, TrustDomain
from streamgate.core.query import Filter, FilterOp, Operation, QueryRequest, parse_query_request


class TestParseQueryRequest:
    """Tests for parse_query_request."""

    def test_wire_names(self) -> None:
        query = parse_query_request(
            {
                "table": "watch_progress",
                "operation": "upsert",
                "data": {"film_id": "f1"},
                "upsertConflict": "film_id",
            }
        )
        assert query.operation is Operation.UPSERT
        assert query.upsert_conflict == "film_id"

    def test_null_filters_and_single_order(self) -> None:
        query = parse_query_request(
            {
                "table": "films",
                "operation": "select",
                "filters": None,
                "order": {"column": "title"},
            }
        )
        assert query.filters == []
        assert query.order[0].column == "title"
        assert query.order[0].ascending is True

    def test_unknown_fields_ignored(self) -> None:
        query = parse_query_request({"table": "films", "operation": "select", "schema": "private"})
        assert query.table == "films"

    @pytest.mark.parametrize("operation", [None, "drop", 5, ["select"]])
    def test_bad_operation(self, operation: object) -> None:
        with pytest.raises(NotAllowedError):
            parse_query_request({"table": "films", "operation": operation})

    def test_in_requires_list(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            parse_query_request(
                {
                    "table": "films",
                    "operation": "select",
                    "filters": [{"column": "id", "op": "in", "value": "a"}],
                }
            )
        assert "filters" in exc_info.value.message

    def test_is_accepts_only_null_or_bool(self) -> None:
        with pytest.raises(PydanticValidationError):
            Filter(column="x", op=FilterOp.IS, value="nope")

    def test_passthrough(self) -> None:
        query = QueryRequest(table="films", operation=Operation.SELECT)
        assert parse_query_request(query) is query

    def test_records_and_count_only(self) -> None:
        query = parse_query_request(
            {"table": "films", "operation": "select", "count": "exact", "head": True}
        )
        assert query.records == []
        assert query.is_count_only

        insert = parse_query_request({"table": "films", "operation": "insert", "data": {"a": 1}})
        assert insert.records == [{"a": 1}]
        assert insert.operation.is_write


class TestAllowList:
    """Tests for the table allow-list."""

    @pytest.mark.parametrize(
        "raw, expected",
        [("films", "films"), ("fi lms;--", "films"), ("users'); --", "users"), (None, ""), (42, "42")],
    )
    def test_sanitize_identifier(self, raw: object, expected: str) -> None:
        assert sanitize_identifier(raw) == expected

    def test_default_entries(self) -> None:
        films = DEFAULT_ALLOW_LIST.lookup("films")
        users = DEFAULT_ALLOW_LIST.lookup("users")
        profiles = DEFAULT_ALLOW_LIST.lookup("user_profiles")

        assert films is not None and films.public_read and films.owner_column is None
        assert users is not None and users.admin_only
        assert profiles is not None and profiles.owner_column == "id"
        assert len(DEFAULT_ALLOW_LIST) == 25
        assert "watch_later" in DEFAULT_ALLOW_LIST

    def test_lookup_unknown(self) -> None:
        assert DEFAULT_ALLOW_LIST.lookup("audit_logs") is None
        assert DEFAULT_ALLOW_LIST.lookup("!!!") is None

    def test_rejects_unsafe_entry(self) -> None:
        with pytest.raises(ValueError):
            TableAllowList([AllowListEntry(table="bad-name")])


class TestPrincipal:
    """Tests for the Principal model."""

    def test_admin_requires_primary_domain(self) -> None:
        assert Principal(user_id="a", role="admin").is_admin
        assert not Principal(user_id="a", role="admin", trust_domain=TrustDomain.FEDERATED).is_admin
        assert not Principal(user_id="a").is_admin

    def test_immutable(self) -> None:
        principal = Principal(user_id="a")
        with pytest.raises(PydanticValidationError):
            principal.role = "admin"  # type: ignore[misc]

    def test_empty_user_id_rejected(self) -> None:
        with pytest.raises(PydanticValidationError):
            Principal(user_id="")
