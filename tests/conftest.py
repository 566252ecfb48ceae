"""Shared fixtures for Streamgate tests."""

from __future__ import annotations

from typing import Any, Callable, Sequence

import pytest

from streamgate.core.errors import DatabaseError
from streamgate.core.identity import Principal, TrustDomain

PRIMARY_SECRET = "primary-signing-key-0123456789abcdef0123"
FEDERATED_SECRET = "federated-signing-key-fedcba9876543210fedc"


class FakeDatabase:
    """
    In-memory stand-in for the relational store.

    Records every statement and answers with canned rows. `rows` may be a
    list (returned for every call) or a callable taking (sql, params).
    """

    def __init__(
        self,
        rows: list[dict[str, Any]] | Callable[[str, tuple[Any, ...]], list[dict[str, Any]]] | None = None,
        *,
        fail: bool = False,
    ) -> None:
        self.rows = rows if rows is not None else []
        self.fail = fail
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.transactions: list[list[tuple[str, tuple[Any, ...]]]] = []

    def _answer(self, sql: str, params: tuple[Any, ...]) -> list[dict[str, Any]]:
        if self.fail:
            raise DatabaseError('relation "secret_table" does not exist')
        if callable(self.rows):
            return self.rows(sql, params)
        return [dict(row) for row in self.rows]

    async def fetch(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        params = tuple(params)
        self.calls.append((sql, params))
        return self._answer(sql, params)

    async def fetch_in_transaction(
        self, statements: Sequence[tuple[str, Sequence[Any]]]
    ) -> list[list[dict[str, Any]]]:
        batch = [(sql, tuple(params)) for sql, params in statements]
        self.transactions.append(batch)
        return [self._answer(sql, params) for sql, params in batch]

    def statements(self, prefix: str) -> list[tuple[str, tuple[Any, ...]]]:
        return [call for call in self.calls if call[0].startswith(prefix)]


@pytest.fixture
def fake_db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def user() -> Principal:
    return Principal(user_id="user-1", email="user@example.com", role="user")


@pytest.fixture
def other_user() -> Principal:
    return Principal(user_id="user-2", email="other@example.com", role="user")


@pytest.fixture
def admin() -> Principal:
    return Principal(user_id="admin-1", email="admin@example.com", role="admin")


@pytest.fixture
def federated_admin_claim() -> Principal:
    """A federated principal that claims admin; never actually admin."""
    return Principal(
        user_id="fed-1",
        email="fed@example.com",
        role="admin",
        trust_domain=TrustDomain.FEDERATED,
    )
