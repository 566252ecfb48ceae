"""
Access policy for compiled queries.

The "Can you do this?" logic, applied after the table has been found in
the allow-list:

1. Authentication gate: anonymous callers may only read public tables;
   every write requires a Principal.
2. Admin-only tables: non-admins are refused, except a user reading their
   own row in user_roles.
3. Owner scoping: on personal tables, a non-admin's writes (and reads of
   non-public tables) are pinned to rows they own.

Zero-trust: if no rule grants access, deny.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from streamgate.core.allowlist import AllowListEntry, sanitize_identifier
from streamgate.core.errors import AuthenticationError, FailurePolicy, ForbiddenError
from streamgate.core.identity import Principal
from streamgate.core.query import Filter, FilterOp, Operation, QueryRequest

_SCOPED_WRITES = frozenset({Operation.UPDATE, Operation.DELETE, Operation.UPSERT})
_OWNER_STAMPED = frozenset({Operation.UPDATE, Operation.UPSERT})


@dataclass
class PolicyDecision:
    """
    Result of an access evaluation.

    Contains the decision and reasoning for audit purposes.
    """

    allowed: bool
    reason: str
    status: str = "allowed"  # allowed | unauthenticated | forbidden
    metadata: dict[str, Any] = field(default_factory=dict)


class AccessPolicy:
    """
    Table-level access enforcement with default deny.

    Usage:
        policy = AccessPolicy()
        policy.enforce(query, entry, principal)      # raises on denial
        query = policy.scope(query, entry, principal)  # owner pinning
    """

    failure_policy = FailurePolicy.CLOSED

    def evaluate(
        self,
        query: QueryRequest,
        entry: AllowListEntry,
        principal: Principal | None,
    ) -> PolicyDecision:
        """
        Evaluate access with full decision details.

        Use this when the reason matters (e.g. audit logging).
        """
        operation = query.operation

        if principal is None:
            if operation.is_write:
                return PolicyDecision(
                    allowed=False,
                    reason="Authentication required for write operations",
                    status="unauthenticated",
                )
            if not entry.public_read:
                return PolicyDecision(
                    allowed=False,
                    reason="Authentication required",
                    status="unauthenticated",
                )
            return PolicyDecision(allowed=True, reason="Public read")

        if entry.admin_only and not principal.is_admin:
            if self._is_own_role_lookup(query, entry, principal):
                return PolicyDecision(allowed=True, reason="Own role lookup")
            return PolicyDecision(
                allowed=False,
                reason="Admin privileges required",
                status="forbidden",
                metadata={"table": entry.table},
            )

        return PolicyDecision(allowed=True, reason="Authenticated")

    def enforce(
        self,
        query: QueryRequest,
        entry: AllowListEntry,
        principal: Principal | None,
    ) -> None:
        """
        Raise unless access is allowed.

        Raises:
            AuthenticationError: Caller is anonymous where identity is required
            ForbiddenError: Caller lacks the required role
        """
        decision = self.evaluate(query, entry, principal)
        if decision.allowed:
            return
        if decision.status == "unauthenticated":
            raise AuthenticationError(decision.reason)
        raise ForbiddenError(decision.reason, **decision.metadata)

    def scope(
        self,
        query: QueryRequest,
        entry: AllowListEntry,
        principal: Principal | None,
    ) -> QueryRequest:
        """
        Pin a non-admin's query to rows they own.

        Returns a new QueryRequest; the input is not modified.
        """
        owner = entry.owner_column
        if owner is None or principal is None or principal.is_admin:
            return query

        operation = query.operation
        update: dict[str, Any] = {}

        if operation in _SCOPED_WRITES or (
            operation is Operation.SELECT and not entry.public_read
        ):
            kept = [f for f in query.filters if sanitize_identifier(f.column) != owner]
            kept.append(Filter(column=owner, op=FilterOp.EQ, value=principal.user_id))
            update["filters"] = kept

        if query.data is not None:
            if operation in _OWNER_STAMPED:
                update["data"] = self._stamp(query.data, owner, principal.user_id, force=True)
            elif operation is Operation.INSERT:
                update["data"] = self._stamp(query.data, owner, principal.user_id, force=False)

        return query.model_copy(update=update) if update else query

    @staticmethod
    def _stamp(
        data: dict[str, Any] | list[dict[str, Any]],
        owner: str,
        user_id: str,
        *,
        force: bool,
    ) -> dict[str, Any] | list[dict[str, Any]]:
        """
        Overwrite the owner column (always, or only where the client set it).

        A client-supplied owner key keeps its position; a forced one is appended.
        """

        def stamp_one(record: dict[str, Any]) -> dict[str, Any]:
            stamped: dict[str, Any] = {}
            for key, value in record.items():
                if sanitize_identifier(key) == owner:
                    stamped.setdefault(owner, user_id)
                else:
                    stamped[key] = value
            if force:
                stamped.setdefault(owner, user_id)
            return stamped

        if isinstance(data, list):
            return [stamp_one(record) for record in data]
        return stamp_one(data)

    @staticmethod
    def _is_own_role_lookup(
        query: QueryRequest,
        entry: AllowListEntry,
        principal: Principal,
    ) -> bool:
        if entry.table != "user_roles" or query.operation is not Operation.SELECT:
            return False
        return any(
            sanitize_identifier(f.column) == "user_id"
            and f.op is FilterOp.EQ
            and f.value == principal.user_id
            for f in query.filters
        )
