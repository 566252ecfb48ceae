"""
Query compiler.

Translates a validated QueryRequest into parameterized SQL statements.

Structural injection defense:
- The only text ever interpolated into SQL is an identifier reduced to
  [A-Za-z0-9_], and a table identifier must also match the allow-list.
- Every value, including LIMIT and OFFSET, travels as a positional
  parameter ($1, $2, ...).

The compiler is pure: the same request, principal and allow-list always
produce byte-identical SQL and parameter order.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from streamgate.core.allowlist import DEFAULT_ALLOW_LIST, AllowListEntry, TableAllowList, sanitize_identifier
from streamgate.core.errors import FailurePolicy, NotAllowedError, ValidationError
from streamgate.core.identity import Principal
from streamgate.core.query import Filter, FilterOp, Operation, OrderSpec, QueryRequest, Record, parse_query_request
from streamgate.engines.policy import AccessPolicy

# Projection strings containing these are relational-join syntax
JOIN_MARKERS = ("!", ":", "(")

_COMPARATORS: dict[FilterOp, str] = {
    FilterOp.EQ: "=",
    FilterOp.NEQ: "!=",
    FilterOp.GT: ">",
    FilterOp.GTE: ">=",
    FilterOp.LT: "<",
    FilterOp.LTE: "<=",
    FilterOp.LIKE: "LIKE",
    FilterOp.ILIKE: "ILIKE",
    FilterOp.CONTAINS: "@>",
}


class ResultShape(str, Enum):
    """How executed rows become the response payload."""

    ROWS = "rows"  # list of rows
    FIRST = "first"  # first row or null
    COUNT = "count"  # row count, no payload


@dataclass(frozen=True)
class CompiledStatement:
    """SQL text with positional placeholders and its ordered parameters."""

    sql: str
    params: tuple[Any, ...] = ()


@dataclass(frozen=True)
class CompiledQuery:
    """Everything the orchestrator needs to execute one request."""

    table: str
    operation: Operation
    statements: tuple[CompiledStatement, ...]
    shape: ResultShape = ResultShape.ROWS
    transactional: bool = False

    @property
    def sql(self) -> str:
        """SQL of the first statement."""
        return self.statements[0].sql if self.statements else ""

    @property
    def params(self) -> tuple[Any, ...]:
        """Parameters of the first statement."""
        return self.statements[0].params if self.statements else ()


def bind_value(value: Any) -> Any:
    """Nested objects and arrays are bound as JSON text."""
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), default=str)
    return value


class QueryCompiler:
    """
    Compiles table + operation + filters requests into SQL.

    Usage:
        compiler = QueryCompiler()
        compiled = compiler.compile(payload, principal)
        rows = await database.fetch(compiled.sql, compiled.params)
    """

    failure_policy = FailurePolicy.CLOSED

    def __init__(
        self,
        allow_list: TableAllowList = DEFAULT_ALLOW_LIST,
        policy: AccessPolicy | None = None,
    ) -> None:
        self._allow_list = allow_list
        self._policy = policy or AccessPolicy()

    @property
    def allow_list(self) -> TableAllowList:
        return self._allow_list

    def compile(
        self,
        request: QueryRequest | Mapping[str, Any],
        principal: Principal | None = None,
    ) -> CompiledQuery:
        """
        Compile a request for the given caller.

        Args:
            request: QueryRequest or the raw decoded JSON payload
            principal: Verified caller, or None when anonymous

        Returns:
            CompiledQuery

        Raises:
            ValidationError: Malformed request (400)
            NotAllowedError: Table or operation outside the allow-list (400)
            AuthenticationError: Identity required (401)
            ForbiddenError: Identity lacks permission (403)
        """
        query = parse_query_request(request)

        entry = self._allow_list.lookup(query.table)
        if entry is None:
            shown = sanitize_identifier(query.table)[:64]
            raise NotAllowedError(f"Table '{shown}' is not allowed", table=shown)

        self._policy.enforce(query, entry, principal)
        self._check_shape(query)
        query = self._policy.scope(query, entry, principal)

        operation = query.operation
        if operation is Operation.SELECT:
            return self._compile_select(query, entry)
        if operation is Operation.INSERT:
            return self._compile_insert(query, entry)
        if operation is Operation.UPDATE:
            return self._compile_update(query, entry)
        if operation is Operation.DELETE:
            return self._compile_delete(query, entry)
        return self._compile_upsert(query, entry)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @staticmethod
    def _check_shape(query: QueryRequest) -> None:
        operation = query.operation
        if operation is Operation.DELETE and not query.filters:
            raise ValidationError("DELETE without filters is not allowed")
        if operation in (Operation.INSERT, Operation.UPDATE, Operation.UPSERT) and query.data is None:
            raise ValidationError(f"No data to {operation.value}")
        if operation is Operation.UPDATE and not isinstance(query.data, dict):
            raise ValidationError("Update data must be a single object")

    @staticmethod
    def column(name: str) -> str:
        """Sanitized column identifier; empty results are rejected."""
        safe = sanitize_identifier(name)
        if not safe:
            raise ValidationError("Invalid column name")
        return safe

    def _record_columns(self, records: list[Record]) -> tuple[list[str], list[str]]:
        """
        Column set of a batch, taken from the first record.

        Returns:
            (payload keys in order, sanitized column names)
        """
        keys = list(records[0].keys())
        if not keys:
            raise ValidationError("Record has no columns")

        columns = [self.column(key) for key in keys]
        if len(set(columns)) != len(columns):
            raise ValidationError("Duplicate column names in record")

        expected = set(keys)
        for index, record in enumerate(records[1:], start=1):
            if set(record.keys()) != expected:
                raise ValidationError(f"Record {index} has a different column set than record 0")
        return keys, columns

    # ------------------------------------------------------------------
    # Fragments
    # ------------------------------------------------------------------

    def where_clause(
        self,
        filters: list[Filter],
        start: int = 1,
        qualifier: str | None = None,
    ) -> tuple[str, list[Any]]:
        """
        WHERE clause for a filter list.

        Args:
            filters: Conditions, joined with AND
            start: Index of the first placeholder
            qualifier: Table name prefixed to every column

        Returns:
            (clause, params); clause is "" when there are no filters
        """
        conditions: list[str] = []
        params: list[Any] = []
        index = start

        for f in filters:
            col = self.column(f.column)
            if qualifier:
                col = f"{qualifier}.{col}"

            if f.op is FilterOp.IN:
                values = list(f.value)
                if not values:
                    conditions.append("FALSE")
                    continue
                placeholders = ", ".join(f"${index + i}" for i in range(len(values)))
                conditions.append(f"{col} IN ({placeholders})")
                params.extend(values)
                index += len(values)
            elif f.op is FilterOp.IS:
                if f.value is None:
                    conditions.append(f"{col} IS NULL")
                    continue
                conditions.append(f"{col} IS NOT DISTINCT FROM ${index}")
                params.append(f.value)
                index += 1
            elif f.op is FilterOp.CONTAINS:
                conditions.append(f"{col} @> ${index}")
                params.append(json.dumps(f.value) if isinstance(f.value, dict) else f.value)
                index += 1
            else:
                conditions.append(f"{col} {_COMPARATORS[f.op]} ${index}")
                params.append(f.value)
                index += 1

        if not conditions:
            return "", params
        return "WHERE " + " AND ".join(conditions), params

    def projection(self, columns: str | None) -> str:
        """Select list; '*' for empty, wildcard or join-syntax projections."""
        if not columns or not columns.strip():
            return "*"
        if any(marker in columns for marker in JOIN_MARKERS):
            return "*"
        parts = [part.strip() for part in columns.split(",")]
        if "*" in parts:
            return "*"
        safe = [sanitize_identifier(part) for part in parts]
        safe = [part for part in safe if part]
        return ", ".join(safe) if safe else "*"

    def order_clause(self, order: list[OrderSpec]) -> str:
        if not order:
            return ""
        terms = [f"{self.column(o.column)} {'ASC' if o.ascending else 'DESC'}" for o in order]
        return "ORDER BY " + ", ".join(terms)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _compile_select(self, query: QueryRequest, entry: AllowListEntry) -> CompiledQuery:
        where, params = self.where_clause(query.filters)

        if query.is_count_only:
            parts = ["SELECT COUNT(*) AS count FROM", entry.table]
            if where:
                parts.append(where)
            return CompiledQuery(
                table=entry.table,
                operation=Operation.SELECT,
                statements=(CompiledStatement(" ".join(parts), tuple(params)),),
                shape=ResultShape.COUNT,
            )

        parts = ["SELECT", self.projection(query.columns), "FROM", entry.table]
        if where:
            parts.append(where)

        order = self.order_clause(query.order)
        if order:
            parts.append(order)

        # A zero limit or offset means "not set"
        if query.limit:
            params.append(query.limit)
            parts.append(f"LIMIT ${len(params)}")
        if query.offset:
            params.append(query.offset)
            parts.append(f"OFFSET ${len(params)}")

        return CompiledQuery(
            table=entry.table,
            operation=Operation.SELECT,
            statements=(CompiledStatement(" ".join(parts), tuple(params)),),
            shape=ResultShape.FIRST if query.single else ResultShape.ROWS,
        )

    def _compile_insert(self, query: QueryRequest, entry: AllowListEntry) -> CompiledQuery:
        records = query.records
        many = isinstance(query.data, list)
        if not records:
            # An empty batch is a no-op, not an error
            return CompiledQuery(
                table=entry.table,
                operation=Operation.INSERT,
                statements=(),
                shape=ResultShape.ROWS,
            )

        keys, columns = self._record_columns(records)
        placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
        sql = f"INSERT INTO {entry.table} ({', '.join(columns)}) VALUES ({placeholders}) RETURNING *"

        statements = tuple(
            CompiledStatement(sql, tuple(bind_value(record[key]) for key in keys))
            for record in records
        )
        return CompiledQuery(
            table=entry.table,
            operation=Operation.INSERT,
            statements=statements,
            shape=ResultShape.ROWS if many else ResultShape.FIRST,
            transactional=len(statements) > 1,
        )

    def _compile_update(self, query: QueryRequest, entry: AllowListEntry) -> CompiledQuery:
        record = query.records[0]
        keys, columns = self._record_columns([record])

        set_clause = ", ".join(f"{col} = ${i + 1}" for i, col in enumerate(columns))
        set_params = [bind_value(record[key]) for key in keys]
        where, where_params = self.where_clause(query.filters, start=len(columns) + 1)

        parts = ["UPDATE", entry.table, "SET", set_clause]
        if where:
            parts.append(where)
        parts.append("RETURNING *")

        return CompiledQuery(
            table=entry.table,
            operation=Operation.UPDATE,
            statements=(CompiledStatement(" ".join(parts), tuple(set_params + where_params)),),
        )

    def _compile_delete(self, query: QueryRequest, entry: AllowListEntry) -> CompiledQuery:
        where, params = self.where_clause(query.filters)
        if not where:
            raise ValidationError("DELETE without filters is not allowed")

        return CompiledQuery(
            table=entry.table,
            operation=Operation.DELETE,
            statements=(CompiledStatement(f"DELETE FROM {entry.table} {where} RETURNING *", tuple(params)),),
        )

    def _compile_upsert(self, query: QueryRequest, entry: AllowListEntry) -> CompiledQuery:
        records = query.records
        if not records:
            raise ValidationError("No data to upsert")

        keys, columns = self._record_columns(records)

        if query.upsert_conflict:
            conflict = [sanitize_identifier(c.strip()) for c in query.upsert_conflict.split(",")]
            conflict = [c for c in conflict if c]
            if not conflict:
                raise ValidationError("Invalid upsert conflict target")
        else:
            conflict = [columns[0]]

        conflict_set = set(conflict)
        updates = [col for col in columns if col not in conflict_set]

        placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
        parts = [
            f"INSERT INTO {entry.table} ({', '.join(columns)}) VALUES ({placeholders})",
            f"ON CONFLICT ({', '.join(conflict)})",
        ]
        where_params: list[Any] = []
        if updates:
            parts.append("DO UPDATE SET " + ", ".join(f"{col} = EXCLUDED.{col}" for col in updates))
            # Filters restrict which existing row the conflict branch may overwrite
            where, where_params = self.where_clause(
                query.filters, start=len(columns) + 1, qualifier=entry.table
            )
            if where:
                parts.append(where)
        else:
            parts.append("DO NOTHING")
        parts.append("RETURNING *")
        sql = " ".join(parts)

        statements = tuple(
            CompiledStatement(
                sql, tuple(bind_value(record[key]) for key in keys) + tuple(where_params)
            )
            for record in records
        )
        many = isinstance(query.data, list)
        return CompiledQuery(
            table=entry.table,
            operation=Operation.UPSERT,
            statements=statements,
            shape=ResultShape.ROWS if many else ResultShape.FIRST,
            transactional=len(statements) > 1,
        )
