"""
Typed query requests.

Client payloads are parsed into a strictly validated QueryRequest before
any branching happens. The operation is a closed enumeration; an unknown
operation string is refused before the rest of the payload is looked at.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from streamgate.core.errors import NotAllowedError, ValidationError


class Operation(str, Enum):
    """Operations a client may request."""

    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    UPSERT = "upsert"

    @property
    def is_write(self) -> bool:
        return self is not Operation.SELECT


class FilterOp(str, Enum):
    """Filter operators. Anything else is a validation error."""

    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    LIKE = "like"
    ILIKE = "ilike"
    IN = "in"
    IS = "is"
    CONTAINS = "contains"


class Filter(BaseModel):
    """One WHERE condition."""

    model_config = ConfigDict(frozen=True)

    column: str = Field(..., min_length=1)
    op: FilterOp
    value: Any = None

    @model_validator(mode="after")
    def _check_value_shape(self) -> Filter:
        if self.op is FilterOp.IN and not isinstance(self.value, (list, tuple)):
            raise ValueError("'in' filter requires a list value")
        if self.op is FilterOp.IS and self.value is not None and not isinstance(self.value, bool):
            raise ValueError("'is' filter accepts only null, true or false")
        return self


class OrderSpec(BaseModel):
    """ORDER BY term."""

    model_config = ConfigDict(frozen=True)

    column: str = Field(..., min_length=1)
    ascending: bool = True


Record = dict[str, Any]


class QueryRequest(BaseModel):
    """A validated table + operation + filters request."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    table: str = Field(..., min_length=1)
    operation: Operation
    columns: str | None = None
    filters: list[Filter] = Field(default_factory=list)
    data: Record | list[Record] | None = None
    order: list[OrderSpec] = Field(default_factory=list)
    limit: NonNegativeInt | None = None
    offset: NonNegativeInt | None = None
    upsert_conflict: str | None = Field(default=None, alias="upsertConflict")
    single: bool = False
    count: Literal["exact"] | None = None
    head: bool = False

    @field_validator("filters", "order", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, Mapping):
            return [value]
        return value

    @property
    def records(self) -> list[Record]:
        """Payload rows as a list, whatever shape the client sent."""
        if self.data is None:
            return []
        if isinstance(self.data, list):
            return list(self.data)
        return [self.data]

    @property
    def is_count_only(self) -> bool:
        return self.count == "exact" and self.head


_OPERATION_NAMES = frozenset(op.value for op in Operation)


def _describe(exc: PydanticValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid value")
    return f"{location}: {message}" if location else message


def parse_query_request(payload: Any) -> QueryRequest:
    """
    Parse a decoded JSON payload into a QueryRequest.

    Raises:
        ValidationError: Payload is not an object, lacks a table, or is malformed
        NotAllowedError: Operation is not one of the enumerated values
    """
    if isinstance(payload, QueryRequest):
        return payload
    if not isinstance(payload, Mapping):
        raise ValidationError("Request body must be a JSON object")

    if not payload.get("table"):
        raise ValidationError("Missing table name")

    operation = payload.get("operation")
    if not isinstance(operation, str) or operation not in _OPERATION_NAMES:
        raise NotAllowedError("Operation is not allowed", operation=str(operation)[:64])

    try:
        return QueryRequest.model_validate(dict(payload))
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid query request ({_describe(exc)})") from exc
