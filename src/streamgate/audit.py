"""
Structured audit trail for Streamgate.

Data mutations and security events are recorded as JSON-structured events.
Sinks:
1. Python logging (always)
2. Optional JSONL file
3. Optional audit_logs table

Recording is fire-and-forget: a failing sink is logged and never affects
the response the caller gets.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, TextIO

from streamgate.core.correlation import get_correlation_id
from streamgate.core.errors import FailurePolicy
from streamgate.core.identity import Principal

if TYPE_CHECKING:
    from streamgate.database import Database

USER_AGENT_MAX = 255

AUDIT_INSERT_SQL = (
    "INSERT INTO audit_logs (action, user_id, target_id, target_type, "
    "ip_address, user_agent, metadata, created_at) "
    "VALUES ($1, $2, $3, $4, $5, $6, $7, $8)"
)


class AuditAction(str, Enum):
    """Audited actions."""

    CONTENT_INSERT = "content.insert"
    CONTENT_UPDATE = "content.update"
    CONTENT_DELETE = "content.delete"
    CONTENT_UPSERT = "content.upsert"
    RATE_LIMIT_HIT = "security.rate_limit_hit"
    INVALID_TOKEN = "security.invalid_token"
    REQUEST_BLOCKED = "security.request_blocked"

    @property
    def is_security(self) -> bool:
        return self.value.startswith("security.")


@dataclass
class AuditEvent:
    """One audit record."""

    action: AuditAction
    principal_id: str | None = None
    target_id: str | None = None
    target_type: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    correlation_id: str | None = field(default_factory=get_correlation_id)
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if self.user_agent:
            self.user_agent = self.user_agent[:USER_AGENT_MAX]

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["action"] = self.action.value
        data["timestamp_iso"] = datetime.fromtimestamp(self.timestamp, tz=timezone.utc).isoformat()
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    def to_row(self) -> tuple[Any, ...]:
        """Parameters for AUDIT_INSERT_SQL."""
        return (
            self.action.value,
            self.principal_id,
            self.target_id,
            self.target_type,
            self.ip_address or "unknown",
            self.user_agent or "unknown",
            json.dumps(self.metadata, default=str) if self.metadata else None,
            datetime.fromtimestamp(self.timestamp, tz=timezone.utc),
        )


class AuditTrail:
    """
    Audit event recorder.

    Usage:
        trail = AuditTrail(log_path=Path("audit.jsonl"), database=db)

        trail.record(AuditEvent(
            action=AuditAction.CONTENT_DELETE,
            principal_id=principal.user_id,
            target_type="watchlists",
        ))

        await trail.drain()  # on shutdown
    """

    failure_policy = FailurePolicy.OPEN

    def __init__(
        self,
        *,
        log_path: Path | None = None,
        database: Database | None = None,
        logger_name: str = "streamgate.audit",
    ) -> None:
        """
        Initialize audit trail.

        Args:
            log_path: Path to JSONL audit file (optional)
            database: Store for the audit_logs table (optional)
            logger_name: Name for the Python logger
        """
        self._logger = logging.getLogger(logger_name)
        self._database = database
        self._log_file: TextIO | None = None
        self._pending: set[asyncio.Task[None]] = set()

        if log_path:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            self._log_file = open(log_path, "a", encoding="utf-8")

    def close(self) -> None:
        """Close the audit file."""
        if self._log_file:
            self._log_file.close()
            self._log_file = None

    @property
    def pending(self) -> int:
        """Database writes still in flight."""
        return len(self._pending)

    def emit(self, event: AuditEvent) -> str:
        """
        Write an event to the logger and file sinks.

        Returns:
            Event JSON for reference
        """
        line = event.to_json()
        self._logger.log(logging.WARNING if event.action.is_security else logging.INFO, line)

        if self._log_file:
            try:
                self._log_file.write(line + "\n")
                self._log_file.flush()
            except OSError:
                self._logger.exception("Failed to write audit file for %s", event.action.value)
        return line

    async def persist(self, event: AuditEvent) -> None:
        """Insert an event into audit_logs. Failures are logged, never raised."""
        if self._database is None:
            return
        try:
            await self._database.fetch(AUDIT_INSERT_SQL, event.to_row())
        except Exception:
            self._logger.exception("Failed to persist audit event %s", event.action.value)

    def record(self, event: AuditEvent) -> None:
        """Emit an event and schedule its database write without awaiting it."""
        self.emit(event)
        if self._database is None:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._logger.debug("No running loop; audit event %s not persisted", event.action.value)
            return

        task = loop.create_task(self.persist(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for in-flight database writes."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    # Convenience recorders
    # ------------------------------------------------------------------

    def log_mutation(
        self,
        principal: Principal,
        *,
        operation: str,
        table: str,
        rows: int,
        ip_address: str | None = None,
        user_agent: str | None = None,
        target_id: str | None = None,
    ) -> None:
        """Record a successful insert, update, delete or upsert."""
        self.record(
            AuditEvent(
                action=AuditAction(f"content.{operation}"),
                principal_id=principal.user_id,
                target_id=target_id,
                target_type=table,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={"rows": rows, "role": principal.role},
            )
        )

    def log_rate_limit_hit(
        self,
        identifier: str,
        *,
        scope: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        self.record(
            AuditEvent(
                action=AuditAction.RATE_LIMIT_HIT,
                target_id=identifier,
                target_type="rate_limit",
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={"scope": scope},
            )
        )

    def log_invalid_token(
        self,
        *,
        path: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        self.record(
            AuditEvent(
                action=AuditAction.INVALID_TOKEN,
                target_type="route",
                target_id=path,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )

    def log_request_blocked(
        self,
        *,
        rule: str,
        reason: str,
        path: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        self.record(
            AuditEvent(
                action=AuditAction.REQUEST_BLOCKED,
                target_type="route",
                target_id=path,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={"rule": rule, "reason": reason},
            )
        )
