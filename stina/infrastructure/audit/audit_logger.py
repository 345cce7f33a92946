"""
AuditLogger - audit trail for every tool call the orchestrator makes.

Tool calls are ephemeral (never stored on the meeting request), so this is
the only durable record of what was checked, searched or sent on a
request's behalf.

Usage:
    audit = AuditLogger(db_pool)

    await audit.log_tool_call(
        meeting_request_id="meeting_abc",
        tool_name="send_message",
        arguments={"recipients": ["sam@example.com"], ...},
        success=True,
    )

Design Principles:
- Write to both structured logs (searchable) and database (when a pool is given)
- Never fail the caller if audit logging fails
"""

from datetime import UTC, datetime
from typing import Any

from psycopg.types.json import Jsonb

from stina.db.pool import DatabasePoolManager
from stina.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class AuditLogger:
    """
    Audit sink.

    Logs to:
    1. Structured logs (stdout), always
    2. The audit_logs table, when constructed with an initialized pool
    """

    def __init__(self, db_pool: DatabasePoolManager | None = None):
        self.db_pool = db_pool

    async def log(
        self,
        action: str,
        success: bool,
        meeting_request_id: str | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        error_kind: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """
        Log an audit event.

        Returns:
            True if persisted (or logged without a pool), False if the
            database write failed. Never raises.
        """
        logger.info(
            "Audit event",
            audit_action=action,
            meeting_request_id=meeting_request_id,
            resource_type=resource_type,
            resource_id=resource_id,
            success=success,
            error_kind=error_kind,
        )

        if self.db_pool is None or not self.db_pool.initialized:
            return True

        try:
            async with self.db_pool.connection() as conn:
                await conn.execute(
                    """
                    INSERT INTO audit_logs (
                        meeting_request_id, action, resource_type, resource_id,
                        success, error_kind, metadata, created_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        meeting_request_id,
                        action,
                        resource_type,
                        resource_id,
                        success,
                        error_kind,
                        Jsonb(metadata or {}),
                        datetime.now(UTC),
                    ),
                )
            return True

        except Exception as e:
            # Never fail the caller; keep enough context to recreate the row
            logger.error(
                "Failed to write audit log to database",
                error=str(e),
                error_type=type(e).__name__,
                fallback_data={
                    "meeting_request_id": meeting_request_id,
                    "action": action,
                    "resource_type": resource_type,
                    "resource_id": resource_id,
                    "success": success,
                    "error_kind": error_kind,
                    "timestamp": datetime.now(UTC).isoformat(),
                },
            )
            return False

    async def log_tool_call(
        self,
        meeting_request_id: str | None,
        tool_name: str,
        arguments: dict[str, Any],
        success: bool,
        error_kind: str | None = None,
    ) -> bool:
        """Record one tool invocation with its input."""
        return await self.log(
            action=f"tool.{tool_name}",
            success=success,
            meeting_request_id=meeting_request_id,
            resource_type="tool_call",
            resource_id=tool_name,
            error_kind=error_kind,
            metadata={"input": arguments},
        )
