"""
Audit logging for tool calls and lifecycle actions.
"""

from stina.infrastructure.audit.audit_logger import AuditLogger

__all__ = ["AuditLogger"]
