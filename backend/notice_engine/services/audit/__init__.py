"""Append-only audit store."""
from .audit_log import AuditLog

__all__ = ["AuditLog"]
