"""Services used alongside lock handles."""

from .audit_logger import AuditLogger

__all__ = ["AuditLogger"]
