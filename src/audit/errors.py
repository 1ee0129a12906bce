"""Errors the audit pipeline lets reach its callers.

Infrastructure failures (store, sink, identity) never appear here: they are
absorbed inside the recorder. Only caller-contract violations propagate.
"""

from __future__ import annotations


class AuditError(Exception):
    """Base class for audit errors surfaced to callers."""


class AuditAuthorizationError(AuditError):
    """The current actor is not allowed to perform this audit operation."""


class AuditExportError(AuditError):
    """Audit logs could not be serialized for export."""
