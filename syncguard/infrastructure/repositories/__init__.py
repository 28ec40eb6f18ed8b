"""Audit persistence adapters."""

from .audit_repository import (
    InMemoryAuditStore,
    JsonLinesAuditStore,
    build_audit_store,
)

__all__ = ["InMemoryAuditStore", "JsonLinesAuditStore", "build_audit_store"]
