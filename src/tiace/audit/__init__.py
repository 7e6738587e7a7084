# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Audit trail for conflicts, feed state changes and deletions."""

from tiace.audit.events import AuditEvent, AuditEventType, ResourceType
from tiace.audit.logger import AuditLogger

__all__ = ["AuditEvent", "AuditEventType", "AuditLogger", "ResourceType"]
