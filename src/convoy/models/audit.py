"""Audit trail entry model."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class AuditStatus(str, Enum):
    """Outcome recorded for an audited action."""

    STARTED = "started"
    SUCCESS = "success"
    FAILED = "failed"
    WARNING = "warning"


class AuditEntry(BaseModel):
    """One significant action, appended to the audit file of each host.

    Attributes:
        timestamp: When the action happened (UTC).
        status: started, success, failed or warning.
        action: Machine friendly action name (e.g. ``deployment_lock``).
        host: Host the entry was written for, if any.
        message: Free-text description.
        details: Structured metadata written on a ``Details:`` line.
    """

    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    status: AuditStatus
    action: str
    host: str | None = None
    message: str = ""
    details: dict[str, Any] | None = None
