"""Data models for convoy.

This package defines the data structures shared across convoy:
- Lock records persisted on every host (LockRecord)
- Audit trail entries (AuditEntry, AuditStatus)
- Tagged per-host outcomes of fan-out operations (Ok, Err)

Persisted models are Pydantic BaseModel subclasses; outcomes are plain
frozen dataclasses.

Example:
    >>> from convoy.models import LockRecord
    >>> LockRecord(locked=False).to_json()
"""

from .audit import AuditEntry, AuditStatus
from .lock import LockRecord
from .outcome import Err, Ok, Outcome, partition

__all__ = [
    "AuditEntry",
    "AuditStatus",
    "Err",
    "LockRecord",
    "Ok",
    "Outcome",
    "partition",
]
