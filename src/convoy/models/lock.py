"""Lock record model for fleet-wide deployment locking.

One record lives on every host at ``.convoy/<project>/deploy.lock``. The
JSON keys use camelCase so lock files stay readable by other tooling.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator


class LockRecord(BaseModel):
    """Deployment lock written to each host.

    Attributes:
        locked: Whether the record represents a held lock.
        message: Operator supplied reason for holding the lock.
        acquired_at: When the lock was acquired (UTC).
        acquired_by: Principal that acquired the lock.
        pid: Process ID of the acquiring convoy process.
        version: Lock file format version.
    """

    model_config = ConfigDict(populate_by_name=True)

    locked: bool = False
    message: str | None = None
    acquired_at: datetime | None = Field(default=None, alias="acquiredAt")
    acquired_by: str | None = Field(default=None, alias="acquiredBy")
    pid: int | None = None
    version: str | None = None

    @model_validator(mode="after")
    def _held_lock_has_owner(self) -> "LockRecord":
        if self.locked and (self.acquired_at is None or self.acquired_by is None):
            raise ValueError("a held lock requires acquiredAt and acquiredBy")
        return self

    def to_json(self) -> str:
        """Serialize using the on-disk (camelCase) field names."""
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2)
