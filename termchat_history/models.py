# models.py
# Description: Data model for command/response history and its synchronization state.
#
# Imports
import hashlib
import json
import uuid as uuid_lib
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
#
# 3rd-Party Imports
from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator
#
# Local Imports
from .Constants import (
    TABLE_HISTORY_GLOBAL,
    TABLE_HISTORY_LOCAL,
    TABLE_HISTORY_MACHINE,
    TABLE_HISTORY_USER,
)
#
########################################################################################################################
#
# Functions:


def utc_now() -> datetime:
    """Current UTC time, truncated to millisecond precision."""
    return normalize_timestamp(datetime.now(timezone.utc))


def normalize_timestamp(value: datetime) -> datetime:
    """
    Makes a datetime timezone-aware (naive values are assumed to be UTC) and truncates it to
    milliseconds, which is the precision stored locally and remotely.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def format_timestamp(value: datetime) -> str:
    """Formats a datetime as `YYYY-MM-DDTHH:MM:SS.mmmZ`; this form sorts lexicographically."""
    return normalize_timestamp(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    return normalize_timestamp(datetime.fromisoformat(value.replace("Z", "+00:00")))


# --- Enumerations ---

class RecordScope(str, Enum):
    """Visibility partition a record is stored under."""
    GLOBAL = "global"
    USER = "user"
    MACHINE = "machine"
    LOCAL = "local"

    @property
    def table(self) -> str:
        return _SCOPE_TABLES[self]

    @property
    def is_synced(self) -> bool:
        return self is not RecordScope.LOCAL


class ScopeSelector(str, Enum):
    """Scope requested by a read or write; `hybrid` spans global, user and machine."""
    GLOBAL = "global"
    USER = "user"
    MACHINE = "machine"
    LOCAL = "local"
    HYBRID = "hybrid"

    def as_record_scope(self) -> Optional[RecordScope]:
        if self is ScopeSelector.HYBRID:
            return None
        return RecordScope(self.value)


class RecordStatus(str, Enum):
    PENDING = "pending"
    ANSWERED = "answered"
    CANCELLED = "cancelled"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    CONFLICT = "conflict"
    FAILED = "failed"


class QueueOperation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class QueueEntryState(str, Enum):
    PENDING = "pending"
    FAILED = "failed"  # dead-letter


class WriteOrigin(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


_SCOPE_TABLES = {
    RecordScope.GLOBAL: TABLE_HISTORY_GLOBAL,
    RecordScope.USER: TABLE_HISTORY_USER,
    RecordScope.MACHINE: TABLE_HISTORY_MACHINE,
    RecordScope.LOCAL: TABLE_HISTORY_LOCAL,
}
TABLE_SCOPES = {table: scope for scope, table in _SCOPE_TABLES.items()}

# Allowed sync_status moves that do not come from a new local mutation.
SYNC_STATUS_TRANSITIONS = {
    SyncStatus.PENDING: {SyncStatus.SYNCED, SyncStatus.CONFLICT, SyncStatus.FAILED},
    SyncStatus.CONFLICT: {SyncStatus.SYNCED},
    SyncStatus.SYNCED: set(),
    SyncStatus.FAILED: set(),
}


# --- Records ---

class HistoryRecord(BaseModel):
    """
    One submitted command and its (eventual) response.

    `uuid` is generated on the client that created the record and is the only deduplication key
    across machines. Instances are immutable; use `with_changes()` to derive an updated version.
    """
    model_config = ConfigDict(frozen=True)

    uuid: str = Field(default_factory=lambda: str(uuid_lib.uuid4()), min_length=1)
    command: str
    response: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    user_id: Optional[str] = None
    machine_id: str = Field(min_length=1)
    scope: RecordScope
    status: RecordStatus = RecordStatus.PENDING
    sync_status: SyncStatus = SyncStatus.PENDING

    @field_validator("created_at", "updated_at", mode="after")
    @classmethod
    def _normalize_timestamps(cls, value: datetime) -> datetime:
        return normalize_timestamp(value)

    @field_serializer("created_at", "updated_at")
    def _serialize_timestamps(self, value: datetime) -> str:
        return format_timestamp(value)

    @model_validator(mode="after")
    def _check_scope_identity(self) -> "HistoryRecord":
        if self.scope is RecordScope.USER and not self.user_id:
            raise ValueError("user-scoped history records require a user_id")
        return self

    def with_changes(self, **changes: Any) -> "HistoryRecord":
        if "uuid" in changes and changes["uuid"] != self.uuid:
            raise ValueError("The uuid of a history record cannot change")
        data = self.model_dump()
        data.update(changes)
        return HistoryRecord.model_validate(data)

    def observable_fields(self) -> tuple:
        return (self.command, self.response, self.status, self.updated_at)

    def differs_from(self, other: "HistoryRecord") -> bool:
        return self.observable_fields() != other.observable_fields()

    def to_payload(self) -> Dict[str, Any]:
        """Serializable snapshot sent to the remote store (sync_status is local bookkeeping)."""
        return self.model_dump(mode="json", exclude={"sync_status"})

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], sync_status: SyncStatus = SyncStatus.PENDING) -> "HistoryRecord":
        data = {k: v for k, v in payload.items() if k in cls.model_fields}
        data["sync_status"] = sync_status
        return cls.model_validate(data)

    def content_digest(self) -> str:
        canonical = json.dumps(self.to_payload(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class SyncQueueEntry(BaseModel):
    """A pending mutation waiting to be propagated to the remote store."""
    model_config = ConfigDict(frozen=True)

    sequence_id: int
    operation: QueueOperation
    target_table: str
    record_uuid: str
    payload: Dict[str, Any]
    created_at: datetime
    retry_count: int = 0
    last_error: Optional[str] = None
    state: QueueEntryState = QueueEntryState.PENDING
    next_attempt_at: datetime

    @field_validator("created_at", "next_attempt_at", mode="after")
    @classmethod
    def _normalize_timestamps(cls, value: datetime) -> datetime:
        return normalize_timestamp(value)

    def record(self) -> HistoryRecord:
        return HistoryRecord.from_payload(self.payload)


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    username: str
    email: Optional[str] = None
    is_active: bool = True


class Machine(BaseModel):
    model_config = ConfigDict(frozen=True)

    machine_id: str
    hostname: str
    first_seen: datetime = Field(default_factory=utc_now)
    last_seen: datetime = Field(default_factory=utc_now)

    @field_serializer("first_seen", "last_seen")
    def _serialize_timestamps(self, value: datetime) -> str:
        return format_timestamp(value)


class ConflictRecord(BaseModel):
    """Audit trail entry for a conflict: the loser is kept here and never re-applied."""
    record_uuid: str
    winner: Dict[str, Any]
    loser: Dict[str, Any]
    resolution: str
    resolved_at: datetime


class ScopeTarget(BaseModel):
    """One history table to read, with the identity constraint that applies to it."""
    model_config = ConfigDict(frozen=True)

    scope: RecordScope
    user_id: Optional[str] = None
    machine_id: Optional[str] = None

    @model_validator(mode="after")
    def _check_identity(self) -> "ScopeTarget":
        if self.scope is RecordScope.USER and not self.user_id:
            raise ValueError("reading the user table requires a user_id")
        return self


class HistoryFilter(BaseModel):
    user_id: Optional[str] = None
    machine_id: Optional[str] = None
    status: Optional[RecordStatus] = None
    search: Optional[str] = None
    since: Optional[datetime] = None
    limit: int = Field(default=100, ge=1, le=10_000)
    offset: int = Field(default=0, ge=0)


class SyncStatusReport(BaseModel):
    pending_count: int
    failed_count: int
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None
    is_syncing: bool = False

#
# End of models.py
########################################################################################################################
