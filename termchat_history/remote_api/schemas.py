# termchat_history/remote_api/schemas.py
from enum import Enum
from typing import List, Optional, Dict, Any, Literal, Tuple
from pydantic import BaseModel, Field

from ..models import HistoryRecord

ValueType = Literal['null', 'integer', 'float', 'text', 'blob']


# --- Pipeline response shapes ---
class PipelineColumn(BaseModel):
    name: Optional[str] = None
    decltype: Optional[str] = None


class StatementResult(BaseModel):
    cols: List[PipelineColumn] = Field(default_factory=list)
    rows: List[List[Dict[str, Any]]] = Field(default_factory=list)  # encoded values, see utils.decode_value
    affected_row_count: int = 0
    last_insert_rowid: Optional[str] = None


class PipelineErrorBody(BaseModel):
    message: str = ""
    code: Optional[str] = None


class StreamResponse(BaseModel):
    type: str
    result: Optional[StatementResult] = None


class PipelineResult(BaseModel):
    type: Literal['ok', 'error']
    response: Optional[StreamResponse] = None
    error: Optional[PipelineErrorBody] = None


class PipelineResponse(BaseModel):
    baton: Optional[str] = None
    base_url: Optional[str] = None
    results: List[PipelineResult] = Field(default_factory=list)


# --- Client-level results ---
class UpsertOutcome(str, Enum):
    APPLIED = "applied"                # remote row inserted or replaced
    ALREADY_PRESENT = "already_present"  # identical version already stored (replay)
    REJECTED_STALE = "rejected_stale"  # remote holds a newer version


class PulledRecord(BaseModel):
    record: HistoryRecord
    synced_at: str


class ChangePage(BaseModel):
    records: List[PulledRecord] = Field(default_factory=list)
    has_more: bool = False
    next_cursor: Optional[Tuple[str, str]] = None  # (synced_at, uuid) of the last row read
