from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# =========================
# Enums
# =========================
class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    UNKNOWN = "unknown"


class WaitOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    PENDING = "pending"


# =========================
# JOBS
# =========================
class QueryJobCreate(BaseModel):
    query: str = Field(min_length=1)
    # bound positionally to $1, $2, ... ; stored as JSON while queued
    params: List[Any] = []


class QueryJobResponse(BaseModel):
    job_id: str


class JobStatusResponse(BaseModel):
    job_id: str
    status: JobState
    table_name: Optional[str] = None
    error: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class JobTableResponse(BaseModel):
    job_id: str
    table_name: str


class JobWaitResponse(BaseModel):
    job_id: str
    status: WaitOutcome
    table_name: Optional[str] = None
    error: Optional[str] = None


class HealthResponse(BaseModel):
    status: str = "ok"
    queue_depth: int
