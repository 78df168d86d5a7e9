"""Pydantic models for scheduled sessions."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .run import RunRequest, RunResult


class SessionState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset(
    {SessionState.COMPLETED, SessionState.FAILED, SessionState.ERROR, SessionState.CANCELLED}
)

# RunResult.status -> terminal session state
RESULT_STATES = {
    "passed": SessionState.COMPLETED,
    "failed": SessionState.FAILED,
    "error": SessionState.ERROR,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Session(BaseModel):
    """One scheduled execution of a script. State is owned by the scheduler."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    client_id: str
    request: RunRequest
    state: SessionState = SessionState.QUEUED
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[RunResult] = None
    correlation_id: Optional[str] = None
    cancel_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def duration_ms(self) -> Optional[int]:
        if self.started_at and self.completed_at:
            return int((self.completed_at - self.started_at).total_seconds() * 1000)
        return None

    def describe(self) -> dict[str, Any]:
        """Wire view of the session without the script body."""
        return {
            "sessionId": self.id,
            "state": self.state.value,
            "createdAt": self.created_at.isoformat(),
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "result": self.result.to_wire() if self.result else None,
        }
