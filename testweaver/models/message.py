"""Pydantic models for the protocol envelope and request payloads."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Envelope(BaseModel):
    """Bidirectional message wrapper: {type, requestId?, data?, timestamp}."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    type: str = Field(min_length=1)
    request_id: Optional[str] = None
    data: Optional[dict[str, Any]] = None
    timestamp: Any = None


class SessionRef(BaseModel):
    """Payload of cancel_test and get_status."""

    session_id: str = Field(
        min_length=1, validation_alias=AliasChoices("sessionId", "testId", "executionId", "session_id")
    )


class BrowserActionRequest(BaseModel):
    action: str = Field(min_length=1)
    browser_kind: str = Field(
        "chromium", validation_alias=AliasChoices("browserKind", "browser", "browser_kind")
    )
    params: dict[str, Any] = Field(default_factory=dict)


def make_envelope(
    type: str,
    data: Optional[dict[str, Any]] = None,
    request_id: Optional[str] = None,
    **extra: Any,
) -> dict[str, Any]:
    """Build an outbound envelope ready for JSON encoding."""
    message: dict[str, Any] = {
        "type": type,
        "requestId": request_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if data is not None:
        message["data"] = data
    message.update(extra)
    return message


def error_envelope(
    message: str, details: Any = None, request_id: Optional[str] = None
) -> dict[str, Any]:
    return make_envelope("error", request_id=request_id, message=message, details=details)
