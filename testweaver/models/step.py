"""Pydantic model for a parsed instruction step."""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

StepAction = Literal[
    "navigate",
    "click",
    "fill",
    "select",
    "wait",
    "verify",
    "hover",
    "pressKey",
    "screenshot",
    "custom",
]


class Step(BaseModel):
    """One structured action derived from a single instruction line."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    index: int = Field(ge=1, description="1-based position in the instruction text")
    action: StepAction
    target: Optional[str] = None
    value: Optional[str] = None
    assertion: Optional[str] = None  # "visible" or "text"
    annotations: dict[str, Any] = Field(default_factory=dict)

    @property
    def original(self) -> str:
        return self.annotations.get("original", "")

    @property
    def wait_before(self) -> bool:
        return bool(self.annotations.get("waitBefore"))
