"""Pydantic models for run requests, run configuration, and run results."""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from ..config import DEFAULT_TIMEOUT_MS

_WIRE = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Viewport(BaseModel):
    width: int = 1280
    height: int = 720


class AuthSpec(BaseModel):
    """Authentication injected into a generated script. Exactly one kind is active."""

    model_config = _WIRE

    kind: Literal["bearer", "basic", "headers", "cookies"] = Field(
        validation_alias=AliasChoices("kind", "type")
    )
    token: Optional[str] = None
    username: Optional[str] = None
    password: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    cookies: list[dict[str, Any]] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _normalize_kind(cls, data: Any) -> Any:
        # Older clients send {"type": "custom", "headers": {...}}
        if isinstance(data, dict):
            kind = data.get("kind", data.get("type"))
            if kind == "custom":
                data = {**data, "kind": "headers"}
                data.pop("type", None)
        return data

    @model_validator(mode="after")
    def _check_required(self) -> "AuthSpec":
        if self.kind == "bearer" and not self.token:
            raise ValueError("bearer auth requires a token")
        if self.kind == "basic" and not self.username:
            raise ValueError("basic auth requires a username")
        if self.kind == "headers" and not self.headers:
            raise ValueError("header auth requires at least one header")
        if self.kind == "cookies" and not self.cookies:
            raise ValueError("cookie auth requires at least one cookie")
        return self


class RunConfig(BaseModel):
    """Recognized run options. Unknown keys are kept and passed to the execution tool."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    browser_kind: Literal["chromium", "firefox", "webkit"] = Field(
        "chromium", validation_alias=AliasChoices("browserKind", "browser", "browser_kind")
    )
    headless: bool = True
    timeout_ms: int = Field(
        DEFAULT_TIMEOUT_MS, gt=0, validation_alias=AliasChoices("timeoutMs", "timeout", "timeout_ms")
    )
    retries: int = Field(0, ge=0, le=5)
    parallel: bool = False
    base_url: Optional[str] = Field(
        None, validation_alias=AliasChoices("baseUrl", "baseURL", "base_url")
    )
    viewport: Viewport = Field(default_factory=Viewport)
    auth_spec: Optional[AuthSpec] = Field(
        None, validation_alias=AliasChoices("authSpec", "auth", "auth_spec")
    )
    custom_headers: dict[str, str] = Field(default_factory=dict)

    def passthrough(self) -> dict[str, Any]:
        """Options the scheduler does not interpret."""
        return dict(self.model_extra or {})


class RunRequest(BaseModel):
    """A request to execute a script, or instructions to be turned into one."""

    model_config = _WIRE

    script_source: Optional[str] = Field(
        None, validation_alias=AliasChoices("scriptSource", "testCode", "script_source")
    )
    instructions: Optional[str] = None
    name: str = "generated test"
    config: RunConfig = Field(
        default_factory=RunConfig, validation_alias=AliasChoices("config", "options")
    )

    @model_validator(mode="after")
    def _check_source(self) -> "RunRequest":
        if not (self.script_source and self.script_source.strip()) and not (
            self.instructions and self.instructions.strip()
        ):
            raise ValueError("scriptSource or instructions is required")
        return self


# ── Results ──────────────────────────────────────────────────────────────────


class RunSummary(BaseModel):
    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0


class CaseOutcome(BaseModel):
    """Outcome of a single test case inside a run."""

    model_config = _WIRE

    title: str
    status: str  # passed, failed, skipped, error
    duration_ms: int = 0
    error: Optional[str] = None


class Artifacts(BaseModel):
    screenshots: list[str] = Field(default_factory=list)
    videos: list[str] = Field(default_factory=list)
    traces: list[str] = Field(default_factory=list)

    def count(self) -> int:
        return len(self.screenshots) + len(self.videos) + len(self.traces)


class RunResult(BaseModel):
    """Outcome of one script execution. Immutable once attached to a session."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    status: Literal["passed", "failed", "error"]
    duration_ms: int = 0
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    summary: RunSummary = Field(default_factory=RunSummary)
    per_test: list[CaseOutcome] = Field(default_factory=list)
    artifacts: Artifacts = Field(default_factory=Artifacts)
    error: Optional[str] = None
    attempts: int = 1
    # Time pytest itself reported, without process start-up and teardown
    report_duration_ms: Optional[int] = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")
