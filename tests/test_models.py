import pytest
from pydantic import ValidationError

from testweaver.models.message import Envelope, SessionRef, error_envelope, make_envelope
from testweaver.models.run import AuthSpec, RunConfig, RunRequest, RunResult
from testweaver.models.session import Session, SessionState
from testweaver.models.step import Step


def test_run_config_defaults():
    config = RunConfig()
    assert config.browser_kind == "chromium"
    assert config.headless is True
    assert config.timeout_ms == 30000
    assert config.retries == 0
    assert config.parallel is False
    assert (config.viewport.width, config.viewport.height) == (1280, 720)


def test_run_config_accepts_wire_names_and_keeps_unknown_keys():
    config = RunConfig.model_validate(
        {"browser": "firefox", "timeout": 5000, "baseURL": "https://a.test", "locale": "de-DE"}
    )
    assert config.browser_kind == "firefox"
    assert config.timeout_ms == 5000
    assert config.base_url == "https://a.test"
    assert config.passthrough() == {"locale": "de-DE"}


@pytest.mark.parametrize("bad", [{"retries": 9}, {"timeoutMs": 0}, {"browserKind": "ie6"}])
def test_run_config_rejects_bad_values(bad):
    with pytest.raises(ValidationError):
        RunConfig.model_validate(bad)


def test_auth_spec_requires_its_fields():
    with pytest.raises(ValidationError):
        AuthSpec(kind="bearer")
    legacy = AuthSpec.model_validate({"type": "custom", "headers": {"X-Key": "1"}})
    assert legacy.kind == "headers"


def test_run_request_needs_script_or_instructions():
    with pytest.raises(ValidationError):
        RunRequest.model_validate({"config": {}})

    legacy = RunRequest.model_validate({"testCode": "def test_x(): pass", "options": {"browser": "webkit"}})
    assert legacy.script_source == "def test_x(): pass"
    assert legacy.config.browser_kind == "webkit"


def test_run_result_wire_form():
    wire = RunResult(status="failed", duration_ms=12, exit_code=1).to_wire()
    assert wire["status"] == "failed"
    assert wire["durationMs"] == 12
    assert wire["exitCode"] == 1
    assert wire["perTest"] == []
    assert wire["reportDurationMs"] is None
    assert wire["artifacts"] == {"screenshots": [], "videos": [], "traces": []}


def test_run_result_is_immutable():
    result = RunResult(status="passed")
    with pytest.raises(ValidationError):
        result.status = "failed"


def test_step_is_frozen():
    step = Step(index=1, action="click", target="#a")
    with pytest.raises(ValidationError):
        step.target = "#b"
    with pytest.raises(ValidationError):
        Step(index=0, action="click")


def test_session_describe():
    session = Session(id="session-1", client_id="client-1", request=RunRequest(script_source="x"))
    described = session.describe()
    assert described["sessionId"] == "session-1"
    assert described["state"] == "queued"
    assert described["result"] is None
    assert session.state == SessionState.QUEUED
    assert not session.is_terminal


def test_envelopes():
    message = make_envelope("pong", request_id="r1")
    assert message["type"] == "pong"
    assert message["requestId"] == "r1"
    assert "data" not in message
    assert message["timestamp"].endswith("+00:00")

    error = error_envelope("boom", {"reason": "notFound"}, "r2")
    assert error["message"] == "boom"
    assert error["details"] == {"reason": "notFound"}

    assert Envelope.model_validate({"type": "ping", "requestId": "r"}).request_id == "r"
    assert SessionRef.model_validate({"testId": "session-9"}).session_id == "session-9"
