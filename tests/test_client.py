"""ProtocolClient and run tool tests against an in-process protocol server."""

import asyncio
from contextlib import asynccontextmanager

import pytest
from aiohttp.test_utils import TestServer

from testweaver.models.run import RunConfig, RunResult
from testweaver.session_manager.manager import create_app
from testweaver.session_manager.scheduler import SessionScheduler
from testweaver.tools import run_tools, scripting_tools
from testweaver.tools.client import ProtocolClient

SCRIPT = "def test_ok():\n    assert True\n"


class InstantRunner:
    """Finishes every run right away; scripts containing FAIL fail."""

    def __init__(self):
        self.configs = []

    async def execute(self, script_source, config=None, timeout_ms=None, session_id=None, on_output=None):
        self.configs.append(config)
        await asyncio.sleep(0)
        if "FAIL" in script_source:
            return RunResult(status="failed", error="AssertionError: FAIL", exit_code=1, duration_ms=5)
        return RunResult(status="passed", exit_code=0, duration_ms=5)


class NullBrowser:
    is_running = False

    async def perform(self, action, params=None, browser_kind="chromium"):
        return {}

    async def stop(self):
        pass


@asynccontextmanager
async def serve(runner, max_concurrency=2):
    scheduler = SessionScheduler(runner, max_concurrency=max_concurrency)
    app = create_app(scheduler=scheduler, browser=NullBrowser())
    async with TestServer(app) as server:
        yield str(server.make_url("/mcp")), scheduler


async def wait_until(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        assert loop.time() < deadline, "condition not reached"
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_connect_handshake_and_ping():
    async with serve(InstantRunner()) as (url, _):
        async with ProtocolClient(url, timeout=5) as client:
            assert client.client_id.startswith("client-")
            assert client.server_info["name"] == "testweaver"

            handshake = await client.handshake()
            assert handshake["clientId"] == client.client_id

            pong = await client.ping()
            assert pong["type"] == "pong"
            assert client.pending_count == 0


@pytest.mark.asyncio
async def test_run_resolves_on_completion_with_progress():
    progress = []
    runner = InstantRunner()
    async with serve(runner) as (url, _):
        async with ProtocolClient(url, timeout=5, on_progress=lambda e: progress.append(e["type"])) as client:
            envelope = await client.run(SCRIPT, RunConfig(retries=1), timeout=5)

    assert envelope["type"] == "test_completed"
    assert envelope["status"] == "passed"
    assert progress[:2] == ["test_queued", "test_started"]
    assert runner.configs[0].retries == 1


@pytest.mark.asyncio
async def test_rejected_run_resolves_with_error():
    async with serve(InstantRunner()) as (url, _):
        async with ProtocolClient(url, timeout=5) as client:
            envelope = await client.run(instructions="", timeout=5)

    assert envelope["type"] == "error"
    assert envelope["message"] == "Invalid run_test payload"


@pytest.mark.asyncio
async def test_cancel_resolves_both_requests(gated_runner):
    queued = []

    def on_progress(envelope):
        if envelope["type"] == "test_queued":
            queued.append(envelope["data"]["sessionId"])

    async with serve(gated_runner) as (url, _):
        async with ProtocolClient(url, timeout=5, on_progress=on_progress) as client:
            run = asyncio.create_task(client.run(SCRIPT, timeout=5))
            await wait_until(lambda: gated_runner.started and queued)

            cancelled = await client.cancel(queued[0])
            outcome = await run

    assert cancelled["type"] == "test_cancelled"
    assert outcome["type"] == "test_cancelled"
    assert outcome["data"]["reason"] == "cancelled_by_client"
    assert gated_runner.cancelled == queued


@pytest.mark.asyncio
async def test_cancel_unknown_session_is_an_error():
    async with serve(InstantRunner()) as (url, _):
        async with ProtocolClient(url, timeout=5) as client:
            envelope = await client.cancel("session-missing")

    assert envelope["type"] == "error"
    assert envelope["details"]["reason"] == "notFound"


@pytest.mark.asyncio
async def test_request_timeout_clears_the_registry(gated_runner):
    async with serve(gated_runner) as (url, _):
        async with ProtocolClient(url, timeout=5) as client:
            with pytest.raises(asyncio.TimeoutError):
                await client.run(SCRIPT, timeout=0.2)
            assert client.pending_count == 0


@pytest.mark.asyncio
async def test_close_fails_outstanding_requests(gated_runner):
    async with serve(gated_runner) as (url, scheduler):
        client = ProtocolClient(url, timeout=5)
        await client.connect()
        run = asyncio.create_task(client.run(SCRIPT, timeout=5))
        await wait_until(lambda: gated_runner.started)

        await client.close()

        with pytest.raises(ConnectionError):
            await run
        assert client.pending_count == 0
        await wait_until(lambda: not scheduler.active_session_ids())


@pytest.mark.asyncio
async def test_request_requires_a_connection():
    client = ProtocolClient("ws://127.0.0.1:1/mcp")
    with pytest.raises(ConnectionError):
        await client.ping()


@pytest.mark.asyncio
async def test_run_batch_sequential_and_parallel():
    requests = [{"script_source": SCRIPT}, {"script_source": "FAIL"}]
    async with serve(InstantRunner()) as (url, _):
        async with ProtocolClient(url, timeout=5) as client:
            sequential = await client.run_batch(requests, delay_ms=10)
            parallel = await client.run_batch(requests, parallel=True)

    assert [e["status"] for e in sequential] == ["passed", "failed"]
    assert [e["status"] for e in parallel] == ["passed", "failed"]


@pytest.mark.asyncio
async def test_run_tools_against_the_server(monkeypatch):
    async with serve(InstantRunner()) as (url, _):
        monkeypatch.setattr(run_tools, "PROTOCOL_URL", url)
        passed = await run_tools.run_script(SCRIPT)
        generated = await run_tools.run_instructions("Navigate to https://a.test", retries=2)

    assert "**PASSED**" in passed
    assert "**PASSED**" in generated


@pytest.mark.asyncio
async def test_run_tools_report_unreachable_server(monkeypatch):
    monkeypatch.setattr(run_tools, "PROTOCOL_URL", "ws://127.0.0.1:1/mcp")
    message = await run_tools.run_script(SCRIPT)
    assert message.startswith("Error: protocol server is not reachable")

    health = await run_tools._call_protocol_server("http://127.0.0.1:1/health")
    assert "error" in health


@pytest.mark.asyncio
async def test_run_instructions_rejects_bad_config_json():
    message = await run_tools.run_instructions("Navigate to https://a.test", config_json="[1]")
    assert message.startswith("Error: invalid config_json")


def test_format_run_failed_report():
    envelope = {
        "type": "test_completed",
        "status": "failed",
        "data": {
            "sessionId": "session-1",
            "status": "failed",
            "durationMs": 1200,
            "attempts": 2,
            "reportDurationMs": 420,
            "summary": {"total": 2, "passed": 1, "failed": 1, "skipped": 0},
            "perTest": [
                {"title": "test_a", "status": "passed", "durationMs": 10},
                {"title": "test_b", "status": "failed", "durationMs": 20, "error": "AssertionError: x\nmore"},
            ],
            "error": "AssertionError: x",
            "artifacts": {"screenshots": ["/a/shot.png"], "videos": [], "traces": ["/a/trace.zip"]},
            "stdout": "line\n" * 40,
        },
    }
    report = run_tools.format_run(envelope)

    assert report.startswith("Run session-1: **FAILED** in 1200 ms (attempts: 2)")
    assert "Tests: 1 passed, 1 failed, 0 skipped (total 2)" in report
    assert "(total 2), pytest time 420 ms" in report
    assert "- [failed] test_b (20 ms)\n  AssertionError: x" in report
    assert "Screenshot: /a/shot.png" in report
    assert "Trace: /a/trace.zip" in report
    assert "(10 lines omitted)" in report


def test_format_run_error_and_cancelled():
    error = run_tools.format_run(
        {"type": "error", "message": "Failed to cancel test", "details": {"reason": "notOwner"}}
    )
    assert error == 'Error: Failed to cancel test ({"reason": "notOwner"})'

    cancelled = run_tools.format_run(
        {"type": "test_cancelled", "data": {"sessionId": "session-2", "reason": "server_shutdown"}}
    )
    assert cancelled == "Run session-2 was cancelled (server_shutdown)."


@pytest.mark.asyncio
async def test_scripting_tools():
    steps = await scripting_tools.parse_instructions("1. Navigate to https://a.test\n2. Click Save button")
    assert '"action": "navigate"' in steps
    assert '"action": "click"' in steps

    assert (await scripting_tools.parse_instructions("  ")).startswith("No steps found")

    script = await scripting_tools.generate_script("smoke", "Navigate to https://a.test")
    assert "def test_smoke(page: Page):" in script

    assert (await scripting_tools.generate_script("smoke", "")).startswith("Error:")
    assert (await scripting_tools.generate_script("smoke", "x", "{bad")).startswith(
        "Error: invalid config_json"
    )