"""MCP tools for executing runs through the protocol server."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import aiohttp
import httpx

from ..config import HEALTH_URL, PROTOCOL_URL
from .client import ProtocolClient

MAX_OUTPUT_LINES = 30


async def _call_protocol_server(url: str = HEALTH_URL) -> dict:
    """GET a JSON endpoint on the protocol server."""
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            resp = await client.get(url)
            if resp.status_code >= 400:
                return {"error": f"HTTP {resp.status_code}"}
            return resp.json()

    except httpx.ConnectError:
        return {
            "error": f"Protocol server is not reachable at {url}. "
            "It should auto-start with the MCP server. "
            "If running standalone: testweaver-server"
        }
    except httpx.TimeoutException:
        return {"error": "Protocol server timed out."}
    except Exception as e:
        return {"error": f"Failed to reach protocol server: {e}"}


def _tail(text: str, limit: int = MAX_OUTPUT_LINES) -> str:
    lines = text.rstrip().splitlines()
    if len(lines) > limit:
        lines = [f"... ({len(lines) - limit} lines omitted)"] + lines[-limit:]
    return "\n".join(lines)


def format_run(envelope: dict) -> str:
    """Render a terminal run envelope as a readable report."""
    kind = envelope.get("type")
    data = envelope.get("data") or {}

    if kind == "error":
        details = envelope.get("details")
        suffix = f" ({json.dumps(details) if isinstance(details, dict) else details})" if details else ""
        return f"Error: {envelope.get('message', 'unknown error')}{suffix}"

    session_id = data.get("sessionId", "?")
    if kind == "test_cancelled":
        return f"Run {session_id} was cancelled ({data.get('reason', 'cancelled')})."

    status = envelope.get("status") or data.get("status", "unknown")
    summary = data.get("summary") or {}
    lines = [
        f"Run {session_id}: **{status.upper()}** in {data.get('durationMs', 0)} ms "
        f"(attempts: {data.get('attempts', 1)})",
        f"Tests: {summary.get('passed', 0)} passed, {summary.get('failed', 0)} failed, "
        f"{summary.get('skipped', 0)} skipped (total {summary.get('total', 0)})",
    ]
    if data.get("reportDurationMs") is not None:
        lines[1] += f", pytest time {data['reportDurationMs']} ms"

    for case in data.get("perTest") or []:
        lines.append(f"- [{case.get('status')}] {case.get('title')} ({case.get('durationMs', 0)} ms)")
        if case.get("error"):
            lines.append(f"  {case['error'].splitlines()[0]}")

    if data.get("error"):
        lines.append(f"\nError: {data['error']}")

    artifacts = data.get("artifacts") or {}
    for label in ("screenshots", "videos", "traces"):
        for path in artifacts.get(label) or []:
            lines.append(f"{label[:-1].capitalize()}: {path}")

    if status != "passed":
        output = _tail(data.get("stdout") or "") or _tail(data.get("stderr") or "")
        if output:
            lines.append(f"\nOutput:\n{output}")

    return "\n".join(lines)


def _config(
    browser: str,
    headless: bool,
    timeout_ms: int,
    retries: int,
    base_url: str,
    extra_json: str = "",
) -> dict[str, Any]:
    config: dict[str, Any] = json.loads(extra_json) if extra_json.strip() else {}
    if not isinstance(config, dict):
        raise ValueError("config_json must be a JSON object")
    config.update(
        {"browserKind": browser, "headless": headless, "timeoutMs": timeout_ms, "retries": retries}
    )
    if base_url:
        config["baseUrl"] = base_url
    return config


async def _run(**kwargs: Any) -> str:
    try:
        async with ProtocolClient(PROTOCOL_URL) as client:
            envelope = await client.run(**kwargs)
    except (ConnectionError, aiohttp.ClientError) as e:
        return f"Error: protocol server is not reachable at {PROTOCOL_URL}: {e}"
    except asyncio.TimeoutError:
        return "Error: timed out waiting for the run to finish."
    return format_run(envelope)


async def run_instructions(
    instructions: str,
    name: str = "generated test",
    browser: str = "chromium",
    headless: bool = True,
    timeout_ms: int = 30000,
    retries: int = 0,
    base_url: str = "",
    config_json: str = "",
) -> str:
    """Generate a script from instructions and run it on the protocol server.

    Args:
        instructions: One instruction per line.
        name: Test name.
        browser: "chromium", "firefox", or "webkit".
        headless: Run without a visible window.
        timeout_ms: Per-run timeout.
        retries: Extra attempts after a failure (0-5).
        base_url: Base URL for relative navigation.
        config_json: Extra run options as a JSON object (authSpec, viewport, ...).

    Returns:
        Run report with per-test results and artifact paths.
    """
    try:
        config = _config(browser, headless, timeout_ms, retries, base_url, config_json)
    except ValueError as e:
        return f"Error: invalid config_json: {e}"
    return await _run(instructions=instructions, name=name, config=config)


async def run_script(
    script_source: str,
    browser: str = "chromium",
    headless: bool = True,
    timeout_ms: int = 30000,
    retries: int = 0,
    base_url: str = "",
) -> str:
    """Run an existing pytest-playwright script on the protocol server.

    Returns:
        Run report with per-test results and artifact paths.
    """
    config = _config(browser, headless, timeout_ms, retries, base_url)
    return await _run(script_source=script_source, config=config)


async def server_health() -> str:
    """Get protocol server status: queue, running sessions, connected clients.

    Returns:
        JSON with server status.
    """
    result = await _call_protocol_server()
    if "error" in result:
        return f"Error: {result['error']}"
    return json.dumps(result, indent=2)
