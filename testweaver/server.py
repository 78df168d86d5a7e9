"""MCP Server entry point for testweaver.

Exposes 5 tools via the Model Context Protocol:
- Scripting: parse_instructions, generate_script
- Execution: run_instructions, run_script
- Status: server_health

The protocol server (aiohttp WebSocket on localhost:8080) is auto-started
as part of the MCP server lifecycle, so no separate process is needed.
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager

from aiohttp.web import AppRunner, TCPSite
from mcp.server.fastmcp import FastMCP

from .config import PROTOCOL_HOST, PROTOCOL_PORT, ensure_dirs
from .tools.run_tools import run_instructions, run_script, server_health
from .tools.scripting_tools import generate_script, parse_instructions

# Configure logging to stderr (stdout is reserved for MCP JSON-RPC)
logging.basicConfig(
    stream=sys.stderr,
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("testweaver")

# Ensure data directories exist
ensure_dirs()


# ── Lifespan: auto-start protocol server ─────────────────────────────────────


@asynccontextmanager
async def lifespan(server: FastMCP):
    """Start the protocol server alongside the MCP server."""
    from .session_manager.manager import create_app

    app = create_app()
    runner = AppRunner(app)
    await runner.setup()
    site = TCPSite(runner, PROTOCOL_HOST, PROTOCOL_PORT)
    managed = False
    try:
        await site.start()
        logger.info("Protocol server auto-started on %s:%s", PROTOCOL_HOST, PROTOCOL_PORT)
        managed = True
    except OSError:
        # Port already in use: assume the protocol server was started manually
        logger.info("Protocol server already running on %s:%s", PROTOCOL_HOST, PROTOCOL_PORT)
        await runner.cleanup()

    try:
        yield {}
    finally:
        if managed:
            await runner.cleanup()
            logger.info("Protocol server stopped.")


# ── MCP Server ───────────────────────────────────────────────────────────────

mcp = FastMCP(
    "testweaver",
    lifespan=lifespan,
    instructions=(
        "testweaver - Turn plain-language test instructions into Playwright tests and run them. "
        "The protocol server starts automatically with this server. "
        "Use parse_instructions to preview how instructions are understood and "
        "generate_script to see the generated pytest-playwright module. "
        "Use run_instructions or run_script to execute a test in an isolated subprocess; "
        "runs are queued when the server is at capacity. "
        "Call server_health to see the queue and running sessions."
    ),
)


# ── Scripting Tools ──────────────────────────────────────────────────────────


@mcp.tool()
async def tool_parse_instructions(instructions: str) -> str:
    """Parse plain-language test instructions into structured steps.

    Lines that match no known pattern become "custom" steps.

    Args:
        instructions: One instruction per line, e.g. "Click the login button".
    """
    return await parse_instructions(instructions)


@mcp.tool()
async def tool_generate_script(name: str, instructions: str, config_json: str = "") -> str:
    """Generate a pytest-playwright test module from instructions.

    Args:
        name: Test name, e.g. "login flow".
        instructions: One instruction per line.
        config_json: Optional JSON run options (browserKind, baseUrl, authSpec, customHeaders).
    """
    return await generate_script(name, instructions, config_json)


# ── Execution Tools ──────────────────────────────────────────────────────────


@mcp.tool()
async def tool_run_instructions(
    instructions: str,
    name: str = "generated test",
    browser: str = "chromium",
    headless: bool = True,
    timeout_ms: int = 30000,
    retries: int = 0,
    base_url: str = "",
    config_json: str = "",
) -> str:
    """Generate a test from instructions and run it.

    Args:
        instructions: One instruction per line.
        name: Test name.
        browser: "chromium", "firefox", or "webkit".
        headless: Run without a visible browser window.
        timeout_ms: Per-run timeout in milliseconds.
        retries: Extra attempts after a failure (0-5).
        base_url: Base URL for relative navigation.
        config_json: Extra JSON run options (authSpec, viewport, customHeaders).
    """
    return await run_instructions(
        instructions, name, browser, headless, timeout_ms, retries, base_url, config_json
    )


@mcp.tool()
async def tool_run_script(
    script_source: str,
    browser: str = "chromium",
    headless: bool = True,
    timeout_ms: int = 30000,
    retries: int = 0,
    base_url: str = "",
) -> str:
    """Run a pytest-playwright script (uses the `page` fixture).

    Args:
        script_source: Full Python source of the test module.
        browser: "chromium", "firefox", or "webkit".
        headless: Run without a visible browser window.
        timeout_ms: Per-run timeout in milliseconds.
        retries: Extra attempts after a failure (0-5).
        base_url: Base URL for relative navigation.
    """
    return await run_script(script_source, browser, headless, timeout_ms, retries, base_url)


# ── Status Tools ─────────────────────────────────────────────────────────────


@mcp.tool()
async def tool_server_health() -> str:
    """Get protocol server status: queued and running sessions, connected clients."""
    return await server_health()


# ── Entry Point ──────────────────────────────────────────────────────────────


def main():
    """Run the MCP server on STDIO transport."""
    logger.info("Starting testweaver MCP server...")
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
