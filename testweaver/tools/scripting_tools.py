"""MCP tools for turning instructions into steps and scripts (local, no server needed)."""

from __future__ import annotations

import json

from pydantic import ValidationError

from ..errors import GenerationError
from ..models.run import RunConfig
from ..scripting.generator import generate
from ..scripting.parser import parse


def _load_config(config_json: str) -> RunConfig:
    """Parse a JSON object of run options; empty means defaults."""
    if not config_json or not config_json.strip():
        return RunConfig()
    return RunConfig.model_validate(json.loads(config_json))


async def parse_instructions(instructions: str) -> str:
    """Parse plain-language instructions into structured steps.

    Args:
        instructions: One instruction per line, e.g. "1. Navigate to https://example.com".

    Returns:
        JSON list of steps (index, action, target, value, assertion, annotations).
    """
    steps = parse(instructions)
    if not steps:
        return "No steps found. Provide one instruction per line."

    return json.dumps(
        [step.model_dump(by_alias=True, exclude_none=True) for step in steps], indent=2
    )


async def generate_script(name: str, instructions: str, config_json: str = "") -> str:
    """Generate a pytest-playwright test module from instructions.

    Args:
        name: Human-readable test name (becomes the test function name).
        instructions: One instruction per line.
        config_json: Optional JSON object of run options
            (browserKind, baseUrl, authSpec, customHeaders, ...).

    Returns:
        The generated Python source, or an error message.
    """
    try:
        config = _load_config(config_json)
    except (json.JSONDecodeError, ValidationError) as e:
        return f"Error: invalid config_json: {e}"

    try:
        return generate(name, parse(instructions), config)
    except GenerationError as e:
        return f"Error: {e}"
