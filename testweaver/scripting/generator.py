"""Generate pytest-playwright test modules from parsed steps.

Output layout:
1. Fixed import preamble
2. AuthHelper class (only when custom headers are configured)
3. One test function named after the test, with one statement group per step,
   each introduced by a ``# Step N: ...`` comment

Every literal is emitted with ``repr`` so the generated module is valid Python
regardless of what the instructions contained.
"""

from __future__ import annotations

import base64
import logging
import re
import sys
from collections.abc import Mapping, Sequence
from typing import Any, Optional, Union

from ..constants import ACTION_ALIASES, DEFAULT_WAIT_MS, KEY_NAMES
from ..errors import GenerationError
from ..models.run import AuthSpec, RunConfig
from ..models.step import Step
from .parser import parse
from .selectors import assertion_plan, resolve_selector

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

INDENT = "    "

PREAMBLE = '''"""Generated by testweaver."""

import time
from pathlib import Path

from playwright.sync_api import Page, expect
'''

AUTH_HELPER = '''

class AuthHelper:
    """Accumulates extra HTTP headers and applies them to every page request."""

    def __init__(self, page: Page):
        self.page = page
        self.headers = {}

    def set_auth_headers(self, headers):
        self.headers.update(headers)
        self.page.set_extra_http_headers(self.headers)

    def set_bearer_token(self, token):
        self.set_auth_headers({"Authorization": f"Bearer {token}"})
'''

_DURATION = re.compile(
    r"(\d+(?:\.\d+)?)\s*(milliseconds?|ms|seconds?|secs?|s)?\b", re.IGNORECASE
)

StepLike = Union[Step, Mapping[str, Any]]


# ── Helpers ──────────────────────────────────────────────────────────────────


def _field(step: StepLike, name: str) -> Any:
    if isinstance(step, Mapping):
        return step.get(name)
    return getattr(step, name, None)


def function_name_for(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", (name or "").lower()).strip("_")
    return f"test_{slug or 'generated'}"


def parse_duration_ms(value: Optional[str]) -> int:
    """Parse "500", "500ms", "2 seconds" into milliseconds; 1000 when unparsable."""
    if value is None:
        return DEFAULT_WAIT_MS
    match = _DURATION.search(str(value))
    if not match:
        return DEFAULT_WAIT_MS
    amount = float(match.group(1))
    unit = (match.group(2) or "ms").lower()
    if unit.startswith("s"):
        amount *= 1000
    return int(amount)


def _one_line(text: Any) -> str:
    return re.sub(r"\s+", " ", str(text)).strip()


def describe(step: StepLike) -> str:
    annotations = _field(step, "annotations") or {}
    original = annotations.get("original") if isinstance(annotations, Mapping) else None
    if original:
        return _one_line(original)
    parts = [_field(step, "action"), _field(step, "target"), _field(step, "value")]
    return _one_line(" ".join(str(p) for p in parts if p))


# ── Step Code ────────────────────────────────────────────────────────────────


def _interaction(selector: str, call: str, wait_before: bool) -> list[str]:
    lines = []
    if wait_before:
        lines.append(f"page.wait_for_selector({selector!r}, state=\"visible\")")
    lines.append(call)
    return lines


def step_code(step: StepLike, index: int = 1) -> list[str]:
    """Statements for one step (unindented). Raises on malformed steps."""
    raw_action = str(_field(step, "action") or "")
    action = ACTION_ALIASES.get(raw_action.lower(), raw_action)
    target = _field(step, "target")
    value = _field(step, "value")
    assertion = _field(step, "assertion")
    annotations = _field(step, "annotations") or {}
    wait_before = bool(annotations.get("waitBefore")) if isinstance(annotations, Mapping) else False

    if action == "navigate":
        url = target or value
        if not url:
            raise ValueError("navigate step has no URL")
        return [f"page.goto({url!r})"]

    if action == "click":
        selector = resolve_selector(target)
        return _interaction(selector, f"page.click({selector!r})", wait_before)

    if action == "fill":
        selector = resolve_selector(target)
        return _interaction(selector, f"page.fill({selector!r}, {(value or '')!r})", wait_before)

    if action == "select":
        selector = resolve_selector(target)
        return _interaction(selector, f"page.select_option({selector!r}, {(value or '')!r})", wait_before)

    if action == "hover":
        selector = resolve_selector(target)
        return _interaction(selector, f"page.hover({selector!r})", wait_before)

    if action == "wait":
        if target and "element" in str(target).lower():
            selector = resolve_selector(value)
            return [f"page.wait_for_selector({selector!r}, state=\"visible\")"]
        return [f"page.wait_for_timeout({parse_duration_ms(value)})"]

    if action == "verify":
        selector, kind, expected = assertion_plan(target, value, assertion)
        if kind == "visible":
            return [f"expect(page.locator({selector!r}).first).to_be_visible()"]
        return [f"expect(page.locator({selector!r}).first).to_contain_text({(expected or '')!r})"]

    if action == "pressKey":
        key = value or target
        if not key:
            raise ValueError("key press step has no key")
        key = str(key).strip()
        key = KEY_NAMES.get(key.lower().replace(" ", ""), key)
        return [f"page.keyboard.press({key!r})"]

    if action == "screenshot":
        return [
            'Path("artifacts/screenshots").mkdir(parents=True, exist_ok=True)',
            f'page.screenshot(path=f"artifacts/screenshots/step-{index}-{{int(time.time() * 1000)}}.png")',
        ]

    if action == "custom":
        return [f"# Custom action, not automated: {_one_line(target or '')}"]

    logger.warning(f"[GENERATOR] Unknown action {raw_action!r} in step {index}")
    return [f"# Unsupported action {_one_line(raw_action)!r}: {_one_line(target or '')}"]


def auth_code(auth: AuthSpec, use_helper: bool) -> list[str]:
    """Statements that inject the configured authentication before any step runs."""
    if auth.kind == "cookies":
        return [f"page.context.add_cookies({auth.cookies!r})"]

    if auth.kind == "bearer":
        headers = {"Authorization": f"Bearer {auth.token}"}
    elif auth.kind == "basic":
        encoded = base64.b64encode(f"{auth.username}:{auth.password}".encode()).decode()
        headers = {"Authorization": f"Basic {encoded}"}
    else:
        headers = dict(auth.headers)

    if use_helper:
        return [f"auth_helper.set_auth_headers({headers!r})"]
    return [f"page.set_extra_http_headers({headers!r})"]


# ── Generation ───────────────────────────────────────────────────────────────


def generate(name: str, steps: Sequence[StepLike], config: Optional[RunConfig] = None) -> str:
    """Produce a complete pytest-playwright module for the given steps.

    Raises:
        GenerationError: If ``steps`` is empty. Individual bad steps become
            placeholder comments instead.
    """
    if not steps:
        raise GenerationError("No test steps provided")

    config = config or RunConfig()
    use_helper = bool(config.custom_headers)
    logger.info(f"[GENERATOR] Generating '{name}' with {len(steps)} steps")

    body: list[str] = [repr(name or "generated test")]

    if use_helper:
        body.append("auth_helper = AuthHelper(page)")
        body.append(f"auth_helper.set_auth_headers({dict(config.custom_headers)!r})")
    if config.auth_spec:
        body.extend(auth_code(config.auth_spec, use_helper))

    for position, step in enumerate(steps, start=1):
        index = _field(step, "index") or position
        body.append("")
        body.append(f"# Step {index}: {describe(step)}")
        try:
            body.extend(step_code(step, index))
        except Exception as e:
            logger.warning(f"[GENERATOR] Step {index} degraded to placeholder: {e}")
            body.append(f"# Could not generate step: {_one_line(e)}")

    parts = [PREAMBLE]
    if use_helper:
        parts.append(AUTH_HELPER)
    parts.append(f"\n\ndef {function_name_for(name)}(page: Page):\n")
    parts.append("\n".join(f"{INDENT}{line}" if line else "" for line in body))
    parts.append("\n")
    return "".join(parts)


def generate_from_instructions(
    name: str, instructions: str, config: Optional[RunConfig] = None
) -> str:
    """Parse instructions and generate the script in one call."""
    return generate(name, parse(instructions), config)
