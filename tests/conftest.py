"""Pytest configuration ensuring the local package is importable, plus shared fakes."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Optional

import pytest

_ROOT = Path(__file__).resolve().parents[1]
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from testweaver.models.run import RunConfig, RunRequest, RunResult  # noqa: E402


class GatedRunner:
    """Runner double: each execution blocks until the test releases it.

    ``started`` records session ids in start order; ``release(sid, result)``
    finishes one execution; ``cancelled`` records executions that were
    interrupted; ``discarded`` records sessions whose artifacts were pruned.
    """

    def __init__(self):
        self.started: list[str] = []
        self.cancelled: list[str] = []
        self.scripts: dict[str, str] = {}
        self.discarded: list[str] = []
        self._gates: dict[str, asyncio.Future] = {}

    async def execute(
        self,
        script_source: str,
        config: Optional[RunConfig] = None,
        timeout_ms: Optional[int] = None,
        session_id: Optional[str] = None,
        on_output=None,
    ) -> RunResult:
        gate = asyncio.get_running_loop().create_future()
        self._gates[session_id] = gate
        self.started.append(session_id)
        self.scripts[session_id] = script_source
        if on_output:
            on_output("stdout", f"running {session_id}\n")
        try:
            return await gate
        except asyncio.CancelledError:
            self.cancelled.append(session_id)
            raise

    def release(self, session_id: str, result: Optional[RunResult] = None):
        self._gates[session_id].set_result(result or RunResult(status="passed", duration_ms=10))

    def fail(self, session_id: str, error: Exception):
        self._gates[session_id].set_exception(error)

    def discard_artifacts(self, session_id: str) -> bool:
        self.discarded.append(session_id)
        return True


async def settle(rounds: int = 5):
    """Let pending callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def gated_runner() -> GatedRunner:
    return GatedRunner()


@pytest.fixture
def script_request() -> RunRequest:
    return RunRequest(script_source="def test_ok():\n    assert True\n")
