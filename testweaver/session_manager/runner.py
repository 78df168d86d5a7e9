"""Execute generated scripts in isolated pytest subprocesses.

Each execution gets its own working area under WORK_DIR holding the script,
its run configuration (pytest.ini + conftest.py + run-config.json) and
everything the run produces. The area is removed on every exit path
(success, failure, timeout, cancellation) unless KEEP_WORKDIRS is set.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import signal
import sys
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

from ..config import (
    ARTIFACTS_DIR,
    EXPECT_TIMEOUT_MS,
    KEEP_WORKDIRS,
    TIMEOUT_GRACE_MS,
    WORK_DIR,
)
from ..constants import (
    ARTIFACTS_SUBDIR,
    CONFTEST_FILENAME,
    REPORT_FILENAME,
    RUN_CONFIG_FILENAME,
    RUN_CONFIG_JSON,
    SCRIPT_FILENAME,
)
from ..errors import ReportError
from ..models.run import RunConfig, RunResult, RunSummary
from .reports import ParsedReport, collect_artifacts, parse_report

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

# Seconds between SIGTERM and SIGKILL when stopping a run
KILL_GRACE_SECONDS = 5

OutputCallback = Callable[[str, str], None]

CONFTEST_TEMPLATE = '''"""Run configuration for a testweaver session."""

import json
from pathlib import Path

import pytest
from playwright.sync_api import expect

RUN_CONFIG = json.loads(Path(__file__).with_name("run-config.json").read_text())

expect.set_options(timeout=RUN_CONFIG["expectTimeoutMs"])


@pytest.fixture(scope="session")
def browser_context_args(browser_context_args):
    return {
        **browser_context_args,
        "viewport": RUN_CONFIG["viewport"],
        "ignore_https_errors": True,
    }


@pytest.fixture(scope="session")
def run_config():
    return RUN_CONFIG


@pytest.fixture(autouse=True)
def _action_timeout(page):
    page.set_default_timeout(RUN_CONFIG["timeoutMs"])
'''


@dataclass
class Attempt:
    """Raw outcome of one subprocess invocation."""

    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    spawn_error: Optional[str] = None


class ProcessRunner:
    """Runs one script per call in a fresh subprocess with a wall-clock deadline."""

    def __init__(
        self,
        work_root: Path = WORK_DIR,
        artifacts_root: Optional[Path] = ARTIFACTS_DIR,
        keep_workdirs: bool = KEEP_WORKDIRS,
        grace_ms: int = TIMEOUT_GRACE_MS,
        python: str = sys.executable,
    ):
        self.work_root = Path(work_root)
        self.artifacts_root = Path(artifacts_root) if artifacts_root else None
        self.keep_workdirs = keep_workdirs
        self.grace_ms = grace_ms
        self.python = python

    # ── Working Area ─────────────────────────────────────────────────────────

    @asynccontextmanager
    async def working_area(self, session_id: str) -> AsyncIterator[Path]:
        """Create a unique directory for one session and remove it afterwards."""
        workdir = self.work_root / f"{session_id}-{uuid.uuid4().hex[:8]}"
        workdir.mkdir(parents=True, exist_ok=False)
        try:
            yield workdir
        finally:
            if self.keep_workdirs:
                logger.info(f"[RUNNER] Keeping working area {workdir}")
            else:
                shutil.rmtree(workdir, ignore_errors=True)

    def discard_artifacts(self, session_id: str) -> bool:
        """Delete the kept artifacts of a session. Returns whether anything was removed."""
        if self.artifacts_root is None:
            return False
        target = self.artifacts_root / session_id
        if not target.exists():
            return False
        shutil.rmtree(target, ignore_errors=True)
        logger.info(f"[RUNNER] Discarded artifacts of {session_id}")
        return True

    def write_files(self, workdir: Path, script_source: str, config: RunConfig) -> Path:
        """Materialize the script and its run configuration."""
        script_path = workdir / SCRIPT_FILENAME
        script_path.write_text(script_source, encoding="utf-8")
        (workdir / ARTIFACTS_SUBDIR).mkdir(exist_ok=True)

        run_config = {
            "browserKind": config.browser_kind,
            "headless": config.headless,
            "timeoutMs": config.timeout_ms,
            "expectTimeoutMs": min(EXPECT_TIMEOUT_MS, config.timeout_ms),
            "retries": config.retries,
            "parallel": config.parallel,
            "baseUrl": config.base_url,
            "viewport": config.viewport.model_dump(),
            "passthrough": config.passthrough(),
        }
        (workdir / RUN_CONFIG_JSON).write_text(json.dumps(run_config, indent=2), encoding="utf-8")
        (workdir / CONFTEST_FILENAME).write_text(CONFTEST_TEMPLATE, encoding="utf-8")
        (workdir / RUN_CONFIG_FILENAME).write_text(self.pytest_ini(config), encoding="utf-8")
        return script_path

    @staticmethod
    def pytest_ini(config: RunConfig) -> str:
        options = [
            "-p no:cacheprovider",
            f"--browser {config.browser_kind}",
            f"--output {ARTIFACTS_SUBDIR}/playwright",
            "--screenshot only-on-failure",
            "--video retain-on-failure",
            "--tracing retain-on-failure",
            "--json-report",
            f"--json-report-file {REPORT_FILENAME}",
            "--json-report-omit collectors keywords",
        ]
        if not config.headless:
            options.append("--headed")
        if config.base_url:
            options.append(f"--base-url {config.base_url}")
        lines = ["[pytest]", "addopts ="] + [f"    {option}" for option in options]
        return "\n".join(lines) + "\n"

    def build_command(self, workdir: Path, script_path: Path) -> list[str]:
        return [
            self.python,
            "-m",
            "pytest",
            str(script_path),
            "-c",
            str(workdir / RUN_CONFIG_FILENAME),
            "--rootdir",
            str(workdir),
        ]

    # ── Execution ────────────────────────────────────────────────────────────

    async def execute(
        self,
        script_source: str,
        config: Optional[RunConfig] = None,
        timeout_ms: Optional[int] = None,
        session_id: Optional[str] = None,
        on_output: Optional[OutputCallback] = None,
    ) -> RunResult:
        """Run a script to completion, retrying failed attempts within the deadline.

        Never raises for execution problems: timeouts, crashes, and missing
        reports all come back as a RunResult. Cancellation propagates after the
        subprocess has been terminated and the working area removed.
        """
        config = config or RunConfig()
        timeout_ms = timeout_ms or config.timeout_ms
        session_id = session_id or uuid.uuid4().hex
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + (timeout_ms + self.grace_ms) / 1000

        async with self.working_area(session_id) as workdir:
            script_path = self.write_files(workdir, script_source, config)
            command = self.build_command(workdir, script_path)
            report_path = workdir / REPORT_FILENAME

            attempts = 0
            while True:
                attempts += 1
                report_path.unlink(missing_ok=True)
                logger.info(f"[RUNNER] {session_id}: attempt {attempts} (timeout {timeout_ms} ms)")

                attempt = await self._run_once(command, workdir, deadline, on_output)
                result = self.build_result(attempt, report_path, timeout_ms)

                if (
                    result.status == "passed"
                    or attempts > config.retries
                    or attempt.timed_out
                    or attempt.spawn_error
                    or loop.time() >= deadline
                ):
                    break
                logger.info(f"[RUNNER] {session_id}: attempt {attempts} {result.status}, retrying")

            destination = self.artifacts_root / session_id if self.artifacts_root else None
            artifacts = collect_artifacts(workdir, destination)

        duration_ms = int((loop.time() - started) * 1000)
        logger.info(f"[RUNNER] {session_id}: {result.status} in {duration_ms} ms ({attempts} attempts)")
        return result.model_copy(
            update={"artifacts": artifacts, "duration_ms": duration_ms, "attempts": attempts}
        )

    async def _run_once(
        self,
        command: list[str],
        workdir: Path,
        deadline: float,
        on_output: Optional[OutputCallback],
    ) -> Attempt:
        env = {**os.environ, "PYTHONUNBUFFERED": "1", "PYTHONDONTWRITEBYTECODE": "1"}
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(workdir),
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            logger.error(f"[RUNNER] Failed to start {command[0]}: {e}")
            return Attempt(exit_code=None, spawn_error=str(e))

        stdout: list[str] = []
        stderr: list[str] = []
        pumps = [
            asyncio.create_task(self._pump(process.stdout, "stdout", stdout, on_output)),
            asyncio.create_task(self._pump(process.stderr, "stderr", stderr, on_output)),
        ]

        timed_out = False
        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(process.wait(), timeout=max(0.0, deadline - loop.time()))
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning(f"[RUNNER] Process {process.pid} exceeded its deadline, terminating")
            await terminate(process)
        except asyncio.CancelledError:
            logger.info(f"[RUNNER] Run cancelled, terminating process {process.pid}")
            await terminate(process)
            raise
        finally:
            await asyncio.gather(*pumps, return_exceptions=True)

        return Attempt(
            exit_code=process.returncode,
            stdout="".join(stdout),
            stderr="".join(stderr),
            timed_out=timed_out,
        )

    @staticmethod
    async def _pump(
        stream: Optional[asyncio.StreamReader],
        name: str,
        sink: list[str],
        on_output: Optional[OutputCallback],
    ):
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace")
            sink.append(text)
            if on_output:
                try:
                    on_output(name, text)
                except Exception as e:
                    logger.warning(f"[RUNNER] Output callback failed: {e}")

    @staticmethod
    def build_result(attempt: Attempt, report_path: Path, timeout_ms: int) -> RunResult:
        """Turn a raw attempt plus its report file into a RunResult."""
        common = {
            "stdout": attempt.stdout,
            "stderr": attempt.stderr,
            "exit_code": attempt.exit_code,
        }

        if attempt.spawn_error:
            return RunResult(
                status="error", error=f"Failed to start test process: {attempt.spawn_error}", **common
            )
        if attempt.timed_out:
            return RunResult(
                status="error", error=f"Test execution timed out after {timeout_ms} ms", **common
            )

        report: Optional[ParsedReport] = None
        report_problem = ""
        try:
            report = parse_report(report_path)
        except ReportError as e:
            report_problem = str(e)

        if attempt.exit_code == 0:
            if report is None:
                logger.info(f"[RUNNER] Exit code 0 without a usable report ({report_problem})")
                return RunResult(status="passed", summary=RunSummary(), **common)
            return RunResult(
                status="passed",
                summary=report.summary,
                per_test=report.per_test,
                report_duration_ms=report.duration_ms,
                **common,
            )

        if report is None:
            return RunResult(
                status="error",
                error=f"Test process exited with code {attempt.exit_code}: {report_problem}",
                **common,
            )

        return RunResult(
            status="failed",
            summary=report.summary,
            per_test=report.per_test,
            error=report.first_error() or f"Test process exited with code {attempt.exit_code}",
            report_duration_ms=report.duration_ms,
            **common,
        )


async def terminate(process: asyncio.subprocess.Process):
    """Stop a process and its group: SIGTERM, then SIGKILL after a grace period."""
    if process.returncode is not None:
        return

    _signal_group(process, signal.SIGTERM)
    try:
        await asyncio.wait_for(process.wait(), timeout=KILL_GRACE_SECONDS)
        return
    except asyncio.TimeoutError:
        logger.warning(f"[RUNNER] Process {process.pid} ignored SIGTERM, killing")

    _signal_group(process, getattr(signal, "SIGKILL", signal.SIGTERM))
    await process.wait()


def _signal_group(process: asyncio.subprocess.Process, sig: int):
    if sys.platform != "win32":
        try:
            os.killpg(os.getpgid(process.pid), sig)
            return
        except (ProcessLookupError, PermissionError):
            pass
    try:
        if sig == signal.SIGTERM:
            process.terminate()
        else:
            process.kill()
    except ProcessLookupError:
        pass
