"""Read pytest-json-report output and collect run artifacts.

Report layout (written by ``pytest --json-report``):
    {"duration": 1.23, "exitcode": 1,
     "summary": {"passed": 1, "failed": 1, "total": 2, ...},
     "tests": [{"nodeid": "...", "outcome": "failed",
                "setup": {...}, "call": {"duration": 0.4, "crash": {"message": ...},
                                         "longrepr": "..."}, "teardown": {...}}]}
"""

from __future__ import annotations

import json
import logging
import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from ..constants import (
    REPORT_FILENAME,
    SCREENSHOT_EXTENSIONS,
    TRACE_EXTENSIONS,
    VIDEO_EXTENSIONS,
)
from ..errors import ReportError
from ..models.run import Artifacts, CaseOutcome, RunSummary

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

MAX_ERROR_CHARS = 2000
_PHASES = ("setup", "call", "teardown")


@dataclass
class ParsedReport:
    summary: RunSummary
    per_test: list[CaseOutcome] = field(default_factory=list)
    duration_ms: int = 0

    def first_error(self) -> Optional[str]:
        for case in self.per_test:
            if case.error:
                return case.error
        return None


def _phase_error(test: dict[str, Any]) -> Optional[str]:
    for phase in _PHASES:
        info = test.get(phase) or {}
        if info.get("outcome") not in ("failed", "error"):
            continue
        crash = info.get("crash") or {}
        message = crash.get("message") or info.get("longrepr")
        if message:
            return str(message)[:MAX_ERROR_CHARS]
    return None


def _case(test: dict[str, Any]) -> CaseOutcome:
    seconds = sum(float((test.get(phase) or {}).get("duration") or 0) for phase in _PHASES)
    return CaseOutcome(
        title=str(test.get("nodeid", "unknown")),
        status=str(test.get("outcome", "unknown")),
        duration_ms=int(seconds * 1000),
        error=_phase_error(test),
    )


def parse_report(path: Path) -> ParsedReport:
    """Parse a JSON report file.

    Raises:
        ReportError: If the file is missing, unreadable, or not a report.
    """
    if not path.is_file():
        raise ReportError(f"report file not found: {path.name}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ReportError(f"report file unreadable: {e}") from e
    if not isinstance(data, dict):
        raise ReportError("report file has unexpected structure")

    tests = [t for t in data.get("tests") or [] if isinstance(t, dict)]
    per_test = [_case(t) for t in tests]
    counts = data.get("summary") or {}

    summary = RunSummary(
        total=int(counts.get("total", len(per_test))),
        passed=int(counts.get("passed", 0)) + int(counts.get("xpassed", 0)),
        failed=int(counts.get("failed", 0)) + int(counts.get("error", 0)),
        skipped=int(counts.get("skipped", 0)) + int(counts.get("xfailed", 0)),
    )
    return ParsedReport(
        summary=summary,
        per_test=per_test,
        duration_ms=int(float(data.get("duration") or 0) * 1000),
    )


def collect_artifacts(workdir: Path, destination: Optional[Path] = None) -> Artifacts:
    """Find screenshots, videos and traces under ``workdir``.

    When ``destination`` is given the files are copied there (keeping their
    relative layout) so they outlive the working area, and the copies are listed.
    """
    artifacts = Artifacts()
    for path in sorted(workdir.rglob("*")):
        if not path.is_file() or path.name == REPORT_FILENAME:
            continue
        suffix = path.suffix.lower()
        if suffix in SCREENSHOT_EXTENSIONS:
            bucket = artifacts.screenshots
        elif suffix in VIDEO_EXTENSIONS:
            bucket = artifacts.videos
        elif suffix in TRACE_EXTENSIONS:
            bucket = artifacts.traces
        else:
            continue

        kept = path
        if destination is not None:
            kept = destination / path.relative_to(workdir)
            try:
                kept.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(path, kept)
            except OSError as e:
                logger.warning(f"Could not keep artifact {path.name}: {e}")
                continue
        bucket.append(str(kept))

    if artifacts.count():
        logger.info(
            f"[ARTIFACTS] {len(artifacts.screenshots)} screenshots, "
            f"{len(artifacts.videos)} videos, {len(artifacts.traces)} traces"
        )
    return artifacts
