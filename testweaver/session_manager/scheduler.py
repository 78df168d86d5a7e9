"""FIFO session scheduler with a hard concurrency cap.

The scheduler owns every Session. Clients submit and cancel; only the
scheduler changes state. All bookkeeping happens synchronously on the event
loop, so ``tick()`` never awaits and needs no locks.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import uuid
from collections import deque
from datetime import timedelta
from enum import Enum
from functools import partial
from typing import Any, Callable, Optional

from ..config import AVERAGE_SESSION_MS, MAX_CONCURRENT_SESSIONS
from ..models.run import RunRequest, RunResult
from ..models.session import RESULT_STATES, TERMINAL_STATES, Session, SessionState, utcnow
from ..scripting.generator import generate_from_instructions
from .runner import ProcessRunner

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


class CancelOutcome(str, Enum):
    OK = "ok"
    NOT_FOUND = "notFound"
    NOT_OWNER = "notOwner"


# listener(event, session, data) with event in: queued, started, log, completed, cancelled
SessionListener = Callable[[str, Session, dict], None]


class SessionScheduler:
    """Queues sessions and runs at most ``max_concurrency`` of them at a time."""

    def __init__(
        self,
        runner: Optional[ProcessRunner] = None,
        max_concurrency: int = MAX_CONCURRENT_SESSIONS,
        listener: Optional[SessionListener] = None,
        average_session_ms: int = AVERAGE_SESSION_MS,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.runner = runner or ProcessRunner()
        self.max_concurrency = max_concurrency
        self.listener = listener
        self.sessions: dict[str, Session] = {}
        self._queue: deque[str] = deque()
        # Slot holders: a slot is released only when the runner task has finished
        self._running: dict[str, asyncio.Task] = {}
        self._average_ms = float(average_session_ms)
        self._finished = 0
        self._counts = {state.value: 0 for state in TERMINAL_STATES}

    # ── Submission / Cancellation ────────────────────────────────────────────

    def submit(
        self, request: RunRequest, client_id: str, correlation_id: Optional[str] = None
    ) -> str:
        """Enqueue a run and start it if a slot is free. Returns the session id."""
        session = Session(
            id=f"session-{uuid.uuid4().hex[:16]}",
            client_id=client_id,
            request=request,
            correlation_id=correlation_id,
        )
        self.sessions[session.id] = session
        self._queue.append(session.id)
        logger.info(f"[SCHEDULER] {session.id} queued for {client_id} (queue={len(self._queue)})")

        self._emit(
            "queued",
            session,
            {
                "queuePosition": len(self._queue),
                "estimatedWaitMs": self.estimate_wait_ms(),
            },
        )
        self.tick()
        return session.id

    def cancel(
        self,
        session_id: str,
        client_id: str,
        reason: str = "cancelled",
        context: Optional[dict[str, Any]] = None,
    ) -> CancelOutcome:
        """Cancel a session on behalf of its owner.

        Finished sessions report NOT_FOUND: there is nothing left to cancel.
        """
        session = self.sessions.get(session_id)
        if session is None:
            return CancelOutcome.NOT_FOUND
        if session.client_id != client_id:
            logger.warning(f"[SCHEDULER] {client_id} tried to cancel {session_id} it does not own")
            return CancelOutcome.NOT_OWNER
        if session.is_terminal:
            return CancelOutcome.NOT_FOUND

        self._cancel(session, reason, context or {})
        return CancelOutcome.OK

    def cancel_client(self, client_id: str, reason: str = "client_disconnected") -> list[str]:
        """Cancel every non-terminal session owned by a client."""
        owned = [
            s for s in self.sessions.values() if s.client_id == client_id and not s.is_terminal
        ]
        for session in owned:
            self._cancel(session, reason, {})
        if owned:
            logger.info(f"[SCHEDULER] Cancelled {len(owned)} sessions of {client_id}")
        return [s.id for s in owned]

    def _cancel(self, session: Session, reason: str, context: dict[str, Any]):
        was_running = session.state == SessionState.RUNNING
        if not was_running:
            try:
                self._queue.remove(session.id)
            except ValueError:
                pass

        session.state = SessionState.CANCELLED
        session.completed_at = utcnow()
        session.cancel_reason = reason
        self._counts[SessionState.CANCELLED.value] += 1

        task = self._running.get(session.id)
        if task is not None and not task.done():
            task.cancel()

        logger.info(f"[SCHEDULER] {session.id} cancelled ({reason}, was {'running' if was_running else 'queued'})")
        self._emit("cancelled", session, {"reason": reason, **context})

    # ── Queries ──────────────────────────────────────────────────────────────

    def get(self, session_id: str) -> Optional[Session]:
        return self.sessions.get(session_id)

    def status(self, session_id: str, client_id: str) -> tuple[CancelOutcome, Optional[Session]]:
        """Owner-only lookup. Returns (OK, session) or (NOT_FOUND|NOT_OWNER, None)."""
        session = self.sessions.get(session_id)
        if session is None:
            return CancelOutcome.NOT_FOUND, None
        if session.client_id != client_id:
            return CancelOutcome.NOT_OWNER, None
        return CancelOutcome.OK, session

    def queue_position(self, session_id: str) -> Optional[int]:
        """1-based position in the queue, or None when not queued."""
        try:
            return self._queue.index(session_id) + 1
        except ValueError:
            return None

    def estimate_wait_ms(self) -> int:
        if len(self._running) < self.max_concurrency:
            return 0
        return round(len(self._queue) * self._average_ms / self.max_concurrency)

    def active_session_ids(self) -> list[str]:
        return [sid for sid, s in self.sessions.items() if not s.is_terminal]

    @property
    def running_count(self) -> int:
        return sum(1 for s in self.sessions.values() if s.state == SessionState.RUNNING)

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    def metrics(self) -> dict[str, Any]:
        return {
            "queued": len(self._queue),
            "running": self.running_count,
            "slotsInUse": len(self._running),
            "maxConcurrency": self.max_concurrency,
            "averageSessionMs": round(self._average_ms),
            "finished": dict(self._counts),
            "tracked": len(self.sessions),
        }

    # ── Scheduling ───────────────────────────────────────────────────────────

    def tick(self):
        """Start queued sessions while slots are free."""
        while len(self._running) < self.max_concurrency and self._queue:
            session_id = self._queue.popleft()
            session = self.sessions.get(session_id)
            if session is None or session.state != SessionState.QUEUED:
                continue

            session.state = SessionState.RUNNING
            session.started_at = utcnow()
            task = asyncio.create_task(self._run(session), name=f"run-{session_id}")
            self._running[session_id] = task
            task.add_done_callback(partial(self._on_task_done, session_id))

            logger.info(
                f"[SCHEDULER] {session_id} started ({len(self._running)}/{self.max_concurrency} slots)"
            )
            self._emit("started", session, {"startedAt": session.started_at.isoformat()})

    async def _run(self, session: Session):
        request = session.request
        try:
            script = request.script_source
            if not script:
                script = generate_from_instructions(request.name, request.instructions or "", request.config)
            result = await self.runner.execute(
                script,
                request.config,
                session_id=session.id,
                on_output=partial(self._on_output, session.id),
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[SCHEDULER] Runner failed for {session.id}: {e}", exc_info=True)
            result = RunResult(status="error", error=f"Execution failed: {e}")
        self._finish(session, result)

    def _on_output(self, session_id: str, stream: str, text: str):
        session = self.sessions.get(session_id)
        if session is None or session.is_terminal:
            return
        self._emit("log", session, {"stream": stream, "message": text.rstrip("\n")})

    def _finish(self, session: Session, result: RunResult):
        if session.is_terminal:
            logger.info(f"[SCHEDULER] Discarding late result for {session.id} ({session.state.value})")
            return

        session.result = result
        session.state = RESULT_STATES[result.status]
        session.completed_at = utcnow()
        self._counts[session.state.value] += 1
        self._record_duration(session.duration_ms)

        logger.info(f"[SCHEDULER] {session.id} finished: {session.state.value}")
        self._emit("completed", session, {"status": result.status})

    def _record_duration(self, duration_ms: Optional[int]):
        if duration_ms is None:
            return
        self._finished += 1
        self._average_ms += (duration_ms - self._average_ms) / self._finished

    def _on_task_done(self, session_id: str, task: asyncio.Task):
        self._running.pop(session_id, None)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[SCHEDULER] Task for {session_id} crashed: {task.exception()!r}")
            session = self.sessions.get(session_id)
            if session is not None:
                self._finish(session, RunResult(status="error", error=str(task.exception())))
        self.tick()

    def _emit(self, event: str, session: Session, data: dict):
        if self.listener is None:
            return
        try:
            self.listener(event, session, data)
        except Exception as e:
            logger.warning(f"[SCHEDULER] Listener failed on {event} for {session.id}: {e}")

    # ── Housekeeping ─────────────────────────────────────────────────────────

    def prune(self, max_age_seconds: float) -> int:
        """Forget terminal sessions (and their kept artifacts) older than ``max_age_seconds``."""
        cutoff = utcnow() - timedelta(seconds=max_age_seconds)
        stale = [
            sid
            for sid, s in self.sessions.items()
            if s.is_terminal and s.completed_at is not None and s.completed_at <= cutoff
            and sid not in self._running
        ]
        discard = getattr(self.runner, "discard_artifacts", None)
        for sid in stale:
            del self.sessions[sid]
            if discard is not None:
                discard(sid)
        if stale:
            logger.info(f"[SCHEDULER] Pruned {len(stale)} finished sessions")
        return len(stale)

    async def shutdown(self, reason: str = "server_shutdown") -> list[str]:
        """Cancel every non-terminal session and wait for runner tasks to finish."""
        cancelled = []
        for session in list(self.sessions.values()):
            if not session.is_terminal:
                self._cancel(session, reason, {})
                cancelled.append(session.id)

        tasks = list(self._running.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"[SCHEDULER] Shut down, cancelled {len(cancelled)} sessions")
        return cancelled
