"""
Session Lanes — Concurrency control for agent turns.

Each session key gets its own lane: turns for the same key run one at a
time in arrival order, turns for different keys run side by side. A global
semaphore caps how many turns run at once across all lanes.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class LaneRun:
    """A single agent turn within a lane."""
    run_id: str
    session_key: str
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    status: str = "queued"  # queued | running | completed | aborted | failed
    error: Optional[str] = None


class SessionLaneManager:
    """Per-session-key serialisation plus a global concurrency cap."""

    def __init__(self, max_concurrent: int = 5, history_limit: int = 200):
        self._semaphore = asyncio.Semaphore(max(1, max_concurrent))
        self.max_concurrent = max(1, max_concurrent)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}
        self._runs: Dict[str, LaneRun] = {}
        self._history_limit = history_limit

    def _lock_for(self, session_key: str) -> asyncio.Lock:
        lock = self._locks.get(session_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_key] = lock
        return lock

    @asynccontextmanager
    async def lane(self, session_key: str) -> AsyncIterator[LaneRun]:
        """
        Hold the lane for ``session_key`` for the duration of the block.

        The caller sets ``run.status`` before leaving; an exception marks
        the run failed.
        """
        run = LaneRun(run_id=uuid.uuid4().hex[:12], session_key=session_key)
        self._runs[run.run_id] = run
        self._waiters[session_key] = self._waiters.get(session_key, 0) + 1
        lock = self._lock_for(session_key)
        try:
            async with lock:
                async with self._semaphore:
                    run.status = "running"
                    logger.debug("[LANE] %s acquired by %s", session_key, run.run_id)
                    try:
                        yield run
                    except BaseException as exc:
                        run.status = "failed"
                        run.error = str(exc) or type(exc).__name__
                        raise
                    finally:
                        if run.status == "running":
                            run.status = "completed"
                        run.finished_at = time.time()
        finally:
            self._waiters[session_key] -= 1
            if self._waiters[session_key] == 0:
                self._waiters.pop(session_key, None)
                self._locks.pop(session_key, None)
            self._trim_history()
            logger.debug("[LANE] Released %s/%s: %s", session_key, run.run_id, run.status)

    def _trim_history(self) -> None:
        finished = [r for r in self._runs.values() if r.finished_at is not None]
        overflow = len(finished) - self._history_limit
        if overflow > 0:
            finished.sort(key=lambda r: r.finished_at or 0)
            for r in finished[:overflow]:
                self._runs.pop(r.run_id, None)

    def get_stats(self) -> Dict[str, Any]:
        runs = list(self._runs.values())
        return {
            "active": sum(1 for r in runs if r.status == "running"),
            "queued": sum(1 for r in runs if r.status == "queued"),
            "completed": sum(1 for r in runs if r.status == "completed"),
            "aborted": sum(1 for r in runs if r.status == "aborted"),
            "failed": sum(1 for r in runs if r.status == "failed"),
            "sessions": len(self._locks),
            "max_concurrent": self.max_concurrent,
        }
