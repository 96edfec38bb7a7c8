"""Per-session sliding-window rate limiter.

Tracks request timestamps per session id and enforces two windows: a
short burst window and a longer sustained window.  The periodic sweep
that evicts idle sessions runs as a background task owned by the
limiter, started and stopped from the application lifespan.
"""

from __future__ import annotations

import asyncio
import contextlib
import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from loguru import logger

from docqa.logging_config import short_id


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after: int = 0
    reason: str | None = None
    limit: int | None = None
    window: str | None = None


class RateLimiter:
    """Sliding-window quota per session (burst + sustained).

    Parameters
    ----------
    burst_limit / burst_window:
        At most ``burst_limit`` accepted requests in any trailing
        ``burst_window`` seconds (default 3 per 10 s).
    sustained_limit / sustained_window:
        At most ``sustained_limit`` accepted requests in any trailing
        ``sustained_window`` seconds (default 10 per 60 s).
    clock:
        Monotonic seconds source; injectable for tests.
    """

    def __init__(
        self,
        *,
        burst_limit: int = 3,
        burst_window: float = 10.0,
        sustained_limit: int = 10,
        sustained_window: float = 60.0,
        sweep_interval: float = 300.0,
        inactivity_window: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.burst_limit = burst_limit
        self.burst_window = burst_window
        self.sustained_limit = sustained_limit
        self.sustained_window = sustained_window
        self.sweep_interval = sweep_interval
        self.inactivity_window = inactivity_window
        self._clock = clock
        self._sessions: dict[str, list[float]] = {}
        # Guards read-modify-write on a session's list; check() is plain sync
        # code and may be called from worker threads as well as the loop.
        self._lock = threading.Lock()
        self._sweeper: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Check
    # ------------------------------------------------------------------

    def check(self, session_id: str) -> RateLimitDecision:
        """Admit or reject one request for *session_id*, recording it when admitted."""
        with self._lock:
            now = self._clock()
            recent = [ts for ts in self._sessions.get(session_id, []) if ts > now - self.sustained_window]
            in_burst = [ts for ts in recent if ts > now - self.burst_window]

            if len(in_burst) >= self.burst_limit:
                self._sessions[session_id] = recent
                decision = RateLimitDecision(
                    allowed=False,
                    retry_after=self._retry_after(in_burst[0], self.burst_window, now),
                    reason="burst_limit",
                    limit=self.burst_limit,
                    window=f"{self.burst_window:g} seconds",
                )
            elif len(recent) >= self.sustained_limit:
                self._sessions[session_id] = recent
                decision = RateLimitDecision(
                    allowed=False,
                    retry_after=self._retry_after(recent[0], self.sustained_window, now),
                    reason="rate_limit",
                    limit=self.sustained_limit,
                    window="minute" if self.sustained_window == 60 else f"{self.sustained_window:g} seconds",
                )
            else:
                recent.append(now)
                self._sessions[session_id] = recent
                return RateLimitDecision(allowed=True)

        logger.warning(
            "Rate limit exceeded | session={} reason={} retry_after={}s",
            short_id(session_id),
            decision.reason,
            decision.retry_after,
        )
        return decision

    @staticmethod
    def _retry_after(oldest: float, window: float, now: float) -> int:
        return max(math.ceil(oldest + window - now), 1)

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def sweep(self) -> int:
        """Evict sessions with no timestamp inside the inactivity window.

        Returns:
            The number of sessions removed.
        """
        with self._lock:
            cutoff = self._clock() - self.inactivity_window
            removed = 0
            for session_id in list(self._sessions):
                recent = [ts for ts in self._sessions[session_id] if ts > cutoff]
                if recent:
                    self._sessions[session_id] = recent
                else:
                    del self._sessions[session_id]
                    removed += 1

        if removed:
            logger.info("Rate limiter sweep removed {} inactive sessions", removed)
        return removed

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    def start(self) -> None:
        """Launch the periodic sweep on the running event loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(
                self._sweep_forever(), name="rate-limiter-sweep"
            )

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def stats(self) -> dict:
        with self._lock:
            return {
                "activeSessions": len(self._sessions),
                "totalTimestamps": sum(len(v) for v in self._sessions.values()),
            }
