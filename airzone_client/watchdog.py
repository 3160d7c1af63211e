"""
Watchdog - Fixed-cadence liveness checks for the link session.

Ticks run independently of the detection frame rate. Every tick on a
connected link sends a probe; once too many probes go unanswered the
session is forced to reconnect.
"""

import asyncio
import logging
from typing import Optional

from .link_session import LinkSession, LinkState

logger = logging.getLogger(__name__)


class Watchdog:
    """
    Heartbeat driver for a LinkSession.

    The missed probe counter lives in the session, which resets it whenever
    an acknowledgement arrives. With the default threshold of 2, three
    consecutive ticks without an acknowledgement trigger one reconnect.
    """

    def __init__(
        self,
        session: LinkSession,
        interval: float = 1.0,
        threshold: int = 2,
    ):
        """
        Initialize Watchdog.

        Args:
            session: Session to supervise
            interval: Seconds between ticks
            threshold: Missed probes tolerated; one more forces a reconnect
        """
        self.session = session
        self.interval = interval
        self.threshold = threshold
        self.timeouts = 0
        self._task: Optional[asyncio.Task] = None

    def tick(self) -> None:
        """Run one liveness check."""
        state = self.session.state
        if state is LinkState.DISCONNECTED:
            return

        missed = self.session.note_missed_probe()
        if missed > self.threshold:
            self.timeouts += 1
            self.session.reset_missed_probes()
            if state is LinkState.CONNECTING:
                self.session.force_reconnect("handshake timeout")
            else:
                self.session.force_reconnect(f"heartbeat timeout ({missed} probes unanswered)")
            return

        # A connecting link already has its handshake probe in flight
        if state is LinkState.CONNECTED:
            self.session.send_probe()

    async def start(self) -> None:
        """Start ticking in the background."""
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run())
        self._task.add_done_callback(self._report_failure)
        logger.info(f"Watchdog started ({self.interval:.1f}s interval)")

    async def stop(self) -> None:
        """Stop ticking."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Watchdog stopped")

    def _report_failure(self, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is None:
            return
        task.get_loop().call_exception_handler({
            "message": "Watchdog stopped unexpectedly",
            "exception": task.exception(),
            "task": task,
        })

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.tick()
