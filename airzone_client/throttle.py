"""
Throttle - Leading and trailing edge rate limiter for outbound frames.

The first payload after a quiet period goes out immediately. Payloads that
arrive during the following cooldown window are coalesced and only the latest
one is sent when the window closes.
"""

import asyncio
import enum
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class ThrottleState(enum.Enum):
    """Throttle state machine."""
    IDLE = "idle"
    COOLDOWN = "cooldown"
    PENDING = "pending"


class Throttle:
    """
    Rate-limited dispatcher around a send callable.

    At most one send happens per ``wait`` seconds, and the last dispatched
    payload is always sent within one window after the input goes quiet.

    Usage::

        throttle = Throttle(session.send, wait=0.010)
        throttle.dispatch(frame)
    """

    def __init__(
        self,
        send: Callable[[Any], Any],
        wait: float = 0.010,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        """
        Initialize Throttle.

        Args:
            send: Called with each payload that makes it through
            wait: Cooldown window in seconds
            loop: Event loop used for timers (defaults to the running loop)
        """
        if wait < 0:
            raise ValueError(f"wait must not be negative, got {wait}")
        self._send = send
        self.wait = wait
        self._loop = loop

        self._state = ThrottleState.IDLE
        self._pending: Any = None
        self._timer: Optional[asyncio.TimerHandle] = None

        self.sent_count = 0
        self.coalesced_count = 0

    @property
    def state(self) -> ThrottleState:
        """Current throttle state."""
        return self._state

    def dispatch(self, payload: Any) -> None:
        """Send now if idle, otherwise keep as the pending payload."""
        if self._state is ThrottleState.IDLE:
            self._fire(payload)
            return

        if self._state is ThrottleState.PENDING:
            self.coalesced_count += 1
        self._pending = payload
        self._state = ThrottleState.PENDING

    def cancel(self) -> None:
        """Drop any pending payload and stop the cooldown timer."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending = None
        self._state = ThrottleState.IDLE

    def _fire(self, payload: Any) -> None:
        # Cooldown starts before sending so a re-entrant dispatch is coalesced
        self._state = ThrottleState.COOLDOWN
        self._pending = None
        loop = self._loop or asyncio.get_running_loop()
        self._timer = loop.call_later(self.wait, self._on_window_end)
        self.sent_count += 1
        self._send(payload)

    def _on_window_end(self) -> None:
        self._timer = None
        if self._state is ThrottleState.PENDING:
            self._fire(self._pending)
        else:
            self._state = ThrottleState.IDLE

    def get_stats(self) -> dict:
        """Get throttle statistics."""
        return {
            "state": self._state.value,
            "sent": self.sent_count,
            "coalesced": self.coalesced_count,
        }
