"""
Link Session - One logical WebSocket link to the controller server.

Handles:
- Handshake: the link only counts as connected once a liveness probe is answered
- Liveness bookkeeping for the Watchdog (missed probe counter)
- Reconnection with exponential backoff after transport loss
- Non-blocking sends through a queue, dropped while not connected
- Inbound dispatch onto an event queue (Connected, Disconnected, LedPayload)
"""

import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Set, Union

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .message import LIVENESS_PROBE, LedFrame, LivenessAck, parse_inbound

logger = logging.getLogger(__name__)

# Transport failures that end a connection attempt without being fatal
TRANSPORT_ERRORS = (OSError, WebSocketException, asyncio.TimeoutError)


class LinkState(enum.Enum):
    """Link state, owned and mutated only by LinkSession."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(frozen=True)
class Connected:
    """The server acknowledged the handshake probe."""


@dataclass(frozen=True)
class Disconnected:
    """The link went down."""
    reason: str


@dataclass(frozen=True)
class LedPayload:
    """LED state received from the server, untouched."""
    data: bytes


SessionEvent = Union[Connected, Disconnected, LedPayload]


@dataclass
class ConnectionStats:
    """Statistics about the link."""
    connect_attempts: int = 0
    reconnects: int = 0
    connect_time: Optional[float] = None
    disconnect_time: Optional[float] = None
    messages_sent: int = 0
    messages_dropped: int = 0
    led_frames: int = 0
    last_send_time: Optional[float] = None


class LinkSession:
    """
    Self-healing WebSocket link.

    Only one connection attempt is ever in flight. Every attempt gets a
    generation number, and callbacks from an attempt that has since been
    abandoned are ignored.

    Usage::

        session = LinkSession("ws://127.0.0.1:1606/ws")
        await session.start()
        session.send("d010001")
        event = await session.events.get()
        await session.close()
    """

    def __init__(
        self,
        server_url: str,
        connect: Callable[..., Any] = websockets.connect,
        initial_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 3.0,
        open_timeout: float = 5.0,
        queue_size: int = 100,
        max_pending_led_events: int = 100,
    ):
        """
        Initialize LinkSession.

        Args:
            server_url: WebSocket server URL (e.g., ws://127.0.0.1:1606/ws)
            connect: Coroutine factory opening a connection, websockets.connect
                by default
            initial_backoff_seconds: Delay before the first reconnect after a
                transport loss
            max_backoff_seconds: Upper bound for the reconnect delay. Keep it
                within the watchdog window so a restarted server is picked up
                as fast as a heartbeat timeout would
            open_timeout: Timeout for establishing the transport
            queue_size: Outbound queue capacity
            max_pending_led_events: LED payloads kept for the consumer before
                new ones are dropped
        """
        self.server_url = server_url
        self._connect = connect
        self.initial_backoff = initial_backoff_seconds
        self.max_backoff = max_backoff_seconds
        self.open_timeout = open_timeout
        self.max_pending_led_events = max_pending_led_events

        # Link state
        self._state = LinkState.DISCONNECTED
        self._ws = None
        self._attempt = 0
        self._missed_probes = 0
        self._closed = False

        # Queues
        self._send_queue: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_size)
        self.events: asyncio.Queue[SessionEvent] = asyncio.Queue()

        # Backoff state
        self._current_backoff = initial_backoff_seconds
        self._reopen_handle: Optional[asyncio.TimerHandle] = None

        # Tasks
        self._connect_task: Optional[asyncio.Task] = None
        self._send_task: Optional[asyncio.Task] = None
        self._close_tasks: Set[asyncio.Task] = set()

        self.stats = ConnectionStats()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> LinkState:
        """Current link state."""
        return self._state

    @property
    def connected(self) -> bool:
        """Check if the handshake has completed."""
        return self._state is LinkState.CONNECTED

    @property
    def missed_probes(self) -> int:
        """Probes sent since the last acknowledgement."""
        return self._missed_probes

    def note_missed_probe(self) -> int:
        """Count one unanswered probe and return the new total."""
        self._missed_probes += 1
        return self._missed_probes

    def reset_missed_probes(self) -> None:
        """Clear the missed probe counter."""
        self._missed_probes = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the sender task and the first connection attempt."""
        if self._send_task is not None:
            return
        self._send_task = asyncio.create_task(self._send_loop())
        self._send_task.add_done_callback(self._report_task_failure)
        logger.info(f"Link session started, connecting to {self.server_url}")
        self.open()

    def open(self) -> bool:
        """
        Begin a connection attempt.

        Only valid from DISCONNECTED. Returns False if the session is closed
        or an attempt is already in flight.
        """
        if self._closed:
            logger.debug("open() ignored, session closed")
            return False
        if self._state is not LinkState.DISCONNECTED:
            logger.debug(f"open() ignored, link is {self._state.value}")
            return False

        self._cancel_reopen()
        self._attempt += 1
        self.stats.connect_attempts += 1
        self._state = LinkState.CONNECTING
        logger.info(f"Connecting to {self.server_url}...")
        self._connect_task = asyncio.get_running_loop().create_task(
            self._run_connection(self._attempt)
        )
        self._connect_task.add_done_callback(self._report_task_failure)
        return True

    def force_reconnect(self, reason: str) -> None:
        """Drop the current transport and open a fresh one immediately."""
        if self._closed:
            return
        logger.warning(f"Forcing reconnect: {reason}")
        # Invalidate callbacks from the abandoned connection
        self._attempt += 1
        self._abandon_transport()
        self._cancel_reopen()
        self._mark_disconnected(reason)
        self.stats.reconnects += 1
        self.open()

    async def close(self) -> None:
        """Stop reconnecting and close the link."""
        if self._closed:
            return
        logger.info("Link session closing...")
        self._closed = True
        self._attempt += 1
        self._cancel_reopen()

        tasks = [t for t in (self._connect_task, self._send_task) if t is not None]
        self._connect_task = None
        self._send_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

        ws = self._ws
        self._ws = None
        if ws is not None:
            await self._close_transport(ws)
        if self._close_tasks:
            await asyncio.gather(*self._close_tasks)

        self._mark_disconnected("session closed")
        logger.info("Link session closed")

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def send(self, frame: str) -> bool:
        """
        Queue a frame for sending.

        Frames sent while the link is not connected are dropped, since only
        the latest state is worth delivering.

        Returns:
            True if the frame was queued
        """
        if self._state is not LinkState.CONNECTED:
            self.stats.messages_dropped += 1
            logger.debug(f"Link {self._state.value}, dropping {frame!r}")
            return False
        return self._enqueue(frame)

    def send_probe(self) -> bool:
        """Queue a liveness probe if a transport is open."""
        if self._ws is None:
            return False
        return self._enqueue(LIVENESS_PROBE)

    def _enqueue(self, message: str) -> bool:
        try:
            self._send_queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            self.stats.messages_dropped += 1
            logger.warning("Send queue full, dropping message")
            return False

    async def _send_loop(self) -> None:
        """Process outgoing message queue."""
        while True:
            message = await self._send_queue.get()
            ws = self._ws
            if ws is None:
                self.stats.messages_dropped += 1
                continue
            try:
                await ws.send(message)
                self.stats.messages_sent += 1
                self.stats.last_send_time = time.time()
            except TRANSPORT_ERRORS as e:
                # The reader notices the close and handles the reconnect
                self.stats.messages_dropped += 1
                logger.warning(f"Send failed: {e}")

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def _run_connection(self, attempt: int) -> None:
        """Open the transport, start the handshake and read until it closes."""
        try:
            ws = await self._connect(
                self.server_url,
                open_timeout=self.open_timeout,
                ping_interval=None,
                close_timeout=5,
            )
        except ConnectionRefusedError:
            logger.warning("Connection refused - is the server running?")
            self._on_transport_lost(attempt, "connection refused")
            return
        except TRANSPORT_ERRORS as e:
            logger.warning(f"Connection failed: {e}")
            self._on_transport_lost(attempt, f"connection failed: {e}")
            return

        if attempt != self._attempt:
            await self._close_transport(ws)
            return

        self._ws = ws
        logger.info("Transport open, waiting for liveness acknowledgement")
        self._enqueue(LIVENESS_PROBE)

        reason = "closed by server"
        try:
            async for message in ws:
                self._handle_message(message)
        except ConnectionClosed as e:
            reason = f"connection lost: {e}"
        self._on_transport_lost(attempt, reason)

    def _handle_message(self, message: Union[str, bytes]) -> None:
        frame = parse_inbound(message)
        if isinstance(frame, LivenessAck):
            self._missed_probes = 0
            self._current_backoff = self.initial_backoff
            if self._state is not LinkState.CONNECTED:
                self._state = LinkState.CONNECTED
                self.stats.connect_time = time.time()
                logger.info("Link connected")
                self.events.put_nowait(Connected())
        elif isinstance(frame, LedFrame):
            if self._state is not LinkState.CONNECTED:
                logger.debug("Dropping LED frame received before handshake")
                return
            if self.events.qsize() >= self.max_pending_led_events:
                logger.warning("Event queue backed up, dropping LED frame")
                return
            self.stats.led_frames += 1
            self.events.put_nowait(LedPayload(frame.data))

    def _on_transport_lost(self, attempt: int, reason: str) -> None:
        if attempt != self._attempt:
            return
        self._ws = None
        self._connect_task = None
        self._mark_disconnected(reason)
        if not self._closed:
            self._schedule_reopen()

    def _mark_disconnected(self, reason: str) -> None:
        previous = self._state
        self._state = LinkState.DISCONNECTED
        self._missed_probes = 0
        self._drain_send_queue()
        if previous is not LinkState.DISCONNECTED:
            self.stats.disconnect_time = time.time()
            logger.warning(f"Link disconnected ({reason})")
            self.events.put_nowait(Disconnected(reason))

    def _drain_send_queue(self) -> None:
        while True:
            try:
                self._send_queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            self.stats.messages_dropped += 1

    def _schedule_reopen(self) -> None:
        delay = min(self._current_backoff, self.max_backoff)
        logger.info(f"Reconnecting in {delay:.1f}s...")
        self._reopen_handle = asyncio.get_running_loop().call_later(delay, self._reopen)
        self._current_backoff = min(self._current_backoff * 2, self.max_backoff)

    def _reopen(self) -> None:
        self._reopen_handle = None
        self.stats.reconnects += 1
        self.open()

    def _cancel_reopen(self) -> None:
        if self._reopen_handle is not None:
            self._reopen_handle.cancel()
            self._reopen_handle = None

    def _abandon_transport(self) -> None:
        if self._connect_task is not None:
            self._connect_task.cancel()
            self._connect_task = None
        ws = self._ws
        self._ws = None
        if ws is not None:
            task = asyncio.get_running_loop().create_task(self._close_transport(ws))
            self._close_tasks.add(task)
            task.add_done_callback(self._close_tasks.discard)

    async def _close_transport(self, ws) -> None:
        try:
            await ws.close()
        except TRANSPORT_ERRORS as e:
            logger.debug(f"Error while closing transport: {e}")

    def _report_task_failure(self, task: asyncio.Task) -> None:
        # Anything other than a transport error here is a bug, not a lost link
        if task.cancelled() or task.exception() is None:
            return
        task.get_loop().call_exception_handler({
            "message": f"Link session task {task.get_name()} failed",
            "exception": task.exception(),
            "task": task,
        })

    def get_stats(self) -> dict:
        """Get link statistics."""
        return {
            "state": self._state.value,
            "missed_probes": self._missed_probes,
            "connect_attempts": self.stats.connect_attempts,
            "reconnects": self.stats.reconnects,
            "connect_time": self.stats.connect_time,
            "disconnect_time": self.stats.disconnect_time,
            "messages_sent": self.stats.messages_sent,
            "messages_dropped": self.stats.messages_dropped,
            "led_frames": self.stats.led_frames,
            "last_send_time": self.stats.last_send_time,
            "queue_size": self._send_queue.qsize(),
        }
