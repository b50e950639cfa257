"""Connection supervision for the upstream session.

Keeps one session connection alive:
1. Connects, waits (bounded) for the initial state snapshot
2. Publishes a connected signal and starts keepalive pings
3. Hands every incoming signal to the relay
4. On any drop, publishes disconnected, waits, and reconnects, forever
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Optional

from .errors import TransportError
from .models import Signal
from .transport import SessionTransport

logger = logging.getLogger(__name__)

LOG_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

LifecycleListener = Callable[[], None]


class SupervisorState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ConnectionSupervisor:
    """
    Owns the session connection and reconnects it whenever it drops.

    Backoff is a fixed interval by default. With ``backoff="exponential"``
    the delay doubles per consecutive failure up to ``max_reconnect_delay``
    and is reset once a connection stays up.
    """

    def __init__(
        self,
        transport: SessionTransport,
        on_signal: Callable[[Signal], Awaitable[None]],
        reconnect_delay: float = 5.0,
        backoff: str = "fixed",
        max_reconnect_delay: float = 60.0,
        keepalive_interval: float = 20.0,
        snapshot_timeout: float = 5.0,
        log_callback: Callable[[str, str], None] | None = None,
    ):
        if backoff not in ("fixed", "exponential"):
            raise ValueError(f"Unknown backoff policy: {backoff}")
        self.transport = transport
        self.on_signal = on_signal
        self.reconnect_delay = reconnect_delay
        self.backoff = backoff
        self.max_reconnect_delay = max_reconnect_delay
        self.keepalive_interval = keepalive_interval
        self.snapshot_timeout = snapshot_timeout
        self.log_callback = log_callback

        self.state = SupervisorState.DISCONNECTED
        self.connect_count = 0
        self.last_error = ""
        # True from a successful connect until disconnected is published
        self._session_open = False
        self._current_delay = reconnect_delay
        self._running = False
        self._task: asyncio.Task | None = None
        self._keepalive_task: asyncio.Task | None = None
        self._first_attempt = asyncio.Event()
        self._on_connected: list[LifecycleListener] = []
        self._on_disconnected: list[LifecycleListener] = []

    @property
    def connected(self) -> bool:
        return self.state is SupervisorState.CONNECTED

    def add_listener(
        self,
        on_connected: Optional[LifecycleListener] = None,
        on_disconnected: Optional[LifecycleListener] = None,
    ) -> None:
        if on_connected:
            self._on_connected.append(on_connected)
        if on_disconnected:
            self._on_disconnected.append(on_disconnected)

    def _log(self, message: str, level: str = "info"):
        """Log a message through callback or fallback to the module logger."""
        if self.log_callback:
            self.log_callback(message, level)
        else:
            logger.log(LOG_LEVELS.get(level, logging.INFO), message)

    async def start(self) -> None:
        """Begin supervising. Returns after the first connection attempt."""
        if self._task and not self._task.done():
            return
        self._running = True
        self._first_attempt.clear()
        self._task = asyncio.create_task(self._supervise())
        await self._first_attempt.wait()

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._stop_keepalive()
        try:
            await self.transport.close()
        except Exception as e:
            logger.debug("Error closing transport: %s", e)
        self.state = SupervisorState.DISCONNECTED
        self._publish_disconnected()

    async def _supervise(self) -> None:
        while self._running:
            self.state = SupervisorState.CONNECTING
            started = time.monotonic()
            try:
                await self._session()
                self.last_error = "connection closed"
            except asyncio.CancelledError:
                raise
            except TransportError as e:
                self.last_error = str(e)
            except Exception as e:
                logger.exception("Unexpected session error")
                self.last_error = f"{type(e).__name__}: {e}"
            finally:
                self._first_attempt.set()
                await self._stop_keepalive()

            self.state = SupervisorState.DISCONNECTED
            try:
                await self.transport.close()
            except Exception as e:
                logger.debug("Error closing transport: %s", e)
            # Signals may have been handled before the snapshot arrived, so
            # any session that opened counts, connected or not
            self._publish_disconnected()

            if not self._running:
                break

            delay = self._next_delay(time.monotonic() - started)
            self._log(f"Reconnecting in {delay:g}s... ({self.last_error})", "warn")
            await asyncio.sleep(delay)

    async def _session(self) -> None:
        """One connection lifetime. Returns or raises when it ends."""
        self._log("Connecting to session...", "info")
        await self.transport.connect()
        self._session_open = True

        pump = asyncio.create_task(self._pump())
        snapshot_wait = asyncio.create_task(self.transport.wait_for_snapshot(self.snapshot_timeout))
        try:
            await asyncio.wait({pump, snapshot_wait}, return_when=asyncio.FIRST_COMPLETED)
            if pump.done():
                # Dropped before the snapshot; surface the pump's error
                await pump
                return
            if not snapshot_wait.result():
                self._log(
                    f"No state snapshot within {self.snapshot_timeout:g}s, continuing without it",
                    "warn",
                )

            self.state = SupervisorState.CONNECTED
            self.connect_count += 1
            self._log("Connected to session", "success")
            self._first_attempt.set()
            self._publish(self._on_connected, "connected")
            self._keepalive_task = asyncio.create_task(self._keepalive_loop())

            await pump
        finally:
            snapshot_wait.cancel()
            if not pump.done():
                pump.cancel()
                try:
                    await pump
                except asyncio.CancelledError:
                    pass

    async def _pump(self) -> None:
        async for signal in self.transport.signals():
            try:
                await self.on_signal(signal)
            except Exception:
                logger.exception("Error handling %s signal", signal.kind.value)

    async def _keepalive_loop(self) -> None:
        """Ping on a fixed interval; failures are left to the receive loop."""
        while self._running and self.connected:
            await asyncio.sleep(self.keepalive_interval)
            try:
                await self.transport.ping()
                logger.debug("Keepalive sent")
            except Exception as e:
                logger.warning(f"Keepalive failed: {e}")

    async def _stop_keepalive(self) -> None:
        task, self._keepalive_task = self._keepalive_task, None
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _next_delay(self, uptime: float) -> float:
        if self.backoff == "fixed":
            return self.reconnect_delay
        # Only reset the backoff if the connection actually stayed up for a while
        if uptime > 30:
            self._current_delay = self.reconnect_delay
        delay = self._current_delay
        self._current_delay = min(self._current_delay * 2, self.max_reconnect_delay)
        return delay

    def _publish_disconnected(self) -> None:
        if self._session_open:
            self._session_open = False
            self._publish(self._on_disconnected, "disconnected")

    def _publish(self, listeners: list[LifecycleListener], what: str) -> None:
        for listener in listeners:
            try:
                listener()
            except Exception:
                logger.exception("Error in %s listener", what)
