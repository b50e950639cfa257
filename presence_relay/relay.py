"""The relay: wires supervisor, presence table, normalizer and queues together."""

import logging
from dataclasses import dataclass
from typing import Any, Sequence

from .delivery import DeliveryQueue, FlushReport
from .models import Event
from .normalizer import EventNormalizer
from .presence import DEFAULT_RESOLVE_TIMEOUT, PresenceTable
from .sinks import SinkAdapter
from .supervisor import ConnectionSupervisor
from .transport import SessionTransport

logger = logging.getLogger(__name__)


@dataclass
class SinkRoute:
    """A sink and how often its queue is flushed."""
    sink: SinkAdapter
    flush_interval: float


class PresenceRelay:
    """
    Single owner of all relay state.

    Sinks that share a flush interval share a DeliveryQueue, so a low-latency
    webhook and a slow append log can run side by side.
    """

    def __init__(
        self,
        transport: SessionTransport,
        routes: Sequence[SinkRoute],
        identity_timeout: float = DEFAULT_RESOLVE_TIMEOUT,
        poll_interval: float = 0.1,
        **supervisor_options: Any,
    ):
        self.transport = transport
        self.table = PresenceTable(
            lookup=transport.lookup,
            resolve_timeout=identity_timeout,
            poll_interval=poll_interval,
        )
        self.normalizer = EventNormalizer(self.table, emit=self._fan_out)

        names = [route.sink.name for route in routes]
        if len(set(names)) != len(names):
            raise ValueError(f"Sink names must be unique: {names}")

        self.queues: list[tuple[DeliveryQueue, float]] = []
        by_interval: dict[float, list[SinkAdapter]] = {}
        for route in routes:
            by_interval.setdefault(route.flush_interval, []).append(route.sink)
        for interval, sinks in sorted(by_interval.items()):
            name = "+".join(s.name for s in sinks)
            self.queues.append((DeliveryQueue(sinks, name=name), interval))

        self.supervisor = ConnectionSupervisor(
            transport,
            on_signal=self.normalizer.dispatch,
            **supervisor_options,
        )
        self.supervisor.add_listener(
            on_connected=self._on_connected,
            on_disconnected=self._on_disconnected,
        )

    @property
    def sinks(self) -> list[SinkAdapter]:
        return [s for queue, _ in self.queues for s in queue.sinks]

    async def start(self) -> None:
        for queue, interval in self.queues:
            queue.start(interval)
            logger.info("Flushing %s every %gs", queue.name, interval)
        await self.supervisor.start()

    async def stop(self) -> None:
        """Disconnect, then give every queue one last flush."""
        # Joins still resolving are emitted before the disconnect clears them
        await self.normalizer.complete_pending()
        await self.supervisor.stop()
        await self.normalizer.drain()
        for queue, _ in self.queues:
            report = await queue.stop(final_flush=True)
            if report and report.failed:
                lost = sum(report.failed.values())
                logger.error("Shutting down with %d undelivered events in %s", lost, queue.name)
        for sink in self.sinks:
            try:
                await sink.close()
            except Exception as e:
                logger.debug("Error closing sink %s: %s", sink.name, e)

    async def flush(self) -> list[FlushReport]:
        return [await queue.flush() for queue, _ in self.queues]

    def queued_events(self) -> list[Event]:
        events: list[Event] = []
        seen: set[int] = set()
        for queue, _ in self.queues:
            for event in queue.snapshot():
                if id(event) not in seen:
                    seen.add(id(event))
                    events.append(event)
        events.sort(key=lambda e: e.timestamp)
        return events

    def status(self) -> dict[str, Any]:
        return {
            "state": self.supervisor.state.value,
            "connected": self.supervisor.connected,
            "connect_count": self.supervisor.connect_count,
            "last_error": self.supervisor.last_error or None,
            "present": len(self.table),
            "events_emitted": self.normalizer.emitted,
            "signals_dropped": self.normalizer.dropped,
            "queued": len(self.queued_events()),
            "sink_failures": {
                name: count for queue, _ in self.queues for name, count in queue.failures.items()
            },
        }

    def _fan_out(self, event: Event) -> None:
        for queue, _ in self.queues:
            queue.enqueue(event)

    def _on_connected(self) -> None:
        logger.info("Session connected (connection #%d)", self.supervisor.connect_count)

    def _on_disconnected(self) -> None:
        self.normalizer.reset()
        self.table.clear_all()

