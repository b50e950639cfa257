"""Batching delivery queue.

Events are appended in arrival order and handed to every sink on flush.
A sink whose delivery fails keeps its failed events (the whole batch unless
the sink reports which ones failed), put in front of anything that arrived
afterwards and retried on the next flush. Sink names key the per-sink state,
so they must be unique within a queue. Nothing is written to disk: events
still queued when the process dies are lost.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from .errors import SinkError
from .models import Event
from .sinks import SinkAdapter

logger = logging.getLogger(__name__)


@dataclass
class FlushReport:
    """Outcome of one flush."""
    delivered: dict[str, int] = field(default_factory=dict)
    failed: dict[str, int] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class DeliveryQueue:
    """In-memory queue that flushes to one or more sinks."""

    def __init__(self, sinks: Sequence[SinkAdapter], name: str = "queue"):
        self.name = name
        self.sinks = list(sinks)
        names = [s.name for s in self.sinks]
        if len(set(names)) != len(names):
            raise ValueError(f"Sink names must be unique within a queue: {names}")
        self.failures: dict[str, int] = {s.name: 0 for s in self.sinks}

        self._live: list[Event] = []
        # Batches that failed per sink, retried ahead of newer events
        self._pending: dict[str, list[Event]] = {s.name: [] for s in self.sinks}
        self._flush_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._running = False

    def __len__(self) -> int:
        return len(self.snapshot())

    def enqueue(self, event: Event) -> None:
        self._live.append(event)

    def pending(self, sink_name: str) -> list[Event]:
        return list(self._pending.get(sink_name, []))

    def snapshot(self) -> list[Event]:
        """Everything not yet delivered to every sink, oldest first."""
        seen: set[int] = set()
        events: list[Event] = []
        for batch in list(self._pending.values()) + [self._live]:
            for event in batch:
                if id(event) not in seen:
                    seen.add(id(event))
                    events.append(event)
        events.sort(key=lambda e: e.timestamp)
        return events

    async def flush(self) -> FlushReport:
        """Deliver queued events to every sink.

        The live queue is swapped out before the first await, so producers
        keep appending while sinks are busy.
        """
        async with self._flush_lock:
            taken, self._live = self._live, []

            batches = {}
            for sink in self.sinks:
                batch = self._pending[sink.name] + taken
                self._pending[sink.name] = []
                if batch:
                    batches[sink.name] = batch

            report = FlushReport()
            if not batches:
                return report

            sinks = [s for s in self.sinks if s.name in batches]
            results = await asyncio.gather(
                *(self._deliver(s, batches[s.name]) for s in sinks),
                return_exceptions=True,
            )

            for sink, result in zip(sinks, results):
                batch = batches[sink.name]
                if result is None:
                    report.delivered[sink.name] = len(batch)
                    continue
                if isinstance(result, asyncio.CancelledError):
                    raise result
                retry = batch if result.events is None else result.events
                # Failed events go back in front of events that arrived meanwhile
                self._pending[sink.name] = retry + self._pending[sink.name]
                self.failures[sink.name] += 1
                report.failed[sink.name] = len(retry)
                if len(retry) < len(batch):
                    report.delivered[sink.name] = len(batch) - len(retry)
                logger.warning(
                    "Delivery of %d/%d events to %s failed (%s); will retry",
                    len(retry), len(batch), sink.name, result,
                )

            if report.delivered:
                logger.info(
                    "Flushed %s",
                    ", ".join(f"{n} events to {s}" for s, n in report.delivered.items()),
                )
            return report

    async def _deliver(self, sink: SinkAdapter, batch: list[Event]) -> None:
        try:
            await sink.deliver(batch)
        except SinkError:
            raise
        except Exception as e:
            raise SinkError(sink.name, f"{type(e).__name__}: {e}", failed=len(batch)) from e

    def start(self, interval: float) -> None:
        """Flush every ``interval`` seconds in the background."""
        if self._task and not self._task.done():
            return
        self._running = True
        self._task = asyncio.create_task(self.run(interval))

    async def run(self, interval: float) -> None:
        while self._running:
            await asyncio.sleep(interval)
            try:
                await self.flush()
            except Exception:
                logger.exception("Flush of %s failed", self.name)

    async def stop(self, final_flush: bool = True) -> Optional[FlushReport]:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if final_flush:
            return await self.flush()
        return None
