"""Turns raw transport signals into canonical presence events."""

import asyncio
import logging
from typing import Any, Callable, Optional

from .errors import MalformedSignalError
from .models import Event, EventKind, Identity, PresenceEntry, Signal, SignalKind, utc_now
from .presence import PresenceTable

logger = logging.getLogger(__name__)

ID_KEYS = ("playerId", "encId", "id")


def extract_session_id(raw: Any) -> str:
    """Pull the session identifier out of a signal payload."""
    if not isinstance(raw, dict):
        raise MalformedSignalError(f"expected an object, got {type(raw).__name__}")
    for key in ID_KEYS:
        value = raw.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return str(value)
        if isinstance(value, str) and value.strip():
            return value.strip()
    raise MalformedSignalError(f"no session identifier in {sorted(raw)}")


def extract_identity(raw: dict) -> Identity:
    name = raw.get("name")
    durable_id = raw.get("userId") or raw.get("uid")
    return Identity(
        durable_id=str(durable_id) if durable_id else None,
        name=name if isinstance(name, str) and name.strip() else Identity().name,
    )


class EventNormalizer:
    """Applies join/leave/identity signals to the presence table.

    Join resolution runs in its own task so a slow identity lookup never
    holds up the signals behind it.
    """

    def __init__(self, table: PresenceTable, emit: Callable[[Event], None]):
        self.table = table
        self.emit = emit
        self.emitted = 0
        self.dropped = 0
        self._resolving: dict[str, asyncio.Task] = {}

    async def dispatch(self, signal: Signal) -> None:
        if signal.kind is SignalKind.JOIN:
            await self.handle_join_signal(signal.payload)
        elif signal.kind is SignalKind.LEAVE:
            await self.handle_leave_signal(signal.payload)
        elif signal.kind is SignalKind.IDENTITY:
            self.handle_identity_signal(signal.payload)
        elif signal.kind is SignalKind.SNAPSHOT:
            self.handle_snapshot_signal(signal.payload)

    async def handle_join_signal(self, raw: Any) -> Optional[asyncio.Task]:
        session_id = self._session_id(raw, "join")
        if session_id is None:
            return None

        entry = self.table.on_join(session_id)
        if entry is None:
            self.dropped += 1
            return None

        task = asyncio.create_task(self._complete_join(entry))
        self._resolving[session_id] = task
        task.add_done_callback(lambda t, sid=session_id: self._forget(sid, t))
        return task

    async def handle_leave_signal(self, raw: Any) -> Optional[Event]:
        session_id = self._session_id(raw, "leave")
        if session_id is None:
            return None

        pending = self._resolving.get(session_id)
        if pending is not None:
            # Emit the join before the leave that follows it
            self.table.finish(session_id)
            await asyncio.wait({pending})

        entry = self.table.on_leave(session_id)
        if entry is None:
            logger.debug("Leave for unknown %s dropped", session_id)
            self.dropped += 1
            return None
        return self._emit(EventKind.LEAVE, entry)

    def handle_identity_signal(self, raw: Any) -> None:
        session_id = self._session_id(raw, "identity")
        if session_id is None:
            return
        self.table.on_identity_announced(session_id, extract_identity(raw))

    def handle_snapshot_signal(self, raw: Any) -> None:
        players = raw.get("players") if isinstance(raw, dict) else None
        if not isinstance(players, dict):
            logger.warning("Snapshot without a players map dropped")
            return
        for session_id, info in players.items():
            if isinstance(info, dict):
                self.table.on_identity_announced(str(session_id), extract_identity(info))

    def reset(self) -> None:
        """Cancel in-flight resolutions; their entries are already gone."""
        for task in list(self._resolving.values()):
            task.cancel()
        self._resolving.clear()

    async def complete_pending(self) -> None:
        """Finish every in-flight join now with whatever identity is known."""
        for session_id in list(self._resolving):
            self.table.finish(session_id)
        await self.drain()

    async def drain(self) -> None:
        """Wait for every in-flight join resolution to finish."""
        while self._resolving:
            await asyncio.gather(*list(self._resolving.values()), return_exceptions=True)

    async def _complete_join(self, entry: PresenceEntry) -> Optional[Event]:
        resolved = await self.table.resolve(entry)
        if resolved is None:
            logger.debug("Join for %s became moot during resolution", entry.session_id)
            return None
        return self._emit(EventKind.JOIN, resolved)

    def _emit(self, kind: EventKind, entry: PresenceEntry) -> Event:
        event = Event(
            kind=kind,
            session_id=entry.session_id,
            identity=entry.identity,
            timestamp=utc_now(),
        )
        logger.info("%s %s (%s)", kind.value, entry.session_id, entry.identity.name)
        self.emitted += 1
        self.emit(event)
        return event

    def _session_id(self, raw: Any, what: str) -> Optional[str]:
        try:
            return extract_session_id(raw)
        except MalformedSignalError as e:
            logger.warning("Malformed %s signal dropped: %s", what, e)
            self.dropped += 1
            return None

    def _forget(self, session_id: str, task: asyncio.Task) -> None:
        if self._resolving.get(session_id) is task:
            del self._resolving[session_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error("Join resolution for %s failed: %s", session_id, task.exception())
