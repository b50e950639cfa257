"""In-memory presence state.

Maps session-scoped identifiers to identity metadata. Identity often shows
up after the join signal (or before it), so entries start out RESOLVING and
become ACTIVE once a name is known or the resolution wait runs out.

All mutating methods are synchronous and must be called from the event loop
thread; that keeps them serialized without a lock.
"""

import asyncio
import logging
from typing import Callable, Iterator, Optional

from .models import EntryState, Identity, PresenceEntry

logger = logging.getLogger(__name__)

DEFAULT_RESOLVE_TIMEOUT = 4.5
DEFAULT_POLL_INTERVAL = 0.1


class PresenceTable:
    """Tracks who is currently in the session."""

    def __init__(
        self,
        lookup: Optional[Callable[[str], Optional[Identity]]] = None,
        resolve_timeout: float = DEFAULT_RESOLVE_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.lookup = lookup
        self.resolve_timeout = resolve_timeout
        self.poll_interval = poll_interval
        self.epoch = 0

        self._entries: dict[str, PresenceEntry] = {}
        # Identities announced before the matching join was processed
        self._provisional: dict[str, Identity] = {}
        self._wakeups: dict[str, asyncio.Event] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._entries

    def get(self, session_id: str) -> Optional[PresenceEntry]:
        return self._entries.get(session_id)

    def active_entries(self) -> Iterator[PresenceEntry]:
        return (e for e in self._entries.values() if e.is_active)

    def on_join(self, session_id: str) -> Optional[PresenceEntry]:
        """Register a join. Returns None if the identifier is already present."""
        if session_id in self._entries:
            logger.debug("Duplicate join for %s ignored", session_id)
            return None

        identity = self._provisional.pop(session_id, Identity.unknown())
        entry = PresenceEntry(
            session_id=session_id,
            identity=identity,
            state=EntryState.RESOLVING,
            epoch=self.epoch,
        )
        self._entries[session_id] = entry
        self._wakeups[session_id] = asyncio.Event()
        self._refresh(entry)
        return entry

    def on_identity_announced(self, session_id: str, identity: Identity) -> None:
        entry = self._entries.get(session_id)
        if entry is None:
            cached = self._provisional.get(session_id, Identity.unknown())
            self._provisional[session_id] = cached.merge(identity)
            return

        entry.identity = entry.identity.merge(identity)
        wake = self._wakeups.get(session_id)
        if wake is not None:
            wake.set()

    def finish(self, session_id: str) -> Optional[PresenceEntry]:
        """Stop waiting for identity and mark the entry ACTIVE right away."""
        entry = self._entries.get(session_id)
        if entry is None:
            return None
        if entry.state is EntryState.RESOLVING:
            self._refresh(entry)
            entry.state = EntryState.ACTIVE
            wake = self._wakeups.pop(session_id, None)
            if wake is not None:
                wake.set()
        return entry

    async def resolve(
        self,
        entry: PresenceEntry,
        timeout: Optional[float] = None,
    ) -> Optional[PresenceEntry]:
        """Wait (bounded) for the entry's identity to become known.

        Returns the now ACTIVE entry, or None if the entry was removed while
        waiting (leave during resolution or a disconnect clear).
        """
        timeout = self.resolve_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        wake = self._wakeups.get(entry.session_id)

        while True:
            if not self._is_current(entry):
                return None
            if entry.state is EntryState.ACTIVE:
                return entry

            self._refresh(entry)
            if entry.identity.is_resolved:
                break

            remaining = deadline - loop.time()
            if remaining <= 0 or wake is None:
                logger.info(
                    "Identity for %s not resolved after %.1fs, using '%s'",
                    entry.session_id, timeout, entry.identity.name,
                )
                break

            wake.clear()
            try:
                await asyncio.wait_for(wake.wait(), timeout=min(self.poll_interval, remaining))
            except asyncio.TimeoutError:
                pass

        if not self._is_current(entry):
            return None
        entry.state = EntryState.ACTIVE
        self._wakeups.pop(entry.session_id, None)
        return entry

    def on_leave(self, session_id: str) -> Optional[PresenceEntry]:
        """Remove and return the ACTIVE entry for session_id, if any."""
        # Slot ids are recycled; the next occupant must not inherit this identity
        self._provisional.pop(session_id, None)
        entry = self._entries.get(session_id)
        if entry is None:
            return None

        del self._entries[session_id]
        wake = self._wakeups.pop(session_id, None)
        if wake is not None:
            wake.set()

        if not entry.is_active:
            # Leave raced an unfinished join; neither side produces an event
            logger.debug("Leave for %s arrived while still resolving", session_id)
            return None
        return entry

    def clear_all(self) -> int:
        """Drop everything. Session identifiers do not survive a reconnect."""
        count = len(self._entries)
        self._entries.clear()
        self._provisional.clear()
        self.epoch += 1
        for wake in self._wakeups.values():
            wake.set()
        self._wakeups.clear()
        if count:
            logger.info("Cleared %d presence entries (epoch %d)", count, self.epoch)
        return count

    def _is_current(self, entry: PresenceEntry) -> bool:
        return self._entries.get(entry.session_id) is entry

    def _refresh(self, entry: PresenceEntry) -> None:
        if self.lookup is None or entry.identity.is_resolved:
            return
        try:
            found = self.lookup(entry.session_id)
        except Exception as e:
            logger.warning("Identity lookup failed for %s: %s", entry.session_id, e)
            return
        if found is not None:
            entry.identity = entry.identity.merge(found)
