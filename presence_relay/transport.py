"""Upstream session transport.

The relay only needs a handful of things from the session: connect, close,
ping, a stream of decoded signals, a way to wait for the initial state
snapshot, and an identity lookup backed by that snapshot. GatherTransport
provides them over the Gather WebSocket API.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Optional
from urllib.parse import urlencode

import websockets

from .errors import MalformedSignalError, TransportError
from .models import Identity, Signal, SignalKind
from .normalizer import extract_identity, extract_session_id

logger = logging.getLogger(__name__)

DEFAULT_GATHER_URL = "wss://gather.town/api"

# Gather event name -> signal kind
EVENT_KINDS = {
    "playerJoins": SignalKind.JOIN,
    "playerExits": SignalKind.LEAVE,
    "playerSetsName": SignalKind.IDENTITY,
    "playerInfo": SignalKind.IDENTITY,
    "init": SignalKind.SNAPSHOT,
    "snapshot": SignalKind.SNAPSHOT,
}


class SessionTransport(ABC):
    """What the supervisor needs from an upstream session."""

    @abstractmethod
    async def connect(self) -> None:
        """Open the session. Raises TransportError on failure."""

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def ping(self) -> None:
        """Keepalive. Raises TransportError if the session does not answer."""

    @abstractmethod
    def signals(self) -> AsyncIterator[Signal]:
        """Yield signals until the session drops (TransportError) or closes."""

    @abstractmethod
    async def wait_for_snapshot(self, timeout: float) -> bool:
        """Wait until the initial state snapshot arrived. False on timeout."""

    @abstractmethod
    def lookup(self, session_id: str) -> Optional[Identity]:
        """Identity known for session_id in the current snapshot, if any."""


def decode_message(data: Any) -> Optional[Signal]:
    """Map a decoded Gather message to a Signal; None for events we ignore."""
    if not isinstance(data, dict):
        return None
    kind = EVENT_KINDS.get(data.get("event"))
    if kind is None:
        return None
    return Signal(kind=kind, payload=data)


class GatherTransport(SessionTransport):
    """WebSocket connection to a Gather space."""

    def __init__(
        self,
        api_key: str,
        space_id: str,
        base_url: str = DEFAULT_GATHER_URL,
        ping_timeout: float = 10.0,
    ):
        self.api_key = api_key
        self.space_id = space_id
        self.base_url = base_url
        self.ping_timeout = ping_timeout

        self.ws = None
        self._players: dict[str, Identity] = {}
        self._snapshot_ready = asyncio.Event()

    @property
    def url(self) -> str:
        query = urlencode({"apiKey": self.api_key, "spaceId": self.space_id})
        return f"{self.base_url}?{query}"

    async def connect(self) -> None:
        self._players.clear()
        self._snapshot_ready.clear()
        try:
            # Keepalive is driven by the supervisor
            self.ws = await websockets.connect(self.url, ping_interval=None)
        except websockets.exceptions.InvalidStatus as e:
            raise TransportError(f"Connection rejected: HTTP {e.response.status_code}") from e
        except websockets.exceptions.InvalidURI as e:
            raise TransportError(f"Invalid Gather URL: {e}") from e
        except websockets.exceptions.InvalidHandshake as e:
            raise TransportError(f"Handshake failed: {e}") from e
        except OSError as e:
            raise TransportError(f"Network error: {e}") from e

    async def close(self) -> None:
        ws, self.ws = self.ws, None
        if ws is not None:
            await ws.close()

    async def ping(self) -> None:
        ws = self.ws
        if ws is None:
            raise TransportError("Not connected")
        try:
            pong = await ws.ping()
            await asyncio.wait_for(pong, timeout=self.ping_timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(f"No pong within {self.ping_timeout}s") from e
        except websockets.ConnectionClosed as e:
            raise TransportError(f"Connection closed: {e}") from e

    async def signals(self) -> AsyncIterator[Signal]:
        ws = self.ws
        if ws is None:
            raise TransportError("Not connected")
        try:
            async for message in ws:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON received from Gather")
                    continue
                signal = decode_message(data)
                if signal is None:
                    logger.debug("Ignoring Gather event %r", data.get("event") if isinstance(data, dict) else data)
                    continue
                self._observe(signal)
                yield signal
        except websockets.ConnectionClosed as e:
            raise TransportError(f"Connection closed: {e}") from e

    async def wait_for_snapshot(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._snapshot_ready.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def lookup(self, session_id: str) -> Optional[Identity]:
        return self._players.get(session_id)

    def _observe(self, signal: Signal) -> None:
        payload = signal.payload
        if signal.kind is SignalKind.SNAPSHOT:
            players = payload.get("players")
            if isinstance(players, dict):
                for session_id, info in players.items():
                    if isinstance(info, dict):
                        self._remember(str(session_id), extract_identity(info))
            self._snapshot_ready.set()
            return

        try:
            session_id = extract_session_id(payload)
        except MalformedSignalError:
            return
        if signal.kind is SignalKind.IDENTITY:
            self._remember(session_id, extract_identity(payload))
        elif signal.kind is SignalKind.LEAVE:
            # Slot ids are recycled; don't hand this name to the next occupant
            self._players.pop(session_id, None)

    def _remember(self, session_id: str, identity: Identity) -> None:
        current = self._players.get(session_id, Identity.unknown())
        self._players[session_id] = current.merge(identity)
