"""Records passed between the relay components."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

UNKNOWN_NAME = "unknown"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Identity:
    """Durable participant attributes."""
    durable_id: Optional[str] = None
    name: str = UNKNOWN_NAME

    @classmethod
    def unknown(cls) -> "Identity":
        return cls()

    @property
    def is_resolved(self) -> bool:
        return bool(self.name) and self.name != UNKNOWN_NAME

    def merge(self, other: "Identity") -> "Identity":
        """Fill gaps in this identity from another one."""
        return Identity(
            durable_id=other.durable_id or self.durable_id,
            name=other.name if other.is_resolved else self.name,
        )


class EventKind(str, Enum):
    JOIN = "join"
    LEAVE = "leave"


@dataclass(frozen=True)
class Event:
    """Canonical presence event.

    The timestamp is taken when the signal is normalized and survives any
    number of delivery retries unchanged.
    """
    kind: EventKind
    session_id: str
    identity: Identity = field(default_factory=Identity.unknown)
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def dedup_key(self) -> tuple[str, str, str]:
        return (self.session_id, self.kind.value, self.timestamp.isoformat())

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "identifier": self.session_id,
            "kind": self.kind.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.identity.is_resolved:
            data["identityName"] = self.identity.name
        if self.identity.durable_id:
            data["userId"] = self.identity.durable_id
        return data


class EntryState(str, Enum):
    RESOLVING = "resolving"
    ACTIVE = "active"


@dataclass
class PresenceEntry:
    """A participant currently present in the session."""
    session_id: str
    identity: Identity = field(default_factory=Identity.unknown)
    joined_at: datetime = field(default_factory=utc_now)
    state: EntryState = EntryState.RESOLVING
    epoch: int = 0

    @property
    def is_active(self) -> bool:
        return self.state is EntryState.ACTIVE


class SignalKind(str, Enum):
    JOIN = "join"
    LEAVE = "leave"
    IDENTITY = "identity"
    SNAPSHOT = "snapshot"


@dataclass(frozen=True)
class Signal:
    """A decoded message from the session transport."""
    kind: SignalKind
    payload: dict[str, Any] = field(default_factory=dict)
