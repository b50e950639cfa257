"""
Tests for EventNormalizer.

Covers the join/leave scenarios the relay must get right:
- Join -> identity resolves -> Leave yields [Join, Leave] with the name
- A duplicate join produces a single Join event
- A late leave after a disconnect produces nothing
- Malformed signals are dropped without raising
"""

import asyncio

import pytest

from presence_relay.models import EventKind, Identity, Signal, SignalKind
from presence_relay.normalizer import EventNormalizer, extract_session_id
from presence_relay.errors import MalformedSignalError
from presence_relay.presence import PresenceTable


class Harness:
    """Normalizer wired to a list instead of a delivery queue."""

    def __init__(self, timeout: float = 0.2):
        self.snapshot: dict[str, Identity] = {}
        self.table = PresenceTable(lookup=self.snapshot.get, resolve_timeout=timeout, poll_interval=0.01)
        self.events = []
        self.normalizer = EventNormalizer(self.table, emit=self.events.append)

    def disconnect(self):
        self.normalizer.reset()
        self.table.clear_all()

    def summary(self):
        return [(e.kind, e.session_id, e.identity.name) for e in self.events]


class TestExtractSessionId:
    """Tests for identifier extraction."""

    def test_accepts_known_keys(self):
        assert extract_session_id({"playerId": "abc"}) == "abc"
        assert extract_session_id({"encId": "xyz"}) == "xyz"
        assert extract_session_id({"id": 42}) == "42"

    def test_rejects_missing_identifier(self):
        with pytest.raises(MalformedSignalError):
            extract_session_id({"event": "playerJoins"})

    def test_rejects_non_object(self):
        with pytest.raises(MalformedSignalError):
            extract_session_id(["playerId", "abc"])

    def test_rejects_blank_and_bool(self):
        with pytest.raises(MalformedSignalError):
            extract_session_id({"playerId": "   "})
        with pytest.raises(MalformedSignalError):
            extract_session_id({"playerId": True})


class TestScenarios:
    """End-to-end signal sequences."""

    @pytest.mark.asyncio
    async def test_join_resolve_leave(self):
        """Join(42) -> identity Ada -> Leave(42) gives [Join Ada, Leave Ada]."""
        h = Harness(timeout=2.0)
        await h.normalizer.handle_join_signal({"playerId": 42})
        h.normalizer.handle_identity_signal({"playerId": 42, "name": "Ada"})
        await h.normalizer.drain()
        await h.normalizer.handle_leave_signal({"playerId": 42})

        assert h.summary() == [
            (EventKind.JOIN, "42", "Ada"),
            (EventKind.LEAVE, "42", "Ada"),
        ]
        assert h.events[0].timestamp <= h.events[1].timestamp

    @pytest.mark.asyncio
    async def test_duplicate_join(self):
        """Join(7) twice before any leave gives exactly one Join."""
        h = Harness()
        await h.normalizer.handle_join_signal({"playerId": 7})
        await h.normalizer.handle_join_signal({"playerId": 7})
        await h.normalizer.drain()

        assert h.summary() == [(EventKind.JOIN, "7", "unknown")]
        assert h.normalizer.dropped == 1

    @pytest.mark.asyncio
    async def test_duplicate_join_after_resolution(self):
        h = Harness(timeout=0.01)
        await h.normalizer.handle_join_signal({"playerId": 7})
        await h.normalizer.drain()
        await h.normalizer.handle_join_signal({"playerId": 7})
        await h.normalizer.drain()

        assert [e.kind for e in h.events] == [EventKind.JOIN]

    @pytest.mark.asyncio
    async def test_late_leave_after_disconnect(self):
        """Join(9) -> disconnect -> late Leave(9) gives no Leave."""
        h = Harness(timeout=0.01)
        await h.normalizer.handle_join_signal({"playerId": 9})
        await h.normalizer.drain()
        assert len(h.events) == 1

        h.disconnect()
        await h.normalizer.handle_leave_signal({"playerId": 9})

        assert len(h.events) == 1
        assert h.events[0].kind is EventKind.JOIN

    @pytest.mark.asyncio
    async def test_disconnect_during_resolution_drops_join(self):
        h = Harness(timeout=2.0)
        await h.normalizer.handle_join_signal({"playerId": 9})
        await asyncio.sleep(0.02)

        h.disconnect()
        await h.normalizer.handle_leave_signal({"playerId": 9})
        await h.normalizer.drain()

        assert h.events == []

    @pytest.mark.asyncio
    async def test_leave_during_resolution_emits_join_first(self):
        """A quick leave still produces the join, then the leave."""
        h = Harness(timeout=5.0)
        await h.normalizer.handle_join_signal({"playerId": 3})
        await asyncio.sleep(0.02)
        await asyncio.wait_for(h.normalizer.handle_leave_signal({"playerId": 3}), timeout=1.0)

        assert [e.kind for e in h.events] == [EventKind.JOIN, EventKind.LEAVE]
        assert "3" not in h.table

    @pytest.mark.asyncio
    async def test_leave_without_join_is_dropped(self):
        h = Harness()
        result = await h.normalizer.handle_leave_signal({"playerId": "ghost"})

        assert result is None
        assert h.events == []

    @pytest.mark.asyncio
    async def test_rejoin_after_leave_emits_again(self):
        h = Harness(timeout=0.01)
        for _ in range(2):
            await h.normalizer.handle_join_signal({"playerId": 5})
            await h.normalizer.drain()
            await h.normalizer.handle_leave_signal({"playerId": 5})

        assert [e.kind for e in h.events] == [
            EventKind.JOIN, EventKind.LEAVE, EventKind.JOIN, EventKind.LEAVE,
        ]

    @pytest.mark.asyncio
    async def test_identity_timeout_still_emits(self):
        h = Harness(timeout=0.05)
        await h.normalizer.handle_join_signal({"playerId": 1})
        await h.normalizer.drain()

        assert h.summary() == [(EventKind.JOIN, "1", "unknown")]

    @pytest.mark.asyncio
    async def test_identity_from_snapshot_signal(self):
        h = Harness(timeout=2.0)
        h.normalizer.handle_snapshot_signal({"players": {"12": {"name": "Hopper", "userId": "u12"}}})
        await h.normalizer.handle_join_signal({"playerId": "12"})
        await h.normalizer.drain()

        assert h.events[0].identity == Identity(durable_id="u12", name="Hopper")

    @pytest.mark.asyncio
    async def test_snapshot_name_not_reused_after_leave(self):
        """Snapshot names Ada for slot 5; she leaves; the next occupant is unknown."""
        h = Harness(timeout=0.05)
        h.normalizer.handle_snapshot_signal({"players": {"5": {"name": "Ada"}}})
        await h.normalizer.handle_leave_signal({"playerId": "5"})
        await h.normalizer.handle_join_signal({"playerId": "5"})
        await h.normalizer.drain()

        assert h.summary() == [(EventKind.JOIN, "5", "unknown")]


class TestJoinCounting:
    """Joins never exceed joins-while-absent, for arbitrary sequences."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("sequence", [
        "JJLJ",
        "LLJJJL",
        "JLJLJL",
        "JJJJ",
        "LJLLJJL",
    ])
    async def test_join_count_bounded(self, sequence):
        h = Harness(timeout=0.01)
        present = False
        joins_while_absent = 0
        for step in sequence:
            if step == "J":
                if not present:
                    joins_while_absent += 1
                present = True
                await h.normalizer.handle_join_signal({"playerId": "x"})
                await h.normalizer.drain()
            else:
                present = False
                await h.normalizer.handle_leave_signal({"playerId": "x"})

        joins = [e for e in h.events if e.kind is EventKind.JOIN]
        leaves = [e for e in h.events if e.kind is EventKind.LEAVE]
        assert len(joins) == joins_while_absent
        assert len(leaves) <= len(joins)


class TestMalformedSignals:
    """Malformed payloads are logged and dropped."""

    @pytest.mark.asyncio
    async def test_malformed_join_and_leave(self):
        h = Harness()
        assert await h.normalizer.handle_join_signal({"event": "playerJoins"}) is None
        assert await h.normalizer.handle_leave_signal("not a dict") is None
        h.normalizer.handle_identity_signal({})
        h.normalizer.handle_snapshot_signal({"players": "nope"})

        assert h.events == []
        assert h.normalizer.dropped == 3

    @pytest.mark.asyncio
    async def test_dispatch_routes_by_kind(self):
        h = Harness(timeout=2.0)
        await h.normalizer.dispatch(Signal(SignalKind.JOIN, {"playerId": "a"}))
        await h.normalizer.dispatch(Signal(SignalKind.IDENTITY, {"playerId": "a", "name": "Alan"}))
        await h.normalizer.drain()
        await h.normalizer.dispatch(Signal(SignalKind.LEAVE, {"playerId": "a"}))

        assert h.summary() == [
            (EventKind.JOIN, "a", "Alan"),
            (EventKind.LEAVE, "a", "Alan"),
        ]
