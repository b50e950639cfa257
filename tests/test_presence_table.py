"""
Tests for PresenceTable.

These cover the presence-state rules the relay relies on for deduplication:
1. At most one entry per session identifier
2. Leave only returns ACTIVE entries
3. Identity resolution is bounded and falls back to "unknown"
4. A bulk clear makes pending resolutions moot
"""

import asyncio
import time

import pytest

from presence_relay.models import EntryState, Identity
from presence_relay.presence import PresenceTable


def make_table(lookup=None, timeout: float = 0.3) -> PresenceTable:
    return PresenceTable(lookup=lookup, resolve_timeout=timeout, poll_interval=0.01)


class TestJoin:
    """Tests for on_join."""

    @pytest.mark.asyncio
    async def test_creates_resolving_entry(self):
        table = make_table()
        entry = table.on_join("42")

        assert entry is not None
        assert entry.state is EntryState.RESOLVING
        assert entry.identity == Identity.unknown()
        assert "42" in table

    @pytest.mark.asyncio
    async def test_second_join_is_noop(self):
        table = make_table()
        first = table.on_join("7")
        second = table.on_join("7")

        assert first is not None
        assert second is None
        assert len(table) == 1
        assert table.get("7") is first

    @pytest.mark.asyncio
    async def test_join_uses_provisional_identity(self):
        """Identity announced before the join is picked up by the join."""
        table = make_table()
        table.on_identity_announced("5", Identity(durable_id="u-5", name="Grace"))
        assert "5" not in table

        entry = table.on_join("5")
        assert entry.identity.name == "Grace"
        assert entry.identity.durable_id == "u-5"


class TestResolve:
    """Tests for the bounded identity wait."""

    @pytest.mark.asyncio
    async def test_resolves_from_announcement(self):
        table = make_table(timeout=2.0)
        entry = table.on_join("42")

        async def announce():
            await asyncio.sleep(0.05)
            table.on_identity_announced("42", Identity(name="Ada"))

        asyncio.create_task(announce())
        start = time.time()
        resolved = await table.resolve(entry)
        elapsed = time.time() - start

        assert resolved is entry
        assert resolved.state is EntryState.ACTIVE
        assert resolved.identity.name == "Ada"
        assert elapsed < 1.0, "Should wake up on the announcement, not wait out the timeout"

    @pytest.mark.asyncio
    async def test_resolves_from_snapshot_lookup(self):
        snapshot: dict[str, Identity] = {}
        table = make_table(lookup=snapshot.get, timeout=2.0)
        entry = table.on_join("9")

        async def fill_snapshot():
            await asyncio.sleep(0.05)
            snapshot["9"] = Identity(durable_id="abc", name="Linus")

        asyncio.create_task(fill_snapshot())
        resolved = await table.resolve(entry)

        assert resolved.identity == Identity(durable_id="abc", name="Linus")

    @pytest.mark.asyncio
    async def test_timeout_falls_back_to_unknown(self):
        table = make_table(timeout=0.1)
        entry = table.on_join("3")

        start = time.time()
        resolved = await table.resolve(entry)
        elapsed = time.time() - start

        assert resolved is entry
        assert resolved.state is EntryState.ACTIVE
        assert resolved.identity.name == "unknown"
        assert 0.09 <= elapsed < 1.0

    @pytest.mark.asyncio
    async def test_lookup_errors_are_not_fatal(self):
        def broken_lookup(session_id):
            raise RuntimeError("snapshot unavailable")

        table = make_table(lookup=broken_lookup, timeout=0.05)
        entry = table.on_join("1")
        resolved = await table.resolve(entry)

        assert resolved.identity.name == "unknown"

    @pytest.mark.asyncio
    async def test_clear_during_resolution_is_moot(self):
        table = make_table(timeout=2.0)
        entry = table.on_join("9")
        waiter = asyncio.create_task(table.resolve(entry))
        await asyncio.sleep(0.02)

        table.clear_all()
        result = await asyncio.wait_for(waiter, timeout=1.0)

        assert result is None
        assert "9" not in table

    @pytest.mark.asyncio
    async def test_finish_short_circuits_wait(self):
        table = make_table(timeout=5.0)
        entry = table.on_join("11")
        waiter = asyncio.create_task(table.resolve(entry))
        await asyncio.sleep(0.02)

        table.finish("11")
        result = await asyncio.wait_for(waiter, timeout=1.0)

        assert result is entry
        assert entry.is_active


class TestLeave:
    """Tests for on_leave."""

    @pytest.mark.asyncio
    async def test_leave_removes_active_entry(self):
        table = make_table(timeout=0.01)
        entry = table.on_join("42")
        await table.resolve(entry)

        left = table.on_leave("42")
        assert left is entry
        assert "42" not in table

    @pytest.mark.asyncio
    async def test_leave_unknown_is_noop(self):
        table = make_table()
        assert table.on_leave("nobody") is None

    @pytest.mark.asyncio
    async def test_second_leave_is_noop(self):
        table = make_table(timeout=0.01)
        await table.resolve(table.on_join("42"))

        assert table.on_leave("42") is not None
        assert table.on_leave("42") is None

    @pytest.mark.asyncio
    async def test_leave_while_resolving_drops_both(self):
        table = make_table(timeout=2.0)
        entry = table.on_join("8")
        waiter = asyncio.create_task(table.resolve(entry))
        await asyncio.sleep(0.02)

        assert table.on_leave("8") is None
        assert await asyncio.wait_for(waiter, timeout=1.0) is None

    @pytest.mark.asyncio
    async def test_identifier_can_rejoin_after_leave(self):
        table = make_table(timeout=0.01)
        await table.resolve(table.on_join("4"))
        table.on_leave("4")

        assert table.on_join("4") is not None

    @pytest.mark.asyncio
    async def test_recycled_slot_does_not_inherit_identity(self):
        """A name cached for a slot is forgotten when that slot leaves."""
        table = make_table(timeout=0.05)
        table.on_identity_announced("5", Identity(durable_id="u-ada", name="Ada"))

        assert table.on_leave("5") is None
        entry = table.on_join("5")
        resolved = await table.resolve(entry)

        assert resolved.identity == Identity.unknown()


class TestClearAll:
    """Tests for clear_all (disconnect)."""

    @pytest.mark.asyncio
    async def test_clear_drops_everything(self):
        table = make_table(timeout=0.01)
        for sid in ("1", "2", "3"):
            await table.resolve(table.on_join(sid))
        table.on_identity_announced("4", Identity(name="Pending"))

        assert table.clear_all() == 3
        assert len(table) == 0
        assert table.epoch == 1
        # Provisional identities are gone too
        entry = table.on_join("4")
        assert entry.identity.name == "unknown"

    @pytest.mark.asyncio
    async def test_leave_after_clear_is_noop(self):
        table = make_table(timeout=0.01)
        await table.resolve(table.on_join("9"))
        table.clear_all()

        assert table.on_leave("9") is None

    @pytest.mark.asyncio
    async def test_active_entries_skips_resolving(self):
        table = make_table(timeout=0.01)
        await table.resolve(table.on_join("1"))
        table.on_join("2")

        assert [e.session_id for e in table.active_entries()] == ["1"]
