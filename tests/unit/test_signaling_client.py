"""Unit tests for the relay and the signal relay client."""
import asyncio

import pytest

from marketcall.errors import RelayUnavailable
from marketcall.net import protocol
from marketcall.net.relay import InMemoryRelay, RelayFilter
from marketcall.net.signaling_client import SeenIds, SignalRelayClient, SignalStream

from tests.fakes import settle


async def _collect(stream, relay):
    await settle(relay)
    out = []
    while not stream._queue.empty():
        msg = stream._queue.get_nowait()
        if msg is not None:
            out.append(msg)
    return out


class TestInMemoryRelay:
    """Test the in-process relay substrate."""

    @pytest.mark.asyncio
    async def test_insert_notifies_matching_subscribers(self):
        relay = InMemoryRelay()
        seen = []

        async def on_record(record):
            seen.append(record["id"])

        await relay.subscribe_on_insert(RelayFilter(to_participant_id="bob"), on_record)
        await relay.insert({"id": "1", "to_participant_id": "bob", "session_id": "s"})
        await relay.insert({"id": "2", "to_participant_id": "carol", "session_id": "s"})
        await relay.drain()

        assert seen == ["1"]
        assert len(relay.records) == 2

    @pytest.mark.asyncio
    async def test_unavailable_relay_raises(self):
        relay = InMemoryRelay()
        relay.available = False

        with pytest.raises(RelayUnavailable):
            await relay.insert({"id": "1"})

    @pytest.mark.asyncio
    async def test_delete_by_session(self):
        relay = InMemoryRelay()
        await relay.insert({"id": "1", "session_id": "a"})
        await relay.insert({"id": "2", "session_id": "b"})

        await relay.delete(RelayFilter(session_id="a"))

        assert [r["id"] for r in relay.records] == ["2"]

    @pytest.mark.asyncio
    async def test_unsubscribed_callback_not_called(self):
        relay = InMemoryRelay()
        seen = []

        async def on_record(record):
            seen.append(record)

        sub = await relay.subscribe_on_insert(RelayFilter(), on_record)
        await sub.unsubscribe()
        await sub.unsubscribe()
        await relay.insert({"id": "1"})
        await relay.drain()

        assert seen == []
        assert relay.subscription_count == 0


class TestSignalRelayClient:
    """Test send/subscribe semantics over an at-least-once relay."""

    @pytest.mark.asyncio
    async def test_session_stream_receives_messages_for_us(self):
        relay = InMemoryRelay()
        alice = SignalRelayClient(relay, "alice")
        bob = SignalRelayClient(relay, "bob")
        stream = await bob.subscribe("conv-1")

        await alice.send(protocol.make_offer("conv-1", "alice", "bob", protocol.VOICE, "v=0"))
        await alice.send(protocol.make_offer("conv-2", "alice", "bob", protocol.VOICE, "v=0"))

        received = await _collect(stream, relay)
        assert [(m.session_id, m.kind) for m in received] == [("conv-1", "offer")]

    @pytest.mark.asyncio
    async def test_own_messages_are_not_echoed(self):
        relay = InMemoryRelay()
        alice = SignalRelayClient(relay, "alice")
        stream = await alice.subscribe_incoming()

        # A record that claims to come from us, addressed to us.
        await relay.insert(protocol.SignalingMessage("conv-1", "alice", "alice", protocol.END).to_record())

        assert await _collect(stream, relay) == []

    @pytest.mark.asyncio
    async def test_duplicate_delivery_dropped(self):
        relay = InMemoryRelay()
        alice = SignalRelayClient(relay, "alice")
        bob = SignalRelayClient(relay, "bob")
        stream = await bob.subscribe("conv-1")
        msg = protocol.make_answer("conv-1", "alice", "bob", protocol.VOICE, "v=0")

        await alice.send(msg)
        await relay.redeliver(relay.records[0])
        await relay.redeliver(relay.records[0])

        received = await _collect(stream, relay)
        assert [m.message_id for m in received] == [msg.message_id]

    @pytest.mark.asyncio
    async def test_malformed_record_dropped(self):
        relay = InMemoryRelay()
        bob = SignalRelayClient(relay, "bob")
        stream = await bob.subscribe_incoming()

        await relay.insert({"id": "x", "to_participant_id": "bob", "kind": "ring"})

        assert await _collect(stream, relay) == []

    @pytest.mark.asyncio
    async def test_send_requires_local_sender(self):
        alice = SignalRelayClient(InMemoryRelay(), "alice")

        with pytest.raises(ValueError):
            await alice.send(protocol.make_end("conv-1", "bob", "alice", protocol.VOICE))

    @pytest.mark.asyncio
    async def test_send_surfaces_unavailable_relay(self):
        relay = InMemoryRelay()
        relay.available = False
        alice = SignalRelayClient(relay, "alice")

        with pytest.raises(RelayUnavailable):
            await alice.send(protocol.make_end("conv-1", "alice", "bob", protocol.VOICE))

    @pytest.mark.asyncio
    async def test_close_ends_iteration_and_unsubscribes(self):
        relay = InMemoryRelay()
        bob = SignalRelayClient(relay, "bob")
        stream = await bob.subscribe("conv-1")

        async def consume():
            return [m async for m in stream]

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        await stream.close()
        await stream.close()

        assert await asyncio.wait_for(task, timeout=1) == []
        assert relay.subscription_count == 0

    @pytest.mark.asyncio
    async def test_teardown_deletes_session_records(self):
        relay = InMemoryRelay()
        alice = SignalRelayClient(relay, "alice")
        await alice.send(protocol.make_end("conv-1", "alice", "bob", protocol.VOICE))
        await alice.send(protocol.make_end("conv-2", "alice", "bob", protocol.VOICE))

        await alice.teardown("conv-1")

        assert [r["session_id"] for r in relay.records] == ["conv-2"]

    @pytest.mark.asyncio
    async def test_teardown_failure_is_not_raised(self):
        relay = InMemoryRelay()
        alice = SignalRelayClient(relay, "alice")
        relay.available = False

        await alice.teardown("conv-1")


class TestSeenIds:
    """Test the bounded duplicate window."""

    def test_oldest_id_evicted(self):
        seen = SeenIds(limit=3)
        for message_id in ("m-1", "m-2", "m-3", "m-4"):
            seen.add(message_id)

        assert len(seen) == 3
        assert "m-1" not in seen
        assert "m-4" in seen

    def test_readding_keeps_arrival_order(self):
        seen = SeenIds(limit=2)
        seen.add("m-1")
        seen.add("m-2")
        seen.add("m-1")
        seen.add("m-3")

        assert len(seen) == 2
        assert "m-1" not in seen
        assert "m-2" in seen

    @pytest.mark.asyncio
    async def test_long_lived_stream_stays_bounded(self):
        stream = SignalStream("incoming:bob", "bob", seen_limit=8)

        for n in range(50):
            msg = protocol.make_ice("conv-1", "alice", "bob", protocol.VOICE, {"candidate": f"c{n}"})
            await stream._on_record(msg.to_record())

        assert len(stream._seen) == 8
        assert stream._queue.qsize() == 50
