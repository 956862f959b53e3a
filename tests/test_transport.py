import asyncio

import pytest

from fitchat.crypto.cipher import SharedKeyCipher
from fitchat.crypto.keys import generate_symmetric_key
from fitchat.errors import TransportUnavailableError
from fitchat.messaging.envelope import Envelope, MessageCodec
from fitchat.messaging.router import ConversationRouter
from fitchat.network.constants import CONTENT_TOPIC, Protocol
from fitchat.network.memory import MemoryNetwork, MemoryNode
from fitchat.network.transport import TransportAdapter, TransportState


class CountingNode(MemoryNode):
    def __init__(self, network: MemoryNetwork):
        super().__init__(network)
        self.subscribe_calls = 0

    async def subscribe(self, topic, callback):
        self.subscribe_calls += 1
        await super().subscribe(topic, callback)


class HangingNode(MemoryNode):
    async def publish(self, topic, payload):
        await asyncio.sleep(3600)


def _adapter(network: MemoryNetwork, client=None, **kwargs) -> TransportAdapter:
    kwargs.setdefault("peer_timeout", 0.2)
    return TransportAdapter(client or network.node(), **kwargs)


def test_send_echoes_locally_then_network_echo_arrives() -> None:
    async def scenario():
        network = MemoryNetwork()
        adapter = _adapter(network)
        received = []
        adapter.on_message(received.append)
        await adapter.start("u1")

        envelope = adapter.compose("u2", "hello")
        assert await adapter.send(envelope) is True
        assert received[0] == envelope

        await asyncio.sleep(0.05)
        assert received == [envelope, envelope]
        assert len(network.stored_messages(CONTENT_TOPIC)) == 1
        await adapter.stop()

    asyncio.run(scenario())


def test_compose_sets_sender_and_non_decreasing_timestamp() -> None:
    async def scenario():
        adapter = _adapter(MemoryNetwork())
        await adapter.start("u1")

        first = adapter.compose("u2", "a")
        second = adapter.compose("u2", "b")

        assert first.sender == "u1" and first.receiver == "u2"
        assert second.timestamp >= first.timestamp
        assert first.id != second.id
        await adapter.stop()

    asyncio.run(scenario())


def test_start_is_idempotent() -> None:
    async def scenario():
        network = MemoryNetwork()
        node = CountingNode(network)
        adapter = _adapter(network, client=node)

        await asyncio.gather(adapter.start("u1"), adapter.start("u1"))
        await adapter.start("u1")

        assert node.subscribe_calls == 1
        assert adapter.state is TransportState.CONNECTED
        with pytest.raises(TransportUnavailableError):
            await adapter.start("someone-else")
        await adapter.stop()

    asyncio.run(scenario())


def test_start_fails_without_capable_peer_and_can_retry() -> None:
    async def scenario():
        network = MemoryNetwork(protocols=[Protocol.FILTER])
        adapter = _adapter(network, peer_timeout=0.05)

        with pytest.raises(TransportUnavailableError):
            await adapter.start("u1")
        assert adapter.state is TransportState.UNINITIALIZED

        network.protocols = set(Protocol)
        await adapter.start("u1")
        assert adapter.connected
        await adapter.stop()

    asyncio.run(scenario())


def test_store_replay_feeds_listeners() -> None:
    async def scenario():
        network = MemoryNetwork()
        sender = network.node()
        await sender.start()
        codec = MessageCodec()
        history = [Envelope.create("u2", "u1", f"msg {i}") for i in range(30)]
        for envelope in history:
            await sender.publish(CONTENT_TOPIC, codec.seal(envelope))

        adapter = _adapter(network, page_size=25)
        router = ConversationRouter("u1")
        adapter.on_message(router.dispatch)
        await adapter.start("u1")
        await adapter.wait_for_history()

        assert router.get_conversation("u2") == history
        await adapter.stop()

    asyncio.run(scenario())


def test_undecodable_payloads_are_dropped() -> None:
    async def scenario():
        network = MemoryNetwork()
        adapter = _adapter(network)
        received = []
        adapter.on_message(received.append)
        await adapter.start("u1")
        await adapter.wait_for_history()

        good = Envelope.create("u2", "u1", "still here")
        network.inject(CONTENT_TOPIC, b"not an envelope")
        network.inject(CONTENT_TOPIC, b'{"id": "x"}')
        network.inject(CONTENT_TOPIC, MessageCodec().seal(good))
        await asyncio.sleep(0.05)

        assert received == [good]
        assert adapter.connected
        await adapter.stop()

    asyncio.run(scenario())


def test_encrypted_topic_between_two_users() -> None:
    async def scenario():
        network = MemoryNetwork()
        key = generate_symmetric_key()
        alice = _adapter(network, codec=MessageCodec(SharedKeyCipher(key)))
        bob = _adapter(network, codec=MessageCodec(SharedKeyCipher(key)))
        eve = _adapter(network, codec=MessageCodec(SharedKeyCipher(generate_symmetric_key())))
        bob_router = ConversationRouter("bob")
        bob.on_message(bob_router.dispatch)
        eve_seen = []
        eve.on_message(eve_seen.append)
        for adapter, user in ((alice, "alice"), (bob, "bob"), (eve, "eve")):
            await adapter.start(user)

        assert await alice.send(alice.compose("bob", "secret split times"))
        await asyncio.sleep(0.05)

        assert [m.content for m in bob_router.get_conversation("alice")] == ["secret split times"]
        assert eve_seen == []
        assert all(b"secret" not in p for p in network.stored_messages(CONTENT_TOPIC))
        for adapter in (alice, bob, eve):
            await adapter.stop()

    asyncio.run(scenario())


def test_send_returns_false_on_network_failure() -> None:
    async def scenario():
        network = MemoryNetwork()
        adapter = _adapter(network)
        received = []
        adapter.on_message(received.append)
        await adapter.start("u1")

        network.online = False
        assert await adapter.send(adapter.compose("u2", "hello")) is False
        assert received == []
        await adapter.stop()

    asyncio.run(scenario())


def test_send_times_out_instead_of_hanging() -> None:
    async def scenario():
        network = MemoryNetwork()
        adapter = _adapter(network, client=HangingNode(network), publish_timeout=0.05)
        await adapter.start("u1")

        assert await adapter.send(adapter.compose("u2", "hello")) is False
        await adapter.stop()

    asyncio.run(scenario())


def test_send_before_start_fails_cleanly() -> None:
    async def scenario():
        adapter = _adapter(MemoryNetwork())
        envelope = Envelope.create("u1", "u2", "hello")

        assert await adapter.send(envelope) is False
        with pytest.raises(TransportUnavailableError):
            adapter.compose("u2", "hello")

    asyncio.run(scenario())


def test_stop_is_terminal_and_silences_listeners() -> None:
    async def scenario():
        network = MemoryNetwork()
        adapter = _adapter(network)
        received = []
        adapter.on_message(received.append)
        await adapter.start("u1")

        network.inject(CONTENT_TOPIC, MessageCodec().seal(Envelope.create("u2", "u1", "late")))
        await adapter.stop()
        await adapter.stop()
        await asyncio.sleep(0.05)

        assert received == []
        assert adapter.state is TransportState.STOPPED
        assert await adapter.send(Envelope.create("u1", "u2", "after stop")) is False
        with pytest.raises(TransportUnavailableError):
            await adapter.start("u1")

    asyncio.run(scenario())


def test_stop_cancels_store_replay() -> None:
    async def scenario():
        network = MemoryNetwork()
        sender = network.node()
        await sender.start()
        for i in range(200):
            await sender.publish(CONTENT_TOPIC, MessageCodec().seal(Envelope.create("u2", "u1", str(i))))

        adapter = _adapter(network, page_size=1)
        received = []
        adapter.on_message(received.append)
        await adapter.start("u1")
        await asyncio.sleep(0)
        await adapter.stop()
        count = len(received)
        await asyncio.sleep(0.05)

        assert count < 200
        assert len(received) == count
        await adapter.wait_for_history()

    asyncio.run(scenario())


def test_send_returns_false_for_unencodable_content() -> None:
    async def scenario():
        network = MemoryNetwork()
        adapter = _adapter(network)
        received = []
        adapter.on_message(received.append)
        await adapter.start("u1")

        assert await adapter.send(adapter.compose("u2", "bad \ud800 text")) is False
        assert received == []
        assert network.stored_messages(CONTENT_TOPIC) == []
        assert adapter.connected
        await adapter.stop()

    asyncio.run(scenario())


def test_stop_interrupts_start_waiting_for_peer() -> None:
    async def scenario():
        network = MemoryNetwork(protocols=[Protocol.FILTER])
        adapter = _adapter(network, peer_timeout=30.0)
        starting = asyncio.create_task(adapter.start("u1"))
        await asyncio.sleep(0.05)
        assert adapter.state is TransportState.CONNECTING

        await asyncio.wait_for(adapter.stop(), timeout=1.0)

        with pytest.raises(TransportUnavailableError):
            await starting
        assert adapter.state is TransportState.STOPPED
        with pytest.raises(TransportUnavailableError):
            await adapter.start("u1")

    asyncio.run(scenario())


def test_cancelled_start_can_be_retried() -> None:
    async def scenario():
        network = MemoryNetwork(protocols=[Protocol.FILTER])
        adapter = _adapter(network, peer_timeout=30.0)
        starting = asyncio.create_task(adapter.start("u1"))
        await asyncio.sleep(0.05)
        starting.cancel()
        with pytest.raises(asyncio.CancelledError):
            await starting
        assert adapter.state is TransportState.UNINITIALIZED

        network.protocols = set(Protocol)
        await adapter.start("u1")
        assert adapter.connected
        await adapter.stop()

    asyncio.run(scenario())
