from fitchat.messaging.envelope import Envelope
from fitchat.messaging.router import ConversationRouter


def _msg(msg_id: str, sender: str, receiver: str, content: str = "hi") -> Envelope:
    return Envelope(id=msg_id, timestamp=1, sender=sender, receiver=receiver, content=content)


def test_dispatch_buckets_by_counterparty() -> None:
    router = ConversationRouter("u1")

    router.dispatch(_msg("1", "u1", "u2"))
    router.dispatch(_msg("2", "u2", "u1"))
    router.dispatch(_msg("3", "u3", "u1"))

    assert [m.id for m in router.get_conversation("u2")] == ["1", "2"]
    assert [m.id for m in router.get_conversation("u3")] == ["3"]
    assert router.get_conversation("u4") == []


def test_duplicate_id_first_seen_wins() -> None:
    router = ConversationRouter("u1")
    seen = []
    router.subscribe(seen.append)

    assert router.dispatch(_msg("dup", "u2", "u1", "first")) is True
    assert router.dispatch(_msg("dup", "u2", "u1", "second")) is False

    assert [m.content for m in router.get_conversation("u2")] == ["first"]
    assert [m.content for m in seen] == ["first"]


def test_foreign_conversation_is_dropped() -> None:
    router = ConversationRouter("C")
    seen = []
    router.subscribe(seen.append)

    assert router.dispatch(_msg("1", "A", "B")) is False

    assert seen == []
    assert router.conversations() == {}
    assert router.get_conversation("A") == []
    assert router.get_conversation("B") == []


def test_message_to_self_lands_in_own_bucket() -> None:
    router = ConversationRouter("u1")

    router.dispatch(_msg("1", "u1", "u1"))

    assert [m.id for m in router.get_conversation("u1")] == ["1"]


def test_bucket_keeps_arrival_order_not_timestamp_order() -> None:
    router = ConversationRouter("u1")
    late = Envelope(id="a", timestamp=200, sender="u2", receiver="u1", content="later")
    early = Envelope(id="b", timestamp=100, sender="u2", receiver="u1", content="earlier")

    router.dispatch(late)
    router.dispatch(early)

    assert [m.id for m in router.get_conversation("u2")] == ["a", "b"]


def test_reentrant_dispatch_of_same_id_is_a_duplicate() -> None:
    router = ConversationRouter("u1")
    calls = []

    def listener(envelope: Envelope) -> None:
        calls.append(envelope.id)
        if envelope.id == "1":
            router.dispatch(envelope)
            router.dispatch(_msg("2", "u2", "u1"))

    router.subscribe(listener)
    router.dispatch(_msg("1", "u2", "u1"))

    assert calls == ["1", "2"]
    assert [m.id for m in router.get_conversation("u2")] == ["1", "2"]


def test_failing_listener_does_not_block_others() -> None:
    router = ConversationRouter("u1")
    seen = []

    def broken(envelope: Envelope) -> None:
        raise RuntimeError("boom")

    router.subscribe(broken)
    router.subscribe(seen.append)

    assert router.dispatch(_msg("1", "u2", "u1")) is True
    assert [m.id for m in seen] == ["1"]


def test_unsubscribe_and_close_stop_notifications() -> None:
    router = ConversationRouter("u1")
    seen = []
    unsubscribe = router.subscribe(seen.append)

    router.dispatch(_msg("1", "u2", "u1"))
    unsubscribe()
    router.dispatch(_msg("2", "u2", "u1"))
    router.close()

    assert router.dispatch(_msg("3", "u2", "u1")) is False
    assert [m.id for m in seen] == ["1"]
    assert [m.id for m in router.get_conversation("u2")] == ["1", "2"]


def test_returned_conversation_is_a_copy() -> None:
    router = ConversationRouter("u1")
    router.dispatch(_msg("1", "u2", "u1"))

    router.get_conversation("u2").clear()

    assert len(router.get_conversation("u2")) == 1
    assert router.open_conversation("u9") == []
    assert "u9" in router.conversations()
