import json

import pytest

from fitchat.crypto.cipher import SharedKeyCipher
from fitchat.crypto.keys import generate_symmetric_key
from fitchat.errors import DecryptionError, MalformedEnvelopeError
from fitchat.messaging.envelope import Envelope, MessageCodec, decode_envelope, encode_envelope


def _envelope(**overrides) -> Envelope:
    fields = {
        "id": "1700000000000-abc123def4567",
        "timestamp": 1700000000000,
        "sender": "u1",
        "receiver": "u2",
        "content": "leg day tomorrow?",
    }
    fields.update(overrides)
    return Envelope(**fields)


def test_encode_uses_fixed_key_order() -> None:
    raw = encode_envelope(_envelope())

    assert raw == (
        b'{"id":"1700000000000-abc123def4567","timestamp":1700000000000,'
        b'"sender":"u1","receiver":"u2","content":"leg day tomorrow?"}'
    )


def test_decode_round_trip_with_unicode() -> None:
    envelope = _envelope(content="café run \U0001F3C3")

    assert decode_envelope(encode_envelope(envelope)) == envelope


def test_decode_ignores_extra_fields_and_integral_float_timestamp() -> None:
    raw = json.dumps(
        {
            "id": "x",
            "timestamp": 1700000000000.0,
            "sender": "u1",
            "receiver": "u2",
            "content": "hi",
            "reactions": ["fire"],
        }
    ).encode("utf-8")

    envelope = decode_envelope(raw)

    assert envelope.timestamp == 1700000000000
    assert isinstance(envelope.timestamp, int)
    assert envelope.content == "hi"


@pytest.mark.parametrize(
    "raw",
    [
        b"\xff\xfe",
        b"not json",
        b"[1, 2, 3]",
        b'{"id": "x", "timestamp": 1, "sender": "u1", "receiver": "u2"}',
        b'{"id": 7, "timestamp": 1, "sender": "u1", "receiver": "u2", "content": "hi"}',
        b'{"id": "x", "timestamp": "soon", "sender": "u1", "receiver": "u2", "content": "hi"}',
        b'{"id": "x", "timestamp": true, "sender": "u1", "receiver": "u2", "content": "hi"}',
        b'{"id": "x", "timestamp": 1.5, "sender": "u1", "receiver": "u2", "content": "hi"}',
    ],
)
def test_decode_rejects_malformed(raw: bytes) -> None:
    with pytest.raises(MalformedEnvelopeError):
        decode_envelope(raw)


def test_create_generates_unique_ids() -> None:
    first = Envelope.create("u1", "u2", "a", timestamp=1700000000000)
    second = Envelope.create("u1", "u2", "a", timestamp=1700000000000)

    assert first.id != second.id
    assert first.id.startswith("1700000000000-")
    assert len(first.id.split("-")[1]) == 13


def test_envelope_is_immutable() -> None:
    envelope = _envelope()

    with pytest.raises(AttributeError):
        envelope.content = "edited"


def test_codec_encrypts_whole_envelope() -> None:
    codec = MessageCodec(SharedKeyCipher(generate_symmetric_key()))
    envelope = _envelope()

    payload = codec.seal(envelope)

    assert b"leg day" not in payload
    assert codec.open(payload) == envelope


def test_codec_open_rejects_tampered_payload() -> None:
    codec = MessageCodec(SharedKeyCipher(generate_symmetric_key()))
    payload = bytearray(codec.seal(_envelope()))
    payload[-1] ^= 0xFF

    with pytest.raises(DecryptionError):
        codec.open(bytes(payload))


def test_plaintext_codec_matches_wire_encoding() -> None:
    envelope = _envelope()

    assert MessageCodec().seal(envelope) == encode_envelope(envelope)


def test_encode_rejects_lone_surrogate() -> None:
    with pytest.raises(MalformedEnvelopeError):
        encode_envelope(_envelope(content="bad \ud800 text"))
