"""Message envelope: the unit of exchange on the chat topic.

An envelope is serialised as compact UTF-8 JSON with a fixed key order and,
when a payload cipher is configured, the whole JSON object is encrypted.
"""

import json
import secrets
import string
import time
from dataclasses import asdict, dataclass
from typing import Optional

from fitchat.crypto.cipher import PayloadCipher, PlaintextCipher
from fitchat.errors import DecryptionError, MalformedEnvelopeError


ID_ALPHABET = string.digits + string.ascii_lowercase
ID_SUFFIX_LENGTH = 13
FIELDS = ("id", "timestamp", "sender", "receiver", "content")


def now_millis() -> int:
    return time.time_ns() // 1_000_000


def new_message_id(timestamp: Optional[int] = None) -> str:
    """Return ``"<millis>-<random base36>"``."""
    millis = now_millis() if timestamp is None else timestamp
    suffix = "".join(secrets.choice(ID_ALPHABET) for _ in range(ID_SUFFIX_LENGTH))
    return f"{millis}-{suffix}"


@dataclass(frozen=True, slots=True)
class Envelope:
    """One chat message.

    Attributes:
        id: Unique client-generated identifier, used for de-duplication.
        timestamp: Send time in integer milliseconds.
        sender: User id of the author.
        receiver: User id of the addressee.
        content: Plaintext body.
    """

    id: str
    timestamp: int
    sender: str
    receiver: str
    content: str

    @classmethod
    def create(cls, sender: str, receiver: str, content: str, timestamp: Optional[int] = None) -> "Envelope":
        ts = now_millis() if timestamp is None else timestamp
        return cls(id=new_message_id(ts), timestamp=ts, sender=sender, receiver=receiver, content=content)

    def to_dict(self) -> dict:
        return asdict(self)


def encode_envelope(envelope: Envelope) -> bytes:
    ordered = {name: getattr(envelope, name) for name in FIELDS}
    try:
        return json.dumps(ordered, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    except UnicodeEncodeError as exc:
        raise MalformedEnvelopeError("envelope text is not encodable as UTF-8") from exc


def decode_envelope(data: bytes) -> Envelope:
    """Parse bytes produced by :func:`encode_envelope`.

    Unknown keys are ignored so newer clients can add fields.

    Raises:
        MalformedEnvelopeError: If the bytes are not a JSON object carrying
            every required field with the right type.
    """
    try:
        raw = json.loads(bytes(data).decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedEnvelopeError("envelope is not valid UTF-8 JSON") from exc
    if not isinstance(raw, dict):
        raise MalformedEnvelopeError("envelope must be a JSON object")

    missing = [name for name in FIELDS if name not in raw]
    if missing:
        raise MalformedEnvelopeError(f"envelope is missing fields: {', '.join(missing)}")

    for name in ("id", "sender", "receiver", "content"):
        if not isinstance(raw[name], str):
            raise MalformedEnvelopeError(f"envelope field {name!r} must be a string")

    timestamp = raw["timestamp"]
    if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
        raise MalformedEnvelopeError("envelope field 'timestamp' must be a number")
    if isinstance(timestamp, float):
        if not timestamp.is_integer():
            raise MalformedEnvelopeError("envelope field 'timestamp' must be integral")
        timestamp = int(timestamp)

    return Envelope(
        id=raw["id"],
        timestamp=timestamp,
        sender=raw["sender"],
        receiver=raw["receiver"],
        content=raw["content"],
    )


class MessageCodec:
    """Turns envelopes into transport payloads and back."""

    def __init__(self, cipher: Optional[PayloadCipher] = None):
        self.cipher = cipher or PlaintextCipher()

    def seal(self, envelope: Envelope) -> bytes:
        return self.cipher.encrypt(encode_envelope(envelope))

    def open(self, payload: bytes) -> Envelope:
        """Decrypt and decode *payload*.

        Raises:
            DecryptionError: If the payload cannot be authenticated.
            MalformedEnvelopeError: If the decrypted bytes are not an envelope.
        """
        try:
            plaintext = self.cipher.decrypt(payload)
        except DecryptionError:
            raise
        except ValueError as exc:
            raise DecryptionError("unable to decrypt payload") from exc
        return decode_envelope(plaintext)
