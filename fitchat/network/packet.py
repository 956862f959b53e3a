"""Wire framing for the relay protocol.

A packet is ``header | payload | mac``.  The header is ``!4s B 32s I``
(magic, packet type, sender node id, payload length) and the trailing
HMAC-SHA256 covers header and payload under the shared network key.
Pub/sub bodies start with a ``!H``-length-prefixed topic.
"""

import asyncio
import hashlib
import hmac
import struct
from dataclasses import dataclass

from fitchat.network.constants import (
    HEADER_FORMAT,
    HEADER_SIZE,
    HMAC_SIZE,
    MAGIC,
    MAX_PAYLOAD_SIZE,
    NODE_ID_SIZE,
    PacketType,
)


def _mac(hmac_key: bytes, data: bytes) -> bytes:
    return hmac.new(hmac_key, data, hashlib.sha256).digest()


def _parse_header(header: bytes) -> tuple[PacketType, bytes, int]:
    magic, raw_type, node_id, length = struct.unpack(HEADER_FORMAT, header)
    if magic != MAGIC:
        raise ValueError("invalid packet magic")
    try:
        packet_type = PacketType(raw_type)
    except ValueError as exc:
        raise ValueError(f"unknown packet type 0x{raw_type:02x}") from exc
    if length > MAX_PAYLOAD_SIZE:
        raise ValueError(f"payload of {length} bytes exceeds the limit")
    return packet_type, node_id, length


@dataclass(frozen=True, slots=True)
class RelayPacket:
    packet_type: PacketType
    node_id: bytes
    payload: bytes = b""

    def encode(self, hmac_key: bytes) -> bytes:
        if len(self.node_id) != NODE_ID_SIZE:
            raise ValueError("node_id must be 32 bytes")
        if len(self.payload) > MAX_PAYLOAD_SIZE:
            raise ValueError("payload too large")
        framed = struct.pack(HEADER_FORMAT, MAGIC, self.packet_type, self.node_id, len(self.payload)) + self.payload
        return framed + _mac(hmac_key, framed)

    @classmethod
    def decode(cls, raw: bytes, hmac_key: bytes) -> "RelayPacket":
        """Verify and parse one complete packet.

        Raises:
            ValueError: On a short packet, bad MAC, bad magic, unknown type
                or a length that does not match the payload.
        """
        if len(raw) < HEADER_SIZE + HMAC_SIZE:
            raise ValueError("packet too short")
        framed, mac = raw[:-HMAC_SIZE], raw[-HMAC_SIZE:]
        if not hmac.compare_digest(mac, _mac(hmac_key, framed)):
            raise ValueError("invalid packet HMAC")

        packet_type, node_id, length = _parse_header(framed[:HEADER_SIZE])
        payload = framed[HEADER_SIZE:]
        if len(payload) != length:
            raise ValueError("invalid payload length")
        return cls(packet_type=packet_type, node_id=node_id, payload=payload)


async def read_packet(reader: asyncio.StreamReader, hmac_key: bytes) -> RelayPacket:
    """Read and verify the next packet on *reader*.

    The header is checked before the body is read, so an oversized length
    is refused without buffering it.
    """
    header = await reader.readexactly(HEADER_SIZE)
    _packet_type, _node_id, length = _parse_header(header)
    rest = await reader.readexactly(length + HMAC_SIZE)
    return RelayPacket.decode(header + rest, hmac_key)


def pack_topic_payload(topic: str, payload: bytes) -> bytes:
    """Frame a topic and a message body as ``!H topic_len | topic | payload``."""
    raw_topic = topic.encode("utf-8")
    if len(raw_topic) > 0xFFFF:
        raise ValueError("topic too long")
    return struct.pack("!H", len(raw_topic)) + raw_topic + payload


def unpack_topic_payload(data: bytes) -> tuple[str, bytes]:
    if len(data) < 2:
        raise ValueError("topic frame too short")
    topic_len = struct.unpack("!H", data[:2])[0]
    if len(data) < 2 + topic_len:
        raise ValueError("truncated topic")
    topic = data[2:2 + topic_len].decode("utf-8")
    return topic, data[2 + topic_len:]
