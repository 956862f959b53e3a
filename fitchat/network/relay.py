"""fitchat relay server.

A relay is the network-side peer every chat client talks to:
1. Listens for TCP connections and authenticates each node with a signed
   HELLO, answering with a signed HELLO_REPLY that lists its protocols.
2. Keeps a bounded in-memory store of every message published per topic
   (store protocol) and answers paged STORE_QUERY requests.
3. Pushes each PUBLISH to every node subscribed to the topic (filter
   protocol), the publisher included, and ACKs the publish (lightpush).
"""

import asyncio
import base64
import json
import logging
import struct
import time
from collections import deque
from typing import Deque, Dict, Iterable, Optional, Set

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from fitchat.network.constants import (
    ACK_ERROR,
    ACK_OK,
    DEFAULT_HMAC_KEY,
    DEFAULT_RELAY_PORT,
    MAX_STORE_PAGE_SIZE,
    MAX_STORED_MESSAGES,
    PacketType,
    Protocol,
)
from fitchat.network.packet import RelayPacket, pack_topic_payload, read_packet, unpack_topic_payload


logger = logging.getLogger(__name__)

HANDSHAKE_TIMEOUT_SECONDS = 10.0
MAX_CLOCK_SKEW_SECONDS = 300


class _NodeConnection:
    def __init__(self, node_id: bytes, writer: asyncio.StreamWriter):
        self.node_id = node_id
        self.writer = writer
        self.topics: Set[str] = set()
        self.lock = asyncio.Lock()


class RelayServer:
    """Store-and-forward relay for the fitchat pub/sub network.

    Attributes:
        node_id: Raw 32-byte Ed25519 public key (relay identity).
        hmac_key: Shared HMAC key for packet integrity.
        host: Interface to bind.
        port: TCP port; 0 picks a free one, updated once listening.
        protocols: Protocols advertised in HELLO_REPLY.
        max_stored: Messages kept per topic before the oldest is evicted.
    """

    def __init__(
        self,
        signing_key: Optional[SigningKey] = None,
        hmac_key: bytes = DEFAULT_HMAC_KEY,
        host: str = "0.0.0.0",
        port: int = DEFAULT_RELAY_PORT,
        protocols: Iterable[Protocol] = tuple(Protocol),
        max_stored: int = MAX_STORED_MESSAGES,
    ):
        self.signing_key = signing_key or SigningKey.generate()
        self.node_id = bytes(self.signing_key.verify_key)
        self.hmac_key = hmac_key
        self.host = host
        self.port = port
        self.protocols = [Protocol(p).value for p in protocols]
        self.max_stored = max_stored
        self._store: Dict[str, Deque[bytes]] = {}
        self._connections: Set[_NodeConnection] = set()
        self._server: Optional[asyncio.AbstractServer] = None

    # ----- Lifecycle --------------------------------------------------------

    async def start(self) -> None:
        """Bind the listening socket and return once it accepts connections."""
        self._server = await asyncio.start_server(self._handle_client, self.host, self.port)
        self.port = self._server.sockets[0].getsockname()[1]
        logger.info("Relay listening on %s:%s", self.host, self.port)

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        async with self._server:
            await self._server.serve_forever()

    async def close(self) -> None:
        if self._server is None:
            return
        self._server.close()
        for conn in list(self._connections):
            conn.writer.close()
        await self._server.wait_closed()
        self._server = None

    def stored_messages(self, topic: str) -> list[bytes]:
        return list(self._store.get(topic, ()))

    # ----- Packet I/O -------------------------------------------------------

    async def _send_packet(self, conn: _NodeConnection, packet_type: PacketType, payload: bytes) -> None:
        pkt = RelayPacket(packet_type=packet_type, node_id=self.node_id, payload=payload)
        async with conn.lock:
            conn.writer.write(pkt.encode(self.hmac_key))
            await conn.writer.drain()

    async def _recv_packet(self, reader: asyncio.StreamReader) -> RelayPacket:
        return await read_packet(reader, self.hmac_key)

    async def _ack(self, conn: _NodeConnection, ok: bool) -> None:
        await self._send_packet(conn, PacketType.ACK, bytes([ACK_OK if ok else ACK_ERROR]))

    # ----- Handshake --------------------------------------------------------

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        peer_addr = writer.get_extra_info("peername")
        conn: Optional[_NodeConnection] = None
        try:
            hello = await asyncio.wait_for(self._recv_packet(reader), timeout=HANDSHAKE_TIMEOUT_SECONDS)
            if hello.packet_type != PacketType.HELLO or len(hello.payload) != 8 + 64:
                return

            timestamp, signature = hello.payload[:8], hello.payload[8:]
            try:
                VerifyKey(hello.node_id).verify(timestamp, signature)
            except BadSignatureError:
                logger.warning("Handshake failed: invalid HELLO from %s", peer_addr)
                return
            sent_at = struct.unpack("!Q", timestamp)[0]
            if abs(time.time() - sent_at) > MAX_CLOCK_SKEW_SECONDS:
                logger.warning("Handshake failed: stale HELLO from %s", peer_addr)
                return

            conn = _NodeConnection(hello.node_id, writer)
            body = json.dumps({"protocols": self.protocols}).encode("utf-8")
            reply = self.signing_key.sign(body).signature + body
            await self._send_packet(conn, PacketType.HELLO_REPLY, reply)

            self._connections.add(conn)
            logger.info("Node %s... connected from %s", hello.node_id.hex()[:12], peer_addr)
            await self._packet_loop(reader, conn)

        except (asyncio.TimeoutError, asyncio.IncompleteReadError, ConnectionError):
            pass
        except ValueError as exc:
            logger.warning("Rejected packet from %s: %s", peer_addr, exc)
        except Exception:
            logger.exception("Error handling node %s", peer_addr)
        finally:
            if conn is not None:
                self._connections.discard(conn)
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

    # ----- Main packet loop -------------------------------------------------

    async def _packet_loop(self, reader: asyncio.StreamReader, conn: _NodeConnection):
        while True:
            pkt = await self._recv_packet(reader)

            if pkt.packet_type == PacketType.SUBSCRIBE:
                if Protocol.FILTER.value not in self.protocols:
                    await self._ack(conn, False)
                    continue
                conn.topics.add(pkt.payload.decode("utf-8"))
                await self._ack(conn, True)

            elif pkt.packet_type == PacketType.UNSUBSCRIBE:
                conn.topics.discard(pkt.payload.decode("utf-8"))
                await self._ack(conn, True)

            elif pkt.packet_type == PacketType.PUBLISH:
                await self._handle_publish(pkt, conn)

            elif pkt.packet_type == PacketType.STORE_QUERY:
                await self._handle_store_query(pkt, conn)

            else:
                # Unknown packet type; close the connection.
                break

    async def _handle_publish(self, pkt: RelayPacket, conn: _NodeConnection):
        if Protocol.LIGHTPUSH.value not in self.protocols:
            await self._ack(conn, False)
            return
        try:
            topic, payload = unpack_topic_payload(pkt.payload)
        except ValueError:
            await self._ack(conn, False)
            return

        if Protocol.STORE.value in self.protocols:
            stored = self._store.setdefault(topic, deque(maxlen=self.max_stored))
            stored.append(payload)

        await self._ack(conn, True)
        logger.debug("Publish on %s from %s...", topic, conn.node_id.hex()[:12])

        frame = pack_topic_payload(topic, payload)
        for target in list(self._connections):
            if topic not in target.topics:
                continue
            try:
                await self._send_packet(target, PacketType.MESSAGE, frame)
            except (ConnectionError, OSError) as exc:
                logger.warning("Push to %s... failed: %s", target.node_id.hex()[:12], exc)

    async def _handle_store_query(self, pkt: RelayPacket, conn: _NodeConnection):
        """Answer one page of stored messages, oldest first.

        Query payload: ``{"topic": str, "cursor": int, "page_size": int}``.
        Reply payload: ``{"messages": [base64, ...], "next_cursor": int | null}``.
        """
        if Protocol.STORE.value not in self.protocols:
            await self._ack(conn, False)
            return
        try:
            query = json.loads(pkt.payload.decode("utf-8"))
            topic = str(query["topic"])
            cursor = max(0, int(query.get("cursor", 0)))
            page_size = min(max(1, int(query.get("page_size", MAX_STORE_PAGE_SIZE))), MAX_STORE_PAGE_SIZE)
        except (ValueError, KeyError, TypeError):
            await self._ack(conn, False)
            return

        stored = list(self._store.get(topic, ()))
        page = stored[cursor:cursor + page_size]
        next_cursor = cursor + page_size if cursor + page_size < len(stored) else None
        body = {
            "messages": [base64.b64encode(item).decode("ascii") for item in page],
            "next_cursor": next_cursor,
        }
        await self._send_packet(conn, PacketType.STORE_PAGE, json.dumps(body).encode("utf-8"))
