"""Pub/sub messaging network clients.

:class:`PubSubClient` is the interface the transport adapter depends on.
:class:`RelayClient` implements it over TCP against a
:class:`~fitchat.network.relay.RelayServer`:

1. Dials bootstrap relays until one answers the signed HELLO handshake and
   offers every required protocol.
2. Runs one reader task that routes MESSAGE pushes to topic callbacks and
   every other packet, in order, to the request waiting for it. Replies owed
   to requests that gave up are discarded when they arrive.
3. Exposes subscribe, publish and paged store queries as coroutines.
"""

import abc
import asyncio
import base64
import json
import logging
import struct
import time
from typing import Callable, Dict, Iterable, Optional, Sequence

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from fitchat.errors import TransportUnavailableError
from fitchat.network.constants import (
    ACK_OK,
    DEFAULT_HMAC_KEY,
    REQUEST_TIMEOUT_SECONDS,
    PacketType,
    Protocol,
)
from fitchat.network.packet import RelayPacket, pack_topic_payload, read_packet, unpack_topic_payload


logger = logging.getLogger(__name__)

PayloadCallback = Callable[[bytes], None]

RETRY_DELAY_SECONDS = 0.5


def parse_relay_info(body: bytes) -> frozenset[str]:
    """Return the protocols listed in a HELLO_REPLY body.

    Raises:
        ValueError: If the body is not ``{"protocols": [str, ...]}``.
    """
    info = json.loads(body.decode("utf-8"))
    if not isinstance(info, dict):
        raise ValueError("relay info must be a JSON object")
    protocols = info.get("protocols", [])
    if not isinstance(protocols, list) or not all(isinstance(p, str) for p in protocols):
        raise ValueError("relay protocols must be a list of strings")
    return frozenset(protocols)


def parse_store_page(body: bytes) -> tuple[list[bytes], Optional[int]]:
    """Decode a STORE_PAGE body into ``(payloads, next_cursor)``.

    Raises:
        ConnectionError: If the relay sent something that is not a page.
    """
    try:
        page = json.loads(body.decode("utf-8"))
        if not isinstance(page, dict) or not isinstance(page.get("messages", []), list):
            raise ValueError("store page must be an object with a message list")
        items = [base64.b64decode(item, validate=True) for item in page.get("messages", [])]
    except (ValueError, TypeError) as exc:
        raise ConnectionError(f"Relay sent a malformed store page: {exc}") from exc

    cursor = page.get("next_cursor")
    if cursor is not None and (isinstance(cursor, bool) or not isinstance(cursor, int)):
        raise ConnectionError("Relay sent a malformed store cursor")
    return items, cursor


class PubSubClient(abc.ABC):
    """A node on a pub/sub messaging network."""

    @abc.abstractmethod
    async def start(self) -> None:
        """Start the node.  Does not wait for peers."""

    @abc.abstractmethod
    async def wait_for_peer(self, protocols: Iterable[Protocol], timeout: float) -> None:
        """Block until a peer offering all *protocols* is reachable.

        Raises:
            TransportUnavailableError: If none is found within *timeout*.
        """

    @abc.abstractmethod
    async def subscribe(self, topic: str, callback: PayloadCallback) -> None:
        """Receive live messages published on *topic*."""

    @abc.abstractmethod
    async def unsubscribe(self, topic: str) -> None:
        ...

    @abc.abstractmethod
    async def query_history(self, topic: str, callback: PayloadCallback, page_size: int) -> None:
        """Feed every stored message on *topic*, oldest first, to *callback*."""

    @abc.abstractmethod
    async def publish(self, topic: str, payload: bytes) -> None:
        """Publish *payload*; raises ``ConnectionError`` on failure."""

    @abc.abstractmethod
    async def stop(self) -> None:
        ...


class RelayClient(PubSubClient):
    """TCP client for the fitchat relay network.

    Typical usage::

        client = RelayClient(SigningKey.generate(), hmac_key, [("127.0.0.1", 7777)])
        await client.start()
        await client.wait_for_peer(REQUIRED_PROTOCOLS, timeout=10)
        await client.subscribe(topic, on_payload)
        await client.publish(topic, b"...")
        await client.stop()

    Attributes:
        node_id: Raw 32-byte Ed25519 public key (local identity).
        hmac_key: Shared HMAC key for packet integrity.
        bootstrap: Relay addresses to dial, in order.
        peer_protocols: Protocols offered by the connected relay.
    """

    def __init__(
        self,
        signing_key: SigningKey,
        hmac_key: bytes = DEFAULT_HMAC_KEY,
        bootstrap: Sequence[tuple[str, int]] = (),
        request_timeout: float = REQUEST_TIMEOUT_SECONDS,
    ):
        self.signing_key = signing_key
        self.node_id = bytes(signing_key.verify_key)
        self.hmac_key = hmac_key
        self.bootstrap = list(bootstrap)
        self.request_timeout = request_timeout
        self.peer_protocols: frozenset[str] = frozenset()
        self.peer_node_id: Optional[bytes] = None
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self._callbacks: Dict[str, PayloadCallback] = {}
        self._responses: Optional[asyncio.Queue] = None
        self._request_lock: Optional[asyncio.Lock] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._started = False
        self._connection_lost = False
        self._abandoned_replies = 0

    # ----- Lifecycle --------------------------------------------------------

    async def start(self) -> None:
        if not self.bootstrap:
            raise TransportUnavailableError("no bootstrap relays configured")
        self._responses = asyncio.Queue()
        self._request_lock = asyncio.Lock()
        self._started = True

    async def wait_for_peer(self, protocols: Iterable[Protocol], timeout: float) -> None:
        if not self._started:
            raise TransportUnavailableError("client not started")
        wanted = {Protocol(p).value for p in protocols}
        try:
            await asyncio.wait_for(self._dial_until_ready(wanted), timeout=timeout)
        except asyncio.TimeoutError as exc:
            self._close_writer()
            raise TransportUnavailableError(
                f"no relay offering {sorted(wanted)} within {timeout:.1f}s"
            ) from exc

    async def _dial_until_ready(self, wanted: set[str]) -> None:
        while True:
            for host, port in self.bootstrap:
                if await self._connect(host, port) and wanted <= self.peer_protocols:
                    self._connection_lost = False
                    self._abandoned_replies = 0
                    self._reader_task = asyncio.create_task(self._read_loop())
                    logger.info("Connected to relay %s:%s", host, port)
                    return
                self._close_writer()
            await asyncio.sleep(RETRY_DELAY_SECONDS)

    async def _connect(self, host: str, port: int) -> bool:
        try:
            self.reader, self.writer = await asyncio.open_connection(host, port)
            return await self._perform_handshake()
        except (OSError, asyncio.IncompleteReadError, asyncio.TimeoutError, ValueError) as exc:
            logger.debug("Relay %s:%s unreachable: %s", host, port, exc)
            return False

    async def _perform_handshake(self) -> bool:
        """Exchange signed HELLO / HELLO_REPLY with the relay.

        Returns:
            ``True`` if the relay proved its identity and listed its protocols.
        """
        timestamp = struct.pack("!Q", int(time.time()))
        signature = self.signing_key.sign(timestamp).signature
        await self._send_packet(PacketType.HELLO, timestamp + signature)

        reply = await asyncio.wait_for(self._recv_packet(), timeout=self.request_timeout)
        if reply.packet_type != PacketType.HELLO_REPLY or len(reply.payload) < 64:
            logger.warning("Expected HELLO_REPLY from relay")
            return False

        signature, body = reply.payload[:64], reply.payload[64:]
        try:
            VerifyKey(reply.node_id).verify(body, signature)
        except BadSignatureError:
            logger.warning("Invalid HELLO_REPLY signature from relay")
            return False

        self.peer_protocols = parse_relay_info(body)
        self.peer_node_id = reply.node_id
        return True

    async def stop(self) -> None:
        self._started = False
        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None
        self._callbacks.clear()
        self._close_writer()
        if self._responses is not None:
            self._responses.put_nowait(None)

    def _close_writer(self) -> None:
        if self.writer is not None:
            self.writer.close()
        self.reader = None
        self.writer = None

    # ----- Packet I/O -------------------------------------------------------

    async def _send_packet(self, packet_type: PacketType, payload: bytes) -> None:
        if self.writer is None:
            raise ConnectionError("Not connected")
        pkt = RelayPacket(packet_type=packet_type, node_id=self.node_id, payload=payload)
        self.writer.write(pkt.encode(self.hmac_key))
        await self.writer.drain()

    async def _recv_packet(self) -> RelayPacket:
        if self.reader is None:
            raise ConnectionError("Not connected")
        return await read_packet(self.reader, self.hmac_key)

    async def _read_loop(self) -> None:
        """Route pushes to callbacks and responses to the request queue."""
        try:
            while True:
                pkt = await self._recv_packet()
                if pkt.packet_type == PacketType.MESSAGE:
                    try:
                        self._deliver(pkt.payload)
                    except Exception:
                        logger.exception("Message callback failed")
                elif self._abandoned_replies:
                    self._abandoned_replies -= 1
                    logger.debug("Discarding late %s reply", pkt.packet_type.name)
                else:
                    self._responses.put_nowait(pkt)
        except asyncio.IncompleteReadError:
            logger.warning("Relay closed the connection")
        except (OSError, ValueError) as exc:
            logger.warning("Relay read loop error: %s", exc)
        finally:
            self._connection_lost = True
            if self._responses is not None:
                self._responses.put_nowait(None)

    def _deliver(self, frame: bytes) -> None:
        try:
            topic, payload = unpack_topic_payload(frame)
        except ValueError as exc:
            logger.warning("Dropping malformed push: %s", exc)
            return
        callback = self._callbacks.get(topic)
        if callback is not None:
            callback(payload)

    async def _request(self, packet_type: PacketType, payload: bytes) -> RelayPacket:
        if self.writer is None or self._request_lock is None or self._connection_lost:
            raise ConnectionError("Not connected")
        async with self._request_lock:
            await self._send_packet(packet_type, payload)
            try:
                reply = await asyncio.wait_for(self._responses.get(), timeout=self.request_timeout)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                # The relay answers in order; the reply owed to this request must not reach the next one.
                if self._responses.empty():
                    self._abandoned_replies += 1
                else:
                    self._responses.get_nowait()
                raise
        if reply is None:
            raise ConnectionError("Relay connection lost")
        return reply

    async def _request_ack(self, packet_type: PacketType, payload: bytes) -> None:
        reply = await self._request(packet_type, payload)
        if reply.packet_type != PacketType.ACK or reply.payload[:1] != bytes([ACK_OK]):
            raise ConnectionError(f"Relay rejected {packet_type.name}")

    # ----- Pub/sub operations -----------------------------------------------

    async def subscribe(self, topic: str, callback: PayloadCallback) -> None:
        self._callbacks[topic] = callback
        try:
            await self._request_ack(PacketType.SUBSCRIBE, topic.encode("utf-8"))
        except (ConnectionError, asyncio.TimeoutError):
            self._callbacks.pop(topic, None)
            raise

    async def unsubscribe(self, topic: str) -> None:
        self._callbacks.pop(topic, None)
        if self.writer is not None and not self._connection_lost:
            await self._request_ack(PacketType.UNSUBSCRIBE, topic.encode("utf-8"))

    async def publish(self, topic: str, payload: bytes) -> None:
        await self._request_ack(PacketType.PUBLISH, pack_topic_payload(topic, payload))

    async def query_history(self, topic: str, callback: PayloadCallback, page_size: int) -> None:
        cursor: Optional[int] = 0
        while cursor is not None:
            query = json.dumps({"topic": topic, "cursor": cursor, "page_size": page_size})
            reply = await self._request(PacketType.STORE_QUERY, query.encode("utf-8"))
            if reply.packet_type != PacketType.STORE_PAGE:
                raise ConnectionError("Relay did not answer the store query")
            items, next_cursor = parse_store_page(reply.payload)
            if next_cursor is not None and next_cursor <= cursor:
                raise ConnectionError("Relay store cursor did not advance")
            for item in items:
                callback(item)
            cursor = next_cursor
