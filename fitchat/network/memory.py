"""In-process pub/sub network.

Behaves like the relay network without sockets: every node shares one
:class:`MemoryNetwork`, publishes are stored and pushed to subscribers, and
callbacks run later on the event loop rather than inside ``publish``.
"""

import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from fitchat.errors import TransportUnavailableError
from fitchat.network.client import PayloadCallback, PubSubClient
from fitchat.network.constants import MAX_STORED_MESSAGES, Protocol


logger = logging.getLogger(__name__)


class MemoryNetwork:
    """Shared state for a set of :class:`MemoryNode` instances.

    Attributes:
        protocols: Protocols the simulated peers offer.
        online: When ``False`` peers are unreachable and publishes fail.
    """

    def __init__(self, protocols: Iterable[Protocol] = tuple(Protocol), max_stored: int = MAX_STORED_MESSAGES):
        self.protocols = {Protocol(p) for p in protocols}
        self.online = True
        self.max_stored = max_stored
        self._store: Dict[str, List[bytes]] = {}
        self._subscribers: Dict[str, List["MemoryNode"]] = {}

    def node(self) -> "MemoryNode":
        return MemoryNode(self)

    def stored_messages(self, topic: str) -> List[bytes]:
        return list(self._store.get(topic, ()))

    def inject(self, topic: str, payload: bytes) -> None:
        """Publish *payload* as if an unknown remote peer had sent it."""
        self._publish(topic, payload)

    def _publish(self, topic: str, payload: bytes) -> None:
        stored = self._store.setdefault(topic, [])
        stored.append(payload)
        del stored[:-self.max_stored]
        for node in list(self._subscribers.get(topic, ())):
            node._push(topic, payload)

    def _attach(self, topic: str, node: "MemoryNode") -> None:
        nodes = self._subscribers.setdefault(topic, [])
        if node not in nodes:
            nodes.append(node)

    def _detach(self, topic: str, node: "MemoryNode") -> None:
        nodes = self._subscribers.get(topic, [])
        if node in nodes:
            nodes.remove(node)


class MemoryNode(PubSubClient):
    def __init__(self, network: MemoryNetwork):
        self.network = network
        self._callbacks: Dict[str, PayloadCallback] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._running = False

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._running = True

    async def wait_for_peer(self, protocols: Iterable[Protocol], timeout: float) -> None:
        wanted = {Protocol(p) for p in protocols}

        async def _poll() -> None:
            while not (self.network.online and wanted <= self.network.protocols):
                await asyncio.sleep(0.01)

        try:
            await asyncio.wait_for(_poll(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise TransportUnavailableError("no peer offers the required protocols") from exc

    async def subscribe(self, topic: str, callback: PayloadCallback) -> None:
        self._require_running()
        self._callbacks[topic] = callback
        self.network._attach(topic, self)

    async def unsubscribe(self, topic: str) -> None:
        self._callbacks.pop(topic, None)
        self.network._detach(topic, self)

    async def query_history(self, topic: str, callback: PayloadCallback, page_size: int) -> None:
        self._require_running()
        stored = self.network.stored_messages(topic)
        for start in range(0, len(stored), page_size):
            for payload in stored[start:start + page_size]:
                callback(payload)
            # Page boundary: give live deliveries a chance to interleave.
            await asyncio.sleep(0)

    async def publish(self, topic: str, payload: bytes) -> None:
        self._require_running()
        await asyncio.sleep(0)
        self.network._publish(topic, payload)

    async def stop(self) -> None:
        self._running = False
        for topic in list(self._callbacks):
            self.network._detach(topic, self)
        self._callbacks.clear()

    def _require_running(self) -> None:
        if not self._running:
            raise ConnectionError("node is not running")
        if not self.network.online:
            raise ConnectionError("network is offline")

    def _push(self, topic: str, payload: bytes) -> None:
        if self._loop is None:
            return
        self._loop.call_soon(self._deliver, topic, payload)

    def _deliver(self, topic: str, payload: bytes) -> None:
        callback = self._callbacks.get(topic)
        if callback is None:
            return
        try:
            callback(payload)
        except Exception:
            logger.exception("Message callback failed")
