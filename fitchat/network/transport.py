"""Transport adapter: one pub/sub client bound to the shared chat topic.

Routing to the right counterparty is not done here; every decoded envelope
goes to the registered listeners and the conversation router filters.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, List, Optional

from fitchat.errors import DecryptionError, MalformedEnvelopeError, TransportUnavailableError
from fitchat.messaging.envelope import Envelope, MessageCodec, now_millis
from fitchat.network.client import PubSubClient
from fitchat.network.constants import (
    CONTENT_TOPIC,
    DEFAULT_PEER_TIMEOUT_SECONDS,
    DEFAULT_PUBLISH_TIMEOUT_SECONDS,
    REQUIRED_PROTOCOLS,
    STORE_PAGE_SIZE,
)


logger = logging.getLogger(__name__)

EnvelopeListener = Callable[[Envelope], None]


class TransportState(Enum):
    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    STOPPED = "stopped"


class TransportAdapter:
    """Publishes sealed envelopes and decodes everything that arrives.

    ``STOPPED`` is terminal: reconnecting after :meth:`stop` needs a new
    adapter and a new client.

    Attributes:
        client: Pub/sub network client.
        codec: Envelope codec, including the payload cipher.
        topic: Content topic shared by every user.
        page_size: Store replay page size.
        peer_timeout: Seconds to wait for a usable peer in :meth:`start`.
        publish_timeout: Seconds before a publish counts as failed.
    """

    def __init__(
        self,
        client: PubSubClient,
        codec: Optional[MessageCodec] = None,
        topic: str = CONTENT_TOPIC,
        page_size: int = STORE_PAGE_SIZE,
        peer_timeout: float = DEFAULT_PEER_TIMEOUT_SECONDS,
        publish_timeout: float = DEFAULT_PUBLISH_TIMEOUT_SECONDS,
    ):
        self.client = client
        self.codec = codec or MessageCodec()
        self.topic = topic
        self.page_size = page_size
        self.peer_timeout = peer_timeout
        self.publish_timeout = publish_timeout
        self.local_user_id: Optional[str] = None
        self._state = TransportState.UNINITIALIZED
        self._listeners: List[EnvelopeListener] = []
        self._start_lock = asyncio.Lock()
        self._history_task: Optional[asyncio.Task] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._stop_requested = False
        self._last_timestamp = 0

    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is TransportState.CONNECTED

    # ----- Lifecycle --------------------------------------------------------

    async def start(self, local_user_id: str) -> None:
        """Connect, subscribe to the topic and begin store replay.

        Safe to call repeatedly: once connected, later calls return at once.

        Raises:
            TransportUnavailableError: If no suitable peer shows up within
                ``peer_timeout``, the subscription fails, or the adapter
                was stopped.
        """
        async with self._start_lock:
            if self._state is TransportState.STOPPED or self._stop_requested:
                raise TransportUnavailableError("transport was stopped; create a new one to reconnect")
            if self._state is TransportState.CONNECTED:
                if local_user_id != self.local_user_id:
                    raise TransportUnavailableError(
                        f"transport already started for user {self.local_user_id!r}"
                    )
                return

            self._state = TransportState.CONNECTING
            self.local_user_id = local_user_id
            self._connect_task = asyncio.create_task(self._open_client())
            try:
                await self._connect_task
            except asyncio.CancelledError:
                await self._abort_start()
                if not self._stop_requested:
                    raise
                raise TransportUnavailableError("transport stopped while connecting") from None
            except (TransportUnavailableError, ConnectionError, OSError, asyncio.TimeoutError) as exc:
                await self._abort_start()
                logger.warning("Messaging network unavailable: %s", exc)
                if isinstance(exc, TransportUnavailableError):
                    raise
                raise TransportUnavailableError(str(exc) or "messaging network unavailable") from exc
            finally:
                self._connect_task = None

            self._state = TransportState.CONNECTED
            self._history_task = asyncio.create_task(self._replay_history())
            logger.info("Transport connected for user %s on %s", local_user_id, self.topic)

    async def _open_client(self) -> None:
        await self.client.start()
        await self.client.wait_for_peer(REQUIRED_PROTOCOLS, timeout=self.peer_timeout)
        await self.client.subscribe(self.topic, self._on_payload)

    async def _abort_start(self) -> None:
        self._state = TransportState.UNINITIALIZED
        self.local_user_id = None
        await self._stop_client()

    async def _replay_history(self) -> None:
        try:
            await self.client.query_history(self.topic, self._on_payload, self.page_size)
            logger.info("Retrieved stored messages")
        except (ConnectionError, OSError, asyncio.TimeoutError) as exc:
            logger.warning("Store replay failed: %s", exc)

    async def wait_for_history(self) -> None:
        """Wait until store replay started by :meth:`start` has finished."""
        task = self._history_task
        if task is None:
            return
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    async def stop(self) -> None:
        """Shut down for good.  No listener runs after this returns.

        A :meth:`start` still waiting for a peer is interrupted and raises
        :class:`TransportUnavailableError`.
        """
        self._stop_requested = True
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
        async with self._start_lock:
            if self._state is TransportState.STOPPED:
                return
            was_connected = self._state is TransportState.CONNECTED
            self._state = TransportState.STOPPED
            self._listeners.clear()

            if self._history_task is not None and not self._history_task.done():
                self._history_task.cancel()
                try:
                    await self._history_task
                except asyncio.CancelledError:
                    pass

            if was_connected:
                try:
                    await self.client.unsubscribe(self.topic)
                except (ConnectionError, OSError, asyncio.TimeoutError) as exc:
                    logger.debug("Unsubscribe during stop failed: %s", exc)
            await self._stop_client()
            logger.info("Transport stopped")

    async def _stop_client(self) -> None:
        try:
            await self.client.stop()
        except (ConnectionError, OSError) as exc:
            logger.debug("Client stop failed: %s", exc)

    # ----- Sending ----------------------------------------------------------

    def compose(self, receiver: str, content: str) -> Envelope:
        """Build an envelope from the local user with a non-decreasing timestamp."""
        if self.local_user_id is None:
            raise TransportUnavailableError("transport not started")
        timestamp = max(now_millis(), self._last_timestamp)
        self._last_timestamp = timestamp
        return Envelope.create(self.local_user_id, receiver, content, timestamp=timestamp)

    async def send(self, envelope: Envelope) -> bool:
        """Seal and publish *envelope*, then echo it to local listeners.

        Returns:
            ``False`` when not connected or when the publish fails or times
            out.  Network partitions are expected, so nothing is raised.
        """
        if self._state is not TransportState.CONNECTED:
            logger.warning("Cannot send %s: transport is %s", envelope.id, self._state.value)
            return False

        try:
            payload = self.codec.seal(envelope)
        except ValueError as exc:
            logger.warning("Cannot seal message %s: %s", envelope.id, exc)
            return False
        try:
            await asyncio.wait_for(self.client.publish(self.topic, payload), timeout=self.publish_timeout)
        except (ConnectionError, OSError, asyncio.TimeoutError) as exc:
            logger.warning("Error sending message %s: %s", envelope.id, exc)
            return False

        self._notify(envelope)
        return True

    # ----- Receiving --------------------------------------------------------

    def on_message(self, listener: EnvelopeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _on_payload(self, payload: bytes) -> None:
        if self._state is TransportState.STOPPED:
            return
        try:
            envelope = self.codec.open(payload)
        except (DecryptionError, MalformedEnvelopeError) as exc:
            logger.warning("Dropping undecodable message: %s", exc)
            return
        self._notify(envelope)

    def _notify(self, envelope: Envelope) -> None:
        for listener in tuple(self._listeners):
            if self._state is TransportState.STOPPED:
                return
            try:
                listener(envelope)
            except Exception:
                logger.exception("Listener failed for message %s", envelope.id)
