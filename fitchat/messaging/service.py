import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from fitchat.config import Settings
from fitchat.crypto.cipher import build_payload_cipher
from fitchat.errors import TransportUnavailableError
from fitchat.messaging.envelope import Envelope, MessageCodec
from fitchat.messaging.router import ConversationRouter, Listener
from fitchat.network.client import PubSubClient
from fitchat.network.transport import TransportAdapter


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Notification:
    """User-facing failure, shown by whatever UI owns the session."""

    title: str
    description: str
    variant: str = "destructive"


class ChatSession:
    """Messaging context for one signed-in user.

    Built at the auth boundary and handed to whoever needs chat, instead of
    a process-wide service.  Owns the router and the transport's lifecycle.
    """

    def __init__(
        self,
        local_user_id: str,
        transport: TransportAdapter,
        notify: Optional[Callable[[Notification], None]] = None,
    ) -> None:
        self.local_user_id = local_user_id
        self.transport = transport
        self.router = ConversationRouter(local_user_id)
        self.notifications: List[Notification] = []
        self._notify_sink = notify or self.notifications.append
        self._connecting = False
        self._detach = transport.on_message(self.router.dispatch)

    @property
    def connecting(self) -> bool:
        return self._connecting

    @property
    def connected(self) -> bool:
        return self.transport.connected

    def notify(self, title: str, description: str) -> None:
        self._notify_sink(Notification(title=title, description=description))

    def drain_notifications(self) -> List[Notification]:
        pending = list(self.notifications)
        self.notifications.clear()
        return pending

    async def connect(self) -> bool:
        self._connecting = True
        try:
            await self.transport.start(self.local_user_id)
            return True
        except TransportUnavailableError as exc:
            logger.warning("Failed to connect to the messaging network: %s", exc)
            self.notify(
                "Connection Error",
                "Failed to connect to the messaging network. Please try again later.",
            )
            return False
        finally:
            self._connecting = False

    async def send_message(self, receiver_id: str, content: str) -> bool:
        if not self.connected:
            self.notify("Cannot Send Message", "You are not connected to the messaging network")
            return False

        envelope = self.transport.compose(receiver_id, content)
        if not await self.transport.send(envelope):
            self.notify("Message Failed", "Failed to send your message. Please try again.")
            return False
        return True

    def messages(self) -> Dict[str, List[Envelope]]:
        return self.router.conversations()

    def conversation(self, counterparty_id: str) -> List[Envelope]:
        return self.router.get_conversation(counterparty_id)

    def load_chat_history(self, counterparty_id: str) -> List[Envelope]:
        # Store replay already feeds history in; this only opens the bucket.
        return self.router.open_conversation(counterparty_id)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return self.router.subscribe(listener)

    async def close(self) -> None:
        self._detach()
        self.router.close()
        await self.transport.stop()


def create_session(
    local_user_id: str,
    client: PubSubClient,
    settings: Optional[Settings] = None,
    notify: Optional[Callable[[Notification], None]] = None,
) -> ChatSession:
    """Wire a client, codec and transport into a session using *settings*."""
    settings = settings or Settings.from_env()
    codec = MessageCodec(build_payload_cipher(settings.encryption_mode, settings.topic_key_b64))
    transport = TransportAdapter(
        client,
        codec,
        topic=settings.content_topic,
        page_size=settings.store_page_size,
        peer_timeout=settings.peer_timeout,
        publish_timeout=settings.publish_timeout,
    )
    return ChatSession(local_user_id, transport, notify=notify)
