"""Per-counterparty conversation buckets.

Every client shares one topic, so the router is what keeps a user's view
limited to conversations they take part in.
"""

import logging
from typing import Callable, Dict, List, Optional

from fitchat.messaging.envelope import Envelope


logger = logging.getLogger(__name__)

Listener = Callable[[Envelope], None]


class ConversationRouter:
    """Sorts envelopes into conversations and fans them out to listeners.

    Buckets keep observed arrival order, which can differ from timestamp
    order when store replay interleaves with live delivery.
    """

    def __init__(self, local_user_id: str):
        self.local_user_id = local_user_id
        self._conversations: Dict[str, List[Envelope]] = {}
        self._seen_ids: set[str] = set()
        self._listeners: List[Listener] = []
        self._closed = False

    def counterparty_of(self, envelope: Envelope) -> Optional[str]:
        """Return the other end of *envelope*, or ``None`` if it is not ours."""
        if envelope.sender == self.local_user_id:
            return envelope.receiver
        if envelope.receiver == self.local_user_id:
            return envelope.sender
        return None

    def dispatch(self, envelope: Envelope) -> bool:
        """Record *envelope* and notify listeners.

        Returns:
            ``True`` if the envelope was new and involves the local user.
        """
        if self._closed:
            return False

        counterparty = self.counterparty_of(envelope)
        if counterparty is None:
            return False
        if envelope.id in self._seen_ids:
            logger.debug("Duplicate message %s ignored", envelope.id)
            return False

        # Mark before notifying so a re-entrant dispatch sees the id.
        self._seen_ids.add(envelope.id)
        self._conversations.setdefault(counterparty, []).append(envelope)

        for listener in tuple(self._listeners):
            if self._closed:
                break
            try:
                listener(envelope)
            except Exception:
                logger.exception("Message listener failed for %s", envelope.id)
        return True

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def get_conversation(self, counterparty_id: str) -> List[Envelope]:
        return list(self._conversations.get(counterparty_id, ()))

    def open_conversation(self, counterparty_id: str) -> List[Envelope]:
        """Make sure a bucket exists for *counterparty_id* and return it."""
        return list(self._conversations.setdefault(counterparty_id, []))

    def conversations(self) -> Dict[str, List[Envelope]]:
        return {peer: list(items) for peer, items in self._conversations.items()}

    def close(self) -> None:
        self._closed = True
        self._listeners.clear()
