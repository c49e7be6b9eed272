"""
In-process change feed: per-conversation fan-out of insert/update/delete,
reaction and typing events to live subscribers.

Subscribers are plain callables. The SSE route registers an asyncio.Queue's
put_nowait; tests and the in-memory store register list.append or a session's
event handler directly. Publishing never blocks and one failing subscriber
does not stop delivery to the others.
"""

import itertools
import logging
import threading
from collections import defaultdict
from typing import Callable, Dict, List

from eventchat.metrics import record_feed_event
from eventchat.schemas import FeedEvent, MessageResponse

logger = logging.getLogger(__name__)

FeedCallback = Callable[[FeedEvent], None]


class ChangeFeed:
    """Per-conversation publish/subscribe hub."""

    def __init__(self):
        self._subscribers: Dict[int, List[FeedCallback]] = defaultdict(list)
        self._seq = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(self, conversation_id: int, callback: FeedCallback) -> Callable[[], None]:
        """
        Register a callback for one conversation.

        Returns:
            A function that removes the subscription; calling it twice is harmless.
        """
        with self._lock:
            self._subscribers[conversation_id].append(callback)
        logger.debug(f"Feed subscriber added for conversation {conversation_id}")

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(conversation_id)
                if callbacks and callback in callbacks:
                    callbacks.remove(callback)
                    if not callbacks:
                        del self._subscribers[conversation_id]
            logger.debug(f"Feed subscriber removed for conversation {conversation_id}")

        return unsubscribe

    def subscriber_count(self, conversation_id: int) -> int:
        with self._lock:
            return len(self._subscribers.get(conversation_id, ()))

    def publish(self, event: FeedEvent) -> FeedEvent:
        """Stamp the event with a sequence number and deliver it to every subscriber."""
        event = event.model_copy(update={"seq": next(self._seq)})
        with self._lock:
            callbacks = list(self._subscribers.get(event.conversation_id, ()))
        record_feed_event(event.type)
        for callback in callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Feed subscriber failed for conversation {event.conversation_id}: {e}")
        return event

    # Convenience publishers used by the routes and the in-memory store

    def message_inserted(self, message: MessageResponse) -> FeedEvent:
        return self.publish(FeedEvent(type="insert", conversation_id=message.conversation_id, message=message))

    def message_updated(self, message: MessageResponse) -> FeedEvent:
        return self.publish(FeedEvent(type="update", conversation_id=message.conversation_id, message=message))

    def message_deleted(self, conversation_id: int, message_id: int) -> FeedEvent:
        return self.publish(FeedEvent(type="delete", conversation_id=conversation_id, message_id=message_id))

    def reaction_changed(
        self,
        conversation_id: int,
        message_id: int,
        reactor: str,
        emoji: str,
        added: bool,
    ) -> FeedEvent:
        return self.publish(
            FeedEvent(
                type="reaction_added" if added else "reaction_removed",
                conversation_id=conversation_id,
                message_id=message_id,
                reactor=reactor,
                emoji=emoji,
            )
        )

    def typing_changed(self, conversation_id: int, identity: str, is_typing: bool) -> FeedEvent:
        return self.publish(
            FeedEvent(type="typing", conversation_id=conversation_id, identity=identity, is_typing=is_typing)
        )


# Process-wide feed used by the HTTP service
change_feed = ChangeFeed()
