"""
In-memory test doubles for the remote store and the push gateway.

FakeRemoteStore behaves like the HTTP service (ids, ordering, authorization,
idempotent reactions, change feed events) and adds knobs for tests:
- block(op): make the next calls of an operation wait on an asyncio.Event
- hold_response(op): let an operation take effect (and publish) but wait
  before returning, so its feed echo arrives first
- fail(op, error): make calls of an operation raise
- hold_feed(): queue feed events until release_feed(), so a create response
  can be made to arrive before its echo
- before_fetch: hook run between count and window fetch (stale-count races)
"""

import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from eventchat.exceptions import NotFoundError, PermissionDeniedError, PushTransportError
from eventchat.feed import ChangeFeed
from eventchat.push_gateway import PushReceipt
from eventchat.schemas import FeedEvent, MessageResponse, ReactionOut
from eventchat.store_client import FeedSubscription

EPOCH = datetime(2026, 3, 1, 18, 0, tzinfo=timezone.utc)


class FakeRemoteStore:
    def __init__(self, conversation_id: int = 1, admin: str = "staff@example.com", guest: str = "guest@example.com"):
        self.conversation_id = conversation_id
        self.parties = {"admin": admin, "guest": guest}
        self.feed = ChangeFeed()
        self.calls: List[Tuple[str, tuple]] = []
        self.before_fetch: Optional[Callable[[], None]] = None

        self._messages: Dict[int, MessageResponse] = {}
        self._reactions: Dict[int, List[Tuple[str, str]]] = {}
        self._ids = itertools.count(1)
        self._ticks = itertools.count(1)
        self._gates: Dict[str, asyncio.Event] = {}
        self._response_gates: Dict[str, asyncio.Event] = {}
        self._failures: Dict[str, Exception] = {}
        self._held: Optional[List[FeedEvent]] = None
        self._resync_handlers: List[Callable[[], Any]] = []

    # ------------------------------------------------------------------
    # Test knobs

    def block(self, op: str) -> asyncio.Event:
        gate = asyncio.Event()
        self._gates[op] = gate
        return gate

    def unblock(self, op: str) -> None:
        gate = self._gates.pop(op, None)
        if gate is not None:
            gate.set()

    def hold_response(self, op: str) -> asyncio.Event:
        gate = asyncio.Event()
        self._response_gates[op] = gate
        return gate

    def release_response(self, op: str) -> None:
        gate = self._response_gates.pop(op, None)
        if gate is not None:
            gate.set()

    def fail(self, op: str, error: Optional[Exception] = None) -> None:
        self._failures[op] = error or ConnectionError(f"{op} unavailable")

    def hold_feed(self) -> None:
        self._held = []

    def release_feed(self) -> None:
        held, self._held = self._held or [], None
        for event in held:
            self.feed.publish(event)

    async def reconnect(self) -> None:
        """Simulate the feed stream reopening."""
        for handler in list(self._resync_handlers):
            result = handler()
            if asyncio.iscoroutine(result):
                await result

    def count(self, op: str) -> int:
        return sum(1 for name, _ in self.calls if name == op)

    def messages(self) -> List[MessageResponse]:
        return sorted(self._messages.values(), key=lambda m: (m.created_at, m.id))

    def reactions_of(self, message_id: int) -> List[Tuple[str, str]]:
        return list(self._reactions.get(message_id, []))

    def insert_remote(self, sender_type: str, body: str, publish: bool = True) -> MessageResponse:
        """Store a message sent by someone else, optionally without a feed event."""
        message = self._insert(sender_type, self.parties[sender_type], body, None)
        if publish:
            self._publish(FeedEvent(type="insert", conversation_id=self.conversation_id, message=message))
        return message

    def delete_silently(self, message_id: int) -> None:
        self._messages.pop(message_id, None)
        self._reactions.pop(message_id, None)

    # ------------------------------------------------------------------
    # Internals

    async def _enter(self, op: str, *args) -> None:
        self.calls.append((op, args))
        gate = self._gates.get(op)
        if gate is not None:
            await gate.wait()
        error = self._failures.get(op)
        if error is not None:
            raise error

    async def _leave(self, op: str) -> None:
        gate = self._response_gates.get(op)
        if gate is not None:
            await gate.wait()

    def _publish(self, event: FeedEvent) -> None:
        if self._held is not None:
            self._held.append(event)
        else:
            self.feed.publish(event)

    def _snapshot(self, message_id: int) -> MessageResponse:
        message = self._messages[message_id]
        return message.model_copy(
            update={"reactions": [ReactionOut(reactor=r, emoji=e) for r, e in self._reactions.get(message_id, [])]}
        )

    def _insert(self, sender_type: str, sender_identity: str, body: str, reply_to_id: Optional[int]) -> MessageResponse:
        message = MessageResponse(
            id=next(self._ids),
            conversation_id=self.conversation_id,
            sender_type=sender_type,
            sender_identity=sender_identity,
            body=body,
            created_at=EPOCH + timedelta(seconds=next(self._ticks)),
            reply_to_id=reply_to_id,
        )
        self._messages[message.id] = message
        return message

    def _require(self, message_id: int) -> MessageResponse:
        if message_id not in self._messages:
            raise NotFoundError(f"Message {message_id} not found")
        return self._messages[message_id]

    # ------------------------------------------------------------------
    # RemoteStore

    async def create_message(self, conversation_id, sender_type, sender_identity, body, reply_to_id=None, sender_name=None):
        await self._enter("create_message", conversation_id, sender_type, sender_identity, body, reply_to_id)
        if conversation_id != self.conversation_id:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        if self.parties.get(sender_type) != sender_identity:
            raise PermissionDeniedError(f"{sender_identity} is not the {sender_type}")
        message = self._insert(sender_type, sender_identity, body, reply_to_id)
        self._publish(FeedEvent(type="insert", conversation_id=conversation_id, message=message))
        await self._leave("create_message")
        return message

    async def update_message(self, message_id, editor_identity, body):
        await self._enter("update_message", message_id, editor_identity, body)
        message = self._require(message_id)
        if message.sender_identity != editor_identity:
            raise PermissionDeniedError(f"{editor_identity} may not edit {message_id}")
        message = message.model_copy(update={"body": body, "is_edited": True, "edited_at": EPOCH})
        self._messages[message_id] = message
        updated = self._snapshot(message_id)
        self._publish(FeedEvent(type="update", conversation_id=self.conversation_id, message=updated))
        return updated

    async def delete_message(self, message_id, requester_identity):
        await self._enter("delete_message", message_id, requester_identity)
        message = self._require(message_id)
        if message.sender_identity != requester_identity:
            raise PermissionDeniedError(f"{requester_identity} may not delete {message_id}")
        self.delete_silently(message_id)
        self._publish(FeedEvent(type="delete", conversation_id=self.conversation_id, message_id=message_id))

    async def add_reaction(self, message_id, reactor, emoji):
        await self._enter("add_reaction", message_id, reactor, emoji)
        self._require(message_id)
        rows = self._reactions.setdefault(message_id, [])
        if (reactor, emoji) in rows:
            return
        rows.append((reactor, emoji))
        self._publish(
            FeedEvent(
                type="reaction_added",
                conversation_id=self.conversation_id,
                message_id=message_id,
                reactor=reactor,
                emoji=emoji,
            )
        )

    async def remove_reaction(self, message_id, reactor, emoji):
        await self._enter("remove_reaction", message_id, reactor, emoji)
        self._require(message_id)
        rows = self._reactions.get(message_id, [])
        if (reactor, emoji) not in rows:
            return
        rows.remove((reactor, emoji))
        self._publish(
            FeedEvent(
                type="reaction_removed",
                conversation_id=self.conversation_id,
                message_id=message_id,
                reactor=reactor,
                emoji=emoji,
            )
        )

    async def send_typing(self, conversation_id, identity, is_typing):
        await self._enter("send_typing", conversation_id, identity, is_typing)
        if identity not in self.parties.values():
            raise PermissionDeniedError(f"{identity} is not a party of conversation {conversation_id}")
        self._publish(
            FeedEvent(type="typing", conversation_id=conversation_id, identity=identity, is_typing=is_typing)
        )

    async def count_messages(self, conversation_id):
        await self._enter("count_messages", conversation_id)
        total = len(self._messages)
        if self.before_fetch is not None:
            self.before_fetch()
        return total

    async def fetch_window(self, conversation_id, limit, offset):
        await self._enter("fetch_window", conversation_id, limit, offset)
        rows = self.messages()[offset:offset + limit]
        return [self._snapshot(m.id) for m in rows]

    async def fetch_before(self, conversation_id, limit, before=None):
        await self._enter("fetch_before", conversation_id, limit, before)
        rows = self.messages()
        if before is not None:
            rows = [m for m in rows if (m.created_at, m.id) < before]
        return [self._snapshot(m.id) for m in rows[-limit:]]

    async def subscribe(self, conversation_id, on_event, on_resync=None):
        self.calls.append(("subscribe", (conversation_id,)))
        unsubscribe = self.feed.subscribe(conversation_id, on_event)
        if on_resync is not None:
            self._resync_handlers.append(on_resync)

        async def close() -> None:
            unsubscribe()
            if on_resync in self._resync_handlers:
                self._resync_handlers.remove(on_resync)

        return FeedSubscription(close)


class FakePushGateway:
    """
    Scripted push gateway.

    errors maps token -> error code for tokens the gateway should reject;
    transport_error makes the whole call raise; hang makes it never return.
    """

    def __init__(self, errors: Optional[Dict[str, str]] = None):
        self.errors: Dict[str, str] = dict(errors or {})
        self.transport_error: Optional[Exception] = None
        self.hang = False
        self.calls: List[Tuple[List[str], Dict[str, Any]]] = []

    async def dispatch(self, tokens: Sequence[str], payload: Dict[str, Any]) -> List[PushReceipt]:
        self.calls.append((list(tokens), payload))
        if self.hang:
            await asyncio.Event().wait()
        if self.transport_error is not None:
            raise PushTransportError(str(self.transport_error))
        receipts = []
        for token in tokens:
            error = self.errors.get(token)
            if error is None:
                receipts.append(PushReceipt(token=token, status="ok"))
            else:
                receipts.append(PushReceipt(token=token, status="error", error=error, message=f"{token} rejected"))
        return receipts
