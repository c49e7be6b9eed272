"""
Per-conversation chat session: an asyncio actor over a ConversationLog.

Every change to the log, whether it comes from the local user (send, edit,
delete, reaction toggle, backfill) or from the change feed (insert, update,
delete, reaction and typing events, resync), is queued on one inbox and
applied by one worker task. Remote calls run in their own tasks and post
their results back to the inbox, so a slow store never blocks feed delivery
and feed delivery never interleaves with a half-applied local mutation.

After each applied change the worker publishes a new immutable
SessionSnapshot to registered listeners.

Usage:
    session = ChatSession(store, conversation_id, Participant("guest", "ana@example.com"))
    await session.open()
    pending = await session.send("Where is the shuttle?")
    # session.snapshot already shows the pending entry
    entry = await pending.confirmation
    await session.close()
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Tuple

from eventchat.conversation_log import ChatEntry, ConversationLog, SessionSnapshot
from eventchat.exceptions import (
    InvalidRequestError,
    ReactionFailedError,
    SendFailedError,
    SessionClosedError,
)
from eventchat.pagination import DEFAULT_PAGE_SIZE, KeysetBackfill, OffsetBackfill, Page
from eventchat.schemas import FeedEvent
from eventchat.store_client import FeedSubscription, RemoteStore
from eventchat.utils import new_temp_id, utc_now

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[SessionSnapshot], None]

TYPING_TIMEOUT_SECONDS = 3.0


@dataclass(frozen=True)
class Participant:
    """The local side of the conversation."""
    kind: str  # admin | guest
    identity: str
    display_name: Optional[str] = None


@dataclass
class PendingSend:
    temp_id: str
    text: str
    confirmation: "asyncio.Future[ChatEntry]"


@dataclass
class PendingReaction:
    message_id: int
    emoji: str
    added: bool
    confirmation: "asyncio.Future[bool]"


class ChatSession:
    def __init__(
        self,
        store: RemoteStore,
        conversation_id: int,
        participant: Participant,
        page_size: int = DEFAULT_PAGE_SIZE,
        paging: str = "keyset",
        typing_timeout: float = TYPING_TIMEOUT_SECONDS,
    ):
        if paging not in ("keyset", "offset"):
            raise ValueError(f"Unknown paging strategy: {paging}")
        backfill_cls = KeysetBackfill if paging == "keyset" else OffsetBackfill

        self.conversation_id = conversation_id
        self.participant = participant
        self.draft = ""

        self._store = store
        self._backfill = backfill_cls(store, conversation_id, page_size)
        self._log = ConversationLog(conversation_id, participant.identity)
        self._inbox: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._subscription: Optional[FeedSubscription] = None
        self._tasks: Set[asyncio.Task] = set()
        self._reaction_locks: Dict[Tuple[int, str], asyncio.Lock] = {}
        self._reaction_lock_users: Dict[Tuple[int, str], int] = {}
        self._typing_timeout = typing_timeout
        self._typing_stop: Optional[asyncio.TimerHandle] = None
        self._typing_sent = False
        self._typing_expiry: Dict[str, Tuple[object, asyncio.TimerHandle]] = {}
        self._backfill_lock: Optional[asyncio.Lock] = None
        self._listeners: List[SnapshotListener] = []
        self._version = 0
        self._snapshot = self._log.snapshot(0)
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._snapshot

    @property
    def is_open(self) -> bool:
        return self._worker is not None and not self._closed

    def add_listener(self, listener: SnapshotListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def open(self) -> SessionSnapshot:
        """
        Start the actor, subscribe to the change feed, then load the newest page.

        Subscribing first means nothing inserted during the initial load is
        missed; the overlap is absorbed by merging on id.
        """
        if self._worker is not None:
            raise SessionClosedError("Session already opened")
        self._inbox = asyncio.Queue()
        self._backfill_lock = asyncio.Lock()
        self._worker = asyncio.create_task(self._run(), name=f"chat-session-{self.conversation_id}")
        try:
            self._subscription = await self._store.subscribe(
                self.conversation_id, self._on_feed_event, on_resync=self._resync
            )
            page = await self._backfill.newest()
            await self._submit(lambda: self._apply_page(page))
        except BaseException:
            await self.close()
            raise
        logger.info(f"Chat session opened: conversation={self.conversation_id}, entries={len(self._log)}")
        return self._snapshot

    async def close(self) -> None:
        """
        Unsubscribe and stop. In-flight remote calls are cancelled and
        unacknowledged optimistic entries are discarded.
        """
        if self._closed:
            return
        self._closed = True

        if self._subscription is not None:
            await self._subscription.close()

        if self._typing_stop is not None:
            self._typing_stop.cancel()
            self._typing_stop = None
        for _, handle in self._typing_expiry.values():
            handle.cancel()
        self._typing_expiry.clear()
        self._log.clear_typing()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if self._worker is not None:
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)

        if self._inbox is not None:
            while not self._inbox.empty():
                _, future = self._inbox.get_nowait()
                if future is not None and not future.done():
                    future.cancel()

        discarded = self._log.discard_pending()
        self._publish()
        logger.info(f"Chat session closed: conversation={self.conversation_id}, discarded_pending={discarded}")

    async def __aenter__(self) -> "ChatSession":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def flush(self) -> SessionSnapshot:
        """Wait until everything queued so far has been applied."""
        await self._submit(lambda: None)
        return self._snapshot

    # ------------------------------------------------------------------
    # Actor plumbing

    def _ensure_open(self) -> None:
        if self._inbox is None or self._closed:
            raise SessionClosedError(f"Session for conversation {self.conversation_id} is not open")

    async def _submit(self, fn):
        """Apply fn on the worker and return its result (or raise its exception)."""
        self._ensure_open()
        future = asyncio.get_running_loop().create_future()
        self._inbox.put_nowait((fn, future))
        return await future

    def _post(self, fn) -> None:
        """Queue fn without waiting for it."""
        if self._inbox is None or self._closed:
            return
        self._inbox.put_nowait((fn, None))

    async def _run(self) -> None:
        while True:
            fn, future = await self._inbox.get()
            try:
                result = fn()
            except Exception as e:
                if future is not None and not future.done():
                    future.set_exception(e)
                else:
                    logger.error(f"Session {self.conversation_id} failed to apply a change: {e}")
            else:
                if future is not None and not future.done():
                    future.set_result(result)
            self._publish()

    def _publish(self) -> None:
        self._version += 1
        self._snapshot = self._log.snapshot(self._version)
        for listener in list(self._listeners):
            try:
                listener(self._snapshot)
            except Exception as e:
                logger.error(f"Snapshot listener failed: {e}")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Change feed

    def _on_feed_event(self, event: FeedEvent) -> None:
        self._post(lambda: self._apply_event(event))

    def _apply_event(self, event: FeedEvent) -> None:
        if event.conversation_id != self.conversation_id:
            logger.warning(f"Ignoring feed event for conversation {event.conversation_id}")
            return
        if event.type == "insert" and event.message is not None:
            result = self._log.apply_insert(event.message)
            logger.debug(f"Feed insert {event.message.id}: {result}")
        elif event.type == "update" and event.message is not None:
            self._log.apply_update(event.message)
        elif event.type == "delete" and event.message_id is not None:
            self._log.prune(event.message_id)
        elif event.type in ("reaction_added", "reaction_removed") and event.message_id is not None:
            self._log.apply_reaction_event(
                event.message_id,
                event.reactor,
                event.emoji,
                added=event.type == "reaction_added",
            )
        elif event.type == "typing" and event.identity is not None:
            self._apply_typing(event.identity, bool(event.is_typing))
        else:
            logger.warning(f"Ignoring malformed feed event: {event.type}")

    async def _resync(self) -> None:
        """
        Reload the newest page after the feed (re)connects.

        A newest page that is not full is the whole conversation, so anything
        loaded before the reload and missing from it was deleted meanwhile.
        """
        if self._closed:
            return
        try:
            known_ids = await self._submit(self._log.confirmed_ids)
            page = await self._backfill.newest()
            await self._submit(
                lambda: self._log.reconcile_window(
                    page.messages, complete=not page.more_available, known_ids=known_ids
                )
            )
        except SessionClosedError:
            return
        except Exception as e:
            logger.warning(f"Resync of conversation {self.conversation_id} failed: {e}")

    # ------------------------------------------------------------------
    # Typing indicators

    def _apply_typing(self, identity: str, is_typing: bool) -> None:
        if identity == self.participant.identity:
            return
        previous = self._typing_expiry.pop(identity, None)
        if previous is not None:
            previous[1].cancel()
        self._log.set_typing(identity, is_typing)
        if is_typing:
            # A start without a matching stop clears itself
            token = object()
            handle = asyncio.get_running_loop().call_later(
                self._typing_timeout, self._post, lambda: self._expire_typing(identity, token)
            )
            self._typing_expiry[identity] = (token, handle)

    def _expire_typing(self, identity: str, token: object) -> None:
        current = self._typing_expiry.get(identity)
        if current is None or current[0] is not token:
            return
        del self._typing_expiry[identity]
        self._log.set_typing(identity, False)

    async def set_typing(self, is_typing: bool = True) -> None:
        """
        Tell the other party we started or stopped typing.

        A start is followed by an automatic stop once typing_timeout passes
        without another start; calling again restarts that timer.
        """
        self._ensure_open()
        if self._typing_stop is not None:
            self._typing_stop.cancel()
            self._typing_stop = None
        if is_typing:
            self._typing_stop = asyncio.get_running_loop().call_later(self._typing_timeout, self._stop_typing)
        elif not self._typing_sent:
            return
        self._typing_sent = is_typing
        await self._store.send_typing(self.conversation_id, self.participant.identity, is_typing)

    def _stop_typing(self) -> None:
        if self._typing_stop is not None:
            self._typing_stop.cancel()
            self._typing_stop = None
        if not self._typing_sent or self._closed:
            return
        self._typing_sent = False
        self._spawn(self._announce_stop())

    async def _announce_stop(self) -> None:
        try:
            await self._store.send_typing(self.conversation_id, self.participant.identity, False)
        except Exception as e:
            logger.warning(f"Typing stop for conversation {self.conversation_id} not delivered: {e}")

    # ------------------------------------------------------------------
    # Paging

    def _apply_page(self, page: Page) -> List[ChatEntry]:
        added = self._log.merge_page(page.messages)
        self._log.has_more = page.more_available
        return added

    async def load_older(self) -> int:
        """
        Backfill one page of older history.

        Returns:
            Number of previously unseen messages added
        """
        self._ensure_open()
        async with self._backfill_lock:
            known_ids, oldest, has_more = await self._submit(
                lambda: (self._log.confirmed_ids(), self._log.oldest_cursor(), self._log.has_more)
            )
            if not has_more:
                return 0
            page = await self._backfill.older(known_ids, oldest)
            added = await self._submit(lambda: self._apply_page(page))
            logger.debug(f"Backfilled {len(added)} message(s), more_available={page.more_available}")
            return len(added)

    # ------------------------------------------------------------------
    # Send

    async def send(self, text: str, reply_to_id: Optional[int] = None) -> PendingSend:
        """
        Append an optimistic entry and submit it.

        Returns as soon as the entry is in the log; `confirmation` resolves
        to the authoritative entry or fails with SendFailedError, in which
        case the entry is gone and `draft` holds the original text.
        """
        body = text.strip()
        if not body:
            raise InvalidRequestError("Cannot send an empty message")

        entry = ChatEntry(
            temp_id=new_temp_id(),
            conversation_id=self.conversation_id,
            sender_type=self.participant.kind,
            sender_identity=self.participant.identity,
            body=body,
            created_at=utc_now(),
            reply_to_id=reply_to_id,
            pending=True,
        )
        await self._submit(lambda: self._log.append_optimistic(entry))
        self.draft = ""
        self._stop_typing()

        confirmation = asyncio.get_running_loop().create_future()
        self._spawn(self._complete_send(entry, text, confirmation))
        return PendingSend(temp_id=entry.temp_id, text=text, confirmation=confirmation)

    async def _complete_send(self, entry: ChatEntry, text: str, confirmation: asyncio.Future) -> None:
        try:
            try:
                message = await self._store.create_message(
                    self.conversation_id,
                    self.participant.kind,
                    self.participant.identity,
                    entry.body,
                    entry.reply_to_id,
                    sender_name=self.participant.display_name,
                )
            except Exception as e:
                logger.warning(f"Send failed in conversation {self.conversation_id}, rolling back: {e}")
                await self._submit(lambda: self._log.rollback_send(entry.temp_id))
                self.draft = text
                confirmation.set_exception(SendFailedError(text, e))
                return

            confirmed = await self._submit(lambda: self._log.confirm_send(entry.temp_id, message))
            confirmation.set_result(confirmed)
        finally:
            if not confirmation.done():
                confirmation.cancel()

    # ------------------------------------------------------------------
    # Edit / delete (remote-first)

    async def edit(self, message_id: int, text: str) -> Optional[ChatEntry]:
        """
        Edit one of our own messages. The log changes only after the store confirms.

        Raises:
            PermissionDeniedError: not our message (no remote call is made)
            NotFoundError, StoreError: from the store; the log is untouched
        """
        body = text.strip()
        if not body:
            raise InvalidRequestError("Cannot edit a message to be empty")
        await self._submit(lambda: self._log.require_own(message_id))
        message = await self._store.update_message(message_id, self.participant.identity, body)
        return await self._submit(lambda: self._log.apply_update(message))

    async def delete(self, message_id: int) -> None:
        """Delete one of our own messages; pruned locally once the store confirms."""
        await self._submit(lambda: self._log.require_own(message_id))
        await self._store.delete_message(message_id, self.participant.identity)
        await self._submit(lambda: self._log.prune(message_id))

    # ------------------------------------------------------------------
    # Reactions (optimistic, rolled back on failure)

    async def toggle_reaction(self, message_id: int, emoji: str) -> PendingReaction:
        """
        Flip our emoji on a message. The snapshot reflects the change before
        this returns; `confirmation` resolves to the new held state or fails
        with ReactionFailedError after the change has been reverted.
        """
        added = await self._submit(lambda: self._log.toggle_reaction(message_id, emoji))
        confirmation = asyncio.get_running_loop().create_future()
        self._spawn(self._complete_reaction(message_id, emoji, added, confirmation))
        return PendingReaction(message_id=message_id, emoji=emoji, added=added, confirmation=confirmation)

    async def _complete_reaction(self, message_id: int, emoji: str, added: bool, confirmation: asyncio.Future) -> None:
        # Calls for the same (message, emoji) reach the store in toggle order
        key = (message_id, emoji)
        lock = self._reaction_locks.setdefault(key, asyncio.Lock())
        self._reaction_lock_users[key] = self._reaction_lock_users.get(key, 0) + 1
        try:
            async with lock:
                try:
                    if added:
                        await self._store.add_reaction(message_id, self.participant.identity, emoji)
                    else:
                        await self._store.remove_reaction(message_id, self.participant.identity, emoji)
                except Exception as e:
                    logger.warning(f"Reaction {emoji} on {message_id} failed, reverting: {e}")
                    await self._submit(lambda: self._log.revert_reaction(message_id, emoji, added))
                    confirmation.set_exception(ReactionFailedError(message_id, emoji, e))
                    return
                confirmation.set_result(added)
        finally:
            self._reaction_lock_users[key] -= 1
            if self._reaction_lock_users[key] == 0:
                del self._reaction_lock_users[key]
                del self._reaction_locks[key]
            self._post(lambda: self._log.settle_reaction(message_id, emoji))
            if not confirmation.done():
                confirmation.cancel()
