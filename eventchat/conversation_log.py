"""
Ordered message log for one conversation, as seen by one device.

ConversationLog is a plain, synchronous state machine. It is not thread- or
task-safe on its own: ChatSession applies every mutation from a single worker
task, which is what makes the operations below atomic with respect to each
other.

Invariants kept by every operation:
- entries are sorted by (created_at, pending, id, temp_id) ascending
- no two entries share an authoritative id
- at most one pending entry exists per in-flight local send
- an id once pruned never re-enters the log
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Collection, Iterable, List, Mapping, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict

from eventchat.exceptions import InvalidRequestError, NotFoundError, PermissionDeniedError
from eventchat.reactions import ReactionBook, ReactionSummary
from eventchat.schemas import MessageResponse


class ChatEntry(BaseModel):
    """One message in the client log; pending entries have a temp_id and no id."""
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    temp_id: Optional[str] = None
    conversation_id: int
    sender_type: str
    sender_identity: str
    body: str
    created_at: datetime
    is_edited: bool = False
    edited_at: Optional[datetime] = None
    reply_to_id: Optional[int] = None
    pending: bool = False

    @classmethod
    def from_message(cls, message: MessageResponse) -> "ChatEntry":
        return cls(
            id=message.id,
            conversation_id=message.conversation_id,
            sender_type=message.sender_type,
            sender_identity=message.sender_identity,
            body=message.body,
            created_at=message.created_at,
            is_edited=message.is_edited,
            edited_at=message.edited_at,
            reply_to_id=message.reply_to_id,
        )

    @property
    def key(self) -> str:
        return str(self.id) if self.id is not None else str(self.temp_id)

    def sort_key(self):
        return (self.created_at, 1 if self.pending else 0, self.id or 0, self.temp_id or "")


@dataclass(frozen=True)
class SessionSnapshot:
    """Immutable view of a conversation log handed to the presentation layer."""
    conversation_id: int
    entries: Tuple[ChatEntry, ...] = ()
    reactions: Mapping[int, Tuple[ReactionSummary, ...]] = field(default_factory=lambda: MappingProxyType({}))
    has_more: bool = True
    typing: Tuple[str, ...] = ()
    version: int = 0

    def ids(self) -> List[int]:
        return [e.id for e in self.entries if e.id is not None]

    def find(self, message_id: int) -> Optional[ChatEntry]:
        for entry in self.entries:
            if entry.id == message_id:
                return entry
        return None

    def reactions_for(self, message_id: int) -> Tuple[ReactionSummary, ...]:
        return self.reactions.get(message_id, ())

    @property
    def pending(self) -> Tuple[ChatEntry, ...]:
        return tuple(e for e in self.entries if e.pending)


class ConversationLog:
    def __init__(self, conversation_id: int, me: str):
        self.conversation_id = conversation_id
        self.me = me
        self.reactions = ReactionBook()
        self.has_more = True
        self._entries: List[ChatEntry] = []
        self._pruned: Set[int] = set()
        self._typing: Set[str] = set()
        self._reactions_in_flight: Counter = Counter()

    # ------------------------------------------------------------------
    # Lookup

    def __len__(self) -> int:
        return len(self._entries)

    def _index_of_id(self, message_id: int) -> Optional[int]:
        for index, entry in enumerate(self._entries):
            if entry.id == message_id:
                return index
        return None

    def _index_of_temp(self, temp_id: str) -> Optional[int]:
        for index, entry in enumerate(self._entries):
            if entry.temp_id == temp_id:
                return index
        return None

    def contains(self, message_id: int) -> bool:
        return self._index_of_id(message_id) is not None

    def get(self, message_id: int) -> ChatEntry:
        index = self._index_of_id(message_id)
        if index is None:
            raise NotFoundError(f"Message {message_id} is not loaded")
        return self._entries[index]

    def require_own(self, message_id: int) -> ChatEntry:
        """The entry, if the local identity sent it."""
        entry = self.get(message_id)
        if entry.sender_identity != self.me:
            raise PermissionDeniedError(f"Only the sender may modify message {message_id}")
        return entry

    def confirmed_ids(self) -> set:
        return {e.id for e in self._entries if e.id is not None}

    def oldest_cursor(self) -> Optional[Tuple[datetime, int]]:
        for entry in self._entries:
            if entry.id is not None:
                return entry.created_at, entry.id
        return None

    def _sort(self) -> None:
        self._entries.sort(key=ChatEntry.sort_key)

    # ------------------------------------------------------------------
    # Optimistic send

    def append_optimistic(self, entry: ChatEntry) -> ChatEntry:
        if not entry.pending or entry.temp_id is None:
            raise ValueError("optimistic entries must be pending and carry a temp_id")
        self._entries.append(entry)
        self._sort()
        return entry

    def confirm_send(self, temp_id: str, message: MessageResponse) -> ChatEntry:
        """
        Reconcile a pending entry with the store's authoritative row.

        - id already present (the feed echo won the race): drop the placeholder
        - placeholder present: replace it in place
        - placeholder already adopted by the feed: insert if still missing
        - message already deleted: drop the placeholder, insert nothing
        """
        confirmed = ChatEntry.from_message(message)
        temp_index = self._index_of_temp(temp_id)
        existing = self._index_of_id(message.id)

        if message.id in self._pruned:
            if temp_index is not None:
                del self._entries[temp_index]
            return confirmed
        if existing is not None:
            if temp_index is not None:
                del self._entries[temp_index]
            existing = self._index_of_id(message.id)
            self._entries[existing] = confirmed
        elif temp_index is not None:
            self._entries[temp_index] = confirmed
        else:
            self._entries.append(confirmed)
        self._sort()
        return confirmed

    def rollback_send(self, temp_id: str) -> bool:
        index = self._index_of_temp(temp_id)
        if index is None:
            return False
        del self._entries[index]
        return True

    def discard_pending(self) -> int:
        before = len(self._entries)
        self._entries = [e for e in self._entries if not e.pending]
        return before - len(self._entries)

    # ------------------------------------------------------------------
    # Remote changes

    def _find_adoptable(self, message: MessageResponse) -> Optional[int]:
        if message.sender_identity != self.me:
            return None
        for index, entry in enumerate(self._entries):
            if entry.pending and entry.body == message.body and entry.reply_to_id == message.reply_to_id:
                return index
        return None

    def apply_insert(self, message: MessageResponse) -> str:
        """
        Merge a feed insert.

        Returns:
            'merged' (id already known), 'adopted' (replaced our own pending
            placeholder), 'appended' or 'ignored' (already deleted)
        """
        if message.conversation_id != self.conversation_id:
            raise InvalidRequestError(
                f"Message {message.id} belongs to conversation {message.conversation_id}"
            )
        if message.id in self._pruned:
            return "ignored"
        self._typing.discard(message.sender_identity)
        entry = ChatEntry.from_message(message)
        index = self._index_of_id(message.id)
        if index is not None:
            self._entries[index] = entry
            result = "merged"
        else:
            index = self._find_adoptable(message)
            if index is not None:
                self._entries[index] = entry
                result = "adopted"
            else:
                self._entries.append(entry)
                result = "appended"
        self._sort()
        self._load_reactions(message)
        return result

    def apply_update(self, message: MessageResponse) -> Optional[ChatEntry]:
        """Replace a loaded entry's fields; updates for unloaded messages are ignored."""
        index = self._index_of_id(message.id)
        if index is None:
            return None
        entry = ChatEntry.from_message(message)
        self._entries[index] = entry
        self._sort()
        return entry

    def prune(self, message_id: int) -> bool:
        index = self._index_of_id(message_id)
        self._pruned.add(message_id)
        self.reactions.drop(message_id)
        if index is None:
            return False
        del self._entries[index]
        return True

    def merge_page(self, messages: Iterable[MessageResponse]) -> List[ChatEntry]:
        """
        Merge a fetched page (initial window, older page or resync).

        Rows already present are refreshed in place; the rest are inserted.
        Dedup is by id only, never by position.

        Returns:
            The entries that were not previously in the log
        """
        added = []
        for message in messages:
            if message.conversation_id != self.conversation_id or message.id in self._pruned:
                continue
            entry = ChatEntry.from_message(message)
            index = self._index_of_id(message.id)
            if index is not None:
                self._entries[index] = entry
            else:
                self._entries.append(entry)
                added.append(entry)
            self._load_reactions(message)
        self._sort()
        return added

    def reconcile_window(
        self,
        messages: List[MessageResponse],
        complete: bool = False,
        known_ids: Optional[Collection[int]] = None,
    ) -> List[ChatEntry]:
        """
        Merge a freshly fetched newest window and prune confirmed entries that
        the store no longer has (deleted while the feed was down).

        complete means the window is the whole conversation: every entry in
        known_ids (the ids loaded before the fetch started) that is missing
        from it is pruned, even when the window is empty. Otherwise only
        entries inside the window's time range are pruned and entries newer
        than the window are left alone.
        """
        messages = [m for m in messages if m.conversation_id == self.conversation_id]
        present = {m.id for m in messages}
        if complete:
            candidates = self.confirmed_ids() if known_ids is None else set(known_ids)
            for message_id in candidates - present:
                self.prune(message_id)
        elif messages:
            low = min(m.created_at for m in messages)
            high = max(m.created_at for m in messages)
            for entry in list(self._entries):
                if entry.id is None or entry.id in present:
                    continue
                if low <= entry.created_at <= high:
                    self.prune(entry.id)
        return self.merge_page(messages)

    def _load_reactions(self, message: MessageResponse) -> None:
        in_flight = [key for key, n in self._reactions_in_flight.items() if n > 0 and key[0] == message.id]
        self.reactions.load(
            message.id,
            ((r.reactor, r.emoji) for r in message.reactions),
            keep=in_flight,
        )

    # ------------------------------------------------------------------
    # Reactions

    def toggle_reaction(self, message_id: int, emoji: str) -> bool:
        """Optimistically flip the local identity's emoji; True if now held."""
        self.get(message_id)
        self._reactions_in_flight[(message_id, emoji)] += 1
        return self.reactions.toggle(message_id, self.me, emoji)

    def revert_reaction(self, message_id: int, emoji: str, added: bool) -> None:
        if not self.contains(message_id):
            return
        if added:
            self.reactions.remove(message_id, self.me, emoji)
        else:
            self.reactions.add(message_id, self.me, emoji)

    def settle_reaction(self, message_id: int, emoji: str) -> None:
        key = (message_id, emoji)
        self._reactions_in_flight[key] -= 1
        if self._reactions_in_flight[key] <= 0:
            del self._reactions_in_flight[key]

    def apply_reaction_event(self, message_id: int, reactor: str, emoji: str, added: bool) -> bool:
        """
        Apply a feed reaction event idempotently.

        Our own events for keys with a toggle in flight are echoes of state
        already applied locally and are ignored.
        """
        if not self.contains(message_id):
            return False
        if reactor == self.me and self._reactions_in_flight.get((message_id, emoji), 0) > 0:
            return False
        if added:
            return self.reactions.add(message_id, reactor, emoji)
        return self.reactions.remove(message_id, reactor, emoji)

    # ------------------------------------------------------------------
    # Typing indicators (ephemeral, never persisted)

    def set_typing(self, identity: str, is_typing: bool) -> bool:
        """Record another party's typing state; the local identity is ignored. True if changed."""
        if identity == self.me:
            return False
        if is_typing:
            if identity in self._typing:
                return False
            self._typing.add(identity)
            return True
        if identity not in self._typing:
            return False
        self._typing.discard(identity)
        return True

    def clear_typing(self) -> None:
        self._typing.clear()

    # ------------------------------------------------------------------

    def snapshot(self, version: int) -> SessionSnapshot:
        reactions = {}
        for entry in self._entries:
            if entry.id is not None:
                summaries = self.reactions.summaries(entry.id, self.me)
                if summaries:
                    reactions[entry.id] = summaries
        return SessionSnapshot(
            conversation_id=self.conversation_id,
            entries=tuple(self._entries),
            reactions=MappingProxyType(reactions),
            has_more=self.has_more,
            typing=tuple(sorted(self._typing)),
            version=version,
        )
