"""
Client-side reaction aggregates.

The book stores, per message and emoji, the set of reactor identities.
Counts and the self_reacted flag are derived from those sets, so applying
the same add twice (an at-least-once feed redelivery, a duplicate echo) never
double counts and a count can never go negative.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, Set, Tuple


@dataclass(frozen=True)
class ReactionSummary:
    emoji: str
    count: int
    self_reacted: bool


class ReactionBook:
    def __init__(self):
        self._by_message: Dict[int, Dict[str, Set[str]]] = {}

    def has(self, message_id: int, reactor: str, emoji: str) -> bool:
        return reactor in self._by_message.get(message_id, {}).get(emoji, ())

    def add(self, message_id: int, reactor: str, emoji: str) -> bool:
        """Returns True if the reactor did not already hold the emoji."""
        reactors = self._by_message.setdefault(message_id, {}).setdefault(emoji, set())
        if reactor in reactors:
            return False
        reactors.add(reactor)
        return True

    def remove(self, message_id: int, reactor: str, emoji: str) -> bool:
        """Returns True if something was removed."""
        emojis = self._by_message.get(message_id)
        if not emojis or reactor not in emojis.get(emoji, ()):
            return False
        emojis[emoji].discard(reactor)
        if not emojis[emoji]:
            del emojis[emoji]
        if not emojis:
            del self._by_message[message_id]
        return True

    def toggle(self, message_id: int, reactor: str, emoji: str) -> bool:
        """
        Flip the reactor's emoji on a message.

        Returns:
            True if the reaction is now held (an add), False if it was removed
        """
        if self.has(message_id, reactor, emoji):
            self.remove(message_id, reactor, emoji)
            return False
        self.add(message_id, reactor, emoji)
        return True

    def load(
        self,
        message_id: int,
        rows: Iterable[Tuple[str, str]],
        keep: Iterable[Tuple[int, str]] = (),
    ) -> None:
        """
        Replace a message's reactions with the store's view.

        Args:
            rows: (reactor, emoji) pairs as returned by the store
            keep: (message_id, emoji) keys with a local toggle still in flight;
                their local reactor sets are preserved
        """
        keep = set(keep)
        kept = {
            emoji: set(reactors)
            for emoji, reactors in self._by_message.get(message_id, {}).items()
            if (message_id, emoji) in keep
        }
        fresh: Dict[str, Set[str]] = {}
        for reactor, emoji in rows:
            if (message_id, emoji) in keep:
                continue
            fresh.setdefault(emoji, set()).add(reactor)
        fresh.update(kept)
        if fresh:
            self._by_message[message_id] = fresh
        else:
            self._by_message.pop(message_id, None)

    def drop(self, message_id: int) -> None:
        self._by_message.pop(message_id, None)

    def summaries(self, message_id: int, me: str) -> Tuple[ReactionSummary, ...]:
        emojis = self._by_message.get(message_id, {})
        return tuple(
            ReactionSummary(emoji=emoji, count=len(reactors), self_reacted=me in reactors)
            for emoji, reactors in sorted(emojis.items())
        )

    def message_ids(self) -> Tuple[int, ...]:
        return tuple(self._by_message)
