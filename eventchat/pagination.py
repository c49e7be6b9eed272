"""
Pagination / backfill for a conversation's history.

Two strategies share one interface:

KeysetBackfill (default)
    Older pages are the N newest rows strictly before the oldest loaded
    (created_at, id) cursor. Stable under concurrent inserts.

OffsetBackfill
    Count-then-offset windows for stores that only expose countRows and a
    windowed fetch:

        initial: offset = max(0, total - N)
        older:   offset = max(0, total - N - already_loaded)

    The count can be stale by the time the window is fetched, so the window
    may overlap or miss rows at the boundary.

Neither strategy trusts its own arithmetic: every page is deduplicated by id
against what is already loaded. "More available" turns false once a fetch
yields fewer than N previously unseen rows.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Collection, List, Optional, Protocol, Tuple

from eventchat.schemas import MessageResponse

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50

Cursor = Tuple[datetime, int]


class PagingStore(Protocol):
    async def count_messages(self, conversation_id: int) -> int: ...

    async def fetch_window(self, conversation_id: int, limit: int, offset: int) -> List[MessageResponse]: ...

    async def fetch_before(
        self, conversation_id: int, limit: int, before: Optional[Cursor] = None
    ) -> List[MessageResponse]: ...


@dataclass
class Page:
    """A fetched page with already-known rows removed, oldest first."""
    messages: List[MessageResponse] = field(default_factory=list)
    more_available: bool = False
    offset: Optional[int] = None


def newest_window_offset(total: int, page_size: int) -> int:
    return max(0, total - page_size)


def older_window_offset(total: int, page_size: int, already_loaded: int) -> int:
    return max(0, total - page_size - already_loaded)


def unseen(messages: List[MessageResponse], known_ids: Collection[int]) -> List[MessageResponse]:
    """Drop rows whose id is already known (or repeated within the page); keep ascending order."""
    seen = set(known_ids)
    fresh = []
    for message in messages:
        if message.id in seen:
            continue
        seen.add(message.id)
        fresh.append(message)
    fresh.sort(key=lambda m: (m.created_at, m.id))
    return fresh


class OffsetBackfill:
    def __init__(self, store: PagingStore, conversation_id: int, page_size: int = DEFAULT_PAGE_SIZE):
        self._store = store
        self._conversation_id = conversation_id
        self.page_size = page_size

    async def newest(self) -> Page:
        total = await self._store.count_messages(self._conversation_id)
        offset = newest_window_offset(total, self.page_size)
        rows = await self._store.fetch_window(self._conversation_id, self.page_size, offset)
        logger.debug(f"Initial window conversation={self._conversation_id} total={total} offset={offset}: {len(rows)} rows")
        return Page(messages=unseen(rows, ()), more_available=offset > 0, offset=offset)

    async def older(self, known_ids: Collection[int], oldest: Optional[Cursor] = None) -> Page:
        total = await self._store.count_messages(self._conversation_id)
        offset = older_window_offset(total, self.page_size, len(known_ids))
        rows = await self._store.fetch_window(self._conversation_id, self.page_size, offset)
        fresh = unseen(rows, known_ids)
        logger.debug(
            f"Backfill conversation={self._conversation_id} total={total} loaded={len(known_ids)} "
            f"offset={offset}: {len(fresh)} unseen of {len(rows)}"
        )
        return Page(messages=fresh, more_available=len(fresh) >= self.page_size, offset=offset)


class KeysetBackfill:
    def __init__(self, store: PagingStore, conversation_id: int, page_size: int = DEFAULT_PAGE_SIZE):
        self._store = store
        self._conversation_id = conversation_id
        self.page_size = page_size

    async def newest(self) -> Page:
        rows = await self._store.fetch_before(self._conversation_id, self.page_size, None)
        return Page(messages=unseen(rows, ()), more_available=len(rows) >= self.page_size)

    async def older(self, known_ids: Collection[int], oldest: Optional[Cursor] = None) -> Page:
        if oldest is None:
            # Nothing confirmed is loaded yet; the newest page is the oldest we can ask for
            return await self.newest()
        rows = await self._store.fetch_before(self._conversation_id, self.page_size, oldest)
        fresh = unseen(rows, known_ids)
        logger.debug(f"Keyset backfill conversation={self._conversation_id} before={oldest}: {len(fresh)} unseen")
        return Page(messages=fresh, more_available=len(fresh) >= self.page_size)
