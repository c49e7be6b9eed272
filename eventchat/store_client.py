"""
Client side of the remote store: the interface a ChatSession depends on and
an httpx implementation talking to the eventchat service.

The change feed is consumed as Server-Sent Events. The reader task reconnects
after transport errors. Each time the stream (re)opens it calls `on_resync`,
since events published while the stream was not open are not replayed.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Protocol

import httpx

from eventchat.exceptions import (
    InvalidRequestError,
    NotFoundError,
    PermissionDeniedError,
    StoreError,
)
from eventchat.pagination import Cursor
from eventchat.schemas import FeedEvent, MessageResponse, MessagesListResponse
from eventchat.utils import to_iso

logger = logging.getLogger(__name__)

FeedHandler = Callable[[FeedEvent], None]
ResyncHandler = Callable[[], Any]


class FeedSubscription:
    """Handle returned by subscribe(); close() stops delivery."""

    def __init__(self, close: Callable[[], Awaitable[None]]):
        self._close = close
        self.closed = False

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self._close()


class RemoteStore(Protocol):
    async def create_message(
        self,
        conversation_id: int,
        sender_type: str,
        sender_identity: str,
        body: str,
        reply_to_id: Optional[int] = None,
        sender_name: Optional[str] = None,
    ) -> MessageResponse: ...

    async def update_message(self, message_id: int, editor_identity: str, body: str) -> MessageResponse: ...

    async def delete_message(self, message_id: int, requester_identity: str) -> None: ...

    async def add_reaction(self, message_id: int, reactor: str, emoji: str) -> None: ...

    async def remove_reaction(self, message_id: int, reactor: str, emoji: str) -> None: ...

    async def send_typing(self, conversation_id: int, identity: str, is_typing: bool) -> None: ...

    async def count_messages(self, conversation_id: int) -> int: ...

    async def fetch_window(self, conversation_id: int, limit: int, offset: int) -> List[MessageResponse]: ...

    async def fetch_before(
        self, conversation_id: int, limit: int, before: Optional[Cursor] = None
    ) -> List[MessageResponse]: ...

    async def subscribe(
        self,
        conversation_id: int,
        on_event: FeedHandler,
        on_resync: Optional[ResyncHandler] = None,
    ) -> FeedSubscription: ...


def _raise_for_status(response: httpx.Response) -> None:
    if response.is_success:
        return
    try:
        detail = response.json().get("detail", response.text)
    except ValueError:
        detail = response.text
    if response.status_code == 404:
        raise NotFoundError(str(detail))
    if response.status_code == 403:
        raise PermissionDeniedError(str(detail))
    if response.status_code == 422:
        raise InvalidRequestError(str(detail))
    raise StoreError(f"Store error {response.status_code}: {detail}", status_code=response.status_code)


class HttpRemoteStore:
    """RemoteStore backed by the eventchat HTTP service."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 10.0,
        reconnect_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._reconnect_delay = reconnect_delay
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                headers={"Accept": "application/json"},
                transport=self._transport,
            )
        return self._client

    async def close(self):
        """Close HTTP client"""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise StoreError(f"Store timeout on {method} {url}: {e}") from e
        except httpx.HTTPError as e:
            raise StoreError(f"Store request {method} {url} failed: {e}") from e
        _raise_for_status(response)
        return response

    # ------------------------------------------------------------------
    # Messages

    async def create_message(
        self,
        conversation_id: int,
        sender_type: str,
        sender_identity: str,
        body: str,
        reply_to_id: Optional[int] = None,
        sender_name: Optional[str] = None,
    ) -> MessageResponse:
        response = await self._request(
            "POST",
            f"/conversations/{conversation_id}/messages",
            json={
                "sender_type": sender_type,
                "sender_identity": sender_identity,
                "body": body,
                "reply_to_id": reply_to_id,
                "sender_name": sender_name,
            },
        )
        return MessageResponse.model_validate(response.json())

    async def update_message(self, message_id: int, editor_identity: str, body: str) -> MessageResponse:
        response = await self._request(
            "PATCH",
            f"/messages/{message_id}",
            json={"editor_identity": editor_identity, "body": body},
        )
        return MessageResponse.model_validate(response.json())

    async def delete_message(self, message_id: int, requester_identity: str) -> None:
        await self._request("DELETE", f"/messages/{message_id}", params={"requester": requester_identity})

    # ------------------------------------------------------------------
    # Reactions

    async def add_reaction(self, message_id: int, reactor: str, emoji: str) -> None:
        await self._request("POST", f"/messages/{message_id}/reactions", json={"reactor": reactor, "emoji": emoji})

    async def remove_reaction(self, message_id: int, reactor: str, emoji: str) -> None:
        await self._request(
            "DELETE",
            f"/messages/{message_id}/reactions",
            params={"reactor": reactor, "emoji": emoji},
        )

    async def send_typing(self, conversation_id: int, identity: str, is_typing: bool) -> None:
        await self._request(
            "POST",
            f"/conversations/{conversation_id}/typing",
            json={"identity": identity, "is_typing": is_typing},
        )

    # ------------------------------------------------------------------
    # Paging

    async def count_messages(self, conversation_id: int) -> int:
        response = await self._request("GET", f"/conversations/{conversation_id}/messages/count")
        return int(response.json()["total"])

    async def fetch_window(self, conversation_id: int, limit: int, offset: int) -> List[MessageResponse]:
        response = await self._request(
            "GET",
            f"/conversations/{conversation_id}/messages",
            params={"limit": limit, "offset": offset},
        )
        return MessagesListResponse.model_validate(response.json()).data

    async def fetch_before(
        self, conversation_id: int, limit: int, before: Optional[Cursor] = None
    ) -> List[MessageResponse]:
        params = {"limit": limit}
        if before is not None:
            params["before_created_at"] = to_iso(before[0])
            params["before_id"] = before[1]
        response = await self._request("GET", f"/conversations/{conversation_id}/messages", params=params)
        return MessagesListResponse.model_validate(response.json()).data

    # ------------------------------------------------------------------
    # Change feed

    async def subscribe(
        self,
        conversation_id: int,
        on_event: FeedHandler,
        on_resync: Optional[ResyncHandler] = None,
    ) -> FeedSubscription:
        task = asyncio.create_task(
            self._read_feed(conversation_id, on_event, on_resync),
            name=f"feed-{conversation_id}",
        )

        async def close() -> None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        return FeedSubscription(close)

    async def _read_feed(
        self,
        conversation_id: int,
        on_event: FeedHandler,
        on_resync: Optional[ResyncHandler],
    ) -> None:
        client = await self._get_client()
        url = f"/conversations/{conversation_id}/feed"
        while True:
            try:
                async with client.stream("GET", url, timeout=httpx.Timeout(self._timeout, read=None)) as response:
                    if not response.is_success:
                        await response.aread()
                    _raise_for_status(response)
                    if on_resync is not None:
                        result = on_resync()
                        if asyncio.iscoroutine(result):
                            await result
                    await self._consume_events(response, on_event)
            except (httpx.HTTPError, StoreError) as e:
                logger.warning(f"Feed for conversation {conversation_id} dropped: {e}")
            await asyncio.sleep(self._reconnect_delay)

    @staticmethod
    async def _consume_events(response: httpx.Response, on_event: FeedHandler) -> None:
        data_lines: List[str] = []
        async for line in response.aiter_lines():
            if line.startswith("data:"):
                data_lines.append(line[5:].lstrip())
            elif line == "" and data_lines:
                payload = "\n".join(data_lines)
                data_lines = []
                try:
                    event = FeedEvent.model_validate_json(payload)
                except ValueError as e:
                    logger.error(f"Discarding malformed feed event: {e}")
                    continue
                on_event(event)
            # comment lines (keepalives), id: and event: fields need no handling
