"""
Push gateway client (Expo-compatible push API).

One call carries every token of a recipient. The gateway answers with one
receipt per token; acceptance of the batch is not a delivery confirmation.
Transport-level failures (non-2xx, timeout, connection errors, unreadable
bodies) are raised as PushTransportError so the dispatcher can record them.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from eventchat.exceptions import PushTransportError

logger = logging.getLogger(__name__)

RECEIPT_OK = "ok"
RECEIPT_ERROR = "error"


@dataclass(frozen=True)
class PushReceipt:
    """The gateway's acknowledgment for one device token."""
    token: str
    status: str
    error: Optional[str] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == RECEIPT_OK

    def to_dict(self) -> Dict[str, Any]:
        return {"token": self.token, "error": self.error, "message": self.message}


class PushGateway(Protocol):
    async def dispatch(self, tokens: Sequence[str], payload: Dict[str, Any]) -> List[PushReceipt]:
        ...


def compose_payload(
    notification_id: int,
    message_id: int,
    conversation_id: int,
    sender_identity: str,
    preview: str,
    event_id: Optional[str] = None,
    sender_name: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Build the notification payload shared by all of a recipient's devices.

    `preview` is the already truncated message text stored on the record.
    The title names the sender by display name when one was given.
    """
    return {
        "title": f"New message from {sender_name or sender_identity}",
        "body": preview,
        "data": {
            "type": "guest_chat",
            "notificationId": notification_id,
            "messageId": message_id,
            "conversationId": conversation_id,
            "eventId": event_id,
            "senderIdentity": sender_identity,
            "senderName": sender_name,
        },
        "sound": "default",
        "badge": 1,
        "priority": "high",
        "channelId": "guest-chat",
    }


def parse_receipts(tokens: Sequence[str], body: Any) -> List[PushReceipt]:
    """
    Map the gateway's `data` array onto the tokens, in order.

    A token without a matching entry gets an error receipt so that a short
    response is never mistaken for success.
    """
    if not isinstance(body, dict):
        raise PushTransportError(f"Unexpected gateway response: {body!r}")

    data = body.get("data")
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise PushTransportError(f"Gateway response has no receipt data: {body!r}")

    receipts = []
    for index, token in enumerate(tokens):
        if index >= len(data) or not isinstance(data[index], dict):
            receipts.append(PushReceipt(token=token, status=RECEIPT_ERROR, error="MissingReceipt"))
            continue
        entry = data[index]
        if entry.get("status") == RECEIPT_OK:
            receipts.append(PushReceipt(token=token, status=RECEIPT_OK))
        else:
            details = entry.get("details") or {}
            receipts.append(
                PushReceipt(
                    token=token,
                    status=RECEIPT_ERROR,
                    error=details.get("error") or "UnknownError",
                    message=entry.get("message"),
                )
            )
    return receipts


class ExpoPushGateway:
    """httpx client for the Expo push send endpoint."""

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 10.0,
        access_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._url = url
        self._timeout = timeout_seconds
        self._access_token = access_token
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._client is None:
            headers = {
                "Accept": "application/json",
                "Accept-Encoding": "gzip, deflate",
                "Content-Type": "application/json",
            }
            if self._access_token:
                headers["Authorization"] = f"Bearer {self._access_token}"
            self._client = httpx.AsyncClient(timeout=self._timeout, headers=headers, transport=self._transport)
        return self._client

    async def close(self):
        """Close HTTP client"""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def dispatch(self, tokens: Sequence[str], payload: Dict[str, Any]) -> List[PushReceipt]:
        """
        Send one payload to all tokens in a single request.

        Returns:
            One PushReceipt per token, in token order

        Raises:
            PushTransportError: the request did not produce a usable 2xx response
        """
        client = await self._get_client()
        logger.debug(f"Dispatching push to {len(tokens)} device(s)")

        try:
            response = await client.post(self._url, json={"to": list(tokens), **payload})
        except httpx.TimeoutException as e:
            raise PushTransportError(f"Push gateway timeout: {e}") from e
        except httpx.HTTPError as e:
            raise PushTransportError(f"Push gateway request failed: {e}") from e

        if not response.is_success:
            raise PushTransportError(f"Push gateway error: {response.status_code} {response.text}")

        try:
            body = response.json()
        except ValueError as e:
            raise PushTransportError(f"Push gateway returned invalid JSON: {e}") from e

        return parse_receipts(tokens, body)
