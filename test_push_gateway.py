"""
Tests for the Expo-compatible push gateway client.
"""

import json

import httpx
import pytest

from eventchat.exceptions import PushTransportError
from eventchat.push_gateway import ExpoPushGateway, compose_payload, parse_receipts


URL = "https://push.example.test/send"


def gateway_for(handler) -> ExpoPushGateway:
    return ExpoPushGateway(URL, access_token="secret-token", transport=httpx.MockTransport(handler))


class TestComposePayload:
    def test_payload_fields(self):
        payload = compose_payload(7, 42, 3, "staff@example.com", "See you at the bar")

        assert payload["title"] == "New message from staff@example.com"
        assert payload["body"] == "See you at the bar"
        assert payload["data"] == {
            "type": "guest_chat",
            "notificationId": 7,
            "messageId": 42,
            "conversationId": 3,
            "eventId": None,
            "senderIdentity": "staff@example.com",
            "senderName": None,
        }
        assert payload["priority"] == "high"

    def test_display_name_and_event(self):
        payload = compose_payload(
            7, 42, 3, "staff@example.com", "See you at the bar", event_id="evt-gala-2026", sender_name="Maya Lin"
        )

        assert payload["title"] == "New message from Maya Lin"
        assert payload["data"]["eventId"] == "evt-gala-2026"
        assert payload["data"]["senderName"] == "Maya Lin"
        assert payload["data"]["senderIdentity"] == "staff@example.com"


class TestParseReceipts:
    def test_maps_entries_in_token_order(self):
        body = {
            "data": [
                {"status": "ok", "id": "r1"},
                {"status": "error", "message": "not registered", "details": {"error": "DeviceNotRegistered"}},
            ]
        }
        receipts = parse_receipts(["a", "b"], body)

        assert [r.ok for r in receipts] == [True, False]
        assert receipts[1].error == "DeviceNotRegistered"

    def test_short_response_is_not_success(self):
        receipts = parse_receipts(["a", "b"], {"data": [{"status": "ok"}]})
        assert receipts[1].error == "MissingReceipt"

    def test_error_without_details(self):
        receipts = parse_receipts(["a"], {"data": [{"status": "error"}]})
        assert receipts[0].error == "UnknownError"

    def test_missing_data_raises(self):
        with pytest.raises(PushTransportError):
            parse_receipts(["a"], {"errors": [{"code": "INTERNAL"}]})


@pytest.mark.anyio
class TestExpoPushGateway:
    async def test_single_batched_request(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"data": [{"status": "ok"}, {"status": "ok"}]})

        gateway = gateway_for(handler)
        receipts = await gateway.dispatch(["a", "b"], compose_payload(1, 2, 3, "x", "hi"))
        await gateway.close()

        assert len(requests) == 1
        sent = json.loads(requests[0].content)
        assert sent["to"] == ["a", "b"]
        assert sent["body"] == "hi"
        assert requests[0].headers["Authorization"] == "Bearer secret-token"
        assert all(r.ok for r in receipts)

    async def test_non_2xx_raises(self):
        gateway = gateway_for(lambda request: httpx.Response(503, text="unavailable"))
        with pytest.raises(PushTransportError):
            await gateway.dispatch(["a"], {})
        await gateway.close()

    async def test_connection_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        gateway = gateway_for(handler)
        with pytest.raises(PushTransportError):
            await gateway.dispatch(["a"], {})
        await gateway.close()

    async def test_invalid_json_raises(self):
        gateway = gateway_for(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(PushTransportError):
            await gateway.dispatch(["a"], {})
        await gateway.close()
