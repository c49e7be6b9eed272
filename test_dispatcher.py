"""
Tests for the notification dispatcher.

Tests cover:
- Fan-out to every registered device of the recipient
- Partial failure (one device rejected) and all devices rejected
- Payload carries the event id and the sender display name
- Recipient without devices
- Transport failure and deadline
- Single attempt per record
- End-to-end: posting a message triggers exactly one dispatch
"""

import json

import pytest

from eventchat.dispatcher import DispatchStatus, NotificationDispatcher, summarize_receipts
from eventchat.push_gateway import PushReceipt
from eventchat.storage import (
    SessionLocal,
    create_conversation,
    create_message,
    get_notification,
    register_device_token,
)
from fakes import FakePushGateway


ADMIN = "staff@example.com"
GUEST = "guest@example.com"


def load_record(notification_id):
    with SessionLocal() as session:
        return get_notification(session, notification_id)


@pytest.fixture
def record(db):
    """A pending notification for a guest message, addressed to the admin."""
    conversation, _ = create_conversation(db, "evt-gala-2026", ADMIN, GUEST)
    _, record = create_message(db, conversation.id, "guest", GUEST, "Is the venue wheelchair accessible?")
    return record


class TestSummarizeReceipts:
    def test_all_ok(self):
        receipts = [PushReceipt("a", "ok"), PushReceipt("b", "ok")]
        assert summarize_receipts(receipts) == (DispatchStatus.SENT, True, None)

    def test_partial_names_only_failing_tokens(self):
        receipts = [PushReceipt("a", "ok"), PushReceipt("b", "error", "DeviceNotRegistered", "gone")]

        status, push_sent, push_error = summarize_receipts(receipts)

        assert status == DispatchStatus.PARTIAL
        assert push_sent is True
        error = json.loads(push_error)
        assert error["kind"] == "partial_failure"
        assert error["failed"] == 1
        assert error["total"] == 2
        assert [f["token"] for f in error["failures"]] == ["b"]
        assert error["failures"][0]["error"] == "DeviceNotRegistered"

    def test_all_rejected(self):
        receipts = [PushReceipt("a", "error", "MessageRateExceeded")]

        status, push_sent, push_error = summarize_receipts(receipts)

        assert status == DispatchStatus.REJECTED
        assert push_sent is True
        assert json.loads(push_error)["kind"] == "all_failed"


@pytest.mark.anyio
class TestDispatch:
    async def test_fan_out_with_one_rejected_device(self, db, record):
        register_device_token(db, ADMIN, "phone")
        register_device_token(db, ADMIN, "tablet")
        gateway = FakePushGateway(errors={"tablet": "DeviceNotRegistered"})

        outcome = await NotificationDispatcher(gateway).dispatch(record.id)

        assert outcome.status == DispatchStatus.PARTIAL
        assert len(gateway.calls) == 1
        tokens, payload = gateway.calls[0]
        assert tokens == ["phone", "tablet"]
        assert payload["title"] == f"New message from {GUEST}"
        assert payload["body"] == "Is the venue wheelchair accessible?"
        assert payload["data"]["messageId"] == record.message_id

        stored = load_record(record.id)
        assert stored.status == "partial"
        assert stored.push_sent is True
        assert stored.push_sent_at is not None
        assert "tablet" in stored.push_error
        assert "phone" not in stored.push_error

    async def test_all_devices_ok(self, db, record):
        register_device_token(db, ADMIN, "phone")
        gateway = FakePushGateway()

        outcome = await NotificationDispatcher(gateway).dispatch(record.id)

        assert outcome.status == DispatchStatus.SENT
        stored = load_record(record.id)
        assert stored.status == "sent"
        assert stored.push_sent is True
        assert stored.push_error is None

    async def test_all_devices_rejected(self, db, record):
        register_device_token(db, ADMIN, "phone")
        gateway = FakePushGateway(errors={"phone": "InvalidCredentials"})

        outcome = await NotificationDispatcher(gateway).dispatch(record.id)

        assert outcome.status == DispatchStatus.REJECTED
        stored = load_record(record.id)
        assert stored.status == "rejected"
        assert stored.push_sent is True
        assert stored.push_sent_at is not None
        assert "InvalidCredentials" in stored.push_error

    async def test_recipient_without_devices(self, db, record):
        register_device_token(db, GUEST, "sender-phone")
        gateway = FakePushGateway()

        outcome = await NotificationDispatcher(gateway).dispatch(record.id)

        assert outcome.status == DispatchStatus.NO_TOKENS
        assert gateway.calls == []
        stored = load_record(record.id)
        assert stored.status == "no_tokens"
        assert stored.push_sent is False
        assert stored.push_error is None

    async def test_transport_failure(self, db, record):
        register_device_token(db, ADMIN, "phone")
        gateway = FakePushGateway()
        gateway.transport_error = ConnectionError("connection reset")

        outcome = await NotificationDispatcher(gateway).dispatch(record.id)

        assert outcome.status == DispatchStatus.FAILED
        stored = load_record(record.id)
        assert stored.status == "failed"
        assert stored.push_sent is False
        error = json.loads(stored.push_error)
        assert error["kind"] == "transport_error"
        assert "connection reset" in error["detail"]

    async def test_deadline(self, db, record):
        register_device_token(db, ADMIN, "phone")
        gateway = FakePushGateway()
        gateway.hang = True

        outcome = await NotificationDispatcher(gateway, deadline_seconds=0.05).dispatch(record.id)

        assert outcome.status == DispatchStatus.FAILED
        stored = load_record(record.id)
        assert stored.status == "failed"
        assert "deadline" in stored.push_error

    async def test_single_attempt(self, db, record):
        register_device_token(db, ADMIN, "phone")
        gateway = FakePushGateway()
        dispatcher = NotificationDispatcher(gateway)

        first = await dispatcher.dispatch(record.id)
        second = await dispatcher.dispatch(record.id)

        assert first.status == DispatchStatus.SENT
        assert second.status == DispatchStatus.SKIPPED
        assert len(gateway.calls) == 1

    async def test_failed_record_is_not_retried(self, db, record):
        register_device_token(db, ADMIN, "phone")
        gateway = FakePushGateway()
        gateway.transport_error = ConnectionError("down")
        dispatcher = NotificationDispatcher(gateway)

        await dispatcher.dispatch(record.id)
        gateway.transport_error = None
        again = await dispatcher.dispatch(record.id)

        assert again.status == DispatchStatus.SKIPPED
        assert load_record(record.id).status == "failed"

    async def test_unknown_record_is_skipped(self, database):
        outcome = await NotificationDispatcher(FakePushGateway()).dispatch(4242)
        assert outcome.status == DispatchStatus.SKIPPED


class TestPreview:
    def test_long_body_is_truncated(self, db):
        conversation, _ = create_conversation(db, "evt", ADMIN, GUEST)
        _, record = create_message(db, conversation.id, "admin", ADMIN, "x" * 150, preview_length=100)

        assert record.preview == "x" * 100 + "..."
        assert record.recipient_identity == GUEST
        assert record.status == "pending"


class TestEndToEnd:
    def test_post_message_dispatches_once(self, client, conversation, push_gateway, drain):
        client.put("/devices", json={"identity": ADMIN, "token": "phone"})
        client.put("/devices", json={"identity": ADMIN, "token": "tablet"})
        push_gateway.errors["tablet"] = "DeviceNotRegistered"

        response = client.post(
            f"/conversations/{conversation['id']}/messages",
            json={"sender_type": "guest", "sender_identity": GUEST, "body": "Hello!"},
        )
        drain()

        assert response.status_code == 201
        assert len(push_gateway.calls) == 1
        assert push_gateway.calls[0][0] == ["phone", "tablet"]
        with SessionLocal() as session:
            from eventchat.models import NotificationRecord

            stored = session.query(NotificationRecord).one()
        assert stored.message_id == response.json()["id"]
        assert stored.status == "partial"

    def test_push_failure_does_not_affect_insert(self, client, conversation, push_gateway, drain):
        client.put("/devices", json={"identity": GUEST, "token": "guest-phone"})
        push_gateway.transport_error = ConnectionError("gateway down")

        response = client.post(
            f"/conversations/{conversation['id']}/messages",
            json={"sender_type": "admin", "sender_identity": ADMIN, "body": "Doors open at 7"},
        )
        drain()

        assert response.status_code == 201
        count = client.get(f"/conversations/{conversation['id']}/messages/count").json()
        assert count["total"] == 1

    def test_sender_name_reaches_payload(self, client, conversation, push_gateway, drain):
        client.put("/devices", json={"identity": ADMIN, "token": "phone"})

        client.post(
            f"/conversations/{conversation['id']}/messages",
            json={"sender_type": "guest", "sender_identity": GUEST, "body": "Hi!", "sender_name": "Ana Ruiz"},
        )
        drain()

        _, payload = push_gateway.calls[0]
        assert payload["title"] == "New message from Ana Ruiz"
        assert payload["data"]["senderName"] == "Ana Ruiz"
        assert payload["data"]["eventId"] == conversation["event_id"]
