"""
Notification dispatcher and the outbox consumer that drives it.

Every message insert writes a 'pending' NotificationRecord in the same
transaction (see storage.create_message). The NotificationOutbox consumes
record ids from an in-memory queue, re-seeded from the table on startup, and
hands each one to NotificationDispatcher.dispatch, which:

    1. claims the record (pending -> dispatching), at most once
    2. resolves the recipient's device tokens
    3. no tokens      -> no_tokens  (push_sent=False, no error)
    4. one batched gateway call for all tokens, bounded by a deadline
    5. all receipts ok -> sent      (push_sent=True)
       some failed     -> partial   (push_sent=True, error names failing tokens)
       all failed      -> rejected  (push_sent=True: the gateway accepted the
                                     batch, every device was refused)
    6. transport error -> failed    (push_sent=False, captured error)

Outcomes are terminal; nothing is retried. dispatch() never raises.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from eventchat.exceptions import PushTransportError
from eventchat.metrics import record_dispatch_outcome, record_push_receipts
from eventchat.push_gateway import PushGateway, PushReceipt, compose_payload
from eventchat.storage import (
    SessionLocal,
    claim_notification,
    complete_notification,
    get_device_tokens,
    get_notification,
    list_pending_notification_ids,
)

logger = logging.getLogger(__name__)


class DispatchStatus(str, Enum):
    PENDING = "pending"
    DISPATCHING = "dispatching"
    SENT = "sent"
    PARTIAL = "partial"
    NO_TOKENS = "no_tokens"
    REJECTED = "rejected"
    FAILED = "failed"
    # Not persisted: the record was already claimed or does not exist
    SKIPPED = "skipped"


@dataclass(frozen=True)
class DispatchOutcome:
    notification_id: int
    status: DispatchStatus
    push_sent: bool = False
    push_error: Optional[str] = None
    token_count: int = 0


def summarize_receipts(receipts: Sequence[PushReceipt]):
    """
    Reduce per-device receipts to (status, push_sent, push_error).

    push_error is structured JSON naming only the failing tokens.
    """
    failures = [r for r in receipts if not r.ok]
    if not failures:
        return DispatchStatus.SENT, True, None

    kind = "partial_failure" if len(failures) < len(receipts) else "all_failed"
    error = json.dumps(
        {
            "kind": kind,
            "failed": len(failures),
            "total": len(receipts),
            "failures": [r.to_dict() for r in failures],
        },
        separators=(",", ":"),
    )
    if kind == "partial_failure":
        return DispatchStatus.PARTIAL, True, error
    return DispatchStatus.REJECTED, True, error


def _error_text(kind: str, detail: str) -> str:
    return json.dumps({"kind": kind, "detail": detail}, separators=(",", ":"))


class NotificationDispatcher:
    """Fans one message notification out to all of a recipient's devices."""

    def __init__(
        self,
        gateway: PushGateway,
        session_factory: Callable[[], Session] = SessionLocal,
        deadline_seconds: float = 15.0,
    ):
        self.gateway = gateway
        self._session_factory = session_factory
        self._deadline = deadline_seconds

    async def dispatch(self, notification_id: int) -> DispatchOutcome:
        """
        Perform the single dispatch attempt for a notification record.

        Returns:
            The persisted outcome; SKIPPED if the record was not pending.
        """
        try:
            return await self._dispatch(notification_id)
        except Exception as e:
            # Last resort: anything unexpected still ends in a terminal record
            logger.error(f"Dispatch of notification {notification_id} crashed: {e}")
            outcome = DispatchOutcome(
                notification_id=notification_id,
                status=DispatchStatus.FAILED,
                push_error=_error_text("function_error", str(e)),
            )
            self._finish(outcome)
            return outcome

    async def _dispatch(self, notification_id: int) -> DispatchOutcome:
        with self._session_factory() as db:
            if not claim_notification(db, notification_id):
                logger.info(f"Notification {notification_id} is not pending, skipping")
                record_dispatch_outcome(DispatchStatus.SKIPPED.value)
                return DispatchOutcome(notification_id=notification_id, status=DispatchStatus.SKIPPED)

            record = get_notification(db, notification_id)
            payload = compose_payload(
                notification_id=record.id,
                message_id=record.message_id,
                conversation_id=record.conversation_id,
                sender_identity=record.sender_identity,
                preview=record.preview,
                event_id=record.event_id,
                sender_name=record.sender_name,
            )
            recipient = record.recipient_identity

            try:
                tokens = get_device_tokens(db, recipient)
            except SQLAlchemyError as e:
                logger.error(f"Token lookup failed for {recipient}: {e}")
                return self._finish(
                    DispatchOutcome(
                        notification_id=notification_id,
                        status=DispatchStatus.FAILED,
                        push_error=_error_text("token_lookup_error", str(e)),
                    ),
                    db,
                )

            if not tokens:
                logger.info(f"No push tokens for {recipient}, notification {notification_id} not sent")
                return self._finish(
                    DispatchOutcome(notification_id=notification_id, status=DispatchStatus.NO_TOKENS),
                    db,
                )

        # The gateway call runs without holding a database session
        logger.info(f"Sending notification {notification_id} to {len(tokens)} device(s) of {recipient}")
        try:
            receipts = await asyncio.wait_for(self.gateway.dispatch(tokens, payload), timeout=self._deadline)
        except asyncio.TimeoutError:
            logger.error(f"Push gateway exceeded {self._deadline}s for notification {notification_id}")
            return self._finish(
                DispatchOutcome(
                    notification_id=notification_id,
                    status=DispatchStatus.FAILED,
                    push_error=_error_text("transport_error", f"deadline of {self._deadline}s exceeded"),
                    token_count=len(tokens),
                )
            )
        except PushTransportError as e:
            logger.error(f"Push gateway transport failure for notification {notification_id}: {e}")
            return self._finish(
                DispatchOutcome(
                    notification_id=notification_id,
                    status=DispatchStatus.FAILED,
                    push_error=_error_text("transport_error", str(e)),
                    token_count=len(tokens),
                )
            )

        record_push_receipts(r.status for r in receipts)
        status, push_sent, push_error = summarize_receipts(receipts)
        if push_error:
            logger.warning(f"Notification {notification_id} receipts: {push_error}")
        return self._finish(
            DispatchOutcome(
                notification_id=notification_id,
                status=status,
                push_sent=push_sent,
                push_error=push_error,
                token_count=len(tokens),
            )
        )

    def _finish(self, outcome: DispatchOutcome, db: Optional[Session] = None) -> DispatchOutcome:
        """Persist a terminal outcome, opening a session if the caller has none."""
        if db is None:
            with self._session_factory() as own:
                return self._finish(outcome, own)
        try:
            complete_notification(
                db,
                outcome.notification_id,
                status=outcome.status.value,
                push_sent=outcome.push_sent,
                push_error=outcome.push_error,
            )
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Could not persist outcome of notification {outcome.notification_id}: {e}")
        record_dispatch_outcome(outcome.status.value)
        return outcome


class NotificationOutbox:
    """
    Queue consumer running dispatches off the request path.

    enqueue() is called after a message insert commits; start() also sweeps
    records left 'pending' by a previous process.
    """

    def __init__(self, dispatcher: NotificationDispatcher, concurrency: int = 4):
        self.dispatcher = dispatcher
        self._concurrency = max(1, concurrency)
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        self._queue = asyncio.Queue()
        try:
            with SessionLocal() as db:
                pending = list_pending_notification_ids(db)
        except SQLAlchemyError as e:
            logger.error(f"Could not sweep pending notifications: {e}")
            pending = []
        for notification_id in pending:
            self._queue.put_nowait(notification_id)
        if pending:
            logger.info(f"Re-queued {len(pending)} pending notification(s)")

        self._workers = [
            asyncio.create_task(self._worker(index), name=f"notification-outbox-{index}")
            for index in range(self._concurrency)
        ]
        logger.info(f"Notification outbox started with {self._concurrency} worker(s)")

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Notification outbox stopped")

    def enqueue(self, notification_id: int) -> None:
        if self._queue is None:
            logger.warning(f"Outbox not started; notification {notification_id} stays pending")
            return
        self._queue.put_nowait(notification_id)

    async def drain(self) -> None:
        """Wait until every queued notification has been processed."""
        if self._queue is not None:
            await self._queue.join()

    async def _worker(self, index: int) -> None:
        assert self._queue is not None
        while True:
            notification_id = await self._queue.get()
            try:
                await self.dispatcher.dispatch(notification_id)
            except Exception as e:
                logger.error(f"Outbox worker {index} failed on notification {notification_id}: {e}")
            finally:
                self._queue.task_done()
