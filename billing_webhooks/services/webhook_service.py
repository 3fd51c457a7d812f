"""Retry orchestrator - runs a webhook delivery through verify, record, dispatch

One attempt is one database transaction: the ledger row is locked, the
handler runs, and processed=True is committed together with the handler's
mutations. A failed attempt is rolled back as a whole, then its error is
recorded in a fresh transaction.

Notifications are handed to background tasks once the outcome is known, so
slow email or Slack calls never hold up the webhook response.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from billing_webhooks.core.config import settings
from billing_webhooks.core.errors import (
    EventNotFoundError, PayloadShapeError, WebhookError, is_integrity_failure, is_retryable
)
from billing_webhooks.core.logging import webhook_logger
from billing_webhooks.core.metrics import (
    webhook_attempts_counter,
    webhook_deliveries_counter,
    webhook_processing_seconds,
    webhook_terminal_failures_counter,
)
from billing_webhooks.core.otel import tracer
from billing_webhooks.schemas.events import TrustedEvent
from billing_webhooks.services.dispatcher import dispatch
from billing_webhooks.services.idempotency_service import (
    lookup_event, record_attempt_start, record_failure, record_success
)
from billing_webhooks.services.notification_service import Notification, NotificationKind, NotificationService
from billing_webhooks.services.reconciliation_service import ReconciliationContext
from billing_webhooks.services.stripe_service import StripeGateway

logger = logging.getLogger(__name__)


@dataclass
class ProcessingResult:
    event_id: str
    event_type: str
    duplicate: bool = False
    attempts: int = 0


class WebhookProcessor:
    """Verifies, deduplicates and reconciles Stripe webhook deliveries

    Args:
        session_factory: Callable returning a new SQLAlchemy session per attempt
        gateway: Stripe gateway used for verification and customer lookups
        notifier: Notification fan-out, run in the background after a commit
        sleep: Awaitable used for backoff (swapped out in tests)
        clock: Monotonic clock used for the overall time budget
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        gateway: StripeGateway,
        notifier: NotificationService,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        timeout: Optional[float] = None,
        high_value_threshold: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.notifier = notifier
        self.max_attempts = settings.WEBHOOK_MAX_RETRY_ATTEMPTS if max_attempts is None else max_attempts
        self.base_delay = settings.WEBHOOK_RETRY_BASE_DELAY_SECONDS if base_delay is None else base_delay
        self.timeout = settings.WEBHOOK_PROCESSING_TIMEOUT_SECONDS if timeout is None else timeout
        self.high_value_threshold = (
            settings.HIGH_VALUE_PAYMENT_THRESHOLD_CENTS if high_value_threshold is None else high_value_threshold
        )
        self.sleep = sleep
        self.clock = clock
        self._pending: Set[asyncio.Task] = set()

    async def process_with_retry(self, raw_body: bytes, signature: Optional[str]) -> ProcessingResult:
        """Process one webhook delivery

        Raises:
            VerificationError: untrusted delivery, nothing recorded
            ConfigurationError: missing secret, nothing recorded
            PayloadShapeError: signed event that fails its schema, recorded as failed
            Exception: the last attempt's error once retries are exhausted
        """
        return await self._run(lambda: self.gateway.verify_payload(raw_body, signature))

    async def reprocess_stored(self, event_id: str) -> ProcessingResult:
        """Replay a stored event through the retry loop

        The stored payload was verified at ingest, so verification is skipped.

        Raises:
            EventNotFoundError: no record for this event ID
        """
        payload = await run_in_threadpool(self._load_stored_payload, event_id)
        webhook_logger.info(f"🔁 Reprocessing stored webhook event {event_id}")
        return await self._run(lambda: payload)

    async def drain(self, timeout: Optional[float] = None) -> int:
        """Wait for queued notifications to finish; returns how many are still running"""
        if self._pending:
            await asyncio.wait(set(self._pending), timeout=timeout)
        return len(self._pending)

    def _load_stored_payload(self, event_id: str) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            webhook_event = lookup_event(event_id, db)
            if webhook_event is None:
                raise EventNotFoundError(event_id)
            return dict(webhook_event.raw_payload)
        finally:
            db.close()

    async def _run(self, load_payload: Callable[[], Dict[str, Any]]) -> ProcessingResult:
        started = self.clock()
        deadline = started + self.timeout
        event_type = "unknown"
        attempt = 0

        try:
            while True:
                attempt += 1
                # Verification runs on every attempt; its errors are never retried
                try:
                    payload = load_payload()
                    event = self.gateway.parse_payload(payload)
                except PayloadShapeError as e:
                    event_type = e.event_type
                    await self._fail_malformed(payload, e, attempt)
                    raise
                except WebhookError:
                    webhook_deliveries_counter.labels(event_type=event_type, outcome="rejected").inc()
                    raise
                event_type = event.type

                try:
                    duplicate, notifications = await run_in_threadpool(self._attempt, event, payload, attempt)
                except Exception as e:
                    webhook_attempts_counter.labels(status="failed").inc()
                    delay = attempt * self.base_delay
                    if not is_retryable(e):
                        webhook_logger.error(f"❌ Webhook {event.id} failed with a non-retryable error: {e}")
                    elif attempt >= self.max_attempts:
                        webhook_logger.error(f"❌ Webhook {event.id} failed after {attempt} attempts: {e}")
                    elif self.clock() + delay >= deadline:
                        webhook_logger.error(
                            f"❌ Webhook {event.id} out of time budget after {attempt} attempts: {e}"
                        )
                    else:
                        webhook_logger.warning(
                            f"⚠️ Webhook {event.id} attempt {attempt}/{self.max_attempts} failed, "
                            f"retrying in {delay}s: {e}"
                        )
                        await self.sleep(delay)
                        continue

                    self._report_terminal_failure(event.id, event.type, attempt, e)
                    webhook_deliveries_counter.labels(event_type=event_type, outcome="failed").inc()
                    raise

                webhook_attempts_counter.labels(status="success").inc()
                outcome = "duplicate" if duplicate else "success"
                webhook_deliveries_counter.labels(event_type=event_type, outcome=outcome).inc()
                self._send_in_background(notifications)
                return ProcessingResult(event.id, event.type, duplicate=duplicate, attempts=attempt)
        finally:
            webhook_processing_seconds.labels(event_type=event_type).observe(self.clock() - started)

    def _attempt(self, event: TrustedEvent, payload: Dict[str, Any], attempt: int) -> Tuple[bool, List[Notification]]:
        """Run one attempt in its own transaction

        Returns (duplicate, notifications); notifications are only returned
        once the transaction has committed.
        """
        db = self.session_factory()
        ctx = ReconciliationContext(db=db, gateway=self.gateway, high_value_threshold=self.high_value_threshold)
        try:
            with tracer.start_as_current_span("webhook.attempt") as span:
                span.set_attribute("webhook.event_id", event.id)
                span.set_attribute("webhook.event_type", event.type)
                span.set_attribute("webhook.attempt", attempt)

                webhook_event = lookup_event(event.id, db, for_update=True)
                if webhook_event is not None and webhook_event.processed:
                    db.rollback()
                    webhook_logger.info(f"Webhook event {event.id} already processed, skipping")
                    span.set_attribute("webhook.duplicate", True)
                    return True, []

                webhook_event = record_attempt_start(event.id, event.type, payload, db)
                if webhook_event.processed:
                    # A concurrent delivery won the insert race and finished first
                    db.rollback()
                    span.set_attribute("webhook.duplicate", True)
                    return True, []

                webhook_logger.info(f"📥 Processing webhook {event.type} ({event.id}), attempt {attempt}")
                dispatch(event, ctx)
                record_success(event.id, db)
                db.commit()
                webhook_logger.info(f"✅ Webhook {event.type} ({event.id}) processed")
        except Exception as e:
            db.rollback()
            self._record_failure(db, event.id, event.type, payload, e)
            raise
        finally:
            db.close()

        return False, list(ctx.notifications)

    async def _fail_malformed(self, payload: Dict[str, Any], error: PayloadShapeError, attempts: int) -> None:
        """Record a trusted but unparseable event and alert operators"""
        def _record():
            db = self.session_factory()
            try:
                self._record_failure(db, error.event_id, error.event_type, payload, error)
            finally:
                db.close()

        await run_in_threadpool(_record)
        webhook_logger.error(f"❌ Webhook {error.event_id} has a malformed {error.event_type} payload: {error}")
        webhook_deliveries_counter.labels(event_type=error.event_type, outcome="failed").inc()
        self._report_terminal_failure(error.event_id, error.event_type, attempts, error)

    @staticmethod
    def _record_failure(db: Session, event_id: str, event_type: str, payload: Dict[str, Any],
                        error: Exception) -> None:
        try:
            record_failure(event_id, str(error), db, event_type=event_type, payload=payload)
            db.commit()
        except Exception as store_error:
            db.rollback()
            logger.error(f"Failed to record webhook failure for {event_id}: {store_error}", exc_info=True)

    def _report_terminal_failure(self, event_id: str, event_type: str, attempts: int, error: Exception) -> None:
        integrity = is_integrity_failure(error)
        kind, failure_class = (
            (NotificationKind.WEBHOOK_INTEGRITY_FAILURE, "integrity") if integrity
            else (NotificationKind.WEBHOOK_PROCESSING_FAILED, "processing")
        )
        webhook_terminal_failures_counter.labels(failure_class=failure_class).inc()
        self._send_in_background([Notification(kind, {
            "event_id": event_id,
            "event_type": event_type,
            "attempts": attempts,
            "error": str(error),
        })])

    def _send_in_background(self, notifications: List[Notification]) -> None:
        if not notifications:
            return
        task = asyncio.create_task(run_in_threadpool(self._send_notifications, notifications))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _send_notifications(self, notifications: List[Notification]) -> None:
        # A broken sink must not surface as an unhandled task error
        try:
            self.notifier.notify_all(notifications)
        except Exception as e:
            kinds = ", ".join(n.kind.value for n in notifications)
            logger.error(f"Notifications {kinds} failed: {e}", exc_info=True)
