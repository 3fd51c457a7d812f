"""Retry orchestrator tests - full deliveries through verify, record, dispatch"""
import asyncio
import threading
import time
from unittest.mock import Mock, patch

import pytest

from billing_webhooks.core.errors import (
    ConfigurationError, EventNotFoundError, HandlingError, PayloadShapeError, VerificationError
)
from billing_webhooks.models.plan import SubscriptionPlan
from billing_webhooks.models.subscription import Subscription
from billing_webhooks.models.usage_quota import UsageQuota
from billing_webhooks.models.user import User
from billing_webhooks.models.webhook_event import WebhookEvent
from billing_webhooks.schemas.events import EventType
from billing_webhooks.services.dispatcher import EVENT_HANDLERS
from billing_webhooks.services.notification_service import NotificationKind, NotificationService
from billing_webhooks.services.reconciliation_service import handle_subscription_created
from billing_webhooks.services.webhook_service import WebhookProcessor
from conftest import BlockingNotifier, FakeStripeGateway, TestSessionLocal


def _record(db_session, event_id="evt_1"):
    db_session.expire_all()
    return db_session.query(WebhookEvent).filter(WebhookEvent.event_id == event_id).first()


@pytest.mark.critical
class TestIdempotentProcessing:
    """Redelivery of an already processed event is a no-op"""

    @pytest.mark.asyncio
    async def test_subscription_created_scenario(self, processor, notifier, db_session, test_user, pro_plan,
                                                 make_event, make_subscription, signed):
        body, header = signed(make_event("customer.subscription.created", make_subscription()))

        result = await processor.process_with_retry(body, header)

        assert result.duplicate is False
        assert result.attempts == 1
        record = _record(db_session)
        assert record.processed is True
        assert record.processing_error is None
        assert record.attempts == 1
        assert record.raw_payload["id"] == "evt_1"

        subscription = db_session.query(Subscription).one()
        assert subscription.user_id == "u1"
        assert subscription.status == "ACTIVE"
        assert subscription.plan.name == "PRO"
        assert db_session.query(UsageQuota).filter(UsageQuota.subscription_id == subscription.id).count() == 4
        await processor.drain()
        assert notifier.kinds() == [NotificationKind.SUBSCRIPTION_CREATED]

    @pytest.mark.asyncio
    async def test_redelivery_changes_nothing(self, processor, notifier, db_session, test_user, pro_plan,
                                              make_event, make_subscription, signed):
        body, header = signed(make_event("customer.subscription.created", make_subscription()))
        await processor.process_with_retry(body, header)
        first = _record(db_session)
        first_updated_at = first.updated_at
        subscription_updated_at = db_session.query(Subscription).one().updated_at

        for _ in range(3):
            result = await processor.process_with_retry(body, header)
            assert result.duplicate is True

        record = _record(db_session)
        assert record.attempts == 1
        assert record.updated_at == first_updated_at
        assert db_session.query(Subscription).count() == 1
        assert db_session.query(Subscription).one().updated_at == subscription_updated_at
        assert db_session.query(UsageQuota).count() == 4
        assert db_session.query(WebhookEvent).count() == 1
        await processor.drain()
        assert notifier.kinds() == [NotificationKind.SUBSCRIPTION_CREATED]

    @pytest.mark.asyncio
    async def test_redelivery_does_not_call_handler(self, processor, db_session, make_event, signed):
        handler = Mock()
        body, header = signed(make_event("customer.created", {"id": "cus_1"}))

        with patch.dict(EVENT_HANDLERS, {EventType.CUSTOMER_CREATED: handler}):
            await processor.process_with_retry(body, header)
            await processor.process_with_retry(body, header)

        assert handler.call_count == 1

    @pytest.mark.asyncio
    async def test_unhandled_event_type_is_recorded_as_processed(self, processor, notifier, db_session,
                                                                 make_event, signed):
        body, header = signed(make_event("product.created", {"id": "prod_1"}, event_id="evt_product"))

        result = await processor.process_with_retry(body, header)

        assert result.event_type == "product.created"
        assert _record(db_session, "evt_product").processed is True
        await processor.drain()
        assert notifier.sent == []


@pytest.mark.critical
class TestConcurrentDelivery:
    """Stripe may deliver the same event twice at once"""

    @pytest.mark.asyncio
    async def test_simultaneous_deliveries_run_handler_once(self, file_session_factory, gateway, notifier,
                                                            fake_sleep, make_event, signed):
        calls = []

        def slow_handler(customer, ctx):
            calls.append(customer.id)
            # Hold the row while the other delivery tries to record it
            time.sleep(0.2)

        processor = WebhookProcessor(file_session_factory, gateway, notifier, sleep=fake_sleep)
        body, header = signed(make_event("customer.created", {"id": "cus_1"}))

        with patch.dict(EVENT_HANDLERS, {EventType.CUSTOMER_CREATED: slow_handler}):
            results = await asyncio.gather(
                processor.process_with_retry(body, header),
                processor.process_with_retry(body, header),
            )

        assert calls == ["cus_1"]
        assert sorted(result.duplicate for result in results) == [False, True]
        assert fake_sleep.calls == []

        db = file_session_factory()
        try:
            record = db.query(WebhookEvent).one()
            assert record.processed is True
            assert record.processing_error is None
            assert record.attempts == 1
        finally:
            db.close()

    @pytest.mark.asyncio
    async def test_row_committed_after_first_lookup_is_duplicate(self, processor, db_session, make_event, signed):
        handler = Mock()
        body, header = signed(make_event("customer.created", {"id": "cus_1"}))

        with patch.dict(EVENT_HANDLERS, {EventType.CUSTOMER_CREATED: handler}):
            await processor.process_with_retry(body, header)
            # The pre-check misses, so the recorded row must stop the handler
            with patch("billing_webhooks.services.webhook_service.lookup_event", return_value=None):
                result = await processor.process_with_retry(body, header)

        assert result.duplicate is True
        assert handler.call_count == 1
        record = _record(db_session)
        assert record.attempts == 1
        assert record.processed is True


@pytest.mark.critical
class TestRejection:
    """Untrusted or unconfigured deliveries never touch the store"""

    @pytest.mark.asyncio
    async def test_tampered_payload_rejected_before_any_record(self, processor, fake_sleep, db_session,
                                                               make_event, make_subscription, signed):
        handler = Mock()
        body, header = signed(make_event("customer.subscription.created", make_subscription()))
        tampered = body.replace(b'"active"', b'"canceled"')

        with patch.dict(EVENT_HANDLERS, {EventType.CUSTOMER_SUBSCRIPTION_CREATED: handler}):
            with pytest.raises(VerificationError):
                await processor.process_with_retry(tampered, header)

        handler.assert_not_called()
        assert fake_sleep.calls == []
        assert db_session.query(WebhookEvent).count() == 0

    @pytest.mark.asyncio
    async def test_tampered_redelivery_does_not_mutate_existing_record(self, processor, db_session,
                                                                       make_event, signed):
        body, header = signed(make_event("customer.created", {"id": "cus_1"}))
        with patch.dict(EVENT_HANDLERS, {EventType.CUSTOMER_CREATED: Mock(side_effect=RuntimeError("down"))}):
            with pytest.raises(HandlingError):
                await processor.process_with_retry(body, header)
        before = _record(db_session)
        attempts, error = before.attempts, before.processing_error

        with pytest.raises(VerificationError):
            await processor.process_with_retry(body, "t=1,v1=deadbeef")

        after = _record(db_session)
        assert (after.attempts, after.processing_error) == (attempts, error)

    @pytest.mark.asyncio
    async def test_missing_secret_fails_without_retry(self, db_session, notifier, fake_sleep,
                                                      make_event, signed):
        gateway = FakeStripeGateway()
        gateway.webhook_secret = ""
        processor = WebhookProcessor(TestSessionLocal, gateway, notifier, sleep=fake_sleep)
        body, header = signed(make_event("customer.created", {"id": "cus_1"}))

        with pytest.raises(ConfigurationError):
            await processor.process_with_retry(body, header)

        assert fake_sleep.calls == []
        assert db_session.query(WebhookEvent).count() == 0


@pytest.mark.critical
class TestRetryBudget:

    @pytest.mark.asyncio
    async def test_transient_failure_exhausts_attempts(self, processor, notifier, fake_sleep, db_session,
                                                       make_event, signed):
        handler = Mock(side_effect=RuntimeError("database is unavailable"))
        body, header = signed(make_event("customer.created", {"id": "cus_1"}))

        with patch.dict(EVENT_HANDLERS, {EventType.CUSTOMER_CREATED: handler}):
            with pytest.raises(HandlingError) as exc_info:
                await processor.process_with_retry(body, header)

        assert isinstance(exc_info.value.cause, RuntimeError)
        assert handler.call_count == 3
        assert fake_sleep.calls == [1.0, 2.0]
        assert all(b > a for a, b in zip(fake_sleep.calls, fake_sleep.calls[1:]))

        record = _record(db_session)
        assert record.processed is False
        assert record.attempts == 3
        assert "database is unavailable" in record.processing_error

        await processor.drain()
        assert notifier.kinds() == [NotificationKind.WEBHOOK_PROCESSING_FAILED]
        assert notifier.sent[0][1]["attempts"] == 3
        assert notifier.sent[0][1]["event_id"] == "evt_1"

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self, processor, notifier, fake_sleep, db_session,
                                                    test_user, pro_plan, make_event, make_subscription, signed):
        calls = []

        def flaky(subscription, ctx):
            calls.append(subscription.id)
            if len(calls) == 1:
                raise RuntimeError("deadlock detected")
            handle_subscription_created(subscription, ctx)

        body, header = signed(make_event("customer.subscription.created", make_subscription()))
        with patch.dict(EVENT_HANDLERS, {EventType.CUSTOMER_SUBSCRIPTION_CREATED: flaky}):
            result = await processor.process_with_retry(body, header)

        assert result.attempts == 2
        assert fake_sleep.calls == [1.0]
        record = _record(db_session)
        assert record.processed is True
        assert record.processing_error is None
        assert record.attempts == 2
        assert db_session.query(Subscription).count() == 1
        await processor.drain()
        assert notifier.kinds() == [NotificationKind.SUBSCRIPTION_CREATED]

    @pytest.mark.asyncio
    async def test_integrity_failure_reported_as_its_own_class(self, processor, notifier, db_session,
                                                               test_user, make_event, make_subscription, signed):
        # No plan matches the price
        body, header = signed(make_event("customer.subscription.created",
                                         make_subscription(price_id="price_missing")))

        with pytest.raises(HandlingError):
            await processor.process_with_retry(body, header)

        record = _record(db_session)
        assert record.attempts == 3
        assert "price_missing" in record.processing_error
        await processor.drain()
        assert notifier.kinds() == [NotificationKind.WEBHOOK_INTEGRITY_FAILURE]

    @pytest.mark.asyncio
    async def test_non_retryable_handler_error_stops_immediately(self, processor, notifier, fake_sleep,
                                                                 db_session, make_event, signed):
        handler = Mock(side_effect=ConfigurationError("STRIPE_SECRET_KEY is not configured"))
        body, header = signed(make_event("customer.created", {"id": "cus_1"}))

        with patch.dict(EVENT_HANDLERS, {EventType.CUSTOMER_CREATED: handler}):
            with pytest.raises(HandlingError):
                await processor.process_with_retry(body, header)

        assert handler.call_count == 1
        assert fake_sleep.calls == []
        assert _record(db_session).processed is False

    @pytest.mark.asyncio
    async def test_time_budget_cuts_retries_short(self, db_session, gateway, notifier, fake_sleep,
                                                  make_event, signed):
        # The clock only advances by the backoff slept so far
        processor = WebhookProcessor(
            TestSessionLocal, gateway, notifier,
            max_attempts=5, base_delay=1.0, timeout=2.5, sleep=fake_sleep,
            clock=lambda: sum(fake_sleep.calls),
        )
        handler = Mock(side_effect=RuntimeError("timeout"))
        body, header = signed(make_event("customer.created", {"id": "cus_1"}))

        with patch.dict(EVENT_HANDLERS, {EventType.CUSTOMER_CREATED: handler}):
            with pytest.raises(HandlingError):
                await processor.process_with_retry(body, header)

        # 1s then 2s would overrun the 2.5s budget
        assert fake_sleep.calls == [1.0]
        assert handler.call_count == 2


@pytest.mark.critical
class TestAtomicity:

    @pytest.mark.asyncio
    async def test_failed_attempt_leaves_no_partial_mutations(self, processor, db_session, make_event, signed):
        def half_done(customer, ctx):
            ctx.db.add(User(id="phantom", email="phantom@example.com"))
            ctx.db.flush()
            raise RuntimeError("crashed halfway")

        body, header = signed(make_event("customer.created", {"id": "cus_1"}))
        with patch.dict(EVENT_HANDLERS, {EventType.CUSTOMER_CREATED: half_done}):
            with pytest.raises(HandlingError):
                await processor.process_with_retry(body, header)

        db_session.expire_all()
        assert db_session.query(User).filter(User.id == "phantom").count() == 0
        assert _record(db_session).processing_error == "Error handling customer.created (evt_1): crashed halfway"

    @pytest.mark.asyncio
    async def test_notifications_only_after_commit(self, processor, notifier, db_session, test_user, pro_plan,
                                                   make_event, make_subscription, signed):
        def create_then_fail(subscription, ctx):
            handle_subscription_created(subscription, ctx)
            raise RuntimeError("failed after queueing a notification")

        body, header = signed(make_event("customer.subscription.created", make_subscription()))
        with patch.dict(EVENT_HANDLERS, {EventType.CUSTOMER_SUBSCRIPTION_CREATED: create_then_fail}):
            with pytest.raises(HandlingError):
                await processor.process_with_retry(body, header)

        await processor.drain()
        assert NotificationKind.SUBSCRIPTION_CREATED not in notifier.kinds()
        assert db_session.query(Subscription).count() == 0


@pytest.mark.high
class TestOrdering:

    @pytest.mark.asyncio
    async def test_update_before_create_is_tolerated(self, processor, db_session, test_user, pro_plan,
                                                     make_event, make_subscription, signed):
        update = make_event("customer.subscription.updated", make_subscription(status="past_due"),
                            event_id="evt_update")
        create = make_event("customer.subscription.created", make_subscription(), event_id="evt_create")

        await processor.process_with_retry(*signed(update))
        assert _record(db_session, "evt_update").processed is True
        assert db_session.query(Subscription).count() == 0

        await processor.process_with_retry(*signed(create))
        db_session.expire_all()
        assert db_session.query(Subscription).one().status == "ACTIVE"

    @pytest.mark.asyncio
    async def test_unmapped_status_fails_the_event(self, processor, notifier, db_session, test_user, pro_plan,
                                                   make_event, make_subscription, signed):
        await processor.process_with_retry(*signed(make_event("customer.subscription.created", make_subscription())))
        paused = make_event("customer.subscription.updated", make_subscription(status="paused"),
                            event_id="evt_paused")

        with pytest.raises(HandlingError):
            await processor.process_with_retry(*signed(paused))

        db_session.expire_all()
        assert db_session.query(Subscription).one().status == "ACTIVE"
        assert "paused" in _record(db_session, "evt_paused").processing_error
        await processor.drain()
        assert notifier.kinds()[-1] == NotificationKind.WEBHOOK_INTEGRITY_FAILURE


@pytest.mark.critical
class TestNotificationIsolation:

    @pytest.mark.asyncio
    async def test_raising_notifier_does_not_fail_event(self, db_session, gateway, fake_sleep, test_user, pro_plan,
                                                        make_event, make_subscription, signed):
        notifier = Mock(spec=NotificationService)
        notifier.notify_all.side_effect = RuntimeError("smtp down")
        processor = WebhookProcessor(TestSessionLocal, gateway, notifier, sleep=fake_sleep)

        result = await processor.process_with_retry(
            *signed(make_event("customer.subscription.created", make_subscription()))
        )
        assert await processor.drain() == 0

        assert result.attempts == 1
        assert fake_sleep.calls == []
        assert _record(db_session).processed is True
        notifier.notify_all.assert_called_once()

    @pytest.mark.asyncio
    async def test_failing_channels_do_not_fail_event(self, db_session, gateway, fake_sleep, test_user, pro_plan,
                                                      make_event, make_subscription, signed):
        email = Mock(admin_email="ops@example.com")
        email.name = "email"
        email.send.side_effect = RuntimeError("resend outage")
        slack = Mock()
        slack.name = "slack"
        slack.send.side_effect = RuntimeError("slack outage")
        processor = WebhookProcessor(
            TestSessionLocal, gateway, NotificationService(email=email, slack=slack), sleep=fake_sleep
        )

        await processor.process_with_retry(*signed(make_event("customer.subscription.created", make_subscription())))
        await processor.drain()

        assert _record(db_session).processed is True
        assert email.send.called
        assert slack.send.called

    @pytest.mark.asyncio
    async def test_slow_notifier_does_not_hold_up_delivery(self, db_session, gateway, fake_sleep, test_user,
                                                           pro_plan, make_event, make_subscription, signed):
        release = threading.Event()
        notifier = BlockingNotifier(release)
        processor = WebhookProcessor(TestSessionLocal, gateway, notifier, timeout=1.0, sleep=fake_sleep)

        try:
            started = time.monotonic()
            result = await processor.process_with_retry(
                *signed(make_event("customer.subscription.created", make_subscription()))
            )
            elapsed = time.monotonic() - started

            # The notifier is still blocked, yet the delivery already finished
            assert result.duplicate is False
            assert elapsed < 1.0
            assert _record(db_session).processed is True
            assert notifier.sent == []
        finally:
            release.set()

        assert await processor.drain(timeout=5) == 0
        assert notifier.kinds() == [NotificationKind.SUBSCRIPTION_CREATED]

    @pytest.mark.asyncio
    async def test_terminal_failure_alert_sent_in_background(self, db_session, gateway, fake_sleep,
                                                             make_event, signed):
        release = threading.Event()
        notifier = BlockingNotifier(release)
        processor = WebhookProcessor(TestSessionLocal, gateway, notifier, sleep=fake_sleep)
        body, header = signed(make_event("customer.created", {"id": "cus_1"}))

        try:
            with patch.dict(EVENT_HANDLERS, {EventType.CUSTOMER_CREATED: Mock(side_effect=RuntimeError("down"))}):
                with pytest.raises(HandlingError):
                    await processor.process_with_retry(body, header)
            assert notifier.sent == []
        finally:
            release.set()

        await processor.drain(timeout=5)
        assert notifier.kinds() == [NotificationKind.WEBHOOK_PROCESSING_FAILED]


@pytest.mark.critical
class TestMalformedTrustedEvent:
    """Signed events that fail their schema are recorded and escalated"""

    @pytest.mark.asyncio
    async def test_recorded_as_failed_and_reported(self, processor, notifier, fake_sleep, db_session,
                                                   make_event, make_subscription, signed):
        subscription = make_subscription()
        del subscription["items"]["data"][0]["price"]
        body, header = signed(make_event("customer.subscription.created", subscription))

        with pytest.raises(PayloadShapeError):
            await processor.process_with_retry(body, header)
        await processor.drain()

        assert fake_sleep.calls == []
        record = _record(db_session)
        assert record.processed is False
        assert record.event_type == "customer.subscription.created"
        assert "does not match its schema" in record.processing_error
        assert record.raw_payload["id"] == "evt_1"
        assert notifier.kinds() == [NotificationKind.WEBHOOK_INTEGRITY_FAILURE]
        assert notifier.sent[0][1]["event_id"] == "evt_1"

    @pytest.mark.asyncio
    async def test_processed_record_left_untouched(self, processor, db_session, test_user, pro_plan,
                                                   make_event, make_subscription, signed):
        await processor.process_with_retry(*signed(make_event("customer.subscription.created", make_subscription())))
        broken = make_subscription()
        del broken["items"]["data"][0]["price"]

        with pytest.raises(PayloadShapeError):
            await processor.process_with_retry(*signed(make_event("customer.subscription.created", broken)))

        record = _record(db_session)
        assert record.processed is True
        assert record.processing_error is None


@pytest.mark.high
class TestReprocessStored:

    @pytest.mark.asyncio
    async def test_replays_stored_payload_once_fixed(self, processor, notifier, db_session, test_user,
                                                     make_event, make_subscription, signed):
        body, header = signed(make_event("customer.subscription.created", make_subscription()))
        with pytest.raises(HandlingError):
            await processor.process_with_retry(body, header)

        # Operator creates the missing plan, then retries from the stored payload
        db_session.add(SubscriptionPlan(name="PRO", stripe_price_id="price_pro_monthly", max_users=10))
        db_session.commit()

        result = await processor.reprocess_stored("evt_1")

        assert result.duplicate is False
        record = _record(db_session)
        assert record.processed is True
        assert record.processing_error is None
        assert record.attempts == 4
        assert db_session.query(Subscription).count() == 1
        await processor.drain()
        assert notifier.kinds()[-1] == NotificationKind.SUBSCRIPTION_CREATED

    @pytest.mark.asyncio
    async def test_reprocessing_processed_event_is_duplicate(self, processor, test_user, pro_plan,
                                                             make_event, make_subscription, signed):
        await processor.process_with_retry(*signed(make_event("customer.subscription.created", make_subscription())))

        result = await processor.reprocess_stored("evt_1")

        assert result.duplicate is True

    @pytest.mark.asyncio
    async def test_unknown_event_id(self, processor):
        with pytest.raises(EventNotFoundError):
            await processor.reprocess_stored("evt_missing")
