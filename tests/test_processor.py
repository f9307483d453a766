"""Tests for the delivery processor and cycle runner.

Tests cover:
- History + push + remove for a due delivery
- Partial push failure across subscriptions
- Idempotent history under retries and double processing
- Failing or held deliveries never starve the rest of the batch
- Claim takeover during completion
- Disabled users and disabled push
- Expired subscription pruning
- Cycle runner aggregation
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch
from uuid import uuid4

from sqlmodel import select

from app.models.delivery import QueueStatus
from app.models.notification import NotificationHistory, NotificationRule, PushSubscription, ScheduleType
from app.services.delivery_queue import DeliveryPayload, QueuedDelivery
from app.services.fanout import FanoutExpander
from app.services.history import record_delivery
from app.services.push import PushChannel, build_push_message
from app.workers.base import WorkerResult, WorkerStatus
from app.workers.delivery_processor import DeliveryProcessor
from app.workers.runner import NotificationCycleRunner, RunnerResult
from tests.conftest import RecordingTransport

UTC = timezone.utc
NOW = datetime(2024, 1, 2, 9, 0, tzinfo=UTC)


def enqueue_due(queue, user, key="direct:test", **kwargs) -> str:
    payload = DeliveryPayload(
        user_id=user.id,
        title=kwargs.pop("title", "Reminder"),
        message=kwargs.pop("message", "5 todos left"),
        **kwargs,
    )
    queue.enqueue(key, payload, NOW - timedelta(minutes=1))
    return key


def history_rows(session_factory, user) -> list[NotificationHistory]:
    with session_factory() as session:
        return list(
            session.exec(select(NotificationHistory).where(NotificationHistory.user_id == user.id)).all()
        )


def processor_for(queue, push_channel, session_factory, **kwargs) -> DeliveryProcessor:
    kwargs.setdefault("batch_size", 50)
    return DeliveryProcessor(
        queue=queue,
        push_channel=push_channel,
        session_factory=session_factory,
        concurrency=1,
        claimant="test-worker",
        **kwargs,
    )


# ============================================================================
# WorkerResult
# ============================================================================

class TestWorkerResult:
    """Tests for WorkerResult dataclass."""

    def test_worker_result_defaults(self):
        """WorkerResult initializes with correct defaults."""
        result = WorkerResult(status=WorkerStatus.NO_WORK)

        assert result.processed_count == 0
        assert result.failed_count == 0
        assert result.skipped_count == 0
        assert result.errors == []

    def test_worker_result_to_dict(self):
        """WorkerResult converts to dict correctly."""
        result = WorkerResult(
            status=WorkerStatus.PARTIAL,
            processed_count=10,
            failed_count=2,
            skipped_count=1,
        )

        d = result.to_dict()

        assert d["status"] == "partial"
        assert d["processed_count"] == 10
        assert d["failed_count"] == 2
        assert d["skipped_count"] == 1


# ============================================================================
# DeliveryProcessor
# ============================================================================

class TestDeliveryProcessor:
    """Tests for DeliveryProcessor."""

    def test_worker_name(self, queue, push_channel, session_factory):
        """DeliveryProcessor has correct name."""
        assert processor_for(queue, push_channel, session_factory).worker_name == "DeliveryProcessor"

    def test_no_due_deliveries(self, queue, push_channel, session_factory):
        result = processor_for(queue, push_channel, session_factory).run(NOW)

        assert result.status == WorkerStatus.NO_WORK

    def test_due_delivery_is_recorded_pushed_and_removed(
        self, queue, transport, push_channel, session_factory, test_user, make_subscription
    ):
        make_subscription(test_user, "https://push.example.com/a")
        key = enqueue_due(queue, test_user, item_id="42", item_type="task")

        result = processor_for(queue, push_channel, session_factory).run(NOW)

        assert result.status == WorkerStatus.SUCCESS
        assert result.processed_count == 1

        rows = history_rows(session_factory, test_user)
        assert len(rows) == 1
        assert rows[0].delivery_key == key
        assert rows[0].message == "5 todos left"

        assert transport.sent == [
            (
                "https://push.example.com/a",
                {"title": "Reminder", "message": "5 todos left", "soundEnabled": True, "url": "/task/42"},
            )
        ]
        assert queue.due_before(NOW) == []

    def test_future_deliveries_are_left_alone(self, queue, push_channel, session_factory, test_user):
        queue.enqueue(
            "direct:later",
            DeliveryPayload(user_id=test_user.id, title="Later", message="Later"),
            NOW + timedelta(hours=1),
        )

        result = processor_for(queue, push_channel, session_factory).run(NOW)

        assert result.status == WorkerStatus.NO_WORK
        assert len(queue.pending_for_user(test_user.id)) == 1

    def test_one_failing_subscription_does_not_affect_the_other(
        self, queue, session_factory, test_user, make_subscription
    ):
        """2 subscriptions, one failing: one history row and one successful send."""
        make_subscription(test_user, "https://push.example.com/broken")
        make_subscription(test_user, "https://push.example.com/working")
        transport = RecordingTransport(failures={"https://push.example.com/broken": 500})
        enqueue_due(queue, test_user)

        result = processor_for(queue, PushChannel(transport), session_factory).run(NOW)

        assert result.processed_count == 1
        assert result.failed_count == 0
        assert len(history_rows(session_factory, test_user)) == 1
        assert [endpoint for endpoint, _ in transport.sent] == ["https://push.example.com/working"]
        assert queue.due_before(NOW) == []

    def test_processing_same_batch_twice_writes_one_history_row(
        self, queue, push_channel, session_factory, test_user
    ):
        enqueue_due(queue, test_user)
        processor = processor_for(queue, push_channel, session_factory)
        batch = processor.fetch_pending(NOW)

        first = [processor.handle_item(item, NOW) for item in batch]
        second = [processor.handle_item(item, NOW) for item in batch]

        assert [outcome.value for outcome, _ in first] == ["processed"]
        assert [outcome.value for outcome, _ in second] == ["not_claimed"]
        assert len(history_rows(session_factory, test_user)) == 1

    def test_concurrent_processor_cannot_claim_held_delivery(
        self, queue, push_channel, session_factory, test_user
    ):
        enqueue_due(queue, test_user)
        queue.claim("direct:test", "other-worker", NOW)

        result = processor_for(queue, push_channel, session_factory).run(NOW)

        assert result.processed_count == 0
        assert history_rows(session_factory, test_user) == []

    def test_failure_after_history_releases_and_retry_does_not_duplicate(
        self, queue, push_channel, session_factory, test_user, make_subscription
    ):
        make_subscription(test_user, "https://push.example.com/a")
        enqueue_due(queue, test_user)
        processor = processor_for(queue, push_channel, session_factory)

        with patch.object(DeliveryProcessor, "_push", side_effect=RuntimeError("push backend down")):
            failed = processor.run(NOW)

        assert failed.status == WorkerStatus.FAILED
        assert failed.failed_count == 1
        assert failed.errors[0]["item_id"] == "direct:test"

        pending = queue.due_before(NOW)
        assert len(pending) == 1
        assert pending[0].attempts == 1
        assert pending[0].fire_at == NOW  # pushed back by the first backoff step

        retried = processor.run(NOW)

        assert retried.processed_count == 1
        assert len(history_rows(session_factory, test_user)) == 1
        assert queue.due_before(NOW) == []

    def test_failing_deliveries_do_not_starve_later_ones(
        self, queue, push_channel, session_factory, test_user
    ):
        """A full batch of always-failing deliveries must not block a healthy one."""
        for index in range(2):
            queue.enqueue(
                f"broken:{index}",
                DeliveryPayload(user_id=test_user.id, title="Broken", message="Broken"),
                NOW - timedelta(hours=2),
            )
        queue.enqueue(
            "healthy",
            DeliveryPayload(user_id=test_user.id, title="Healthy", message="Healthy"),
            NOW - timedelta(hours=1),
        )

        def record_unless_broken(session, item):
            if item.key.startswith("broken:"):
                raise RuntimeError("history write rejected")
            return record_delivery(session, item)

        processor = processor_for(queue, push_channel, session_factory, batch_size=2)
        with patch("app.workers.delivery_processor.record_delivery", side_effect=record_unless_broken):
            results = [processor.run(NOW) for _ in range(3)]

        assert results[0].failed_count == 2
        assert sum(result.processed_count for result in results) == 1
        assert [row.title for row in history_rows(session_factory, test_user)] == ["Healthy"]
        assert [d.key for d in queue.due_before(NOW)] == ["broken:0", "broken:1"]

    def test_held_delivery_does_not_use_up_the_batch(
        self, queue, push_channel, session_factory, test_user
    ):
        queue.enqueue(
            "direct:held",
            DeliveryPayload(user_id=test_user.id, title="Held", message="Held"),
            NOW - timedelta(hours=2),
        )
        enqueue_due(queue, test_user, key="direct:free", title="Free")
        queue.claim("direct:held", "other-worker", NOW)

        result = processor_for(queue, push_channel, session_factory, batch_size=1).run(NOW)

        assert result.processed_count == 1
        assert [row.title for row in history_rows(session_factory, test_user)] == ["Free"]
        assert [d.key for d in queue.due_before(NOW)] == ["direct:held"]

    def test_retry_backoff_grows_with_attempts_and_is_capped(self, queue, push_channel, session_factory):
        processor = processor_for(queue, push_channel, session_factory)
        payload = DeliveryPayload(user_id=uuid4(), title="Retry", message="Retry")

        def retry_delay(attempts):
            item = QueuedDelivery(key="k", payload=payload, fire_at=NOW, attempts=attempts)
            return processor.retry_at(item) - NOW

        assert retry_delay(0) == timedelta(seconds=60)
        assert retry_delay(3) == timedelta(seconds=480)
        assert retry_delay(20) == timedelta(hours=1)

    def test_completion_after_lease_takeover_leaves_new_holder_alone(
        self, queue, push_channel, session_factory, test_user
    ):
        enqueue_due(queue, test_user)
        processor = processor_for(queue, push_channel, session_factory)
        item = processor.fetch_pending(NOW)[0]
        assert processor.mark_processing(item, NOW) is True

        takeover = NOW + timedelta(seconds=queue.lease_seconds + 1)
        assert queue.claim(item.key, "other-worker", takeover) is True

        processor.mark_completed(item)

        pending = queue.due_before(takeover)
        assert [d.key for d in pending] == ["direct:test"]
        assert pending[0].status == QueueStatus.CLAIMED

    def test_disabled_user_is_skipped_without_side_effects(
        self, queue, transport, push_channel, session_factory, make_user, make_subscription
    ):
        user = make_user(notifications_enabled=False)
        make_subscription(user, "https://push.example.com/a")
        enqueue_due(queue, user)

        result = processor_for(queue, push_channel, session_factory).run(NOW)

        assert result.skipped_count == 1
        assert result.processed_count == 0
        assert history_rows(session_factory, user) == []
        assert transport.sent == []
        assert queue.due_before(NOW) == []

    def test_push_disabled_still_records_history(
        self, queue, transport, push_channel, session_factory, make_user, make_subscription
    ):
        user = make_user(push_enabled=False)
        make_subscription(user, "https://push.example.com/a")
        enqueue_due(queue, user)

        result = processor_for(queue, push_channel, session_factory).run(NOW)

        assert result.processed_count == 1
        assert len(history_rows(session_factory, user)) == 1
        assert transport.sent == []

    def test_sound_setting_is_forwarded(
        self, queue, transport, push_channel, session_factory, make_user, make_subscription
    ):
        user = make_user(sound_enabled=False)
        make_subscription(user, "https://push.example.com/a")
        enqueue_due(queue, user)

        processor_for(queue, push_channel, session_factory).run(NOW)

        assert transport.sent[0][1]["soundEnabled"] is False

    def test_expired_subscription_is_pruned(
        self, queue, session_factory, test_user, make_subscription
    ):
        gone_id = make_subscription(test_user, "https://push.example.com/gone").id
        kept_id = make_subscription(test_user, "https://push.example.com/kept").id
        transport = RecordingTransport(failures={"https://push.example.com/gone": 410})
        enqueue_due(queue, test_user)

        processor_for(queue, PushChannel(transport), session_factory).run(NOW)

        with session_factory() as session:
            remaining = {s.id for s in session.exec(select(PushSubscription)).all()}
        assert remaining == {kept_id}
        assert gone_id not in remaining

    def test_expired_subscription_kept_when_pruning_disabled(
        self, queue, session_factory, test_user, make_subscription
    ):
        make_subscription(test_user, "https://push.example.com/gone")
        transport = RecordingTransport(failures={"https://push.example.com/gone": 404})
        enqueue_due(queue, test_user)

        processor_for(queue, PushChannel(transport), session_factory, prune_expired=False).run(NOW)

        with session_factory() as session:
            assert len(session.exec(select(PushSubscription)).all()) == 1


# ============================================================================
# History and push helpers
# ============================================================================

class TestHistoryAndPushHelpers:
    """Tests for record_delivery and push message building."""

    def test_record_delivery_is_idempotent(self, db_session, test_user):
        delivery = QueuedDelivery(
            key="direct:abc",
            payload=DeliveryPayload(user_id=test_user.id, title="T", message="M"),
            fire_at=NOW,
        )

        first, created = record_delivery(db_session, delivery)
        second, created_again = record_delivery(db_session, delivery)

        assert created is True
        assert created_again is False
        assert first.id == second.id

    def test_push_message_without_item_has_no_url(self):
        message = build_push_message(DeliveryPayload(user_id=uuid4(), title="T", message="M"), True)

        assert message == {"title": "T", "message": "M", "soundEnabled": True, "url": None}


# ============================================================================
# NotificationCycleRunner
# ============================================================================

class TestNotificationCycleRunner:
    """Tests for the full fan-out + processing cycle."""

    def test_cycle_expands_then_delivers_due(
        self, db_session, queue, transport, push_channel, session_factory, make_user, job_trigger
    ):
        user = make_user()
        rule = NotificationRule(
            title="Digest",
            message="{todoCount} todos left",
            schedule_type=ScheduleType.DAILY,
            schedule_time="09:00",
        )
        db_session.add(rule)
        db_session.commit()
        enqueue_due(queue, user)

        runner = NotificationCycleRunner(
            expander=FanoutExpander(
                queue=queue,
                session_factory=session_factory,
                job_trigger=job_trigger,
                max_workers=1,
                default_timezone="UTC",
            ),
            processor=processor_for(queue, push_channel, session_factory),
        )

        result = runner.run_once(NOW)

        assert result.summary() == {
            "success": True,
            "processed": 1,
            "failed": 0,
            "skipped": 0,
            "expanded": 1,
        }
        # The rule's next occurrence is tomorrow, so it stays queued
        assert len(queue.pending_for_user(user.id)) == 1

    def test_runner_result_empty(self):
        result = RunnerResult(started_at=NOW)

        assert result.success is True
        assert result.summary()["processed"] == 0

    def test_process_only_cycle_skips_fanout(
        self, db_session, queue, push_channel, session_factory, make_user, job_trigger
    ):
        user = make_user()
        db_session.add(
            NotificationRule(
                title="Digest",
                message="{todoCount} todos left",
                schedule_type=ScheduleType.DAILY,
                schedule_time="09:00",
            )
        )
        db_session.commit()

        runner = NotificationCycleRunner(
            expander=FanoutExpander(
                queue=queue,
                session_factory=session_factory,
                job_trigger=job_trigger,
                max_workers=1,
                default_timezone="UTC",
            ),
            processor=processor_for(queue, push_channel, session_factory),
            expand_rules=False,
        )

        result = runner.run_once(NOW)

        assert result.expansions == []
        assert queue.pending_for_user(user.id) == []
        job_trigger.schedule_processing.assert_not_called()
