from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from lms_notify.common.errors import TransportError
from lms_notify.common.logging import current_log_context
from lms_notify.domain.enums import MessageCategory, MessagePriority, MessageStatus
from lms_notify.queue.dispatcher import INTERRUPTED_ERROR, QueueDispatcher
from lms_notify.queue.escalation import FailureEscalator
from lms_notify.queue.lock import SingleFlight
from lms_notify.queue.producer import EnqueueRequest, enqueue, enqueue_many
from lms_notify.storage.repositories import MessageLogRepository
from lms_notify.transport.mock import MockTransport
from lms_notify.transport.telegram import TelegramTransport

OPERATORS = ["ops-1", "ops-2"]


def _dispatcher(transport, session_scope, clock, **overrides) -> QueueDispatcher:
    params = {
        "escalator": FailureEscalator(transport, OPERATORS, sleep_fn=clock.sleep),
        "guard": SingleFlight(),
        "batch_size": 50,
        "max_messages_per_second": 25,
        "max_retries": 3,
        "backoff_base_sec": 60,
        "stale_retrying_sec": 30,
        "cycle_max_duration_sec": 120,
        "fail_fast_on_permanent": False,
        "now_fn": clock.now,
        "sleep_fn": clock.sleep,
        "monotonic_fn": clock.monotonic,
    }
    params.update(overrides)
    return QueueDispatcher(transport, session_scope, **params)


def test_high_priority_sent_before_normal_created_same_instant(
    session_scope, clock, add_record, load_record
):
    normal_id = add_record(destination="normal", priority=MessagePriority.normal)
    high_id = add_record(destination="high", priority=MessagePriority.high)
    transport = MockTransport()

    result = _dispatcher(transport, session_scope, clock).run_cycle()

    assert result.skipped is False
    assert result.sent == 2
    assert transport.attempts == ["high", "normal"]
    for record_id in (normal_id, high_id):
        assert load_record(record_id).status == MessageStatus.sent


def test_batch_order_priority_then_fifo(session_scope, clock, add_record):
    plan = [
        ("low-old", MessagePriority.low, 0),
        ("normal-new", MessagePriority.normal, 30),
        ("high-new", MessagePriority.high, 20),
        ("normal-old", MessagePriority.normal, 10),
        ("high-old", MessagePriority.high, 5),
    ]
    start = clock.now() - timedelta(hours=1)
    for dest, prio, offset in plan:
        add_record(destination=dest, priority=prio, created_at=start + timedelta(seconds=offset))
    transport = MockTransport()

    _dispatcher(transport, session_scope, clock).run_cycle()

    assert transport.attempts == ["high-old", "high-new", "normal-old", "normal-new", "low-old"]


def test_successful_send_sets_sent_fields(session_scope, clock, add_record, load_record):
    record_id = add_record(
        status=MessageStatus.failed,
        retry_count=1,
        next_retry_at=clock.now() - timedelta(seconds=1),
        error="timeout",
    )
    transport = MockTransport()

    _dispatcher(transport, session_scope, clock).run_cycle()

    record = load_record(record_id)
    assert record.status == MessageStatus.sent
    assert record.transport_message_id == transport.sent[0].message_id
    assert record.error is None
    assert record.next_retry_at is None
    assert record.sent_at is not None
    assert record.retry_count == 1


def test_parse_mode_from_metadata_reaches_transport(session_scope, clock, add_record):
    add_record(meta={"parse_mode": "MarkdownV2", "exam_id": 3})
    transport = MockTransport()

    _dispatcher(transport, session_scope, clock).run_cycle()

    assert transport.sent[0].options == {"parse_mode": "MarkdownV2"}


def test_record_is_retrying_while_being_sent(session_scope, clock, add_record):
    record_id = add_record()
    seen: list[MessageStatus] = []

    class _Recording(MockTransport):
        def send(self, destination, content, options=None):
            with session_scope() as s:
                seen.append(MessageLogRepository(s).get(record_id).status)
            return super().send(destination, content, options)

    _dispatcher(_Recording(), session_scope, clock).run_cycle()

    assert seen == [MessageStatus.retrying]


def test_exhausted_budget_escalates_and_never_makes_fourth_attempt(
    session_scope, clock, load_record
):
    record = enqueue(
        "student-1", "Итоги теста", MessageCategory.results, session_scope=session_scope
    )
    transport = MockTransport(fail_times=3)
    dispatcher = _dispatcher(transport, session_scope, clock)

    schedule = []
    for _ in range(3):
        result = dispatcher.run_cycle()
        assert result.failed == 1
        current = load_record(record.id)
        schedule.append((current.retry_count, current.next_retry_at))
        clock.advance(minutes=10)

    assert schedule[0][0] == 1
    assert schedule[1][0] == 2
    assert schedule[2] == (3, None)
    assert result.escalated == 1

    clock.advance(hours=5)
    dispatcher.run_cycle()

    assert transport.attempts.count("student-1") == 3
    final = load_record(record.id)
    assert final.status == MessageStatus.failed
    assert final.next_retry_at is None
    assert "mock failure" in final.error
    alerts = [m for m in transport.sent if m.destination in OPERATORS]
    assert [m.destination for m in alerts] == OPERATORS
    assert str(record.id) in alerts[0].content


def test_backoff_deltas_follow_formula(session_scope, clock, add_record, load_record):
    record_id = add_record()
    transport = MockTransport(fail_times=10)
    dispatcher = _dispatcher(transport, session_scope, clock)

    dispatcher.run_cycle()
    first = load_record(record_id)
    assert (first.next_retry_at - clock.now()).total_seconds() == pytest.approx(120, abs=1)

    clock.current = first.next_retry_at
    dispatcher.run_cycle()
    second = load_record(record_id)
    assert (second.next_retry_at - clock.now()).total_seconds() == pytest.approx(240, abs=1)


def test_retry_is_not_attempted_before_next_retry_at(session_scope, clock, load_record):
    record = enqueue("chat-1", "x", MessageCategory.attendance, session_scope=session_scope)
    transport = MockTransport(fail_times=1)
    dispatcher = _dispatcher(transport, session_scope, clock)

    dispatcher.run_cycle()
    failed = load_record(record.id)
    assert failed.status == MessageStatus.failed
    assert failed.retry_count == 1
    assert failed.next_retry_at is not None

    clock.advance(minutes=1)
    early = dispatcher.run_cycle()
    assert early.selected == 0
    assert load_record(record.id).status == MessageStatus.failed

    clock.advance(minutes=2)
    late = dispatcher.run_cycle()
    assert late.sent == 1
    assert load_record(record.id).status == MessageStatus.sent
    assert transport.calls == 2


@pytest.mark.parametrize("max_retries", [1, 3, 5])
def test_terminal_only_after_exactly_max_retries(
    session_scope, clock, add_record, load_record, max_retries
):
    record_id = add_record()
    transport = MockTransport(fail_times=100)
    dispatcher = _dispatcher(transport, session_scope, clock, max_retries=max_retries)

    for attempt in range(1, max_retries + 1):
        dispatcher.run_cycle()
        record = load_record(record_id)
        assert record.retry_count == attempt
        terminal = record.next_retry_at is None
        assert terminal is (attempt == max_retries)
        clock.advance(hours=1)

    assert transport.attempts.count("chat-1") == max_retries


def test_concurrent_trigger_is_noop(session_scope, clock, add_record):
    add_record(destination="slow")
    entered = threading.Event()
    release = threading.Event()

    class _Slow(MockTransport):
        def send(self, destination, content, options=None):
            entered.set()
            assert release.wait(timeout=5)
            return super().send(destination, content, options)

    transport = _Slow()
    dispatcher = _dispatcher(transport, session_scope, clock)
    results = []
    worker = threading.Thread(target=lambda: results.append(dispatcher.run_cycle()))
    worker.start()
    try:
        assert entered.wait(timeout=5)
        second = dispatcher.run_cycle()
    finally:
        release.set()
        worker.join(timeout=5)

    assert second.skipped is True
    assert second.reason == "cycle_in_progress"
    assert second.selected == 0
    assert results[0].sent == 1
    assert transport.attempts == ["slow"]


def test_batch_cap_leaves_rest_for_next_cycle(session_scope, clock):
    enqueue_many(
        [
            EnqueueRequest(
                destination=f"chat-{i}", content="x", category=MessageCategory.announcement
            )
            for i in range(60)
        ],
        session_scope=session_scope,
    )
    transport = MockTransport()
    dispatcher = _dispatcher(transport, session_scope, clock)

    first = dispatcher.run_cycle()
    assert first.selected == 50
    assert first.sent == 50

    second = dispatcher.run_cycle()
    assert second.selected == 10
    assert second.sent == 10
    assert len(set(transport.attempts)) == 60


def test_sends_are_paced(session_scope, clock, add_record):
    for i in range(3):
        add_record(destination=f"chat-{i}")

    _dispatcher(MockTransport(), session_scope, clock).run_cycle()

    assert clock.sleeps == pytest.approx([0.04, 0.04, 0.04])


def test_cycle_deadline_leaves_remaining_untouched(session_scope, clock, add_record, load_record):
    ids = [add_record(destination=f"chat-{i}") for i in range(5)]
    transport = MockTransport()

    result = _dispatcher(transport, session_scope, clock, cycle_max_duration_sec=0.1).run_cycle()

    assert result.aborted is True
    assert result.sent == 3
    assert [load_record(i).status for i in ids[3:]] == [MessageStatus.pending] * 2


def test_lost_claim_is_skipped(session_scope, clock, add_record, load_record):
    first_id = add_record(destination="first")
    second_id = add_record(destination="second")

    class _Competitor(MockTransport):
        def send(self, destination, content, options=None):
            if destination == "first":
                # второй диспетчер успел забрать следующую запись
                with session_scope() as s:
                    assert MessageLogRepository(s).claim(
                        second_id, now=clock.now(), max_retries=3
                    )
            return super().send(destination, content, options)

    transport = _Competitor()
    result = _dispatcher(transport, session_scope, clock).run_cycle()

    assert result.lost_claims == 1
    assert result.sent == 1
    assert transport.attempts == ["first"]
    assert load_record(first_id).status == MessageStatus.sent
    assert load_record(second_id).status == MessageStatus.retrying


def test_stale_retrying_is_recovered_through_retry_policy(
    session_scope, clock, add_record, load_record
):
    stale_id = add_record(
        status=MessageStatus.retrying, claimed_at=clock.now() - timedelta(minutes=5)
    )
    fresh_id = add_record(status=MessageStatus.retrying, claimed_at=clock.now())
    transport = MockTransport()

    result = _dispatcher(transport, session_scope, clock).run_cycle()

    assert result.recovered == 1
    stale = load_record(stale_id)
    assert stale.status == MessageStatus.failed
    assert stale.retry_count == 1
    assert stale.error == INTERRUPTED_ERROR
    assert stale.next_retry_at == clock.now() + timedelta(minutes=2)
    assert load_record(fresh_id).status == MessageStatus.retrying
    assert transport.attempts == []


def test_stale_retrying_with_exhausted_budget_escalates(
    session_scope, clock, add_record, load_record
):
    record_id = add_record(
        status=MessageStatus.retrying,
        retry_count=2,
        claimed_at=clock.now() - timedelta(minutes=5),
    )
    transport = MockTransport()

    result = _dispatcher(transport, session_scope, clock).run_cycle()

    assert result.escalated == 1
    assert load_record(record_id).next_retry_at is None
    assert transport.attempts == OPERATORS


def test_permanent_error_retried_by_default(session_scope, clock, add_record, load_record):
    record_id = add_record(destination="blocked")
    transport = MockTransport(fail_destinations={"blocked"}, retryable=False)

    _dispatcher(transport, session_scope, clock).run_cycle()

    record = load_record(record_id)
    assert record.retry_count == 1
    assert record.next_retry_at is not None


def test_permanent_error_fail_fast(session_scope, clock, add_record, load_record):
    record_id = add_record(destination="blocked")
    transport = MockTransport(fail_destinations={"blocked"}, retryable=False)

    result = _dispatcher(
        transport, session_scope, clock, fail_fast_on_permanent=True
    ).run_cycle()

    record = load_record(record_id)
    assert record.status == MessageStatus.failed
    assert record.next_retry_at is None
    assert result.escalated == 1


def test_unexpected_transport_exception_counts_as_failure(
    session_scope, clock, add_record, load_record
):
    record_id = add_record()

    class _Broken(MockTransport):
        def send(self, destination, content, options=None):
            raise RuntimeError("boom")

    result = _dispatcher(_Broken(), session_scope, clock).run_cycle()

    assert result.failed == 1
    record = load_record(record_id)
    assert record.status == MessageStatus.failed
    assert record.error == "boom"


def test_escalation_failure_does_not_break_cycle(session_scope, clock, add_record, load_record):
    failing_id = add_record(destination="bad", retry_count=2, status=MessageStatus.pending)
    ok_id = add_record(destination="good")

    class _Flaky(MockTransport):
        def send(self, destination, content, options=None):
            if destination in OPERATORS:
                raise TransportError("operators unreachable")
            return super().send(destination, content, options)

    transport = _Flaky(fail_destinations={"bad"})
    result = _dispatcher(transport, session_scope, clock).run_cycle()

    assert result.escalated == 1
    assert result.sent == 1
    assert load_record(failing_id).next_retry_at is None
    assert load_record(ok_id).status == MessageStatus.sent


def test_tenant_scoped_cycle(session_scope, clock, add_record, load_record):
    mine = add_record(destination="a", tenant_id="center-1")
    other = add_record(destination="b", tenant_id="center-2")
    orphan = add_record(destination="c", tenant_id=None)
    transport = MockTransport()

    _dispatcher(transport, session_scope, clock).run_cycle(tenant_id="center-1")

    assert transport.attempts == ["a"]
    assert load_record(mine).status == MessageStatus.sent
    assert load_record(other).status == MessageStatus.pending
    assert load_record(orphan).status == MessageStatus.pending


def test_unconfigured_transport_skips_cycle(session_scope, clock, add_record, load_record):
    record_id = add_record()
    transport = TelegramTransport(token="")

    result = _dispatcher(transport, session_scope, clock).run_cycle()

    assert result.skipped is True
    assert result.reason == "transport_not_configured"
    assert load_record(record_id).status == MessageStatus.pending


def test_guard_released_after_cycle_error(session_scope, clock, add_record, monkeypatch):
    add_record()
    dispatcher = _dispatcher(MockTransport(), session_scope, clock)

    def _boom(*args, **kwargs):
        raise RuntimeError("db down")

    monkeypatch.setattr(MessageLogRepository, "select_eligible", _boom)
    with pytest.raises(RuntimeError):
        dispatcher.run_cycle()

    assert dispatcher.busy is False
    monkeypatch.undo()
    assert dispatcher.run_cycle().sent == 1


def test_sent_record_is_not_selected_again(session_scope, clock, add_record):
    add_record()
    transport = MockTransport()
    dispatcher = _dispatcher(transport, session_scope, clock)

    dispatcher.run_cycle()
    again = dispatcher.run_cycle()

    assert again.selected == 0
    assert transport.calls == 1



def test_cycle_log_context_visible_inside_send(session_scope, clock, add_record):
    add_record(tenant_id="center-1")
    seen: list[dict] = []

    class ContextRecorder(MockTransport):
        def send(self, destination, content, options=None):
            seen.append(current_log_context())
            return super().send(destination, content, options)

    result = _dispatcher(ContextRecorder(), session_scope, clock).run_cycle(tenant_id="center-1")

    assert seen == [{"cycle_id": result.cycle_id, "tenant_id": "center-1"}]
    assert current_log_context() == {}


def test_transport_configured_flag_is_read_directly(session_scope, clock, add_record, load_record):
    record_id = add_record()
    transport = MockTransport()
    transport.configured = False

    result = _dispatcher(transport, session_scope, clock).run_cycle()

    assert result.skipped is True
    assert result.reason == "transport_not_configured"
    assert transport.attempts == []
    assert load_record(record_id).retry_count == 0


def test_escalation_alerts_respect_send_pacing(session_scope, clock, add_record):
    add_record(destination="blocked", retry_count=2)
    transport = MockTransport(fail_destinations={"blocked"})
    dispatcher = QueueDispatcher(
        transport,
        session_scope,
        guard=SingleFlight(),
        max_messages_per_second=25,
        max_retries=3,
        now_fn=clock.now,
        sleep_fn=clock.sleep,
        monotonic_fn=clock.monotonic,
    )
    dispatcher.escalator.operator_destinations = list(OPERATORS)

    result = dispatcher.run_cycle()

    assert result.escalated == 1
    assert transport.attempts == ["blocked", "ops-1", "ops-2"]
    # перед каждым алертом и после упавшей отправки
    assert clock.sleeps == pytest.approx([0.04, 0.04, 0.04])
