from __future__ import annotations

from datetime import timedelta

from lms_notify.domain.enums import MessageStatus
from lms_notify.jobs import retention_job
from lms_notify.storage.retention import apply_retention, retention_cutoff


def test_cutoff_uses_configured_days(settings_snapshot, clock):
    settings_snapshot.queue_retention_days = 7
    assert retention_cutoff(clock.now()) == clock.now() - timedelta(days=7)
    assert retention_cutoff(clock.now(), days=30) == clock.now() - timedelta(days=30)


def test_old_sent_removed_but_old_failed_kept(session_scope, add_record, load_record, clock):
    old = clock.now() - timedelta(days=31)
    old_sent = add_record(status=MessageStatus.sent, sent_at=old, created_at=old)
    old_failed = add_record(status=MessageStatus.failed, created_at=old, error="blocked")
    old_pending = add_record(status=MessageStatus.pending, created_at=old)
    fresh_sent = add_record(status=MessageStatus.sent, sent_at=clock.now() - timedelta(days=29))

    with session_scope() as s:
        deleted = apply_retention(s, now=clock.now())

    assert deleted == 1
    assert load_record(old_sent) is None
    assert load_record(old_failed) is not None
    assert load_record(old_pending) is not None
    assert load_record(fresh_sent) is not None


def test_retention_job_reports_deleted(session_scope, add_record, clock, settings_snapshot):
    settings_snapshot.retention_enabled = True
    add_record(status=MessageStatus.sent, sent_at=clock.now() - timedelta(days=40))

    assert retention_job.run(session_scope=session_scope, now=clock.now()) == 1
    assert retention_job.run(session_scope=session_scope, now=clock.now()) == 0


def test_retention_job_disabled(session_scope, settings_snapshot):
    settings_snapshot.retention_enabled = False
    assert retention_job.run(session_scope=session_scope) is None
