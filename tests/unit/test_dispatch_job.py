from __future__ import annotations

from types import SimpleNamespace

from lms_notify.jobs import dispatch_job


def test_dispatch_job_skips_when_disabled(settings_snapshot):
    settings_snapshot.dispatcher_enabled = False
    assert dispatch_job.run() is None


def test_dispatch_job_runs_one_cycle(settings_snapshot):
    settings_snapshot.dispatcher_enabled = True
    calls: list[str | None] = []

    class _FakeDispatcher:
        def run_cycle(self, tenant_id=None):
            calls.append(tenant_id)
            return SimpleNamespace(skipped=False, sent=2)

    result = dispatch_job.run(_FakeDispatcher())

    assert result.sent == 2
    assert calls == [None]


def test_dispatch_job_uses_process_dispatcher(settings_snapshot, monkeypatch):
    settings_snapshot.dispatcher_enabled = True
    fake = SimpleNamespace(run_cycle=lambda: SimpleNamespace(skipped=True))
    monkeypatch.setattr(dispatch_job, "get_dispatcher", lambda: fake)
    assert dispatch_job.run().skipped is True
