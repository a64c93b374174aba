from __future__ import annotations

from services.batch.dispatcher import DispatchOutcome
from services.batch.jobs import ANALYZE_TASK_NAME


class FakeDispatcher:
    def __init__(self, raise_exc=None):
        self.calls = []
        self.raise_exc = raise_exc

    def dispatch(self, entry_id):
        self.calls.append(entry_id)
        if self.raise_exc:
            raise self.raise_exc
        return DispatchOutcome(entry_id=entry_id, status="complete")


def test_task_is_registered_under_queue_name():
    import apps.workers.tasks as tasks_mod

    assert tasks_mod.analyze_entry.name == ANALYZE_TASK_NAME
    assert ANALYZE_TASK_NAME in tasks_mod.celery_app.tasks


def test_task_runs_dispatcher(monkeypatch):
    import apps.workers.tasks as tasks_mod

    fake = FakeDispatcher()
    monkeypatch.setattr(tasks_mod, "get_dispatcher", lambda: fake)

    out = tasks_mod.analyze_entry("entry-1")

    assert fake.calls == ["entry-1"]
    assert out == {"ok": True, "entry_id": "entry-1", "status": "complete", "message": None}


def test_task_reports_unexpected_errors(monkeypatch):
    import apps.workers.tasks as tasks_mod

    monkeypatch.setattr(tasks_mod, "get_dispatcher", lambda: FakeDispatcher(RuntimeError("db down")))

    out = tasks_mod.analyze_entry("entry-2")

    assert out["ok"] is False
    assert out["error"] == "job_failed"
    assert "db down" in out["detail"]
