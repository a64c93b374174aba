from __future__ import annotations

import threading

import pytest

from services.batch.jobs import ANALYZE_TASK_NAME, CeleryJobQueue, ThreadPoolJobQueue


class FakeCelery:
    def __init__(self):
        self.sent = []

    def send_task(self, name: str, args=None, kwargs=None, countdown=None, queue=None):
        class R:
            id = "fake-task-id-123"
        self.sent.append((name, args, countdown, queue))
        return R()


def test_celery_queue_sends_named_task_with_countdown():
    celery = FakeCelery()
    q = CeleryJobQueue(celery)

    q.enqueue_analysis("e1", delay_s=5.0)
    q.enqueue_analysis("e2")

    assert celery.sent == [
        (ANALYZE_TASK_NAME, ["e1"], 5.0, "ai_analysis"),
        (ANALYZE_TASK_NAME, ["e2"], None, "ai_analysis"),
    ]


def test_thread_pool_runs_jobs():
    seen = []
    lock = threading.Lock()

    def handler(entry_id):
        with lock:
            seen.append(entry_id)

    q = ThreadPoolJobQueue(handler, max_workers=2)
    for i in range(5):
        q.enqueue_analysis(f"e{i}")
    q.drain(timeout_s=5)
    q.shutdown()

    assert sorted(seen) == ["e0", "e1", "e2", "e3", "e4"]


def test_thread_pool_delayed_job_fires_later():
    done = threading.Event()
    q = ThreadPoolJobQueue(lambda entry_id: done.set(), max_workers=1)

    q.enqueue_analysis("e1", delay_s=0.05)
    assert done.wait(timeout=5)
    q.shutdown()


def test_thread_pool_survives_crashing_handler():
    ran = threading.Event()

    def handler(entry_id):
        if entry_id == "bad":
            raise RuntimeError("boom")
        ran.set()

    q = ThreadPoolJobQueue(handler, max_workers=1)
    q.enqueue_analysis("bad")
    q.enqueue_analysis("good")
    q.drain(timeout_s=5)
    q.shutdown()
    assert ran.is_set()


def test_thread_pool_drops_jobs_after_shutdown():
    seen = []
    q = ThreadPoolJobQueue(seen.append, max_workers=1)
    q.shutdown()
    q.enqueue_analysis("late")
    assert seen == []


def test_thread_pool_requires_workers():
    with pytest.raises(ValueError):
        ThreadPoolJobQueue(lambda e: None, max_workers=0)
