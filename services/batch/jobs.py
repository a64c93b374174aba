# services/batch/jobs.py
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, List, Optional, Protocol

logger = logging.getLogger(__name__)

ANALYZE_TASK_NAME = "medpack.analyze_entry"
ANALYSIS_QUEUE = "ai_analysis"


class JobQueue(Protocol):
    def enqueue_analysis(self, entry_id: str, *, delay_s: float = 0.0) -> None: ...


class CeleryJobQueue:
    """Sends analysis jobs to the Celery worker pool by task name."""

    def __init__(self, celery_app: Any, *, queue: str = ANALYSIS_QUEUE) -> None:
        self._app = celery_app
        self._queue = queue

    def enqueue_analysis(self, entry_id: str, *, delay_s: float = 0.0) -> None:
        result = self._app.send_task(
            ANALYZE_TASK_NAME,
            args=[entry_id],
            countdown=delay_s if delay_s > 0 else None,
            queue=self._queue,
        )
        logger.info("Queued analysis for entry %s (task %s, delay %.1fs)", entry_id, result.id, delay_s)


class ThreadPoolJobQueue:
    """
    In-process bounded worker pool. Delayed jobs wait on a timer thread and
    only occupy a worker once due.
    """

    def __init__(self, handler: Callable[[str], Any], *, max_workers: int = 4) -> None:
        if max_workers <= 0:
            raise ValueError("max_workers must be > 0")
        self._handler = handler
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="analysis")
        self._lock = threading.Lock()
        self._timers: List[threading.Timer] = []
        self._futures: List[Future] = []
        self._closed = False

    def enqueue_analysis(self, entry_id: str, *, delay_s: float = 0.0) -> None:
        if delay_s > 0:
            t = threading.Timer(delay_s, self._submit, args=(entry_id,))
            t.daemon = True
            with self._lock:
                self._timers = [x for x in self._timers if x.is_alive()]
                self._timers.append(t)
            t.start()
        else:
            self._submit(entry_id)

    def _submit(self, entry_id: str) -> Optional[Future]:
        with self._lock:
            if self._closed:
                logger.warning("Job queue closed; dropping analysis for entry %s", entry_id)
                return None
            fut = self._pool.submit(self._handler, entry_id)
            self._futures = [f for f in self._futures if not f.done()]
            self._futures.append(fut)
        fut.add_done_callback(lambda f, eid=entry_id: self._log_failure(eid, f))
        return fut

    @staticmethod
    def _log_failure(entry_id: str, fut: Future) -> None:
        exc = fut.exception()
        if exc is not None:
            logger.error("Analysis job for entry %s crashed: %s", entry_id, exc)

    def drain(self, timeout_s: Optional[float] = None) -> None:
        """Wait for every job submitted so far (timers that have not fired are not awaited)."""
        with self._lock:
            pending = list(self._futures)
        for f in pending:
            f.exception(timeout=timeout_s)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
            timers = list(self._timers)
        for t in timers:
            t.cancel()
        self._pool.shutdown(wait=wait)
