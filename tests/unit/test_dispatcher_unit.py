from __future__ import annotations

import json

import pytest

from services.batch.dispatcher import AnalysisDispatcher, DispatchStatus, failure_message, stale_claim_after
from services.batch.entry_store import INTERRUPTED_MESSAGE
from services.batch.entry_store import NewImage
from services.batch.errors import (
    ImageUnavailableError,
    MaxRetriesExceeded,
    PermanentRemoteError,
    TransientRemoteError,
)
from services.batch.events import BATCH_TOPIC, InMemoryEventBus
from services.batch.models import AnalysisStatus
from services.extraction.retry import RetryConfig, RetryExecutor
from services.ingestion.storage import RefKind

GOOD_RESPONSE = json.dumps(
    {
        "name": "Ibuprofen",
        "dosage_form": "tablet",
        "strength_value": "500",
        "strength_unit": "mg",
        "container_type": "box",
        "total_quantity": 100,
    }
)


class FakeAnalyzer:
    def __init__(self, responses=None):
        # each item is a str to return or an exception to raise
        self._responses = list(responses or [GOOD_RESPONSE])
        self.requests = []
        self.timeouts = []
        self.before_return = None

    def analyze(self, request, *, timeout_s):
        self.requests.append(request)
        self.timeouts.append(timeout_s)
        item = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if isinstance(item, Exception):
            raise item
        if self.before_return:
            self.before_return()
        return item


class FakeQueue:
    def __init__(self):
        self.jobs = []

    def enqueue_analysis(self, entry_id, *, delay_s=0.0):
        self.jobs.append((entry_id, delay_s))


def put_image(store, image_store, entry_id, key, blob, order=None):
    image_store.put(blob, key)
    return store.attach_image(
        entry_id,
        NewImage(
            storage_key=key,
            original_filename=key.rsplit("/", 1)[-1],
            file_size=len(blob),
            content_type="image/jpeg",
            upload_order=order,
        ),
    )


@pytest.fixture
def events():
    return InMemoryEventBus()


def make_dispatcher(store, image_store, analyzer, events, *, max_retries=3, queue=None, stale_after_s=None):
    return AnalysisDispatcher(
        store=store,
        images=image_store,
        analyzer=analyzer,
        retry=RetryExecutor(sleep=lambda s: None, jitter=lambda lo, hi: 0.0),
        retry_config=RetryConfig(max_retries=max_retries, per_attempt_timeout_s=12.0),
        events=events,
        queue=queue,
        debounce_s=5.0,
        stale_after_s=stale_after_s,
    )


def test_happy_path_completes_entry_and_notifies(store, image_store, events):
    e = store.create_entry("b1", 1)
    put_image(store, image_store, e.id, "b1/front.jpg", b"front")
    analyzer = FakeAnalyzer()

    out = make_dispatcher(store, image_store, analyzer, events).dispatch(e.id)

    assert out.status == DispatchStatus.COMPLETE
    snap = store.get_entry(e.id)
    assert snap.ai_analysis_status is AnalysisStatus.COMPLETE
    assert snap.ai_results["strength_value"] == 500.0
    assert snap.ai_results["total_quantity"] == 100.0
    assert snap.error_message is None
    assert analyzer.timeouts == [12.0]

    msgs = events.for_topic(BATCH_TOPIC)
    assert len(msgs) == 1
    assert msgs[0]["entry_id"] == e.id
    assert msgs[0]["status"] == "complete"
    assert msgs[0]["payload"]["name"] == "Ibuprofen"


def test_images_sent_in_upload_order(store, image_store, events):
    e = store.create_entry("b1", 1)
    put_image(store, image_store, e.id, "b1/B.jpg", b"BBB", order=1)
    put_image(store, image_store, e.id, "b1/A.jpg", b"AAA", order=0)
    analyzer = FakeAnalyzer()

    make_dispatcher(store, image_store, analyzer, events).dispatch(e.id)

    (request,) = analyzer.requests
    assert [r.kind for r in request.images] == [RefKind.BYTES, RefKind.BYTES]
    assert [r.value for r in request.images] == [b"AAA", b"BBB"]
    assert "pharmaceutical" in request.instructions


def test_url_references_when_public_base_url_set(store, tmp_path, events):
    from services.ingestion.storage import LocalImageStore

    images = LocalImageStore(str(tmp_path / "pub"), public_base_url="https://cdn.example.com/media/")
    e = store.create_entry("b1", 1)
    put_image(store, images, e.id, "b1/x.jpg", b"xx")
    analyzer = FakeAnalyzer()

    make_dispatcher(store, images, analyzer, events).dispatch(e.id)

    (ref,) = analyzer.requests[0].images
    assert ref.kind is RefKind.URL
    assert ref.value == "https://cdn.example.com/media/b1/x.jpg"


def test_unreadable_response_fails_entry_and_allows_retry(store, image_store, events):
    e = store.create_entry("b1", 1)
    put_image(store, image_store, e.id, "b1/a.jpg", b"a")
    analyzer = FakeAnalyzer(["Sorry, I can't read this label."])

    out = make_dispatcher(store, image_store, analyzer, events).dispatch(e.id)

    assert out.status == DispatchStatus.FAILED
    snap = store.get_entry(e.id)
    assert snap.ai_analysis_status is AnalysisStatus.FAILED
    assert snap.ai_results is None
    assert snap.error_message == out.message

    assert store.retry_analysis(e.id).ready_for_analysis


def test_ai_error_field_becomes_failure_message(store, image_store, events):
    e = store.create_entry("b1", 1)
    put_image(store, image_store, e.id, "b1/a.jpg", b"a")
    analyzer = FakeAnalyzer(['{"error": "Unable to identify medicine clearly"}'])

    make_dispatcher(store, image_store, analyzer, events).dispatch(e.id)

    assert store.get_entry(e.id).error_message == "Unable to identify medicine clearly"


def test_retries_exhausted(store, image_store, events):
    e = store.create_entry("b1", 1)
    put_image(store, image_store, e.id, "b1/a.jpg", b"a")
    analyzer = FakeAnalyzer([TransientRemoteError("503", kind=TransientRemoteError.SERVER_ERROR)])

    out = make_dispatcher(store, image_store, analyzer, events, max_retries=2).dispatch(e.id)

    assert len(analyzer.requests) == 3
    assert out.status == DispatchStatus.FAILED
    assert store.get_entry(e.id).error_message == (
        "AI service failed after multiple retries - please try again later"
    )
    assert events.for_topic(BATCH_TOPIC)[-1]["status"] == "failed"


def test_timeouts_exhausted_use_timeout_message(store, image_store, events):
    e = store.create_entry("b1", 1)
    put_image(store, image_store, e.id, "b1/a.jpg", b"a")
    analyzer = FakeAnalyzer([TransientRemoteError("slow", kind=TransientRemoteError.TIMEOUT)])

    make_dispatcher(store, image_store, analyzer, events, max_retries=1).dispatch(e.id)

    assert store.get_entry(e.id).error_message == "AI service timeout - please try again"


def test_permanent_error_fails_without_retry(store, image_store, events):
    e = store.create_entry("b1", 1)
    put_image(store, image_store, e.id, "b1/a.jpg", b"a")
    analyzer = FakeAnalyzer([PermanentRemoteError("vision API HTTP 400: bad", status_code=400)])

    make_dispatcher(store, image_store, analyzer, events).dispatch(e.id)

    assert len(analyzer.requests) == 1
    assert store.get_entry(e.id).error_message == "AI service call failed: vision API HTTP 400: bad"


def test_image_unavailable_fails_without_calling_service(store, image_store, events):
    e = store.create_entry("b1", 1)
    store.attach_image(
        e.id,
        NewImage(storage_key="b1/gone.jpg", original_filename="gone.jpg", file_size=5, content_type="image/jpeg"),
    )
    analyzer = FakeAnalyzer()

    out = make_dispatcher(store, image_store, analyzer, events).dispatch(e.id)

    assert analyzer.requests == []
    assert out.status == DispatchStatus.FAILED
    assert store.get_entry(e.id).error_message == "Image unavailable: b1/gone.jpg"


def test_not_ready_entries_are_skipped(store, image_store, events):
    e = store.create_entry("b1", 1)
    analyzer = FakeAnalyzer()
    d = make_dispatcher(store, image_store, analyzer, events)

    assert d.dispatch(e.id).status == DispatchStatus.SKIPPED
    assert d.dispatch("missing").status == DispatchStatus.SKIPPED

    put_image(store, image_store, e.id, "b1/a.jpg", b"a")
    assert d.dispatch(e.id).status == DispatchStatus.COMPLETE
    # already complete: a duplicate job does nothing
    assert d.dispatch(e.id).status == DispatchStatus.SKIPPED
    assert len(analyzer.requests) == 1
    assert store.get_entry(e.id).ai_analysis_status is AnalysisStatus.COMPLETE


def test_entry_deleted_mid_flight_result_dropped(store, image_store, events):
    e = store.create_entry("b1", 1)
    put_image(store, image_store, e.id, "b1/a.jpg", b"a")
    analyzer = FakeAnalyzer()
    analyzer.before_return = lambda: store.delete_entry(e.id)

    out = make_dispatcher(store, image_store, analyzer, events).dispatch(e.id)

    assert out.status == DispatchStatus.DROPPED
    assert events.for_topic(BATCH_TOPIC) == []


def test_enqueue_uses_debounce_and_dispatch_ready_is_immediate(store, image_store, events):
    queue = FakeQueue()
    d = make_dispatcher(store, image_store, FakeAnalyzer(), events, queue=queue)
    bid, (e1, e2) = store.create_batch(2)
    put_image(store, image_store, e1.id, f"{bid}/a.jpg", b"a")

    d.enqueue(e1.id)
    queued = d.dispatch_ready(bid)

    assert queued == [e1.id]
    assert queue.jobs == [(e1.id, 5.0), (e1.id, 0.0)]


def test_enqueue_without_queue_raises(store, image_store, events):
    d = make_dispatcher(store, image_store, FakeAnalyzer(), events)
    with pytest.raises(RuntimeError):
        d.enqueue("x")


def test_failure_message_mapping():
    timeout = TransientRemoteError("t", kind=TransientRemoteError.TIMEOUT)
    server = TransientRemoteError("s", kind=TransientRemoteError.SERVER_ERROR)
    assert failure_message(MaxRetriesExceeded(2, timeout)) == "AI service timeout - please try again"
    assert failure_message(MaxRetriesExceeded(4, server)).startswith("AI service failed after multiple retries")
    assert failure_message(ImageUnavailableError("k.jpg")) == "Image unavailable: k.jpg"
    assert failure_message(PermanentRemoteError("401")) == "AI service call failed: 401"


class DyingAnalyzer:
    """Stands in for a worker process killed mid-call."""

    def analyze(self, request, *, timeout_s):
        raise KeyboardInterrupt


def test_redelivered_job_releases_claim_of_dead_worker(store, image_store, events):
    e = store.create_entry("b1", 1)
    put_image(store, image_store, e.id, "b1/a.jpg", b"a")
    with pytest.raises(KeyboardInterrupt):
        make_dispatcher(store, image_store, DyingAnalyzer(), events).dispatch(e.id)
    assert store.get_entry(e.id).ai_analysis_status is AnalysisStatus.PROCESSING

    # Too early: the original job could still be running.
    early = make_dispatcher(store, image_store, FakeAnalyzer(), events).dispatch(e.id)
    assert early.status == DispatchStatus.SKIPPED
    assert store.get_entry(e.id).ai_analysis_status is AnalysisStatus.PROCESSING

    late = make_dispatcher(store, image_store, FakeAnalyzer(), events, stale_after_s=0.0).dispatch(e.id)
    assert late.status == DispatchStatus.FAILED
    assert late.message == INTERRUPTED_MESSAGE
    failed = store.get_entry(e.id)
    assert failed.ai_analysis_status is AnalysisStatus.FAILED
    assert failed.error_message == INTERRUPTED_MESSAGE
    (msg,) = events.for_topic(BATCH_TOPIC)
    assert msg["status"] == DispatchStatus.FAILED

    assert store.retry_analysis(e.id).ai_analysis_status is AnalysisStatus.PENDING


def test_dispatch_ready_releases_stale_claims(store, image_store, events):
    queue = FakeQueue()
    bid, (e1,) = store.create_batch(1)
    put_image(store, image_store, e1.id, f"{bid}/a.jpg", b"a")
    store.mark_processing(e1.id)

    d = make_dispatcher(store, image_store, FakeAnalyzer(), events, queue=queue, stale_after_s=0.0)

    assert d.dispatch_ready(bid) == []
    assert store.get_entry(e1.id).error_message == INTERRUPTED_MESSAGE


def test_stale_claim_threshold_covers_every_attempt():
    cfg = RetryConfig(max_retries=3, per_attempt_timeout_s=60.0, max_delay_s=10.0)
    assert stale_claim_after(cfg) == 4 * 60.0 + 3 * 10.0 + 60.0
