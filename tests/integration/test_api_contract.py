from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient

from apps.api.app_factory import create_app
from apps.api.batches import create_batches_router
from services.batch.coordinator import ApprovalCoordinator
from services.batch.dispatcher import AnalysisDispatcher
from services.batch.events import InMemoryEventBus
from services.batch.records import MedicineRepository
from services.extraction.retry import RetryConfig, RetryExecutor

ANALYSIS = json.dumps(
    {
        "name": "Cetirizine 10mg",
        "dosage_form": "tablet",
        "strength_value": 10,
        "strength_unit": "mg",
        "container_type": "blister_pack",
        "total_quantity": "30 tablets",
        "quantity_unit": "tablets",
    }
)


class FakeAnalyzer:
    def __init__(self, response=ANALYSIS):
        self.response = response
        self.calls = 0

    def analyze(self, request, *, timeout_s):
        self.calls += 1
        return self.response


class FakeQueue:
    def __init__(self):
        self.jobs = []

    def enqueue_analysis(self, entry_id, *, delay_s=0.0):
        self.jobs.append((entry_id, delay_s))


@pytest.fixture
def env(store, image_store, session_factory):
    queue = FakeQueue()
    analyzer = FakeAnalyzer()
    events = InMemoryEventBus()
    dispatcher = AnalysisDispatcher(
        store=store,
        images=image_store,
        analyzer=analyzer,
        retry=RetryExecutor(sleep=lambda s: None),
        retry_config=RetryConfig(max_retries=0),
        events=events,
        queue=queue,
        debounce_s=5.0,
    )
    coordinator = ApprovalCoordinator(
        store=store, records=MedicineRepository(session_factory), images=image_store, events=events
    )
    router = create_batches_router(
        store=store, images=image_store, dispatcher=dispatcher, coordinator=coordinator
    )
    client = TestClient(create_app(routers=[router]))
    return client, dispatcher, queue, analyzer


def upload(client, entry_id, *names, content_type="image/jpeg"):
    files = [("files", (n, b"fake-image-bytes", content_type)) for n in names]
    return client.post(f"/entries/{entry_id}/images", files=files)


def test_health(env):
    client, *_ = env
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "healthy"}


def test_full_batch_flow(env):
    client, dispatcher, queue, analyzer = env

    r = client.post("/batches", json={"count": 2})
    assert r.status_code == 201
    batch_id = r.json()["batch_id"]
    e1, e2 = [e["id"] for e in r.json()["entries"]]

    r = upload(client, e1, "front.jpg", "back.jpg")
    assert r.status_code == 202
    body = r.json()
    assert body["analysis_queued"] is True
    assert [i["upload_order"] for i in body["images"]] == [0, 1]
    assert queue.jobs == [(e1, 5.0)]

    # worker side
    for entry_id, _delay in queue.jobs:
        dispatcher.dispatch(entry_id)

    entry = client.get(f"/entries/{e1}").json()
    assert entry["ai_analysis_status"] == "complete"
    assert entry["ai_results"]["total_quantity"] == 30.0
    assert entry["missing_fields"] == []

    r = client.post(f"/entries/{e1}/approve", json={"reviewed_by": "pharm-1", "notes": "label clear"})
    assert r.status_code == 200
    assert r.json()["approval_status"] == "approved"
    assert r.json()["reviewed_by"] == "pharm-1"

    status = client.get(f"/batches/{batch_id}").json()
    assert status["summary"]["total"] == 2
    assert status["summary"]["ready_to_save"] == 1

    r = client.post(f"/batches/{batch_id}/save")
    assert r.status_code == 200
    saved = r.json()
    assert saved["success_count"] == 1
    assert saved["failure_count"] == 0
    assert saved["outcomes"][0]["entry_id"] == e1

    assert client.get(f"/entries/{e1}").status_code == 404
    assert [e["id"] for e in client.get(f"/batches/{batch_id}").json()["entries"]] == [e2]


def test_review_before_analysis_conflicts(env):
    client, *_ = env
    e = client.post("/batches", json={"count": 1}).json()["entries"][0]["id"]
    r = client.post(f"/entries/{e}/approve")
    assert r.status_code == 409


def test_retry_requires_failed(env):
    client, dispatcher, queue, analyzer = env
    e = client.post("/batches", json={"count": 1}).json()["entries"][0]["id"]
    assert client.post(f"/entries/{e}/retry").status_code == 409

    analyzer.response = "no idea"
    upload(client, e, "a.jpg")
    dispatcher.dispatch(e)
    assert client.get(f"/entries/{e}").json()["ai_analysis_status"] == "failed"

    r = client.post(f"/entries/{e}/retry")
    assert r.status_code == 202
    assert r.json()["ai_analysis_status"] == "pending"
    assert queue.jobs[-1] == (e, 0.0)


def test_edit_results(env):
    client, dispatcher, *_ = env
    e = client.post("/batches", json={"count": 1}).json()["entries"][0]["id"]
    upload(client, e, "a.jpg")
    dispatcher.dispatch(e)

    r = client.put(f"/entries/{e}/results", json={"attributes": {"name": "Zyrtec", "total_quantity": "14"}})
    assert r.status_code == 200
    assert r.json()["ai_results"] == {"name": "Zyrtec", "total_quantity": 14.0}

    r = client.put(f"/entries/{e}/results", json={"attributes": {"nonsense": 1}})
    assert r.status_code == 422


def test_upload_validation_and_not_found(env):
    client, *_ = env
    e = client.post("/batches", json={"count": 1}).json()["entries"][0]["id"]

    assert upload(client, e, "a.gif", content_type="image/gif").status_code == 422
    assert upload(client, "missing", "a.jpg").status_code == 404
    assert client.get("/entries/missing").status_code == 404
    assert client.get("/batches/missing").status_code == 404
    assert client.post("/batches", json={"count": 0}).status_code == 422


def test_remove_image_and_delete_entry(env, image_store):
    client, *_ = env
    e = client.post("/batches", json={"count": 1}).json()["entries"][0]["id"]
    img = upload(client, e, "a.jpg").json()["images"][0]

    assert client.delete(f"/entries/{e}/images/nope").status_code == 404
    r = client.delete(f"/entries/{e}/images/{img['id']}")
    assert r.status_code == 200
    assert client.get(f"/entries/{e}").json()["images"] == []
    assert not (image_store.root / img["storage_key"]).exists()

    assert client.delete(f"/entries/{e}").status_code == 200
    assert client.delete(f"/entries/{e}").status_code == 404


def test_analyze_batch_queues_ready_entries(env):
    client, dispatcher, queue, _ = env
    r = client.post("/batches", json={"count": 3})
    batch_id = r.json()["batch_id"]
    e1 = r.json()["entries"][0]["id"]
    upload(client, e1, "a.jpg")
    queue.jobs.clear()

    r = client.post(f"/batches/{batch_id}/analyze")
    assert r.status_code == 202
    assert r.json()["queued"] == [e1]
    assert queue.jobs == [(e1, 0.0)]


def test_add_entries_continues_numbering(env):
    client, *_ = env
    batch_id = client.post("/batches", json={"count": 2}).json()["batch_id"]
    r = client.post(f"/batches/{batch_id}/entries", json={"count": 2})
    assert r.status_code == 201
    assert [e["entry_number"] for e in r.json()["entries"]] == [3, 4]
