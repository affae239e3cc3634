"""
test_api.py — HTTP surface: routes, error-to-status mapping and job enqueueing.

Lookups and the Celery app are replaced through FastAPI dependency overrides;
no database or broker is touched.
"""

import pytest
from fastapi.testclient import TestClient

from bqcost.api import deps
from bqcost.main import app
from bqcost.models.domain import ProjectRates
from bqcost.services.costing_service import CostingService


class _Task:
    def __init__(self, task_id, state="PENDING", info=None, result=None):
        self.id = task_id
        self.state = state
        self.info = info
        self.result = result


class FakeQueue:
    def __init__(self):
        self.sent = []
        self.tasks = {}

    def send_task(self, name, args=None, kwargs=None):
        task = _Task(f"task-{len(self.sent) + 1}")
        self.sent.append((name, args or [], kwargs or {}))
        return task

    def AsyncResult(self, task_id):
        return self.tasks.get(task_id, _Task(task_id))


@pytest.fixture
def queue():
    return FakeQueue()


@pytest.fixture
def client(fakes, wall_item, make_material_item, project_rates, catalogue_lookup, queue):
    other = ProjectRates(project_id="proj-2", labour={"lab-mas": 66.0}, materials={"mat-cem": 90.0})
    factor_lookup = fakes.FactorLookup([wall_item, make_material_item("gone", catalogue_id="mat-deleted")])
    rate_lookup = fakes.RateLookup([project_rates, other])

    app.dependency_overrides[deps.get_rate_lookup] = lambda: rate_lookup
    app.dependency_overrides[deps.get_catalogue_lookup] = lambda: catalogue_lookup
    app.dependency_overrides[deps.get_costing_service] = lambda: CostingService(
        factor_lookup, rate_lookup, catalogue_lookup
    )
    app.dependency_overrides[deps.get_task_queue] = lambda: queue
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestPreviewRoute:

    def test_preview(self, client):
        resp = client.post("/api/v1/costing/items/item-wall/preview", json={"project_id": "proj-1", "quantity": 2})
        assert resp.status_code == 200
        body = resp.json()
        assert body["costs"]["total"] == pytest.approx(910.0)
        assert body["extended_total"] == pytest.approx(1820.0)
        assert "X-Request-ID" in resp.headers
        assert "X-Process-Time" in resp.headers

    def test_unknown_item_is_404(self, client):
        resp = client.post("/api/v1/costing/items/nope/preview", json={"project_id": "proj-1"})
        assert resp.status_code == 404
        assert resp.json()["error"] == "ItemNotFoundError"

    def test_dangling_reference_is_409(self, client):
        resp = client.post("/api/v1/costing/items/gone/preview", json={"project_id": "proj-1"})
        assert resp.status_code == 409
        assert "mat-deleted" in resp.json()["detail"]

    def test_negative_quantity_is_422(self, client):
        resp = client.post("/api/v1/costing/items/item-wall/preview", json={"project_id": "proj-1", "quantity": -3})
        assert resp.status_code == 422
        assert resp.json()["context"]["field_name"] == "quantity"

    def test_bad_option_is_422(self, client):
        resp = client.post(
            "/api/v1/costing/items/item-wall/preview",
            json={"project_id": "proj-1", "options": {"overhead_percentage": 500}},
        )
        assert resp.status_code == 422


class TestBatchRoute:

    def test_batch_reports_per_item_errors(self, client):
        resp = client.post(
            "/api/v1/costing/batch",
            json={"library_item_ids": ["item-wall", "gone"], "project_id": "proj-1"},
        )
        assert resp.status_code == 200
        summary = resp.json()["summary"]
        assert summary["items_calculated"] == 1
        assert summary["items_failed"] == 1
        assert summary["total_cost"] == pytest.approx(910.0)

    def test_empty_batch_is_422(self, client):
        resp = client.post("/api/v1/costing/batch", json={"library_item_ids": [], "project_id": "proj-1"})
        assert resp.status_code == 422


class TestRateRoutes:

    def test_current_rates(self, client):
        resp = client.get("/api/v1/costing/projects/proj-1/rates")
        assert resp.status_code == 200
        assert resp.json()["labour"] == {"lab-mas": 60.0}

    def test_effective_rate_source(self, client):
        resp = client.get(
            "/api/v1/costing/projects/proj-1/rates/effective",
            params={"category": "materials", "catalogue_id": "mat-cem"},
        )
        assert resp.status_code == 200
        assert resp.json()["source"] == "catalogue"
        assert resp.json()["rate"] == 100.0

    def test_statistics(self, client):
        body = client.get("/api/v1/costing/projects/proj-1/rates/statistics").json()
        assert body["total_rates"] == 2

    def test_compare(self, client):
        resp = client.get("/api/v1/costing/projects/proj-1/rates/compare/proj-2")
        actions = {(c["category"], c["catalogue_id"]): c["action"] for c in resp.json()}
        assert actions[("labour", "lab-mas")] == "update"
        assert actions[("materials", "mat-cem")] == "add"
        assert actions[("materials", "mat-sand")] == "remove"


class TestJobRoutes:

    def test_snapshot_enqueued(self, client, queue):
        resp = client.post("/api/v1/costing/projects/proj-1/snapshots", json={"include_all_items": True})
        assert resp.status_code == 202
        assert resp.json()["task_id"] == "task-1"
        assert queue.sent == [("tasks.capture_price_snapshot", ["proj-1"], {"include_all_items": True})]

    def test_batch_job_enqueued_with_parsed_options(self, client, queue):
        resp = client.post(
            "/api/v1/jobs/batch-calculation",
            json={"library_item_ids": ["a", "b"], "project_id": "proj-1", "options": {"include_overheads": True}},
        )
        assert resp.status_code == 202
        name, args, _ = queue.sent[0]
        assert name == "tasks.calculate_complex_factors"
        assert args[0] == ["a", "b"]
        assert args[2]["include_overheads"] is True
        assert args[2]["overhead_percentage"] == 10.0

    def test_popularity_enqueued(self, client, queue):
        resp = client.post("/api/v1/jobs/popularity")
        assert resp.status_code == 202
        assert queue.sent[0][0] == "tasks.aggregate_library_popularity"

    def test_task_status_progress(self, client, queue):
        queue.tasks["t-9"] = _Task("t-9", state="PROGRESS", info={"step": "Calculated 50/120 items", "pct": 41})
        body = client.get("/api/v1/jobs/t-9").json()
        assert body["state"] == "PROGRESS"
        assert body["progress"]["pct"] == 41


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "active"
