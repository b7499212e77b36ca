from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.services.continuous_embedding import get_continuous_embedding_service
from app.services.hybrid_resolver import HybridResolver, get_hybrid_resolver
from app.services.llm_arbiter import ArbitrationDecision


class DecliningArbiter:
    async def arbitrate(self, kind, reference, candidates, hints=()):
        return ArbitrationDecision(accepted_key=None, confidence=0.0)


@pytest.fixture
def resolver(sample_repository, stub_provider, gate):
    resolver = HybridResolver(sample_repository, stub_provider, DecliningArbiter(), gate)
    app.dependency_overrides[get_hybrid_resolver] = lambda: resolver
    yield resolver
    app.dependency_overrides.pop(get_hybrid_resolver, None)


@pytest.fixture
def continuous_service():
    service = MagicMock()
    service.start = AsyncMock()
    service.get_status.return_value = {"running": True, "tick_count": 1}
    app.dependency_overrides[get_continuous_embedding_service] = lambda: service
    yield service
    app.dependency_overrides.pop(get_continuous_embedding_service, None)


def test_health_endpoint(test_client: TestClient):
    response = test_client.get("/api/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"


def test_processing_status_is_camel_case(test_client: TestClient, gate):
    assert test_client.get("/api/processing/status").json()["isProcessing"] is False

    gate.try_acquire(current_email="po@acme.com", current_po="PO-88", item_total=3)
    body = test_client.get("/api/processing/status").json()

    assert body == {
        "isProcessing": True,
        "currentStep": "idle",
        "currentEmail": "po@acme.com",
        "currentPO": "PO-88",
        "itemIndex": 0,
        "itemTotal": 3,
    }


def test_embedding_stats_and_generate_missing(test_client: TestClient):
    stats = test_client.get("/api/embeddings/customer/stats").json()
    assert stats == {"kind": "customer", "total": 3, "embedded": 0, "pending": 3, "percentageComplete": 0.0}

    response = test_client.post("/api/embeddings/customer/generate-missing", json={"batch_size": 10})
    assert response.status_code == 200
    body = response.json()
    assert body["processed"] == 3
    assert body["errors"] == []
    assert body["stats"]["percentageComplete"] == 100.0


def test_regenerate_and_search(test_client: TestClient):
    response = test_client.post("/api/embeddings/customer/cust-acme/regenerate")
    assert response.status_code == 200
    assert response.json() == {"id": "cust-acme", "dimensions": 3, "success": True}

    hits = test_client.post("/api/embeddings/customer/search", json={"query": "acme", "limit": 5}).json()
    assert hits[0]["key"] == "C12345"
    assert hits[0]["display_name"] == "ACME Corporation"


def test_regenerate_unknown_entity_is_404(test_client: TestClient):
    response = test_client.post("/api/embeddings/item/nope/regenerate")
    assert response.status_code == 404


def test_unknown_kind_is_rejected(test_client: TestClient):
    assert test_client.get("/api/embeddings/vendor/stats").status_code == 422


def test_memory_endpoint(test_client: TestClient):
    body = test_client.get("/api/system/memory").json()
    assert body["heapUsedMB"] == 100.0
    assert body["softLimitMB"] == 700
    assert body["hardLimitMB"] == 900
    assert body["status"] == "ok"


def test_continuous_controls(test_client: TestClient, continuous_service):
    assert test_client.post("/api/embeddings/continuous/start").json()["running"] is True
    continuous_service.start.assert_awaited_once()

    test_client.post("/api/embeddings/continuous/stop")
    continuous_service.stop.assert_called_once()

    assert test_client.get("/api/embeddings/continuous/status").json()["tick_count"] == 1


def test_resolve_reference(test_client: TestClient, resolver):
    response = test_client.post("/api/resolve/customer", json={"reference": "C12345"})
    assert response.status_code == 200
    body = response.json()
    assert body["decision"] == "auto_accept"
    assert body["result"]["method"] == "exact"
    assert body["result"]["entity_key"] == "C12345"
    assert body["result"]["confidence"] == 1.0


def test_resolve_unresolved_reference(test_client: TestClient, resolver):
    body = test_client.post("/api/resolve/item", json={"reference": "ZZ-9999 mystery part"}).json()
    assert body["decision"] == "unresolved"
    assert body["result"]["method"] == "none"
    assert body["result"]["matched"] is False


def test_resolve_provider_failure_is_502(test_client: TestClient, resolver, stub_provider):
    stub_provider.fail_times = 1
    response = test_client.post("/api/resolve/customer", json={"reference": "Acme Corp."})
    assert response.status_code == 502


def test_purchase_order_resolution(test_client: TestClient, resolver, gate):
    payload = {
        "email": "po@acme.com",
        "poNumber": "PO-1",
        "lines": [
            {"kind": "customer", "reference": "C12345"},
            {"kind": "item", "reference": "HX-2040"},
        ],
    }
    response = test_client.post("/api/resolve/purchase-order", json=payload)
    assert response.status_code == 200
    body = response.json()
    assert body["po_number"] == "PO-1"
    assert [r["result"]["entity_key"] for r in body["results"]] == ["C12345", "HX-2040"]
    assert gate.is_held is False

    gate.try_acquire()
    assert test_client.post("/api/resolve/purchase-order", json=payload).status_code == 409
