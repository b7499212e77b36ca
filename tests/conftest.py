from typing import Dict, List, Optional, Sequence

import pytest
from fastapi.testclient import TestClient

from app.core.errors import EmbeddingProviderError
from app.main import app
from app.models.entity import ContactRecord, CustomerRecord, EntityKind, ItemRecord
from app.services.embedding_maintainer import build_maintainer
from app.services.entity_repository import InMemoryEntityRepository
from app.services.processing_gate import ProcessingGate, get_processing_gate
from app.services.resource_guard import ResourceGuard, get_resource_guard


# Configure anyio to use only asyncio backend
@pytest.fixture
def anyio_backend():
    return "asyncio"


class StubEmbeddingProvider:
    """Deterministic embeddings; known texts map to fixed vectors, everything else to ``default``."""

    model = "stub-embedding"
    dimensions = 3

    def __init__(
        self,
        vectors: Optional[Dict[str, List[float]]] = None,
        *,
        default: Sequence[float] = (0.0, 0.0, 1.0),
        fail_times: int = 0,
    ) -> None:
        self.vectors = dict(vectors or {})
        self.default = list(default)
        self.fail_times = fail_times
        self.calls: List[List[str]] = []

    async def embed(self, text: str) -> List[float]:
        return (await self.embed_many([text]))[0]

    async def embed_many(self, texts: Sequence[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.fail_times > 0:
            self.fail_times -= 1
            raise EmbeddingProviderError("provider unavailable")
        return [list(self.vectors.get(text, self.default)) for text in texts]


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def stub_provider() -> StubEmbeddingProvider:
    return StubEmbeddingProvider()


@pytest.fixture
def stub_provider_factory():
    return StubEmbeddingProvider


@pytest.fixture
def calm_guard() -> ResourceGuard:
    return ResourceGuard(700, 900, check_interval_seconds=0, memory_reader=lambda: 100.0)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def sample_repository() -> InMemoryEntityRepository:
    return InMemoryEntityRepository(
        [
            CustomerRecord(
                id="cust-acme",
                customer_number="C12345",
                company_name="ACME Corporation",
                alternate_names=["Acme Industrial Supply"],
                email="purchasing@acme.com",
                phone="(555) 201-3344",
                phone_digits="5552013344",
                address={"city": "Dayton", "state": "OH"},
                netsuite_id="881",
            ),
            CustomerRecord(
                id="cust-globex",
                customer_number="C20001",
                company_name="Globex LLC",
                email="ap@globex.io",
            ),
            CustomerRecord(
                id="cust-old",
                customer_number="C99999",
                company_name="Initech",
                is_active=False,
            ),
            ContactRecord(
                id="contact-1",
                netsuite_internal_id="5001",
                name="Jane Buyer",
                job_title="Purchasing Manager",
                email="jane.buyer@acme.com",
                phone="555-201-3344",
                company="ACME Corporation",
            ),
            ItemRecord(
                id="item-1",
                sku="HX-2040",
                display_name="Hex Bolt 20mm Zinc",
                description="Zinc plated hex bolt",
                category="Fasteners",
                vendor="Boltco",
                mpn="BC-77120",
                aliases=["HB20Z"],
            ),
        ]
    )


@pytest.fixture
def gate() -> ProcessingGate:
    return ProcessingGate()


@pytest.fixture()
def test_client(sample_repository, stub_provider, calm_guard, gate) -> TestClient:
    from app.api.routes import embeddings as embeddings_routes

    def maintainer_for(kind: EntityKind):
        return build_maintainer(kind, repository=sample_repository, provider=stub_provider, guard=calm_guard)

    app.dependency_overrides[embeddings_routes.get_maintainer] = maintainer_for
    app.dependency_overrides[get_processing_gate] = lambda: gate
    app.dependency_overrides[get_resource_guard] = lambda: calm_guard
    yield TestClient(app)
    app.dependency_overrides.clear()
