import pytest

from app.core.config import get_settings
from app.models.entity import CustomerRecord, EntityKind
from app.services.embedding_maintainer import build_maintainer
from app.services.entity_repository import InMemoryEntityRepository
from scripts import backfill_embeddings


@pytest.fixture
def no_cooldown(monkeypatch):
    monkeypatch.setenv("EMBEDDING_COOLDOWN_MS", "0")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def customer_repo(monkeypatch, calm_guard):
    repo = InMemoryEntityRepository(
        [CustomerRecord(id=f"c{i}", customer_number=f"C{i}", company_name=f"Buyer {i}") for i in range(12)]
    )

    def install(provider):
        maintainer = build_maintainer(EntityKind.CUSTOMER, repository=repo, provider=provider, guard=calm_guard)
        monkeypatch.setattr(backfill_embeddings, "get_embedding_maintainer", lambda kind: maintainer)
        return repo

    return install


def test_cli_backfills_selected_kind(no_cooldown, customer_repo, stub_provider_factory):
    repo = customer_repo(stub_provider_factory())

    exit_code = backfill_embeddings.main(["--kind", "customer", "--mega-batch-size", "5"])

    assert exit_code == 0
    assert len([e for e in repo.all(EntityKind.CUSTOMER) if e.embedding is not None]) == 12


def test_cli_stats_only_does_not_write(no_cooldown, customer_repo, stub_provider_factory):
    provider = stub_provider_factory()
    repo = customer_repo(provider)

    assert backfill_embeddings.main(["--kind", "customer", "--stats-only"]) == 0
    assert provider.calls == []
    assert all(e.embedding is None for e in repo.all(EntityKind.CUSTOMER))


def test_cli_exits_nonzero_when_backfill_aborts(monkeypatch, no_cooldown, customer_repo, stub_provider_factory):
    monkeypatch.setenv("EMBEDDING_MAX_RETRIES", "0")
    get_settings.cache_clear()
    customer_repo(stub_provider_factory(fail_times=1))

    assert backfill_embeddings.main(["--kind", "customer"]) == 1
