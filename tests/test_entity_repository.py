from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from postgrest.exceptions import APIError

from app.core.errors import PersistenceError
from app.models.entity import ContactRecord, EntityKind
from app.models.matching import ResolutionQuery
from app.services.entity_repository import (
    InMemoryEntityRepository,
    SupabaseEntityRepository,
    cosine_similarity,
    match_exact,
    row_to_entity,
)


pytestmark = pytest.mark.anyio


def test_match_exact_normalizes_identifiers_and_names(sample_repository):
    acme = sample_repository.all(EntityKind.CUSTOMER)[0]
    assert match_exact(acme, " c12345 ") == "customer_number"
    assert match_exact(acme, "acme   corporation") == "company_name"
    assert match_exact(acme, "ACME INDUSTRIAL SUPPLY") == "alternate_names"
    assert match_exact(acme, "Acme Corp") is None


def test_cosine_similarity_handles_zero_vectors():
    assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
    assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
    assert cosine_similarity([0, 0], [1, 1]) == 0.0


async def test_inactive_rows_are_excluded_from_lookups(sample_repository):
    assert await sample_repository.find_exact(EntityKind.CUSTOMER, "C99999") == []
    # maintenance still sees inactive rows
    missing = await sample_repository.list_missing_embeddings(EntityKind.CUSTOMER, 10)
    assert "C99999" in {e.key for e in missing}

    for entity in sample_repository.all(EntityKind.CUSTOMER):
        entity.embedding = [1.0, 0.0]
    hits = await sample_repository.nearest(EntityKind.CUSTOMER, [1.0, 0.0], 10)
    assert {h.entity.key for h in hits} == {"C12345", "C20001"}


async def test_rule_candidates_by_domain_phone_and_name(sample_repository):
    by_domain = await sample_repository.find_rule_candidates(
        ResolutionQuery(kind=EntityKind.CUSTOMER, reference="", email="x@globex.io")
    )
    assert [e.key for e in by_domain] == ["C20001"]

    by_phone = await sample_repository.find_rule_candidates(
        ResolutionQuery(kind=EntityKind.CONTACT, reference="", phone="555.201.3344")
    )
    assert [e.key for e in by_phone] == ["5001"]

    by_name = await sample_repository.find_rule_candidates(
        ResolutionQuery(kind=EntityKind.ITEM, reference="zinc bolts")
    )
    assert [e.key for e in by_name] == ["HX-2040"]


async def test_save_embedding_for_missing_row_raises():
    repo = InMemoryEntityRepository()
    with pytest.raises(PersistenceError):
        await repo.save_embedding(EntityKind.ITEM, "ghost", "text", [0.1])


def test_row_to_entity_maps_contact_inactive_flag():
    contact = row_to_entity(
        EntityKind.CONTACT,
        {
            "id": 7,
            "netsuite_internal_id": "5001",
            "name": "Jane Buyer",
            "inactive": True,
            "contact_text": "Jane Buyer | jane@acme.com",
            "contact_embedding": "[0.5, 0.25]",
            "updated_at": "2025-03-01T10:00:00Z",
        },
    )
    assert isinstance(contact, ContactRecord)
    assert contact.id == "7"
    assert contact.is_active is False
    assert contact.embedding == [0.5, 0.25]
    assert contact.updated_at.year == 2025


async def test_supabase_nearest_uses_match_rpc_and_drops_inactive():
    client = MagicMock()
    client.rpc.return_value.execute.return_value = SimpleNamespace(
        data=[
            {"id": 1, "customer_number": "C1", "company_name": "Old Co", "is_active": False, "similarity": 0.95},
            {"id": 2, "customer_number": "C2", "company_name": "New Co", "is_active": True, "similarity": 0.91},
        ]
    )
    repo = SupabaseEntityRepository(client)

    hits = await repo.nearest(EntityKind.CUSTOMER, [0.1, 0.2], 5)

    assert [h.entity.key for h in hits] == ["C2"]
    assert hits[0].similarity == 0.91
    name, params = client.rpc.call_args.args
    assert name == "match_customers"
    assert params["match_count"] == 5


async def test_supabase_errors_become_persistence_errors():
    client = MagicMock()
    client.table.return_value.select.return_value.limit.return_value.execute.side_effect = APIError(
        {"message": "relation does not exist", "code": "42P01"}
    )
    repo = SupabaseEntityRepository(client)

    with pytest.raises(PersistenceError, match="relation does not exist"):
        await repo.count(EntityKind.ITEM)
