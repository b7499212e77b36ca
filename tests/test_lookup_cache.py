import pytest

from app.models.entity import EntityKind, ExactHit
from app.models.matching import ExactMatch, ResolutionQuery
from app.services.hybrid_resolver import HybridResolver
from app.services.lookup_cache import ExactLookupCache


pytestmark = pytest.mark.anyio


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class NeverArbiter:
    async def arbitrate(self, kind, reference, candidates, hints=()):
        raise AssertionError("exact lookups must not reach arbitration")


def test_entries_expire_after_ttl(sample_repository):
    item = sample_repository.all(EntityKind.ITEM)[0]
    clock = FakeClock()
    cache = ExactLookupCache(ttl_seconds=300, clock=clock)
    cache.put(EntityKind.ITEM, "HX-2040", [ExactHit(item, "sku")])

    clock.now = 299
    assert [h.entity.key for h in cache.get(EntityKind.ITEM, "  hx-2040 ")] == ["HX-2040"]

    clock.now = 300
    assert cache.get(EntityKind.ITEM, "HX-2040") is None
    assert len(cache) == 0
    assert cache.get_stats() == {"size": 0, "hits": 1, "misses": 1}


def test_least_recently_used_entry_is_evicted():
    cache = ExactLookupCache(max_entries=2)
    cache.put(EntityKind.ITEM, "a", [])
    cache.put(EntityKind.ITEM, "b", [])
    assert cache.get(EntityKind.ITEM, "a") == []

    cache.put(EntityKind.ITEM, "c", [])

    assert cache.get(EntityKind.ITEM, "b") is None
    assert cache.get(EntityKind.ITEM, "a") == []
    assert cache.get(EntityKind.ITEM, "c") == []


def test_keys_are_scoped_by_kind():
    cache = ExactLookupCache()
    cache.put(EntityKind.ITEM, "5001", [])
    assert cache.get(EntityKind.CONTACT, "5001") is None


async def test_resolver_reuses_cached_item_lookups(sample_repository, stub_provider):
    calls = []
    find_exact = sample_repository.find_exact

    async def counting_find_exact(kind, value):
        calls.append((kind, value))
        return await find_exact(kind, value)

    sample_repository.find_exact = counting_find_exact
    resolver = HybridResolver(sample_repository, stub_provider, NeverArbiter(), item_cache=ExactLookupCache())

    for _ in range(3):
        result = await resolver.resolve(ResolutionQuery(kind=EntityKind.ITEM, reference="HX-2040"))
        assert isinstance(result, ExactMatch)
    await resolver.resolve(ResolutionQuery(kind=EntityKind.CUSTOMER, reference="C12345"))
    await resolver.resolve(ResolutionQuery(kind=EntityKind.CUSTOMER, reference="C12345"))

    assert calls.count((EntityKind.ITEM, "HX-2040")) == 1
    # customers and contacts always go to the repository
    assert calls.count((EntityKind.CUSTOMER, "C12345")) == 2
    assert resolver.item_cache.get_stats()["hits"] == 2
