"""
Hybrid Resolution Orchestrator

Resolves one noisy purchase-order reference to a master record:

    exact -> vector -> rules -> LLM arbitration

The first stage whose result clears that stage's bar wins. The global
confidence policy is applied to whatever the cascade returns, so a weak
arbitration answer still comes back as unresolved.
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from app.core.config import Settings, get_settings
from app.models.entity import (
    ContactRecord,
    CustomerRecord,
    EntityKind,
    ExactHit,
    ItemRecord,
    MatchableEntity,
    VectorHit,
    digits_only,
    email_domain,
    normalize_text,
)
from app.models.matching import (
    Candidate,
    ConfidencePolicy,
    ExactMatch,
    LlmMatch,
    MatchDecision,
    MatchResult,
    NoMatch,
    ResolutionAudit,
    ResolutionQuery,
    RuleMatch,
    VectorMatch,
)
from app.services.embedding_provider import EmbeddingProvider, get_embedding_provider
from app.services.entity_repository import EntityRepository, get_entity_repository, normalize_identifier
from app.services.llm_arbiter import Arbiter, ArbitrationDecision, get_arbiter
from app.services.lookup_cache import ExactLookupCache
from app.services.processing_gate import ProcessingGate, get_processing_gate

logger = logging.getLogger(__name__)

RULE_CONFIDENCE_CAP = 0.99
MIN_CONTAINMENT_LENGTH = 4


# -----------------------------------------------------------------------------
# Rules
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class RuleHit:
    rule: str
    weight: float
    detail: str


def _loose(value: Optional[str]) -> str:
    return re.sub(r"[^a-z0-9]", "", (value or "").lower())


def _contains(reference: str, name: Optional[str]) -> bool:
    a, b = _loose(reference), _loose(name)
    if len(a) < MIN_CONTAINMENT_LENGTH or len(b) < MIN_CONTAINMENT_LENGTH:
        return False
    return a in b or b in a


def _same_phone(a: Optional[str], b: Optional[str]) -> bool:
    a, b = digits_only(a), digits_only(b)
    return len(a) >= 10 and len(b) >= 10 and a[-10:] == b[-10:]


def _reference_tokens(reference: str) -> set:
    return {normalize_identifier(t) for t in re.split(r"[\s,;/()]+", reference or "") if t}


def customer_rules(query: ResolutionQuery, entity: CustomerRecord) -> List[RuleHit]:
    hits: List[RuleHit] = []
    if query.domain and query.domain == email_domain(entity.email):
        hits.append(RuleHit("email_domain", 0.55, query.domain))
    if _same_phone(query.phone, entity.phone_digits or entity.phone):
        hits.append(RuleHit("phone", 0.35, query.phone_digits))
    for name in entity.names():
        if _contains(query.reference, name):
            hits.append(RuleHit("name_containment", 0.25, name))
            break
    return hits


def contact_rules(query: ResolutionQuery, entity: ContactRecord) -> List[RuleHit]:
    hits: List[RuleHit] = []
    email = normalize_text(query.email)
    if email and email in {normalize_text(entity.email), normalize_text(entity.alt_email)}:
        hits.append(RuleHit("exact_email", 0.9, email))
    if query.domain and query.domain in {email_domain(entity.email), email_domain(entity.alt_email)}:
        hits.append(RuleHit("email_domain", 0.4, query.domain))
    if _contains(query.reference, entity.name):
        hits.append(RuleHit("name_containment", 0.35, entity.name))
    if _same_phone(query.phone, entity.phone) or _same_phone(query.phone, entity.office_phone):
        hits.append(RuleHit("phone", 0.35, query.phone_digits))
    return hits


def item_rules(query: ResolutionQuery, entity: ItemRecord) -> List[RuleHit]:
    hits: List[RuleHit] = []
    tokens = _reference_tokens(query.reference)
    alias = next((a for a in entity.aliases if normalize_identifier(a) in tokens), None)
    if alias:
        hits.append(RuleHit("alias_sku", 0.9, alias))
    if _contains(query.reference, entity.sku):
        hits.append(RuleHit("sku_containment", 0.5, entity.sku))
    if _contains(query.reference, entity.display_name):
        hits.append(RuleHit("display_name_containment", 0.3, entity.display_name))
    part = next((p for p in (entity.mpn, entity.upc) if p and normalize_identifier(p) in tokens), None)
    if part:
        hits.append(RuleHit("mpn_upc", 0.9, part))
    return hits


RULES = {
    EntityKind.CUSTOMER: customer_rules,
    EntityKind.CONTACT: contact_rules,
    EntityKind.ITEM: item_rules,
}


def rule_confidence(hits: Sequence[RuleHit]) -> float:
    return min(RULE_CONFIDENCE_CAP, round(sum(h.weight for h in hits), 4))


# -----------------------------------------------------------------------------
# Resolver
# -----------------------------------------------------------------------------


def _candidate(entity: MatchableEntity, score: float, evidence: Sequence[str]) -> Candidate:
    return Candidate(
        entity_key=entity.key,
        display_name=entity.display_name,
        score=round(score, 4),
        evidence=tuple(evidence),
    )


class HybridResolver:
    def __init__(
        self,
        repository: EntityRepository,
        provider: EmbeddingProvider,
        arbiter: Arbiter,
        gate: Optional[ProcessingGate] = None,
        *,
        policy: ConfidencePolicy = ConfidencePolicy(),
        similarity_floor: float = 0.80,
        candidate_count: int = 10,
        rule_acceptance: float = 0.75,
        arbitration_top_k: int = 3,
        item_cache: Optional[ExactLookupCache] = None,
    ) -> None:
        self.repository = repository
        self.provider = provider
        self.arbiter = arbiter
        self.gate = gate
        self.policy = policy
        self.similarity_floor = similarity_floor
        self.candidate_count = candidate_count
        self.rule_acceptance = rule_acceptance
        self.arbitration_top_k = arbitration_top_k
        self.item_cache = item_cache

    @classmethod
    def from_settings(
        cls,
        repository: EntityRepository,
        provider: EmbeddingProvider,
        arbiter: Arbiter,
        gate: Optional[ProcessingGate] = None,
        settings: Optional[Settings] = None,
    ) -> "HybridResolver":
        settings = settings or get_settings()
        return cls(
            repository,
            provider,
            arbiter,
            gate,
            policy=ConfidencePolicy(
                auto_accept=settings.confidence_auto_accept,
                review=settings.confidence_review,
            ),
            similarity_floor=settings.vector_similarity_floor,
            candidate_count=settings.vector_candidate_count,
            rule_acceptance=settings.rule_acceptance,
            arbitration_top_k=settings.arbitration_top_k,
            item_cache=ExactLookupCache(
                settings.item_cache_max_entries,
                settings.item_cache_ttl_seconds,
            ),
        )

    async def resolve(self, query: ResolutionQuery) -> MatchResult:
        return await self._resolve(query, report=False)

    async def _resolve(self, query: ResolutionQuery, *, report: bool) -> MatchResult:
        result, shortlist, arbitration = await self._cascade(query, report)
        result = self._apply_policy(result, shortlist)
        decision = result.decision(self.policy)
        logger.info(
            "Resolved %s reference=%r method=%s key=%s confidence=%.3f decision=%s",
            query.kind.value,
            query.reference,
            result.method.value,
            result.entity_key,
            result.confidence,
            decision.value,
        )
        await self._audit(query, result, decision, shortlist, arbitration)
        return result

    async def resolve_purchase_order(
        self,
        queries: Sequence[ResolutionQuery],
        *,
        email: str = "",
        po_number: str = "",
    ) -> List[MatchResult]:
        """
        Resolve every reference of one purchase order while holding the processing gate.

        Raises GateBusyError when another purchase order is in flight.
        """
        if self.gate is None:
            raise RuntimeError("resolve_purchase_order requires a processing gate")

        results: List[MatchResult] = []
        async with self.gate.held(
            current_step="resolving",
            current_email=email,
            current_po=po_number,
            item_total=len(queries),
        ):
            for index, query in enumerate(queries, start=1):
                self.gate.update(item_index=index)
                results.append(await self._resolve(query, report=True))
        return results

    # -- cascade ---------------------------------------------------------------

    async def _cascade(
        self, query: ResolutionQuery, report: bool = False
    ) -> Tuple[MatchResult, List[Candidate], Optional[ArbitrationDecision]]:
        self._report(query, "exact", report)
        exact = await self._exact_stage(query)
        if exact is not None:
            return exact, [], None

        self._report(query, "vector", report)
        vector, hits = await self._vector_stage(query)
        if vector is not None:
            return vector, list(vector.alternatives), None

        self._report(query, "rules", report)
        rule, scored = await self._rule_stage(query, hits)
        if rule is not None:
            return rule, scored[: self.arbitration_top_k], None

        shortlist = self._shortlist(hits, scored)
        if not shortlist:
            return NoMatch(kind=query.kind), [], None

        self._report(query, "llm", report)
        llm, arbitration = await self._llm_stage(query, shortlist)
        return llm, shortlist, arbitration

    async def _exact_stage(self, query: ResolutionQuery) -> Optional[ExactMatch]:
        lookups = [query.customer_number, query.netsuite_id, query.email, query.reference]
        for value in lookups:
            if not value or not value.strip():
                continue
            hits = await self._find_exact(query.kind, value)
            unique = {hit.entity.key: hit for hit in hits}
            if len(unique) == 1:
                hit = next(iter(unique.values()))
                return ExactMatch(
                    kind=query.kind,
                    entity_key=hit.entity.key,
                    confidence=1.0,
                    evidence=(f"{hit.matched_on}={value.strip()}",),
                    matched_on=hit.matched_on,
                )
            if len(unique) > 1:
                logger.info(
                    "Exact lookup %r ambiguous for %s (%s rows), continuing",
                    value,
                    query.kind.value,
                    len(unique),
                )
        return None

    async def _find_exact(self, kind: EntityKind, value: str) -> List[ExactHit]:
        if kind != EntityKind.ITEM or self.item_cache is None:
            return await self.repository.find_exact(kind, value)
        cached = self.item_cache.get(kind, value)
        if cached is not None:
            return cached
        hits = await self.repository.find_exact(kind, value)
        self.item_cache.put(kind, value, hits)
        return hits

    async def _vector_stage(self, query: ResolutionQuery) -> Tuple[Optional[VectorMatch], List[VectorHit]]:
        text = query.embedding_query_text()
        if not text:
            return None, []
        vector = await self.provider.embed(text)
        hits = await self.repository.nearest(query.kind, vector, self.candidate_count)
        if not hits or hits[0].similarity < self.similarity_floor:
            return None, hits

        top = hits[0]
        alternatives = tuple(
            _candidate(h.entity, h.similarity, [f"cosine={h.similarity:.3f}"])
            for h in hits[1 : self.arbitration_top_k]
        )
        return (
            VectorMatch(
                kind=query.kind,
                entity_key=top.entity.key,
                confidence=top.similarity,
                evidence=(f"cosine={top.similarity:.3f} vs {top.entity.display_name}",),
                similarity=top.similarity,
                alternatives=alternatives,
            ),
            hits,
        )

    async def _rule_stage(
        self, query: ResolutionQuery, hits: Sequence[VectorHit]
    ) -> Tuple[Optional[RuleMatch], List[Candidate]]:
        pool: Dict[str, MatchableEntity] = {}
        for entity in await self.repository.find_rule_candidates(query):
            pool.setdefault(entity.key, entity)
        for hit in hits:
            pool.setdefault(hit.entity.key, hit.entity)

        rules = RULES[query.kind]
        scored: List[Tuple[float, MatchableEntity, List[RuleHit]]] = []
        for entity in pool.values():
            rule_hits = rules(query, entity)
            if rule_hits:
                scored.append((rule_confidence(rule_hits), entity, rule_hits))
        scored.sort(key=lambda item: item[0], reverse=True)

        candidates = [
            _candidate(entity, score, [f"{h.rule}:{h.detail}" for h in rule_hits])
            for score, entity, rule_hits in scored
        ]
        if not scored or scored[0][0] < self.rule_acceptance:
            return None, candidates

        score, entity, rule_hits = scored[0]
        return (
            RuleMatch(
                kind=query.kind,
                entity_key=entity.key,
                confidence=score,
                evidence=candidates[0].evidence,
                rules=tuple(h.rule for h in rule_hits),
            ),
            candidates,
        )

    def _shortlist(self, hits: Sequence[VectorHit], scored: Sequence[Candidate]) -> List[Candidate]:
        merged: Dict[str, Candidate] = {}
        for hit in hits:
            merged[hit.entity.key] = _candidate(hit.entity, hit.similarity, [f"cosine={hit.similarity:.3f}"])
        for candidate in scored:
            existing = merged.get(candidate.entity_key)
            if existing is None or candidate.score > existing.score:
                evidence = candidate.evidence + (existing.evidence if existing else ())
                merged[candidate.entity_key] = Candidate(
                    entity_key=candidate.entity_key,
                    display_name=candidate.display_name,
                    score=candidate.score,
                    evidence=evidence,
                )
        ranked = sorted(merged.values(), key=lambda c: c.score, reverse=True)
        return ranked[: self.arbitration_top_k]

    async def _llm_stage(
        self, query: ResolutionQuery, shortlist: List[Candidate]
    ) -> Tuple[MatchResult, ArbitrationDecision]:
        hints = [h for h in (query.email, query.phone, query.customer_number) if h]
        decision = await self.arbiter.arbitrate(query.kind, query.reference, shortlist, hints)
        keys = tuple(c.entity_key for c in shortlist)

        if decision.accepted_key is None or decision.accepted_key not in keys:
            return (
                NoMatch(
                    kind=query.kind,
                    evidence=tuple(decision.evidence),
                    reason="llm_declined",
                    best_candidate=shortlist[0],
                ),
                decision,
            )
        return (
            LlmMatch(
                kind=query.kind,
                entity_key=decision.accepted_key,
                confidence=max(0.0, min(1.0, decision.confidence)),
                evidence=tuple(decision.evidence),
                model=decision.model,
                candidates_considered=keys,
            ),
            decision,
        )

    # -- policy / reporting ----------------------------------------------------

    def _apply_policy(self, result: MatchResult, shortlist: Sequence[Candidate]) -> MatchResult:
        if not result.matched or result.decision(self.policy) != MatchDecision.UNRESOLVED:
            return result
        listed = next((c for c in shortlist if c.entity_key == result.entity_key), None)
        best = Candidate(
            entity_key=result.entity_key,
            display_name=listed.display_name if listed else result.entity_key,
            score=result.confidence,
            evidence=result.evidence,
        )
        return NoMatch(
            kind=result.kind,
            evidence=result.evidence
            + (f"{result.method.value} confidence {result.confidence:.2f} below {self.policy.review:.2f}",),
            reason="below_review_threshold",
            best_candidate=best,
        )

    def _report(self, query: ResolutionQuery, stage: str, report: bool) -> None:
        # only the caller holding the gate may write to its status
        if report and self.gate is not None:
            self.gate.update(current_step=f"resolving {query.kind.value}: {stage}")

    async def _audit(
        self,
        query: ResolutionQuery,
        result: MatchResult,
        decision: MatchDecision,
        shortlist: Sequence[Candidate],
        arbitration: Optional[ArbitrationDecision],
    ) -> None:
        audit = ResolutionAudit(
            kind=query.kind.value,
            reference=query.reference,
            method=result.method.value,
            selected_key=result.entity_key,
            confidence=result.confidence,
            decision=decision.value,
            evidence=list(result.evidence),
            top_candidates=[asdict(c) for c in shortlist],
            llm_response=arbitration.raw if arbitration else None,
        )
        try:
            await self.repository.record_resolution(audit)
        except Exception as exc:
            logger.warning("Failed to record %s resolution audit: %s", query.kind.value, exc)


_resolver: Optional[HybridResolver] = None


def get_hybrid_resolver() -> HybridResolver:
    global _resolver
    if _resolver is None:
        _resolver = HybridResolver.from_settings(
            get_entity_repository(),
            get_embedding_provider(),
            get_arbiter(),
            get_processing_gate(),
        )
    return _resolver
