"""
Match result variants returned by the hybrid resolver.

Each cascade stage has its own frozen result type carrying only the evidence
that stage produces. ``method`` is fixed per variant.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Union

from app.models.entity import EntityKind, digits_only, email_domain, normalize_text


class MatchMethod(str, Enum):
    EXACT = "exact"
    VECTOR = "vector"
    RULE = "rule"
    LLM = "llm"
    NONE = "none"


class MatchDecision(str, Enum):
    AUTO_ACCEPT = "auto_accept"
    REVIEW = "review"
    UNRESOLVED = "unresolved"


@dataclass(frozen=True)
class ConfidencePolicy:
    auto_accept: float = 0.90
    review: float = 0.75

    def decide(self, confidence: float) -> MatchDecision:
        if confidence >= self.auto_accept:
            return MatchDecision.AUTO_ACCEPT
        if confidence >= self.review:
            return MatchDecision.REVIEW
        return MatchDecision.UNRESOLVED


@dataclass(frozen=True)
class ResolutionQuery:
    kind: EntityKind
    reference: str
    email: Optional[str] = None
    phone: Optional[str] = None
    customer_number: Optional[str] = None
    netsuite_id: Optional[str] = None

    @property
    def normalized_reference(self) -> str:
        return normalize_text(self.reference)

    @property
    def domain(self) -> Optional[str]:
        return email_domain(self.email)

    @property
    def phone_digits(self) -> str:
        return digits_only(self.phone)

    def embedding_query_text(self) -> str:
        parts = [self.reference.strip() if self.reference else ""]
        if self.domain:
            parts.append(self.domain)
        if self.phone_digits:
            parts.append(self.phone_digits)
        return " | ".join(part for part in parts if part)


@dataclass(frozen=True)
class Candidate:
    entity_key: str
    display_name: str
    score: float
    evidence: Tuple[str, ...] = ()


@dataclass(frozen=True)
class _MatchBase:
    kind: EntityKind
    entity_key: Optional[str]
    confidence: float
    evidence: Tuple[str, ...] = ()

    method: ClassVar[MatchMethod]

    @property
    def matched(self) -> bool:
        return self.entity_key is not None

    def decision(self, policy: ConfidencePolicy) -> MatchDecision:
        if not self.matched:
            return MatchDecision.UNRESOLVED
        return policy.decide(self.confidence)

    def to_dict(self, policy: Optional[ConfidencePolicy] = None) -> Dict[str, Any]:
        payload = asdict(self)
        payload["kind"] = self.kind.value
        payload["method"] = self.method.value
        payload["evidence"] = list(self.evidence)
        payload["matched"] = self.matched
        if policy is not None:
            payload["decision"] = self.decision(policy).value
        return payload


@dataclass(frozen=True)
class ExactMatch(_MatchBase):
    matched_on: str = ""

    method: ClassVar[MatchMethod] = MatchMethod.EXACT


@dataclass(frozen=True)
class VectorMatch(_MatchBase):
    similarity: float = 0.0
    alternatives: Tuple[Candidate, ...] = ()

    method: ClassVar[MatchMethod] = MatchMethod.VECTOR


@dataclass(frozen=True)
class RuleMatch(_MatchBase):
    rules: Tuple[str, ...] = ()

    method: ClassVar[MatchMethod] = MatchMethod.RULE


@dataclass(frozen=True)
class LlmMatch(_MatchBase):
    model: str = ""
    candidates_considered: Tuple[str, ...] = ()

    method: ClassVar[MatchMethod] = MatchMethod.LLM


@dataclass(frozen=True)
class NoMatch(_MatchBase):
    entity_key: Optional[str] = None
    confidence: float = 0.0
    reason: str = "no_candidates_found"
    best_candidate: Optional[Candidate] = None

    method: ClassVar[MatchMethod] = MatchMethod.NONE


MatchResult = Union[ExactMatch, VectorMatch, RuleMatch, LlmMatch, NoMatch]


@dataclass
class ResolutionAudit:
    kind: str
    reference: str
    method: str
    selected_key: Optional[str]
    confidence: float
    decision: str
    evidence: List[str] = field(default_factory=list)
    top_candidates: List[Dict[str, Any]] = field(default_factory=list)
    llm_response: Optional[Dict[str, Any]] = None
