"""
LLM arbitration for the last stage of the resolution cascade.

The model sees the reference and a shortlist of candidates and either picks
one of them or declines. Anything else it says is treated as a decline.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, List, Optional, Protocol, Sequence

from app.core.errors import ArbitrationError
from app.models.entity import EntityKind
from app.models.matching import Candidate
from app.prompts.loader import PromptSpec, load_prompt
from app.services.json_repair import try_parse_json
from app.services.llm_gateway import LLMGateway, LLMRequest, get_llm_gateway

logger = logging.getLogger(__name__)

PROMPT_ID = "entity_arbitration_v1"
DECLINE_TOKENS = frozenset({"", "NONE", "NULL", "NO_MATCH"})


@dataclass(frozen=True)
class ArbitrationDecision:
    accepted_key: Optional[str]
    confidence: float
    evidence: List[str] = field(default_factory=list)
    model: str = ""
    raw: Optional[Dict[str, Any]] = None


class Arbiter(Protocol):
    async def arbitrate(
        self,
        kind: EntityKind,
        reference: str,
        candidates: Sequence[Candidate],
        hints: Sequence[str] = (),
    ) -> ArbitrationDecision:
        ...


def _clamp(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return max(0.0, min(1.0, number))


class LLMArbiter:
    def __init__(self, gateway: LLMGateway, prompt: Optional[PromptSpec] = None) -> None:
        self.gateway = gateway
        self.prompt = prompt or load_prompt(PROMPT_ID)

    async def arbitrate(
        self,
        kind: EntityKind,
        reference: str,
        candidates: Sequence[Candidate],
        hints: Sequence[str] = (),
    ) -> ArbitrationDecision:
        if not candidates:
            return ArbitrationDecision(accepted_key=None, confidence=0.0, evidence=["no candidates"])

        system_prompt, user_prompt = self.prompt.render(
            {
                "kind": kind.value,
                "reference": reference,
                "hints": list(hints),
                "candidates": list(candidates),
            }
        )
        try:
            response = await self.gateway.generate(
                LLMRequest(
                    purpose=self.prompt.purpose,
                    system_prompt=system_prompt,
                    user_prompt=user_prompt,
                    temperature=self.prompt.temperature,
                    json_mode=self.prompt.json_mode,
                )
            )
        except Exception as exc:
            raise ArbitrationError(f"{kind.value} arbitration failed: {exc}") from exc

        parsed, error = try_parse_json(response.content)
        if parsed is None:
            logger.warning("Arbitration output unusable (%s), treating as decline", error)
            return ArbitrationDecision(
                accepted_key=None,
                confidence=0.0,
                evidence=[f"unparseable model output: {error}"],
                model=response.model,
            )

        selected = str(parsed.get("selected_id") or "").strip()
        reason = str(parsed.get("reason") or "").strip()
        evidence = [reason] if reason else []

        if selected.upper() in DECLINE_TOKENS:
            logger.info("Arbitration declined for %s reference=%r", kind.value, reference)
            return ArbitrationDecision(
                accepted_key=None,
                confidence=_clamp(parsed.get("confidence")),
                evidence=evidence,
                model=response.model,
                raw=parsed,
            )

        known = {c.entity_key for c in candidates}
        if selected not in known:
            logger.warning("Arbitration picked unknown id %r, treating as decline", selected)
            return ArbitrationDecision(
                accepted_key=None,
                confidence=0.0,
                evidence=evidence + [f"model proposed id outside shortlist: {selected}"],
                model=response.model,
                raw=parsed,
            )

        return ArbitrationDecision(
            accepted_key=selected,
            confidence=_clamp(parsed.get("confidence")),
            evidence=evidence,
            model=response.model,
            raw=parsed,
        )


@lru_cache
def get_arbiter() -> Arbiter:
    return LLMArbiter(get_llm_gateway())
