"""
Entity Repository

Access to customers / contacts / items and their embedding columns.
Supabase (PostgREST + pgvector RPC) in production, in-memory for local runs and tests.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import asdict, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import numpy as np
from postgrest.exceptions import APIError
from supabase import Client, create_client

from app.core.config import get_settings
from app.core.errors import PersistenceError
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
from app.models.matching import ResolutionAudit, ResolutionQuery

logger = logging.getLogger(__name__)


def normalize_identifier(value: Optional[str]) -> str:
    return re.sub(r"\s+", "", value or "").upper()


def exact_keys(entity: MatchableEntity) -> List[Tuple[str, str]]:
    """(field, normalized value) pairs an exact lookup may hit."""
    keys: List[Tuple[str, str]] = []

    def ident(field_name: str, value: Optional[str]) -> None:
        if value:
            keys.append((field_name, normalize_identifier(value)))

    def name(field_name: str, value: Optional[str]) -> None:
        if value:
            keys.append((field_name, normalize_text(value)))

    if isinstance(entity, CustomerRecord):
        ident("customer_number", entity.customer_number)
        ident("netsuite_id", entity.netsuite_id)
        name("email", entity.email)
        name("company_name", entity.company_name)
        for alias in entity.alternate_names:
            name("alternate_names", alias)
    elif isinstance(entity, ContactRecord):
        ident("netsuite_internal_id", entity.netsuite_internal_id)
        name("email", entity.email)
        name("alt_email", entity.alt_email)
        name("name", entity.name)
    elif isinstance(entity, ItemRecord):
        ident("sku", entity.sku)
        ident("final_sku", entity.final_sku)
        ident("netsuite_id", entity.netsuite_id)
        ident("upc", entity.upc)
        ident("mpn", entity.mpn)
        for alias in entity.aliases:
            ident("aliases", alias)
        name("display_name", entity.display_name)
    return keys


def match_exact(entity: MatchableEntity, value: str) -> Optional[str]:
    """Return the field on which ``value`` exactly matches ``entity``."""
    as_ident = normalize_identifier(value)
    as_name = normalize_text(value)
    for field_name, key in exact_keys(entity):
        if key and key in (as_ident, as_name):
            return field_name
    return None


class EntityRepository(ABC):
    @abstractmethod
    async def get(self, kind: EntityKind, entity_id: str) -> Optional[MatchableEntity]:
        ...

    @abstractmethod
    async def list_missing_embeddings(self, kind: EntityKind, limit: int) -> List[MatchableEntity]:
        ...

    @abstractmethod
    async def save_embedding(
        self, kind: EntityKind, entity_id: str, text: str, vector: List[float]
    ) -> None:
        """Persist embedding text and vector in a single row update, advancing updated_at."""
        ...

    @abstractmethod
    async def count(self, kind: EntityKind) -> int:
        ...

    @abstractmethod
    async def count_embedded(self, kind: EntityKind) -> int:
        ...

    @abstractmethod
    async def find_exact(self, kind: EntityKind, value: str) -> List[ExactHit]:
        """Active rows whose identifier or canonical name equals ``value``."""
        ...

    @abstractmethod
    async def find_rule_candidates(
        self, query: ResolutionQuery, limit: int = 25
    ) -> List[MatchableEntity]:
        """Active rows sharing a domain, phone or name token with the query."""
        ...

    @abstractmethod
    async def nearest(self, kind: EntityKind, vector: List[float], k: int) -> List[VectorHit]:
        """Active embedded rows ordered by cosine similarity, highest first."""
        ...

    @abstractmethod
    async def record_resolution(self, audit: ResolutionAudit) -> None:
        ...


def _name_tokens(text: str) -> List[str]:
    return [token for token in re.split(r"[^a-z0-9]+", normalize_text(text)) if len(token) >= 3]


def cosine_similarity(a: Iterable[float], b: Iterable[float]) -> float:
    va = np.asarray(list(a), dtype=float)
    vb = np.asarray(list(b), dtype=float)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


class InMemoryEntityRepository(EntityRepository):
    def __init__(self, entities: Optional[Iterable[MatchableEntity]] = None) -> None:
        self._data: Dict[EntityKind, Dict[str, MatchableEntity]] = {kind: {} for kind in EntityKind}
        self.audits: List[ResolutionAudit] = []
        for entity in entities or []:
            self.add(entity)

    def add(self, entity: MatchableEntity) -> None:
        self._data[entity.kind][entity.id] = entity

    def all(self, kind: EntityKind) -> List[MatchableEntity]:
        return list(self._data[kind].values())

    def _active(self, kind: EntityKind) -> List[MatchableEntity]:
        return [e for e in self._data[kind].values() if e.is_active]

    async def get(self, kind: EntityKind, entity_id: str) -> Optional[MatchableEntity]:
        return self._data[kind].get(entity_id)

    async def list_missing_embeddings(self, kind: EntityKind, limit: int) -> List[MatchableEntity]:
        missing = [e for e in self._data[kind].values() if e.embedding is None]
        return missing[: max(limit, 0)]

    async def save_embedding(
        self, kind: EntityKind, entity_id: str, text: str, vector: List[float]
    ) -> None:
        entity = self._data[kind].get(entity_id)
        if entity is None:
            raise PersistenceError(f"{kind.value} row disappeared during update: {entity_id}")
        self._data[kind][entity_id] = replace(
            entity,
            embedding_text=text,
            embedding=list(vector),
            updated_at=datetime.now(timezone.utc),
        )

    async def count(self, kind: EntityKind) -> int:
        return len(self._data[kind])

    async def count_embedded(self, kind: EntityKind) -> int:
        return sum(1 for e in self._data[kind].values() if e.embedding is not None)

    async def find_exact(self, kind: EntityKind, value: str) -> List[ExactHit]:
        hits: List[ExactHit] = []
        for entity in self._active(kind):
            field_name = match_exact(entity, value)
            if field_name:
                hits.append(ExactHit(entity=entity, matched_on=field_name))
        return hits

    async def find_rule_candidates(
        self, query: ResolutionQuery, limit: int = 25
    ) -> List[MatchableEntity]:
        domain = query.domain
        phone = query.phone_digits
        tokens = set(_name_tokens(query.reference))
        found: List[MatchableEntity] = []
        for entity in self._active(query.kind):
            emails = [getattr(entity, "email", None), getattr(entity, "alt_email", None)]
            if domain and domain in {email_domain(e) for e in emails if e}:
                found.append(entity)
                continue
            phones = [
                getattr(entity, "phone_digits", None) or digits_only(getattr(entity, "phone", None)),
                digits_only(getattr(entity, "office_phone", None)),
            ]
            if phone and len(phone) >= 10 and phone in phones:
                found.append(entity)
                continue
            haystack = " ".join(entity.names() + list(getattr(entity, "aliases", [])))
            if tokens and tokens & set(_name_tokens(haystack)):
                found.append(entity)
        return found[:limit]

    async def nearest(self, kind: EntityKind, vector: List[float], k: int) -> List[VectorHit]:
        hits = [
            VectorHit(entity=e, similarity=cosine_similarity(vector, e.embedding))
            for e in self._active(kind)
            if e.embedding is not None
        ]
        hits.sort(key=lambda h: h.similarity, reverse=True)
        return hits[:k]

    async def record_resolution(self, audit: ResolutionAudit) -> None:
        self.audits.append(audit)


# =============================================================================
# Supabase
# =============================================================================

_COLUMNS = {
    EntityKind.CUSTOMER: (
        "id, customer_number, company_name, alternate_names, email, phone, phone_digits, "
        "address, netsuite_id, is_active, customer_text, updated_at"
    ),
    EntityKind.CONTACT: (
        "id, netsuite_internal_id, name, job_title, email, alt_email, phone, office_phone, "
        "company, inactive, contact_text, updated_at"
    ),
    EntityKind.ITEM: (
        "id, sku, final_sku, netsuite_id, display_name, description, sub_type, category, "
        "vendor, manufacturer, upc, mpn, aliases, attributes, is_active, item_text, updated_at"
    ),
}

_ACTIVE_FILTER = {
    EntityKind.CUSTOMER: ("is_active", True),
    EntityKind.CONTACT: ("inactive", False),
    EntityKind.ITEM: ("is_active", True),
}

_EXACT_FILTERS = {
    EntityKind.CUSTOMER: ["customer_number.eq", "netsuite_id.eq", "email.ilike", "company_name.ilike"],
    EntityKind.CONTACT: ["netsuite_internal_id.eq", "email.ilike", "alt_email.ilike", "name.ilike"],
    EntityKind.ITEM: ["sku.eq", "final_sku.eq", "netsuite_id.eq", "upc.eq", "mpn.eq", "display_name.ilike"],
}

_NAME_COLUMN = {
    EntityKind.CUSTOMER: "company_name",
    EntityKind.CONTACT: "name",
    EntityKind.ITEM: "display_name",
}


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _parse_vector(raw: Any) -> Optional[List[float]]:
    if raw is None:
        return None
    if isinstance(raw, str):
        raw = json.loads(raw)
    return [float(v) for v in raw]


def _parse_timestamp(raw: Any) -> Optional[datetime]:
    if not raw:
        return None
    if isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))


def row_to_entity(kind: EntityKind, row: Dict[str, Any]) -> MatchableEntity:
    common = {
        "id": str(row["id"]),
        "embedding_text": row.get(f"{kind.value}_text"),
        "embedding": _parse_vector(row.get(f"{kind.value}_embedding")),
        "updated_at": _parse_timestamp(row.get("updated_at")),
    }
    if kind is EntityKind.CUSTOMER:
        return CustomerRecord(
            customer_number=row["customer_number"],
            company_name=row["company_name"],
            alternate_names=list(row.get("alternate_names") or []),
            email=row.get("email"),
            phone=row.get("phone"),
            phone_digits=row.get("phone_digits"),
            address=dict(row.get("address") or {}),
            netsuite_id=row.get("netsuite_id"),
            is_active=row.get("is_active", True) is not False,
            **common,
        )
    if kind is EntityKind.CONTACT:
        return ContactRecord(
            netsuite_internal_id=row["netsuite_internal_id"],
            name=row["name"],
            job_title=row.get("job_title"),
            email=row.get("email"),
            alt_email=row.get("alt_email"),
            phone=row.get("phone"),
            office_phone=row.get("office_phone"),
            company=row.get("company"),
            is_active=not row.get("inactive", False),
            **common,
        )
    return ItemRecord(
        sku=row["sku"],
        final_sku=row.get("final_sku"),
        netsuite_id=row.get("netsuite_id"),
        display_name=row["display_name"],
        description=row.get("description"),
        sub_type=row.get("sub_type"),
        category=row.get("category"),
        vendor=row.get("vendor"),
        manufacturer=row.get("manufacturer"),
        upc=row.get("upc"),
        mpn=row.get("mpn"),
        aliases=list(row.get("aliases") or []),
        attributes=dict(row.get("attributes") or {}),
        is_active=row.get("is_active", True) is not False,
        **common,
    )


class SupabaseEntityRepository(EntityRepository):
    """PostgREST access; vector search goes through ``match_<table>`` RPC functions."""

    def __init__(self, client: Client, *, audit_table: str = "entity_resolution_audit") -> None:
        self.client = client
        self.audit_table = audit_table

    async def _run(self, operation: str, fn: Callable[[], Any]) -> Any:
        try:
            return await asyncio.to_thread(fn)
        except APIError as exc:
            raise PersistenceError(f"Supabase {operation} failed: {exc.message}") from exc
        except Exception as exc:
            raise PersistenceError(f"Supabase {operation} failed: {exc}") from exc

    def _select(self, kind: EntityKind, *, with_embedding: bool = False):
        columns = _COLUMNS[kind]
        if with_embedding:
            columns += f", {kind.value}_embedding"
        return self.client.table(kind.table).select(columns)

    def _active(self, kind: EntityKind, builder):
        column, value = _ACTIVE_FILTER[kind]
        return builder.eq(column, value)

    async def get(self, kind: EntityKind, entity_id: str) -> Optional[MatchableEntity]:
        result = await self._run(
            f"get {kind.value}",
            lambda: self._select(kind, with_embedding=True).eq("id", entity_id).limit(1).execute(),
        )
        rows = result.data or []
        return row_to_entity(kind, rows[0]) if rows else None

    async def list_missing_embeddings(self, kind: EntityKind, limit: int) -> List[MatchableEntity]:
        result = await self._run(
            f"list missing {kind.value} embeddings",
            lambda: self._select(kind)
            .is_(f"{kind.value}_embedding", "null")
            .limit(limit)
            .execute(),
        )
        return [row_to_entity(kind, row) for row in result.data or []]

    async def save_embedding(
        self, kind: EntityKind, entity_id: str, text: str, vector: List[float]
    ) -> None:
        payload = {
            f"{kind.value}_text": text,
            f"{kind.value}_embedding": json.dumps(vector),
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        if kind is EntityKind.CUSTOMER:
            entity = await self.get(kind, entity_id)
            if entity is not None:
                payload["phone_digits"] = digits_only(entity.phone) or None
        await self._run(
            f"update {kind.value} embedding",
            lambda: self.client.table(kind.table).update(payload).eq("id", entity_id).execute(),
        )

    async def count(self, kind: EntityKind) -> int:
        result = await self._run(
            f"count {kind.value}",
            lambda: self.client.table(kind.table).select("id", count="exact").limit(1).execute(),
        )
        return result.count or 0

    async def count_embedded(self, kind: EntityKind) -> int:
        result = await self._run(
            f"count embedded {kind.value}",
            lambda: self.client.table(kind.table)
            .select("id", count="exact")
            .not_.is_(f"{kind.value}_embedding", "null")
            .limit(1)
            .execute(),
        )
        return result.count or 0

    async def find_exact(self, kind: EntityKind, value: str) -> List[ExactHit]:
        value = value.strip()
        if not value:
            return []
        clauses = [f"{flt}.{_quote(value)}" for flt in _EXACT_FILTERS[kind]]
        if kind is EntityKind.CUSTOMER:
            clauses.append(f"alternate_names.cs.{{{_quote(value)}}}")
        elif kind is EntityKind.ITEM:
            clauses.append(f"aliases.cs.{{{_quote(value.upper())}}}")
        result = await self._run(
            f"exact {kind.value} lookup",
            lambda: self._active(kind, self._select(kind)).or_(",".join(clauses)).limit(10).execute(),
        )
        hits: List[ExactHit] = []
        for row in result.data or []:
            entity = row_to_entity(kind, row)
            field_name = match_exact(entity, value)
            if field_name:
                hits.append(ExactHit(entity=entity, matched_on=field_name))
        return hits

    async def find_rule_candidates(
        self, query: ResolutionQuery, limit: int = 25
    ) -> List[MatchableEntity]:
        kind = query.kind
        clauses: List[str] = []
        if query.domain and kind is not EntityKind.ITEM:
            clauses.append(f"email.ilike.{_quote('*@' + query.domain)}")
        if len(query.phone_digits) >= 10:
            if kind is EntityKind.CUSTOMER:
                clauses.append(f"phone_digits.eq.{query.phone_digits}")
            elif kind is EntityKind.CONTACT:
                clauses.append(f"phone.ilike.{_quote('*' + query.phone_digits[-4:])}")
        tokens = sorted(_name_tokens(query.reference), key=len, reverse=True)[:2]
        for token in tokens:
            clauses.append(f"{_NAME_COLUMN[kind]}.ilike.{_quote('*' + token + '*')}")
        if not clauses:
            return []
        result = await self._run(
            f"{kind.value} rule candidates",
            lambda: self._active(kind, self._select(kind)).or_(",".join(clauses)).limit(limit).execute(),
        )
        return [row_to_entity(kind, row) for row in result.data or []]

    async def nearest(self, kind: EntityKind, vector: List[float], k: int) -> List[VectorHit]:
        result = await self._run(
            f"{kind.value} vector search",
            lambda: self.client.rpc(
                f"match_{kind.table}",
                {"query_embedding": json.dumps(vector), "match_count": k},
            ).execute(),
        )
        hits = [
            VectorHit(entity=row_to_entity(kind, row), similarity=float(row["similarity"]))
            for row in result.data or []
        ]
        hits = [h for h in hits if h.entity.is_active]
        hits.sort(key=lambda h: h.similarity, reverse=True)
        return hits[:k]

    async def record_resolution(self, audit: ResolutionAudit) -> None:
        await self._run(
            "audit insert",
            lambda: self.client.table(self.audit_table).insert(asdict(audit)).execute(),
        )


_repository: Optional[EntityRepository] = None


def get_entity_repository() -> EntityRepository:
    """Supabase repository when configured, otherwise a process-local in-memory store."""
    global _repository
    if _repository is not None:
        return _repository

    settings = get_settings()
    if settings.supabase_url and settings.supabase_service_role_key:
        client = create_client(settings.supabase_url, settings.supabase_service_role_key)
        _repository = SupabaseEntityRepository(client, audit_table=settings.supabase_audit_table)
    else:
        logger.warning("Supabase not configured, using in-memory entity repository")
        _repository = InMemoryEntityRepository()
    return _repository
