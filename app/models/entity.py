from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class EntityKind(str, Enum):
    CUSTOMER = "customer"
    CONTACT = "contact"
    ITEM = "item"

    @property
    def table(self) -> str:
        return f"{self.value}s"


def digits_only(value: Optional[str]) -> str:
    return re.sub(r"\D", "", value or "")


def email_domain(value: Optional[str]) -> Optional[str]:
    if not value or "@" not in value:
        return None
    domain = value.rsplit("@", 1)[1].strip().lower()
    return domain or None


def normalize_text(value: Optional[str]) -> str:
    return re.sub(r"\s+", " ", (value or "").strip().lower())


@dataclass
class CustomerRecord:
    id: str
    customer_number: str
    company_name: str
    alternate_names: List[str] = field(default_factory=list)
    email: Optional[str] = None
    phone: Optional[str] = None
    phone_digits: Optional[str] = None
    address: Dict[str, Any] = field(default_factory=dict)
    netsuite_id: Optional[str] = None
    is_active: bool = True
    embedding_text: Optional[str] = None
    embedding: Optional[List[float]] = None
    updated_at: Optional[datetime] = None

    kind = EntityKind.CUSTOMER

    @property
    def key(self) -> str:
        return self.customer_number

    @property
    def display_name(self) -> str:
        return self.company_name

    def names(self) -> List[str]:
        return [self.company_name, *self.alternate_names]


@dataclass
class ContactRecord:
    id: str
    netsuite_internal_id: str
    name: str
    job_title: Optional[str] = None
    email: Optional[str] = None
    alt_email: Optional[str] = None
    phone: Optional[str] = None
    office_phone: Optional[str] = None
    company: Optional[str] = None
    is_active: bool = True
    embedding_text: Optional[str] = None
    embedding: Optional[List[float]] = None
    updated_at: Optional[datetime] = None

    kind = EntityKind.CONTACT

    @property
    def key(self) -> str:
        return self.netsuite_internal_id

    @property
    def display_name(self) -> str:
        return self.name

    def names(self) -> List[str]:
        return [self.name]


@dataclass
class ItemRecord:
    id: str
    sku: str
    display_name: str
    final_sku: Optional[str] = None
    netsuite_id: Optional[str] = None
    description: Optional[str] = None
    sub_type: Optional[str] = None
    category: Optional[str] = None
    vendor: Optional[str] = None
    manufacturer: Optional[str] = None
    upc: Optional[str] = None
    mpn: Optional[str] = None
    aliases: List[str] = field(default_factory=list)
    attributes: Dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    embedding_text: Optional[str] = None
    embedding: Optional[List[float]] = None
    updated_at: Optional[datetime] = None

    kind = EntityKind.ITEM

    @property
    def key(self) -> str:
        return self.sku

    def names(self) -> List[str]:
        return [self.display_name]


MatchableEntity = Union[CustomerRecord, ContactRecord, ItemRecord]

RECORD_TYPES = {
    EntityKind.CUSTOMER: CustomerRecord,
    EntityKind.CONTACT: ContactRecord,
    EntityKind.ITEM: ItemRecord,
}


@dataclass(frozen=True)
class VectorHit:
    entity: MatchableEntity
    similarity: float


@dataclass(frozen=True)
class ExactHit:
    entity: MatchableEntity
    matched_on: str
