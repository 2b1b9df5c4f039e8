"""Pydantic models shared across crawl components."""
from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

DEFAULT_COUNTRY_CODE = "FR"
DEFAULT_CURRENCY = "EUR"

_WHITESPACE_RE = re.compile(r"\s+")


class ListingCandidate(BaseModel):
    """One listing as extracted from a result page, before it has a source."""

    external_id: str
    url: str = ""
    title: str = ""
    price_cents: Optional[int] = None
    currency: str = DEFAULT_CURRENCY
    location: Optional[str] = None
    country_code: str = DEFAULT_COUNTRY_CODE
    has_shipping: bool = False
    seller_name: Optional[str] = None
    seller_external_id: Optional[str] = None
    seller_profile: Optional[str] = None
    description: Optional[str] = None
    condition: Optional[str] = None
    published_at: Optional[datetime] = None
    images: List[str] = Field(default_factory=list)


class SellerKey(BaseModel):
    """Natural key of a seller: the seller's id on the source site."""

    source_id: int
    external_id: str
    display_name: str = ""
    profile_url: Optional[str] = None

    model_config = {"frozen": True}


class LocationKey(BaseModel):
    """Natural key of a location: its display label and country."""

    label: str
    country_code: str = DEFAULT_COUNTRY_CODE

    model_config = {"frozen": True}


class ListingRecord(BaseModel):
    """Unit of persistence, identified by ``(source_id, external_id)``."""

    source_id: int
    external_id: str
    url: str = ""
    title: str = ""
    description: Optional[str] = None
    price_cents: Optional[int] = None
    currency: str = DEFAULT_CURRENCY
    condition: Optional[str] = None
    has_shipping: bool = False
    seller: Optional[SellerKey] = None
    location: Optional[LocationKey] = None
    published_at: Optional[datetime] = None
    images: List[str] = Field(default_factory=list)
    raw_payload: Dict[str, Any] = Field(default_factory=dict)

    @property
    def identity(self) -> tuple[int, str]:
        return (self.source_id, self.external_id)

    @classmethod
    def from_candidate(cls, source_id: int, candidate: ListingCandidate) -> ListingRecord:
        """Bind an extracted candidate to a source and derive seller/location keys."""
        seller = None
        if candidate.seller_name or candidate.seller_external_id:
            seller_id = candidate.seller_external_id or seller_slug(candidate.seller_name or "")
            seller = SellerKey(
                source_id=source_id,
                external_id=seller_id,
                display_name=candidate.seller_name or seller_id,
                profile_url=candidate.seller_profile,
            )

        location = None
        if candidate.location and candidate.location.strip():
            location = LocationKey(
                label=candidate.location.strip(),
                country_code=candidate.country_code,
            )

        return cls(
            source_id=source_id,
            external_id=candidate.external_id,
            url=candidate.url,
            title=candidate.title,
            description=candidate.description,
            price_cents=candidate.price_cents,
            currency=candidate.currency,
            condition=candidate.condition,
            has_shipping=candidate.has_shipping,
            seller=seller,
            location=location,
            published_at=candidate.published_at,
            images=list(candidate.images),
            raw_payload=candidate.model_dump(mode="json"),
        )


class SaveOutcome(str, Enum):
    """Result of an at-most-once save."""

    SAVED = "saved"
    SKIPPED = "skipped"


def seller_slug(display_name: str) -> str:
    """Seller id used when the page only exposes a display name."""
    return _WHITESPACE_RE.sub("_", display_name.strip().lower())
