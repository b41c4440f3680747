"""
Typed job payloads handed to the worker.

Each platform gets its own variant, discriminated on `kind`, so the dispatcher
validates marketplace-specific fields up front and the worker can match on the
variant instead of probing an untyped blob.
"""
from decimal import Decimal
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from crosslister.domain.errors import InvalidPayloadError


class ListingSnapshot(BaseModel):
    """Listing fields common to every marketplace, frozen at dispatch time."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    description: str = ""
    price: Decimal
    condition: str
    brand: Optional[str] = None
    size: Optional[str] = None
    color: Optional[str] = None
    category: Optional[str] = None
    photo_urls: list[str] = Field(default_factory=list)


class PoshmarkPayload(BaseModel):
    kind: Literal["poshmark"] = "poshmark"
    listing: ListingSnapshot
    department: Optional[str] = None
    subcategory: Optional[str] = None


class MercariPayload(BaseModel):
    kind: Literal["mercari"] = "mercari"
    listing: ListingSnapshot
    category_id: Optional[str] = None
    brand_id: Optional[str] = None
    shipping_carrier: Optional[str] = None
    shipping_type: Optional[str] = None
    weight_lb: Optional[int] = Field(default=None, ge=0)
    weight_oz: Optional[int] = Field(default=None, ge=0, lt=16)


class DepopPayload(BaseModel):
    kind: Literal["depop"] = "depop"
    listing: ListingSnapshot
    style_tags: list[str] = Field(default_factory=list, max_length=3)
    shipping_from: Optional[str] = None


class EbayPayload(BaseModel):
    kind: Literal["ebay"] = "ebay"
    listing: ListingSnapshot
    category_id: Optional[str] = None


class DelistPayload(BaseModel):
    kind: Literal["delist"] = "delist"
    platform: str
    platform_listing_id: str
    reason: str = "user_requested"


JobPayload = Annotated[
    Union[PoshmarkPayload, MercariPayload, DepopPayload, EbayPayload, DelistPayload],
    Field(discriminator="kind"),
]

_payload_adapter: TypeAdapter[JobPayload] = TypeAdapter(JobPayload)


def build_create_payload(platform: str, listing: Any) -> JobPayload:
    """
    Builds the create-listing payload for `platform` from a Listing row.
    Platform-specific overrides come from `listing.platform_metadata[platform]`.
    Raises InvalidPayloadError when the listing or its metadata does not validate.
    """
    metadata = (listing.platform_metadata or {}).get(platform) or {}
    if not isinstance(metadata, dict):
        raise InvalidPayloadError(f"platform_metadata.{platform} must be an object")

    snapshot = {
        "id": str(listing.id),
        "title": listing.title,
        "description": listing.description or "",
        "price": listing.price,
        "condition": listing.condition,
        "brand": listing.brand,
        "size": listing.size,
        "color": listing.color,
        "category": listing.category,
        "photo_urls": listing.photo_urls or [],
    }
    return parse_payload({**metadata, "kind": platform, "listing": snapshot})


def parse_payload(data: dict[str, Any]) -> JobPayload:
    try:
        return _payload_adapter.validate_python(data)
    except ValidationError as e:
        kind = data.get("kind", "unknown")
        raise InvalidPayloadError(f"Invalid {kind} payload: {e.errors(include_url=False)}") from e


def dump_payload(payload: JobPayload) -> dict[str, Any]:
    return payload.model_dump(mode="json")
