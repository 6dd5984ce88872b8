"""
Request/response models for the catalog sync endpoint.
"""
from __future__ import annotations

from typing import Any, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from services.candidate_filter import CatalogItem
from utils import sanitize_string

SHOPIFY_PRODUCT_GID_PREFIX = "gid://shopify/Product/"


def normalize_product_id(value: Any) -> str:
    text = str(value).strip()
    if text.startswith(SHOPIFY_PRODUCT_GID_PREFIX):
        text = text[len(SHOPIFY_PRODUCT_GID_PREFIX):]
    return text


def parse_price(value: Any) -> float:
    if value in (None, ""):
        return 0.0
    try:
        price = float(value)
    except (TypeError, ValueError):
        return 0.0
    return price if price == price else 0.0  # NaN


def parse_tags(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple, set)):
        items = [str(v) for v in value if v is not None]
    else:
        return ()
    return tuple(tag.strip() for tag in items if tag and tag.strip())


def parse_image(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        url = value.get("url") or value.get("src")
        return str(url) if url else None
    return None


class ProductPayload(BaseModel):
    """One product as posted by the storefront app."""

    product_id: str = Field(..., alias="id", min_length=1)
    handle: Optional[str] = None
    title: str = ""
    description: Optional[str] = None
    product_type: Optional[str] = Field(None, alias="productType")
    vendor: Optional[str] = None
    price: float = 0.0
    image: Optional[str] = None
    tags: Tuple[str, ...] = ()

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("product_id", mode="before")
    @classmethod
    def _strip_gid(cls, value: Any) -> Any:
        if value is None:
            return value
        return normalize_product_id(value)

    @field_validator("title", mode="before")
    @classmethod
    def _title(cls, value: Any) -> str:
        return sanitize_string(value, max_length=500)

    @field_validator("description", "product_type", "vendor", "handle", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        return sanitize_string(value, max_length=5000) or None

    @field_validator("price", mode="before")
    @classmethod
    def _price(cls, value: Any) -> float:
        return parse_price(value)

    @field_validator("image", mode="before")
    @classmethod
    def _image(cls, value: Any) -> Optional[str]:
        return parse_image(value)

    @field_validator("tags", mode="before")
    @classmethod
    def _tags(cls, value: Any) -> Tuple[str, ...]:
        return parse_tags(value)

    def to_item(self) -> CatalogItem:
        return CatalogItem(
            product_id=self.product_id,
            title=self.title,
            handle=self.handle or "",
            description=self.description or "",
            product_type=self.product_type or "",
            vendor=self.vendor or "",
            price=self.price,
            image=self.image or "",
            tags=self.tags,
        )


class SyncRequest(BaseModel):
    products: List[ProductPayload] = Field(default_factory=list)
    mode: Literal["auto", "refresh"] = "auto"
    regenerate: bool = False

    model_config = ConfigDict(populate_by_name=True)


class RefreshLimitInfo(BaseModel):
    limit: int
    used: int
    remaining: int
    next_refresh_at: str = Field(..., alias="nextRefreshAt")

    model_config = ConfigDict(populate_by_name=True)


class TokenQuotaInfo(BaseModel):
    tokens_remaining: int = Field(..., alias="tokensRemaining")
    quota: int
    tokens_used: int = Field(..., alias="tokensUsed")
    quota_reset_date: str = Field(..., alias="quotaResetDate")

    model_config = ConfigDict(populate_by_name=True)


class SyncResponse(BaseModel):
    success: bool = True
    mode: str
    products: int
    new_recommendations: int = Field(..., alias="newRecommendations")
    total_recommendations: int = Field(..., alias="totalRecommendations")
    refresh_limit: RefreshLimitInfo = Field(..., alias="refreshLimit")
    can_refresh: bool = Field(..., alias="canRefresh")
    token_quota: Optional[TokenQuotaInfo] = Field(None, alias="tokenQuota")

    model_config = ConfigDict(populate_by_name=True)
