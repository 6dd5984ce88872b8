"""
Candidate filtering for cross-sell recommendations.

``select_candidates(source, pool)`` returns the admissible, ranked and capped
list of targets for one source product. Exclusions are applied in this order:

1. identical external id
2. same physical product (handles equal after dropping one trailing ``-token``)
3. cross-gender (male never pairs with female; unisex pairs with anything)
4. identical category, unless both fall back to ``other``

Survivors are ranked accessory categories first (input order kept), then the
rest by ascending price, and cut to ``limit``.

Gender and category come from keyword matching on title, type and tags. Both
classifiers are pure and return closed enums so their behaviour can be pinned
down in tests.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Iterable, List, Sequence, Tuple

DEFAULT_CANDIDATE_LIMIT = 20


@dataclass(frozen=True)
class CatalogItem:
    """Display attributes of one product as seen by the generator."""

    product_id: str
    title: str = ""
    handle: str = ""
    description: str = ""
    product_type: str = ""
    vendor: str = ""
    price: float = 0.0
    image: str = ""
    tags: Tuple[str, ...] = field(default_factory=tuple)


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    UNISEX = "unisex"


class Category(str, Enum):
    HAT = "hat"
    JEWELRY = "jewelry"
    BAG = "bag"
    SOCK = "sock"
    SHOE = "shoe"
    ACCESSORY = "accessory"
    TOP = "top"
    BOTTOM = "bottom"
    DRESS = "dress"
    SKIRT = "skirt"
    OUTERWEAR = "outerwear"
    SWIM = "swim"
    UNDERWEAR = "underwear"
    SLEEPWEAR = "sleepwear"
    OTHER = "other"

    @property
    def is_accessory(self) -> bool:
        return self in ACCESSORY_CATEGORIES


ACCESSORY_CATEGORIES = frozenset({
    Category.HAT,
    Category.JEWELRY,
    Category.BAG,
    Category.SOCK,
    Category.SHOE,
    Category.ACCESSORY,
})

_MALE_TAGS = re.compile(r"\bmens\b|filtergender:\s*mens")
_MALE_TEXT = re.compile(r"\b(men'?s|male|boy)\b")
_FEMALE_TAGS = re.compile(r"\bwomens\b|filtergender:\s*womens")
_FEMALE_TEXT = re.compile(r"\b(women'?s|female|girl|ladies)\b")
_FEMALE_TITLE = re.compile(r"dress|skirt|\bbra\b")
_MENS_TYPE = re.compile(r"\bmens\b")

# First match wins; order matters (e.g. "shirt dress" is a top).
_TITLE_RULES: Tuple[Tuple[Category, "re.Pattern[str]"], ...] = (
    (Category.HAT, re.compile(r"\b(hat|cap|beanie|visor)\b")),
    (Category.JEWELRY, re.compile(r"\b(earring|necklace|bracelet|ring|jewelry)\b")),
    (Category.BAG, re.compile(r"\b(bag|purse|backpack|tote)\b")),
    (Category.SOCK, re.compile(r"\b(sock|socks)\b")),
    (Category.SHOE, re.compile(r"\b(shoe|sneaker|boot|sandal|slipper|heel)\b")),
    (Category.ACCESSORY, re.compile(r"\b(belt|watch|sunglasses|scarf)\b")),
)
_TOP = re.compile(r"\b(t-shirt|tee|shirt|top|blouse|tank|cami)\b")
_BOTTOM = re.compile(r"\b(pant|jean|trouser|legging|short|jogger)\b")
_DRESS = re.compile(r"\b(dress|gown|maxi|mini)\b")
_LATER_RULES: Tuple[Tuple[Category, "re.Pattern[str]"], ...] = (
    (Category.SKIRT, re.compile(r"\b(skirt|skort)\b")),
    (Category.OUTERWEAR, re.compile(r"\b(jacket|coat|blazer|cardigan|hoodie|sweater)\b")),
    (Category.SWIM, re.compile(r"\b(swimsuit|bikini|swim trunk|swimwear)\b")),
    (Category.UNDERWEAR, re.compile(r"\b(bra|panty|underwear|lingerie|bodysuit)\b")),
    (Category.SLEEPWEAR, re.compile(r"\b(pajama|pj|sleep|lounge|robe)\b")),
)

_VARIANT_SUFFIX = re.compile(r"-[a-z0-9]*$")


@lru_cache(maxsize=8192)
def classify_gender(item: CatalogItem) -> Gender:
    title = (item.title or "").lower()
    ptype = (item.product_type or "").lower()
    tags = " ".join(item.tags).lower()
    text = f"{title} {ptype} {tags}"

    if _MALE_TAGS.search(tags) or _MALE_TEXT.search(text) or _MENS_TYPE.search(ptype):
        return Gender.MALE
    if _FEMALE_TAGS.search(tags) or _FEMALE_TEXT.search(text) or _FEMALE_TITLE.search(title):
        return Gender.FEMALE
    return Gender.UNISEX


@lru_cache(maxsize=8192)
def classify_category(item: CatalogItem) -> Category:
    title = (item.title or "").lower()
    ptype = (item.product_type or "").lower()

    for category, pattern in _TITLE_RULES:
        if pattern.search(title):
            return category
    if _TOP.search(title) or "top" in ptype:
        return Category.TOP
    if _BOTTOM.search(title) or "bottom" in ptype:
        return Category.BOTTOM
    if _DRESS.search(title) and "shirt" not in title:
        return Category.DRESS
    for category, pattern in _LATER_RULES:
        if pattern.search(title):
            return category
    return Category.OTHER


def category_key(item: CatalogItem) -> str:
    """Grouping key for the same-category exclusion.

    Unclassified titles fall back to the raw product type, so two products of
    type "candles" still exclude each other; only type-less items share the
    generic ``other`` key, which never excludes.
    """
    category = classify_category(item)
    if category is not Category.OTHER:
        return category.value
    ptype = (item.product_type or "").strip().lower()
    return f"type:{ptype}" if ptype else Category.OTHER.value


def variant_base_handle(handle: str) -> str:
    return _VARIANT_SUFFIX.sub("", (handle or "").lower())


def is_same_product(a: CatalogItem, b: CatalogItem) -> bool:
    """Color/size variants of one product share a handle up to the last dash."""
    if not a.handle or not b.handle:
        return False
    return variant_base_handle(a.handle) == variant_base_handle(b.handle)


def genders_compatible(a: CatalogItem, b: CatalogItem) -> bool:
    ga, gb = classify_gender(a), classify_gender(b)
    return not {ga, gb} == {Gender.MALE, Gender.FEMALE}


def is_admissible(source: CatalogItem, target: CatalogItem) -> bool:
    if target.product_id == source.product_id:
        return False
    if is_same_product(source, target):
        return False
    if not genders_compatible(source, target):
        return False
    key = category_key(source)
    if key != Category.OTHER.value and key == category_key(target):
        return False
    return True


def rank_candidates(candidates: Iterable[CatalogItem]) -> List[CatalogItem]:
    accessories: List[CatalogItem] = []
    others: List[CatalogItem] = []
    for item in candidates:
        (accessories if classify_category(item).is_accessory else others).append(item)
    others.sort(key=lambda item: item.price or 0.0)
    return accessories + others


def select_candidates(
    source: CatalogItem,
    pool: Sequence[CatalogItem],
    limit: int = DEFAULT_CANDIDATE_LIMIT,
) -> List[CatalogItem]:
    admissible = [item for item in pool if is_admissible(source, item)]
    return rank_candidates(admissible)[: max(0, limit)]
