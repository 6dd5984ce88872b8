"""
Recommendation Generator
Picks up to three cross-sell targets per product, asking the LLM first and
falling back to a deterministic heuristic when it is unavailable or its answer
cannot be used.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Protocol, Sequence

from services.candidate_filter import (
    CatalogItem,
    Gender,
    classify_category,
    classify_gender,
    select_candidates,
)
from services.feature_flags import feature_flags
from services.llm_utils import (
    get_async_client,
    load_settings,
    run_with_common_errors,
    should_use_llm,
)
from settings import load_pipeline_settings

logger = logging.getLogger(__name__)

MAX_PICKS = 3
DEFAULT_LLM_REASON = "Recommended pairing"
FALLBACK_REASON = "Perfect match"

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    @classmethod
    def from_response(cls, usage: Any) -> "TokenUsage":
        if usage is None:
            return cls()
        prompt = int(getattr(usage, "prompt_tokens", 0) or 0)
        completion = int(getattr(usage, "completion_tokens", 0) or 0)
        total = int(getattr(usage, "total_tokens", 0) or 0) or prompt + completion
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


@dataclass(frozen=True)
class Pick:
    target_id: str
    reason: str


@dataclass
class PickOutcome:
    picks: List[Pick] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    source: str = "fallback"


@dataclass(frozen=True)
class GeneratedEdge:
    source_id: str
    target_id: str
    reason: str


@dataclass
class GenerationResult:
    edges: List[GeneratedEdge] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    llm_calls: int = 0
    fallbacks: int = 0
    skipped: int = 0


class PickGenerator(Protocol):
    is_live: bool

    async def pick(self, source: CatalogItem, candidates: Sequence[CatalogItem]) -> PickOutcome:
        ...


def parse_picks(content: Optional[str], candidates: Sequence[CatalogItem], limit: int = MAX_PICKS) -> List[Pick]:
    """Pull ``{"recommendations": [{"productId", "reason"}]}`` out of free text.

    Unknown ids, repeats and non-object entries are dropped; anything that
    does not parse yields an empty list.
    """
    if not content:
        return []
    match = _JSON_OBJECT.search(content)
    if not match:
        return []
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return []
    if not isinstance(parsed, dict):
        return []
    entries = parsed.get("recommendations")
    if not isinstance(entries, list):
        return []

    allowed = {item.product_id for item in candidates}
    seen = set()
    picks: List[Pick] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        raw_id = entry.get("productId", entry.get("id"))
        if raw_id is None:
            continue
        target_id = str(raw_id).strip()
        if target_id in seen or target_id not in allowed:
            continue
        seen.add(target_id)
        reason = str(entry.get("reason") or "").strip() or DEFAULT_LLM_REASON
        picks.append(Pick(target_id=target_id, reason=reason))
        if len(picks) >= limit:
            break
    return picks


def summarize_item(item: CatalogItem) -> str:
    gender = classify_gender(item)
    label = {Gender.MALE: "[Men]", Gender.FEMALE: "[Women]"}.get(gender, "")
    desc = " ".join((item.description or "")[:100].split())
    return f"{label}{item.title} [{item.product_type or 'Uncategorized'}] {desc}".strip()


def build_pick_prompt(source: CatalogItem, candidates: Sequence[CatalogItem]) -> str:
    lines = [
        f"{i}. ID:{c.product_id} | {summarize_item(c)} | ${c.price:.2f}"
        for i, c in enumerate(candidates, start=1)
    ]
    return (
        "Choose 3 products a shopper would buy together with the source product.\n\n"
        f"Source product:\n{summarize_item(source)}\nPrice: ${source.price:.2f}\n\n"
        "Candidates:\n" + "\n".join(lines) + "\n\n"
        "Only use IDs from the candidate list. Keep each reason under 50 characters.\n"
        'Respond with JSON only: {"recommendations":[{"productId":"<id>","reason":"<reason>"}]}'
    )


class LiveGenerator:
    """Asks the chat completion model for picks."""

    is_live = True

    def __init__(self, client=None, model: Optional[str] = None):
        self._settings = load_settings()
        self.client = client or get_async_client()
        self.model = model or self._settings.completion_model
        self.max_tokens = self._settings.completion_max_tokens
        self.temperature = self._settings.completion_temperature

    async def pick(self, source: CatalogItem, candidates: Sequence[CatalogItem]) -> PickOutcome:
        req_id = uuid.uuid4().hex[:8]
        prompt = build_pick_prompt(source, candidates)
        started = time.time()

        async def _call():
            return await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {
                        "role": "system",
                        "content": "You recommend complementary products for an online store. Reply with JSON only.",
                    },
                    {"role": "user", "content": prompt},
                ],
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )

        response = await run_with_common_errors("recommendation picks", _call)
        duration = (time.time() - started) * 1000
        if response is None:
            logger.warning(f"[{req_id}] No LLM response for {source.product_id} after {duration:.0f}ms")
            return PickOutcome(source="llm")

        usage = TokenUsage.from_response(getattr(response, "usage", None))
        content = None
        if response.choices:
            content = response.choices[0].message.content
        picks = parse_picks(content, candidates)
        logger.info(
            f"[{req_id}] LLM picks for {source.product_id}: {len(picks)} "
            f"in {duration:.0f}ms ({usage.total_tokens} tokens)"
        )
        return PickOutcome(picks=picks, usage=usage, source="llm")


class FallbackGenerator:
    """Accessories first, otherwise the head of the ranked candidate list."""

    is_live = False

    async def pick(self, source: CatalogItem, candidates: Sequence[CatalogItem]) -> PickOutcome:
        accessories = [c for c in candidates if classify_category(c).is_accessory]
        pool = accessories or list(candidates)
        picks = [Pick(target_id=c.product_id, reason=FALLBACK_REASON) for c in pool[:MAX_PICKS]]
        return PickOutcome(picks=picks, source="fallback")


class ResilientGenerator:
    """Tries the live generator and falls back per item when it yields nothing usable."""

    def __init__(self, live: PickGenerator, fallback: PickGenerator):
        self.live = live
        self.fallback = fallback

    @property
    def is_live(self) -> bool:
        return self.live.is_live

    async def pick(self, source: CatalogItem, candidates: Sequence[CatalogItem]) -> PickOutcome:
        try:
            outcome = await self.live.pick(source, candidates)
        except Exception as exc:
            logger.error(f"Live picker failed for {source.product_id}: {exc}", exc_info=True)
            outcome = PickOutcome(source="llm")
        if outcome.picks:
            return outcome
        fallback = await self.fallback.pick(source, candidates)
        # Tokens spent on an unusable answer still count
        return PickOutcome(picks=fallback.picks, usage=outcome.usage, source="fallback")


class RecommendationGenerator:
    """Runs a picker over every product that needs recommendations in one sync run."""

    def __init__(
        self,
        picker: PickGenerator,
        fallback: Optional[PickGenerator] = None,
        *,
        call_delay_s: float = 0.0,
        candidate_limit: int = 20,
        deadline_s: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.picker = picker
        self.fallback = fallback or FallbackGenerator()
        self.call_delay_s = call_delay_s
        self.candidate_limit = candidate_limit
        self.deadline_s = deadline_s
        self._clock = clock

    @property
    def is_live(self) -> bool:
        return self.picker.is_live

    async def generate(self, targets: Sequence[CatalogItem], pool: Sequence[CatalogItem]) -> GenerationResult:
        result = GenerationResult()
        # Past this point live calls stop and the fallback finishes the run
        expires_at = self._clock() + max(0.0, self.deadline_s) if self.deadline_s else None
        calls_made = 0

        for source in targets:
            candidates = select_candidates(source, pool, limit=self.candidate_limit)
            if not candidates:
                logger.debug(f"No admissible candidates for {source.product_id}; skipping")
                result.skipped += 1
                continue

            picker = self.picker
            if picker.is_live and expires_at is not None and self._clock() >= expires_at:
                picker = self.fallback

            if picker.is_live:
                if calls_made and self.call_delay_s > 0:
                    await asyncio.sleep(self.call_delay_s)
                calls_made += 1
                result.llm_calls += 1

            outcome = await picker.pick(source, candidates)
            result.usage = result.usage + outcome.usage
            if outcome.source == "fallback":
                result.fallbacks += 1
            result.edges.extend(
                GeneratedEdge(source_id=source.product_id, target_id=p.target_id, reason=p.reason)
                for p in outcome.picks
            )

        logger.info(
            f"Generated {len(result.edges)} edges for {len(targets)} products "
            f"(llm_calls={result.llm_calls}, fallbacks={result.fallbacks}, "
            f"skipped={result.skipped}, tokens={result.usage.total_tokens})"
        )
        return result


def build_generator(shop_id: Optional[str] = None) -> RecommendationGenerator:
    """Live-then-fallback when a key is configured and the flag allows it, fallback-only otherwise."""
    settings = load_pipeline_settings()
    fallback = FallbackGenerator()
    if should_use_llm() and feature_flags.llm_generation_enabled(shop_id):
        return RecommendationGenerator(
            ResilientGenerator(LiveGenerator(), fallback),
            fallback,
            call_delay_s=settings.llm_call_delay_s,
            candidate_limit=settings.candidate_limit,
            deadline_s=settings.generation_deadline_s,
        )
    return RecommendationGenerator(fallback, fallback, candidate_limit=settings.candidate_limit)
