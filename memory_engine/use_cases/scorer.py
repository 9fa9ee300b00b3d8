"""
Importance, decay and relevance scoring for memories.

Everything here is pure: no I/O, no clock reads unless `now` is omitted.
Thresholds live in ScoringPolicy / PrunePolicy so deployments can tune them.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from memory_engine.domain.memory_models import (
    MemoryCategory,
    MemoryHit,
    MemoryMetadata,
    ScoredMemory,
    clamp01,
)
from memory_engine.domain.models import utcnow

_SECONDS_PER_DAY = 86400.0


def _default_category_weights() -> Dict[str, float]:
    return {
        MemoryCategory.USER_INFO.value: 0.95,
        MemoryCategory.PREFERENCES.value: 0.85,
        MemoryCategory.CONTEXT.value: 0.75,
        MemoryCategory.RELATIONSHIPS.value: 0.70,
        MemoryCategory.SKILLS.value: 0.65,
        MemoryCategory.HISTORY.value: 0.60,
        MemoryCategory.FACTS.value: 0.70,
        MemoryCategory.OTHER.value: 0.50,
    }


HIGH_VALUE_PHRASES: Tuple[str, ...] = (
    "my name is",
    "i am",
    "i'm",
    "i work",
    "i prefer",
    "i like",
    "i dislike",
    "i hate",
    "never",
    "always",
    "important",
    "remember",
    "don't forget",
)

_PRONOUN_RE = re.compile(r"\b(?:my|i|me|mine)\b")


@dataclass(frozen=True)
class ScoringPolicy:
    category_weights: Dict[str, float] = field(default_factory=_default_category_weights)
    default_weight: float = 0.5
    high_value_phrases: Tuple[str, ...] = HIGH_VALUE_PHRASES
    keyword_bonus: float = 0.1
    pronoun_bonus: float = 0.05
    pronoun_min_count: int = 2
    long_content_words: int = 15
    long_content_bonus: float = 0.05
    short_content_words: int = 5
    short_content_penalty: float = 0.1
    short_content_floor: float = 0.1

    explicit_bonus: float = 0.2
    user_requested_bonus: float = 0.15
    rich_context_chars: int = 20
    rich_context_bonus: float = 0.05

    decay_days: float = 90.0
    decay_floor: float = 0.5
    access_boost_cap: float = 0.2

    similarity_weight: float = 0.7
    importance_weight: float = 0.3


@dataclass(frozen=True)
class PrunePolicy:
    protect_importance_above: float = 0.8
    protect_access_above: int = 10
    low_importance_below: float = 0.4
    low_importance_min_age_days: float = 90.0
    medium_importance_below: float = 0.6
    medium_importance_idle_days: float = 180.0


DEFAULT_POLICY = ScoringPolicy()
DEFAULT_PRUNE_POLICY = PrunePolicy()


def _category_key(category: object) -> str:
    if isinstance(category, MemoryCategory):
        return category.value
    return str(category or "").strip().lower()


def base_importance(content: str, category: object, policy: ScoringPolicy = DEFAULT_POLICY) -> float:
    if not content or not content.strip():
        return 0.0

    score = policy.category_weights.get(_category_key(category), policy.default_weight)
    lowered = content.lower()

    if any(p in lowered for p in policy.high_value_phrases):
        score = min(score + policy.keyword_bonus, 1.0)

    if len(_PRONOUN_RE.findall(lowered)) >= policy.pronoun_min_count:
        score = min(score + policy.pronoun_bonus, 1.0)

    words = len(content.split())
    if words > policy.long_content_words:
        score = min(score + policy.long_content_bonus, 1.0)
    elif words < policy.short_content_words:
        score = max(score - policy.short_content_penalty, policy.short_content_floor)

    return clamp01(score)


def final_importance(
    base: float,
    metadata: Optional[MemoryMetadata],
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> float:
    """Adds tag/context bonuses to an already computed base score. Always in [0, 1]."""
    score = clamp01(base)
    if metadata is None:
        return score

    tags = set(metadata.tags or [])
    if "explicit" in tags:
        score += policy.explicit_bonus
    if "user-requested" in tags:
        score += policy.user_requested_bonus
    if metadata.context and len(metadata.context) > policy.rich_context_chars:
        score += policy.rich_context_bonus

    return clamp01(score)


def importance_score(
    content: str,
    category: object,
    metadata: Optional[MemoryMetadata] = None,
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> float:
    return final_importance(base_importance(content, category, policy), metadata, policy)


def days_between(earlier: datetime, later: datetime) -> float:
    return max(0.0, (later - earlier).total_seconds() / _SECONDS_PER_DAY)


def temporal_decay(
    last_accessed_at: Optional[datetime],
    created_at: datetime,
    now: Optional[datetime] = None,
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> float:
    # exp(-days/90), never below the floor
    ref = last_accessed_at or created_at
    days = days_between(ref, now or utcnow())
    return max(policy.decay_floor, math.exp(-(days / policy.decay_days)))


def access_boost(access_count: int, policy: ScoringPolicy = DEFAULT_POLICY) -> float:
    return min(policy.access_boost_cap, math.log10(max(0, access_count) + 1) / 10.0)


def dynamic_importance(
    base: float,
    access_count: int,
    last_accessed_at: Optional[datetime],
    created_at: datetime,
    now: Optional[datetime] = None,
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> float:
    decay = temporal_decay(last_accessed_at, created_at, now, policy)
    return clamp01(base * decay + access_boost(access_count, policy))


def relevance(
    similarity: float,
    importance: float,
    sim_weight: float = DEFAULT_POLICY.similarity_weight,
    imp_weight: float = DEFAULT_POLICY.importance_weight,
) -> float:
    return similarity * sim_weight + importance * imp_weight


def rank_by_relevance(
    hits: Iterable[MemoryHit],
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> List[ScoredMemory]:
    scored = [
        ScoredMemory(
            memory=h.memory,
            similarity=h.similarity,
            relevance=relevance(h.similarity, h.memory.importance, policy.similarity_weight, policy.importance_weight),
        )
        for h in hits
    ]
    # sorted() is stable: equal scores keep the store's similarity order
    return sorted(scored, key=lambda s: s.relevance, reverse=True)


def should_prune(
    importance: float,
    access_count: int,
    age_days: float,
    days_since_access: float,
    policy: PrunePolicy = DEFAULT_PRUNE_POLICY,
) -> bool:
    if importance > policy.protect_importance_above:
        return False
    if access_count > policy.protect_access_above:
        return False
    if (
        importance < policy.low_importance_below
        and access_count == 0
        and age_days > policy.low_importance_min_age_days
    ):
        return True
    if importance < policy.medium_importance_below and days_since_access >= policy.medium_importance_idle_days:
        return True
    return False


def prune_order_key(importance: float, created_at: datetime) -> Tuple[float, float]:
    """Sort key for keep-ranking: importance first, then recency."""
    return (importance, created_at.timestamp())
