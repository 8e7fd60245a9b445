"""Near-duplicate detection for generated content items."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import Any, Iterable, Mapping, Sequence

import structlog

from ..config import DeduplicationConfig

_NON_WORD = re.compile(r"[^\w\s]+")
_WHITESPACE = re.compile(r"\s+")
_LIST_SEPARATORS = re.compile(r"[,;|\n]")

# Alternate payload keys accepted by ContentItem.from_mapping.
_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "description": ("description",),
    "actor_ref": ("actor_ref", "actorRef", "character"),
    "prop_ref": ("prop_ref", "propRef", "object"),
    "setting": ("setting", "environment"),
}


@dataclass(slots=True)
class ContentItem:
    description: str = ""
    actor_ref: str = ""
    prop_ref: str = ""
    setting: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in _FIELD_ALIASES:
            value = getattr(self, name)
            if value is None:
                setattr(self, name, "")
            elif not isinstance(value, str):
                setattr(self, name, str(value))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ContentItem":
        values: dict[str, str] = {}
        consumed: set[str] = set()
        for name, aliases in _FIELD_ALIASES.items():
            for alias in aliases:
                if alias in data:
                    consumed.add(alias)
                    if name not in values and data[alias] is not None:
                        values[name] = str(data[alias])
        extra = {key: value for key, value in data.items() if key not in consumed}
        return cls(extra=extra, **values)

    def to_mapping(self) -> dict[str, Any]:
        payload = dict(self.extra)
        payload.update(
            description=self.description,
            actor_ref=self.actor_ref,
            prop_ref=self.prop_ref,
            setting=self.setting,
        )
        return payload


@dataclass(slots=True)
class SimilarityPair:
    index_a: int
    index_b: int
    similarity: float
    item_a: ContentItem
    item_b: ContentItem
    reason: str = ""


@dataclass(slots=True)
class DeduplicationStats:
    total_processed: int
    unique_count: int
    duplicate_count: int
    removal_rate: float
    average_similarity: float


@dataclass(slots=True)
class DeduplicationResult:
    unique: list[ContentItem] = field(default_factory=list)
    duplicates: list[ContentItem] = field(default_factory=list)
    similarities: list[SimilarityPair] = field(default_factory=list)

    def stats(self) -> DeduplicationStats:
        total = len(self.unique) + len(self.duplicates)
        scores = [pair.similarity for pair in self.similarities]
        return DeduplicationStats(
            total_processed=total,
            unique_count=len(self.unique),
            duplicate_count=len(self.duplicates),
            removal_rate=len(self.duplicates) / total if total else 0.0,
            average_similarity=sum(scores) / len(scores) if scores else 0.0,
        )


def normalise_text(value: str | None) -> str:
    return _WHITESPACE.sub(" ", _NON_WORD.sub(" ", (value or "").lower())).strip()


def tokenize(value: str) -> set[str]:
    return {token for token in normalise_text(value).split(" ") if len(token) > 2}


class DeduplicationEngine:
    """Score content items against each other and drop near-duplicates.

    The per-field score is combined with the configured weights. Text fields
    blend token-set Jaccard with sequence closeness; list fields compare
    their token sets. Empty fields and "nobody here" sentinels count as
    identical to each other.
    """

    def __init__(
        self,
        config: DeduplicationConfig | None = None,
        *,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.config = config or DeduplicationConfig()
        self._sentinels = frozenset(normalise_text(value) for value in self.config.sentinels)
        self.logger = logger or structlog.get_logger("genguard.dedup")

    # ---- field comparators -------------------------------------------------

    def _is_blank(self, value: str) -> bool:
        text = normalise_text(value)
        return not text or text in self._sentinels

    def text_similarity(self, a: str, b: str) -> float:
        blank_a, blank_b = self._is_blank(a), self._is_blank(b)
        if blank_a and blank_b:
            return 1.0
        if blank_a or blank_b:
            return 0.0
        left, right = sorted((normalise_text(a), normalise_text(b)))
        if left == right:
            return 1.0
        tokens_a, tokens_b = tokenize(left), tokenize(right)
        union = tokens_a | tokens_b
        jaccard = len(tokens_a & tokens_b) / len(union) if union else 0.0
        ratio = SequenceMatcher(None, left, right, autojunk=False).ratio()
        return 0.5 * jaccard + 0.5 * ratio

    def _list_tokens(self, value: str) -> set[str]:
        tokens = set()
        for part in _LIST_SEPARATORS.split(value or ""):
            token = normalise_text(part)
            if token and token not in self._sentinels:
                tokens.add(token)
        return tokens

    def list_similarity(self, a: str, b: str) -> float:
        tokens_a, tokens_b = self._list_tokens(a), self._list_tokens(b)
        if not tokens_a and not tokens_b:
            return 1.0
        if not tokens_a or not tokens_b:
            return 0.0
        return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)

    # ---- public API ----------------------------------------------------------

    def similarity(self, a: ContentItem, b: ContentItem) -> float:
        cfg = self.config
        score = (
            cfg.description_weight * self.text_similarity(a.description, b.description)
            + cfg.setting_weight * self.text_similarity(a.setting, b.setting)
            + cfg.actor_weight * self.list_similarity(a.actor_ref, b.actor_ref)
            + cfg.prop_weight * self.list_similarity(a.prop_ref, b.prop_ref)
        )
        return min(1.0, round(score, 6))

    def deduplicate(
        self,
        existing: Sequence[ContentItem],
        new: Iterable[ContentItem],
        threshold: float | None = None,
    ) -> DeduplicationResult:
        """Single pass over ``new``; accepted items join the comparison pool.

        Pair indices address the combined sequence ``existing + new``.
        """

        cutoff = self.config.threshold if threshold is None else threshold
        result = DeduplicationResult()
        new_items = list(new)
        if not self.config.enabled:
            result.unique.extend(new_items)
            return result

        pool: list[tuple[int, ContentItem]] = list(enumerate(existing))
        offset = len(existing)
        for position, candidate in enumerate(new_items):
            best_score = -1.0
            best_index = -1
            best_item: ContentItem | None = None
            for index, accepted in pool:
                score = self.similarity(accepted, candidate)
                if score > best_score:
                    best_score, best_index, best_item = score, index, accepted
            if best_item is not None and best_score >= cutoff:
                origin = "existing" if best_index < offset else "new"
                result.duplicates.append(candidate)
                result.similarities.append(
                    SimilarityPair(
                        index_a=best_index,
                        index_b=offset + position,
                        similarity=best_score,
                        item_a=best_item,
                        item_b=candidate,
                        reason=f"{best_score:.0%} similar to {origin} item #{best_index}",
                    )
                )
                continue
            result.unique.append(candidate)
            pool.append((offset + position, candidate))

        if result.duplicates:
            self.logger.info(
                "dedup_removed",
                duplicates=len(result.duplicates),
                unique=len(result.unique),
                threshold=cutoff,
            )
        return result

    def find_similar_pairs(
        self, items: Sequence[ContentItem], threshold: float | None = None
    ) -> list[SimilarityPair]:
        cutoff = self.config.threshold if threshold is None else threshold
        pairs: list[SimilarityPair] = []
        for i in range(len(items)):
            for j in range(i + 1, len(items)):
                score = self.similarity(items[i], items[j])
                if score >= cutoff:
                    pairs.append(
                        SimilarityPair(i, j, score, items[i], items[j], f"{score:.0%} similar")
                    )
        pairs.sort(key=lambda pair: pair.similarity, reverse=True)
        return pairs


__all__ = [
    "ContentItem",
    "DeduplicationEngine",
    "DeduplicationResult",
    "DeduplicationStats",
    "SimilarityPair",
    "normalise_text",
    "tokenize",
]
