from budget_categorizer.classifiers.base import Classifier
from budget_categorizer.domain.amounts import amount_bucket
from budget_categorizer.domain.text import extract_words, normalize_counterparty
from budget_categorizer.logger import get_logger
from budget_categorizer.models import (
    CategorizationResult,
    CategorySuggestion,
    LearningProfile,
    ScoreBreakdown,
    Transaction,
)
from budget_categorizer.storage.base import CategoryStore, LearningProfileStore

logger = get_logger(__name__)

WORD_WEIGHT = 0.5
COUNTERPARTY_WEIGHT = 0.3
AMOUNT_WEIGHT = 0.2


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _ratio(part: int, counter: dict[str, int]) -> float:
    total = sum(counter.values())
    if total <= 0:
        return 0.0
    return _clamp(part / total)


def score_profile(profile: LearningProfile, transaction: Transaction) -> ScoreBreakdown:
    words = extract_words(transaction.description)
    matched = sum(profile.word_frequency.get(word, 0) for word in words)

    counterparty = normalize_counterparty(transaction.counterparty)
    counterparty_hits = profile.counterparty_frequency.get(counterparty, 0) if counterparty else 0

    bucket_hits = profile.amount_bucket_frequency.get(amount_bucket(transaction.amount), 0)

    return ScoreBreakdown(
        word_score=_ratio(matched, profile.word_frequency),
        counterparty_score=_ratio(counterparty_hits, profile.counterparty_frequency),
        amount_score=_ratio(bucket_hits, profile.amount_bucket_frequency),
    )


def total_score(breakdown: ScoreBreakdown) -> float:
    return _clamp(
        WORD_WEIGHT * breakdown.word_score
        + COUNTERPARTY_WEIGHT * breakdown.counterparty_score
        + AMOUNT_WEIGHT * breakdown.amount_score
    )


class ScoringEngine(Classifier):
    """Frequency-profile scoring, used when no rule or trained model answers."""

    def __init__(
        self,
        profiles: LearningProfileStore,
        categories: CategoryStore,
        threshold: float = 0.5,
    ) -> None:
        self.profiles = profiles
        self.categories = categories
        self.threshold = threshold

    async def score(self, transaction: Transaction) -> list[CategorySuggestion]:
        suggestions: list[CategorySuggestion] = []
        for profile in await self.profiles.all():
            category = await self.categories.get(profile.category_id)
            if category is None:
                continue
            breakdown = score_profile(profile, transaction)
            suggestions.append(CategorySuggestion(
                category_id=category.id,
                category_name=category.name,
                score=total_score(breakdown),
                breakdown=breakdown,
            ))
        suggestions.sort(key=lambda s: (-s.score, s.category_id))
        return suggestions

    async def best_suggestion(
        self,
        transaction: Transaction,
        threshold: float,
    ) -> CategorySuggestion | None:
        ranked = await self.score(transaction)
        if not ranked:
            return None
        top = ranked[0]
        if top.score < threshold:
            logger.debug(
                "[SCORE] Best score %.3f for '%s' below threshold %.3f",
                top.score,
                top.category_name,
                threshold,
            )
            return None
        return top

    async def learn(self, transaction: Transaction, category_id: str) -> LearningProfile:
        return await self.profiles.record(category_id, transaction)

    async def classify(self, transaction: Transaction) -> CategorizationResult | None:
        suggestion = await self.best_suggestion(transaction, self.threshold)
        if suggestion is None:
            return None
        category = await self.categories.get(suggestion.category_id)
        if category is None:
            return None
        return CategorizationResult(
            category=category,
            confidence=suggestion.score,
            source="scoring",
            breakdown=suggestion.breakdown,
        )
