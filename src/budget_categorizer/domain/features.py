from __future__ import annotations

from dataclasses import dataclass

from budget_categorizer.domain.amounts import amount_bucket, amount_bucket_index
from budget_categorizer.domain.text import tokenize_description
from budget_categorizer.models import FeatureContribution, Transaction

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


@dataclass(frozen=True)
class TransactionFeatures:
    description_tokens: tuple[str, ...]
    counterparty: str
    amount: float
    absolute_amount: float
    amount_bucket: str
    amount_bucket_index: int
    day_of_week: int  # 0 = Monday
    month: int
    quarter: int
    is_income: bool

    @property
    def description_text(self) -> str:
        return " ".join(self.description_tokens)

    @property
    def is_weekend(self) -> bool:
        return self.day_of_week >= 5

    def numeric_row(self) -> list[float]:
        # Column order of the model input; changing it invalidates stored models.
        return [
            self.amount,
            self.absolute_amount,
            float(self.amount_bucket_index),
            float(self.day_of_week),
            float(self.month),
            float(self.quarter),
            1.0 if self.is_income else 0.0,
        ]


def extract_features(transaction: Transaction) -> TransactionFeatures:
    month = transaction.date.month
    return TransactionFeatures(
        description_tokens=tuple(tokenize_description(transaction.description)),
        counterparty=(transaction.counterparty or "").strip().lower(),
        amount=transaction.amount,
        absolute_amount=abs(transaction.amount),
        amount_bucket=amount_bucket(transaction.amount),
        amount_bucket_index=amount_bucket_index(transaction.amount),
        day_of_week=transaction.date.weekday(),
        month=month,
        quarter=(month - 1) // 3 + 1,
        is_income=transaction.amount > 0,
    )


def explain(features: TransactionFeatures, top_n: int) -> list[FeatureContribution]:
    """
    Rank the inputs that usually drive a prediction.

    This is a fixed heuristic, not derived from the fitted trees; treat the
    result as an illustration for the user, never as model introspection.
    """
    contributions: list[FeatureContribution] = []

    if features.description_tokens:
        contributions.append(FeatureContribution(
            feature_name="description_tokens",
            feature_value=", ".join(features.description_tokens[:3]),
            importance=0.9,
        ))

    if features.counterparty:
        contributions.append(FeatureContribution(
            feature_name="counterparty",
            feature_value=features.counterparty,
            importance=0.8,
        ))

    contributions.append(FeatureContribution(
        feature_name="amount_bucket",
        feature_value=features.amount_bucket,
        importance=0.6,
    ))

    if features.is_weekend:
        contributions.append(FeatureContribution(
            feature_name="day_of_week",
            feature_value=WEEKDAY_NAMES[features.day_of_week],
            importance=0.4,
        ))

    contributions.sort(key=lambda c: c.importance, reverse=True)
    return contributions[:top_n]
