import math
from collections.abc import Iterable

ROUNDING_TOLERANCE = 0.01

# (exclusive upper bound, label); the last bucket is open-ended.
AMOUNT_BUCKETS: tuple[tuple[float, str], ...] = (
    (10.0, "0-10"),
    (25.0, "10-25"),
    (50.0, "25-50"),
    (100.0, "50-100"),
    (250.0, "100-250"),
    (1000.0, "250-1000"),
    (math.inf, "1000+"),
)

AMOUNT_BUCKET_LABELS: tuple[str, ...] = tuple(label for _, label in AMOUNT_BUCKETS)


def amount_bucket(amount: float) -> str:
    absolute = abs(amount)
    for upper, label in AMOUNT_BUCKETS:
        if absolute < upper:
            return label
    return AMOUNT_BUCKET_LABELS[-1]


def amount_bucket_index(amount: float) -> int:
    return AMOUNT_BUCKET_LABELS.index(amount_bucket(amount))


def split_total(amounts: Iterable[float]) -> float:
    return math.fsum(amounts)


def splits_balance(amounts: Iterable[float], transaction_amount: float) -> bool:
    # Small epsilon so 0.01 exactly is accepted despite binary float noise.
    difference = abs(split_total(amounts) - abs(transaction_amount))
    return difference <= ROUNDING_TOLERANCE + 1e-9
