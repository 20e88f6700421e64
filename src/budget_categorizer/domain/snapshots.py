import json
from typing import Any

from budget_categorizer.models import Split, Transaction


def build_splits_payload(splits: list[Split]) -> list[dict[str, Any]]:
    return [
        {
            "id": split.id,
            "category_id": split.category_id,
            "amount": split.amount,
            "note": split.note,
        }
        for split in splits
    ]


def build_state_snapshot(transaction: Transaction) -> str:
    """
    Serialize the assignment state of a transaction for the audit log.

    Snapshots are opaque to the rest of the system; they exist for people
    reviewing an undo, not for replay.
    """
    return json.dumps({
        "transaction_id": transaction.id,
        "version": transaction.version,
        "splits": build_splits_payload(transaction.splits),
    })
