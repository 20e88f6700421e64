from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from budget_categorizer.models import ModelMetrics, Transaction, new_id


class TransactionCreate(BaseModel):
    """Imported transaction; assignments only happen through assign, split or auto-apply."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=new_id)
    account_id: str
    date: datetime
    amount: float
    description: str = ""
    counterparty: str | None = None

    def to_transaction(self) -> Transaction:
        return Transaction(**self.model_dump())


class FeedbackRequest(BaseModel):
    accepted: bool
    final_category_id: str
    suggestion_confidence: float | None = None
    model_version: int | None = None
    was_auto_applied: bool = False


class TrainRequest(BaseModel):
    window_days: int | None = None


class ModelSummary(BaseModel):
    version: int
    trained_at: str
    metrics: ModelMetrics
    archived: bool
    active: bool


class AssignRequest(BaseModel):
    category_id: str
    note: str | None = None
    expected_version: int | None = None


class SplitItem(BaseModel):
    category_id: str
    amount: float
    note: str | None = None


class SplitRequest(BaseModel):
    splits: list[SplitItem] = Field(default_factory=list)
    expected_version: int | None = None


class BulkAssignRequest(BaseModel):
    transaction_ids: list[str]
    category_id: str


class CanUndoResponse(BaseModel):
    transaction_id: str
    can_undo: bool


class AlertResponse(BaseModel):
    window_days: int
    above_threshold: bool
