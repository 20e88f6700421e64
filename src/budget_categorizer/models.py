from datetime import datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field


def new_id() -> str:
    return uuid4().hex


class CategoryKind(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


class MatchType(str, Enum):
    CONTAINS = "contains"
    COUNTERPARTY = "counterparty"
    REGEX = "regex"


class AuditAction(str, Enum):
    ASSIGN = "Assign"
    SPLIT = "Split"
    UNDO = "Undo"
    AUTO_APPLY = "AutoApply"


class Split(BaseModel):
    id: str = Field(default_factory=new_id)
    category_id: str
    amount: float  # always positive; the sign lives on the transaction
    note: str | None = None


class Transaction(BaseModel):
    id: str = Field(default_factory=new_id)
    account_id: str
    date: datetime
    amount: float
    description: str = ""
    counterparty: str | None = None
    splits: list[Split] = Field(default_factory=list)
    version: int = 0
    archived: bool = False

    @property
    def is_assigned(self) -> bool:
        return bool(self.splits)


class Category(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    kind: CategoryKind = CategoryKind.EXPENSE
    budget_plan_id: str | None = None
    account_id: str | None = None
    year: int | None = None


class LearningProfile(BaseModel):
    category_id: str
    word_frequency: dict[str, int] = Field(default_factory=dict)
    counterparty_frequency: dict[str, int] = Field(default_factory=dict)
    amount_bucket_frequency: dict[str, int] = Field(default_factory=dict)


class Rule(BaseModel):
    id: int
    match_type: MatchType
    pattern: str
    target_category_id: str
    priority: int = 0
    active: bool = True


class LabeledExample(BaseModel):
    id: str = Field(default_factory=new_id)
    transaction_id: str
    category_id: str
    was_auto_applied: bool = False
    accepted_suggestion: bool | None = None
    suggestion_confidence: float | None = None
    model_version: int | None = None
    created_at: datetime


class ModelMetrics(BaseModel):
    macro_accuracy: float
    micro_accuracy: float
    log_loss: float
    f1_score: float
    sample_size: int
    category_count: int


class ClassifierModel(BaseModel):
    id: str = Field(default_factory=new_id)
    payload: bytes
    version: int
    trained_at: datetime
    metrics: ModelMetrics
    archived: bool = False


class AuditEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    transaction_id: str
    action: AuditAction
    actor: str
    timestamp: datetime
    before_state: str | None = None
    after_state: str | None = None
    reason: str | None = None
    auto_applied: bool = False
    confidence: float | None = None
    model_version: int | None = None
    archived: bool = False


class ScoreBreakdown(BaseModel):
    word_score: float = 0.0
    counterparty_score: float = 0.0
    amount_score: float = 0.0


class CategorySuggestion(BaseModel):
    category_id: str
    category_name: str
    score: float
    breakdown: ScoreBreakdown


class FeatureContribution(BaseModel):
    feature_name: str
    feature_value: str
    importance: float


class CategoryPrediction(BaseModel):
    category_id: str
    category_name: str
    confidence: float
    top_features: list[FeatureContribution] = Field(default_factory=list)
    model_version: int


class CategorizationResult(BaseModel):
    category: Category
    confidence: float  # 0.0 to 1.0
    source: str  # "rule", "model", "scoring"
    model_version: int | None = None
    rule_id: int | None = None
    breakdown: ScoreBreakdown | None = None
    explanation: list[FeatureContribution] = Field(default_factory=list)


class TrainingResult(BaseModel):
    version: int
    trained_at: datetime
    metrics: ModelMetrics
    approved: bool
    message: str


class ActiveModelInfo(BaseModel):
    version: int
    trained_at: datetime
    metrics: ModelMetrics


class AutoApplyStats(BaseModel):
    window_days: int
    total_auto_applied: int
    total_undone: int
    undo_rate: float
    average_confidence: float
    above_threshold: bool
    alert_threshold: float
    last_run_at: datetime | None = None


class AutoApplyHistoryItem(BaseModel):
    transaction_id: str
    description: str
    amount: float
    category_id: str | None
    category_name: str | None
    confidence: float | None
    model_version: int | None
    auto_applied_at: datetime
    status: str  # "Accepted" or "Undone"
    can_undo: bool


class SweepResult(BaseModel):
    processed: int = 0
    applied: int = 0
    skipped: dict[str, int] = Field(default_factory=dict)
    failed: int = 0
    average_confidence: float = 0.0


class UndoResult(BaseModel):
    transaction_id: str
    undone_entry_id: str
    model_version: int | None
    confidence: float | None
    message: str


class AutoApplySettings(BaseModel):
    enabled: bool = False
    minimum_confidence: float = Field(default=0.85, ge=0.0, le=1.0)
    account_ids: list[str] = Field(default_factory=list)
    excluded_category_ids: list[str] = Field(default_factory=list)
    interval_minutes: int = Field(default=15, gt=0, le=1440)


class TrainingStats(BaseModel):
    window_days: int
    total_examples: int
    examples_per_category: dict[str, int] = Field(default_factory=dict)
    categories_below_minimum: list[str] = Field(default_factory=list)
    minimum_per_category: int
    acceptance_rate: float | None = None


class AssignmentOutcome(BaseModel):
    transaction_id: str
    success: bool
    error: str | None = None
