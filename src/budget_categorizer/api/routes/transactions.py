from typing import Annotated

from fastapi import APIRouter, Depends

from budget_categorizer.api.dependencies import get_assignment, get_storage
from budget_categorizer.api.schemas import (
    AssignRequest,
    BulkAssignRequest,
    SplitRequest,
    TransactionCreate,
)
from budget_categorizer.errors import NotFoundError
from budget_categorizer.models import (
    AssignmentOutcome,
    AuditEntry,
    Category,
    Rule,
    Split,
    Transaction,
)
from budget_categorizer.services.assignment import AssignmentService
from budget_categorizer.storage.base import Storage

router = APIRouter(prefix="/api")


@router.post("/transactions", response_model=Transaction, status_code=201)
async def add_transaction(
    req: TransactionCreate,
    storage: Annotated[Storage, Depends(get_storage)],
) -> Transaction:
    return await storage.transactions.add(req.to_transaction())


@router.get("/transactions/{transaction_id}", response_model=Transaction)
async def get_transaction(
    transaction_id: str,
    storage: Annotated[Storage, Depends(get_storage)],
) -> Transaction:
    transaction = await storage.transactions.get(transaction_id)
    if transaction is None:
        raise NotFoundError(f"Transaction {transaction_id} not found", transaction_id=transaction_id)
    return transaction


@router.post("/transactions/bulk-assign", response_model=list[AssignmentOutcome])
async def bulk_assign(
    req: BulkAssignRequest,
    assignment: Annotated[AssignmentService, Depends(get_assignment)],
) -> list[AssignmentOutcome]:
    return await assignment.bulk_assign(req.transaction_ids, req.category_id)


@router.post("/transactions/{transaction_id}/assign", response_model=Transaction)
async def assign(
    transaction_id: str,
    req: AssignRequest,
    assignment: Annotated[AssignmentService, Depends(get_assignment)],
) -> Transaction:
    return await assignment.assign(
        transaction_id,
        req.category_id,
        note=req.note,
        expected_version=req.expected_version,
    )


@router.post("/transactions/{transaction_id}/split", response_model=Transaction)
async def split(
    transaction_id: str,
    req: SplitRequest,
    assignment: Annotated[AssignmentService, Depends(get_assignment)],
) -> Transaction:
    splits = [
        Split(category_id=item.category_id, amount=item.amount, note=item.note)
        for item in req.splits
    ]
    return await assignment.split(transaction_id, splits, expected_version=req.expected_version)


@router.get("/transactions/{transaction_id}/history", response_model=list[AuditEntry])
async def history(
    transaction_id: str,
    assignment: Annotated[AssignmentService, Depends(get_assignment)],
) -> list[AuditEntry]:
    return await assignment.history(transaction_id)


@router.post("/categories", response_model=Category, status_code=201)
async def add_category(
    category: Category,
    storage: Annotated[Storage, Depends(get_storage)],
) -> Category:
    return await storage.categories.add(category)


@router.get("/categories", response_model=list[Category])
async def list_categories(
    storage: Annotated[Storage, Depends(get_storage)],
) -> list[Category]:
    return await storage.categories.all()


@router.post("/rules", response_model=Rule, status_code=201)
async def add_rule(
    rule: Rule,
    storage: Annotated[Storage, Depends(get_storage)],
) -> Rule:
    return await storage.rules.add(rule)
