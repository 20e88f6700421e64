import pytest
from conftest import add_category, make_transaction

from budget_categorizer.errors import NotFoundError, ValidationError
from budget_categorizer.manager import CategorizerService
from budget_categorizer.models import LearningProfile, MatchType, Rule
from budget_categorizer.services.suggestions import SuggestionService


@pytest.fixture
def service(storage, ml_options) -> CategorizerService:
    return CategorizerService(storage, ml_options)


@pytest.fixture
def suggestions(storage, service, clock) -> SuggestionService:
    return SuggestionService(storage, service, clock)


@pytest.mark.anyio
async def test_rules_take_priority_over_scoring(storage, service) -> None:
    await add_category(storage, "fuel")
    await add_category(storage, "groceries")
    storage.profiles.items["groceries"] = LearningProfile(
        category_id="groceries",
        word_frequency={"shell": 10},
    )
    await storage.rules.add(Rule(
        id=1, match_type=MatchType.CONTAINS, pattern="shell", target_category_id="fuel",
    ))

    result = await service.categorize(make_transaction("Shell gas station"))
    assert result.source == "rule"
    assert result.category.id == "fuel"


@pytest.mark.anyio
async def test_scoring_is_the_fallback(storage, service) -> None:
    await add_category(storage, "groceries")
    storage.profiles.items["groceries"] = LearningProfile(
        category_id="groceries",
        word_frequency={"bakery": 10},
        amount_bucket_frequency={"0-10": 1},
    )

    result = await service.categorize(make_transaction("Local bakery", amount=-4))
    assert result.source == "scoring"
    assert result.breakdown is not None
    assert result.confidence == pytest.approx(0.7)


@pytest.mark.anyio
async def test_nothing_matches(service) -> None:
    assert await service.categorize(make_transaction("Mystery")) is None


@pytest.mark.anyio
async def test_suggest_unknown_transaction(suggestions) -> None:
    with pytest.raises(NotFoundError):
        await suggestions.suggest_category("missing")


@pytest.mark.anyio
async def test_feedback_records_example_and_learns(storage, suggestions) -> None:
    await add_category(storage, "fuel")
    tx = await storage.transactions.add(make_transaction("Shell gas station"))

    example = await suggestions.record_feedback(tx.id, True, "fuel", suggestion_confidence=0.8, model_version=2)

    assert example.category_id == "fuel"
    assert example.accepted_suggestion
    assert (await storage.examples.latest_by_transaction(tx.id)).id == example.id
    assert (await storage.profiles.get("fuel")).word_frequency["shell"] == 1

    result = await suggestions.suggest_category(tx.id)
    assert result is not None
    assert result.category.id == "fuel"


@pytest.mark.anyio
async def test_feedback_validation(storage, suggestions) -> None:
    await add_category(storage, "fuel")
    tx = await storage.transactions.add(make_transaction())

    with pytest.raises(ValidationError):
        await suggestions.record_feedback(tx.id, True, "fuel", suggestion_confidence=1.5)
    with pytest.raises(NotFoundError):
        await suggestions.record_feedback(tx.id, True, "missing")
    with pytest.raises(NotFoundError):
        await suggestions.record_feedback("missing", True, "fuel")
    assert storage.examples.items == []
