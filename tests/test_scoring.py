import pytest
from conftest import add_category, make_transaction

from budget_categorizer.classifiers.scoring import ScoringEngine, score_profile, total_score
from budget_categorizer.models import LearningProfile


def _groceries_profile() -> LearningProfile:
    return LearningProfile(
        category_id="groceries",
        word_frequency={"albert": 10, "heijn": 10, "supermarket": 20},
        counterparty_frequency={"NL01RABO0123456789": 10},
        amount_bucket_frequency={"50-100": 15},
    )


@pytest.fixture
async def engine(storage) -> ScoringEngine:
    await add_category(storage, "groceries", "Groceries")
    await add_category(storage, "fuel", "Fuel")
    storage.profiles.items["groceries"] = _groceries_profile()
    storage.profiles.items["fuel"] = LearningProfile(
        category_id="fuel",
        word_frequency={"shell": 5, "station": 5},
        amount_bucket_frequency={"25-50": 5},
    )
    return ScoringEngine(storage.profiles, storage.categories)


@pytest.mark.anyio
async def test_best_suggestion_for_known_grocery_store(engine: ScoringEngine) -> None:
    tx = make_transaction(
        "Albert Heijn supermarket purchase",
        amount=-75,
        counterparty="NL01RABO0123456789",
    )
    suggestion = await engine.best_suggestion(tx, 0.5)
    assert suggestion is not None
    assert suggestion.category_name == "Groceries"
    assert suggestion.breakdown.word_score == pytest.approx(1.0)
    assert suggestion.breakdown.counterparty_score == pytest.approx(1.0)
    assert suggestion.breakdown.amount_score == pytest.approx(1.0)


@pytest.mark.anyio
async def test_scores_are_ranked_and_bounded(engine: ScoringEngine) -> None:
    ranked = await engine.score(make_transaction("Shell station albert", amount=-30))
    assert [s.category_id for s in ranked] == ["fuel", "groceries"]
    assert all(0.0 <= s.score <= 1.0 for s in ranked)
    assert ranked[0].score >= ranked[1].score


@pytest.mark.anyio
async def test_ties_are_broken_by_category_id(storage) -> None:
    for category_id in ("b-cat", "a-cat"):
        await add_category(storage, category_id)
        storage.profiles.items[category_id] = LearningProfile(
            category_id=category_id,
            word_frequency={"coffee": 1},
        )
    engine = ScoringEngine(storage.profiles, storage.categories)
    ranked = await engine.score(make_transaction("coffee"))
    assert [s.category_id for s in ranked] == ["a-cat", "b-cat"]


@pytest.mark.anyio
async def test_threshold_is_inclusive(engine: ScoringEngine) -> None:
    tx = make_transaction("Albert Heijn supermarket", amount=-5)
    top = (await engine.score(tx))[0]

    assert await engine.best_suggestion(tx, top.score) is not None
    assert await engine.best_suggestion(tx, top.score + 0.0001) is None


@pytest.mark.anyio
async def test_no_profiles_means_no_suggestion(storage) -> None:
    engine = ScoringEngine(storage.profiles, storage.categories)
    assert await engine.best_suggestion(make_transaction(), 0.0) is None


def test_empty_profile_scores_zero() -> None:
    breakdown = score_profile(LearningProfile(category_id="empty"), make_transaction())
    assert total_score(breakdown) == 0.0


@pytest.mark.anyio
async def test_learning_only_grows_counters(storage) -> None:
    await add_category(storage, "fuel")
    engine = ScoringEngine(storage.profiles, storage.categories)
    tx = make_transaction("Shell gas station", counterparty="NL99 SHEL 01", amount=-42.5)

    await engine.learn(tx, "fuel")
    profile = await engine.learn(tx, "fuel")

    assert profile.word_frequency == {"shell": 2, "gas": 2, "station": 2}
    assert profile.counterparty_frequency == {"NL99SHEL01": 2}
    assert profile.amount_bucket_frequency == {"25-50": 2}
