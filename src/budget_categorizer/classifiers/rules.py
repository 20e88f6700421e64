import re

from budget_categorizer.classifiers.base import Classifier
from budget_categorizer.domain.text import normalize_counterparty
from budget_categorizer.logger import get_logger
from budget_categorizer.models import CategorizationResult, MatchType, Rule, Transaction
from budget_categorizer.storage.base import CategoryStore, RuleStore

logger = get_logger(__name__)


def rule_matches(rule: Rule, transaction: Transaction) -> bool:
    description = transaction.description or ""

    if rule.match_type == MatchType.CONTAINS:
        pattern = rule.pattern.strip()
        return bool(pattern) and pattern.lower() in description.lower()

    if rule.match_type == MatchType.COUNTERPARTY:
        counterparty = normalize_counterparty(transaction.counterparty)
        return bool(counterparty) and counterparty == normalize_counterparty(rule.pattern)

    if rule.match_type == MatchType.REGEX:
        try:
            return re.search(rule.pattern, description, re.IGNORECASE) is not None
        except re.error as exc:
            logger.warning("[RULES] Rule %s has an invalid pattern %r: %s", rule.id, rule.pattern, exc)
            return False

    return False


def select_rule(rules: list[Rule], transaction: Transaction) -> Rule | None:
    """Highest priority matching rule; equal priorities fall back to the lowest id."""
    best: Rule | None = None
    for rule in rules:
        if not rule.active or not rule_matches(rule, transaction):
            continue
        if best is None or (-rule.priority, rule.id) < (-best.priority, best.id):
            best = rule
    return best


class RuleMatcher(Classifier):
    def __init__(self, rules: RuleStore, categories: CategoryStore) -> None:
        self.rules = rules
        self.categories = categories

    async def match(self, transaction: Transaction) -> Rule | None:
        # One read per evaluation; the list is not re-queried mid-pass.
        snapshot = list(await self.rules.all_active())
        rule = select_rule(snapshot, transaction)
        if rule:
            logger.debug(
                "[RULES] Rule %s (%s, priority %s) matched transaction %s",
                rule.id,
                rule.match_type.value,
                rule.priority,
                transaction.id,
            )
        return rule

    async def evaluate(self, transaction: Transaction) -> str | None:
        rule = await self.match(transaction)
        return rule.target_category_id if rule else None

    async def classify(self, transaction: Transaction) -> CategorizationResult | None:
        rule = await self.match(transaction)
        if rule is None:
            return None
        category = await self.categories.get(rule.target_category_id)
        if category is None:
            logger.warning(
                "[RULES] Rule %s targets unknown category %s; ignoring.",
                rule.id,
                rule.target_category_id,
            )
            return None
        return CategorizationResult(
            category=category,
            confidence=1.0,
            source="rule",
            rule_id=rule.id,
        )
