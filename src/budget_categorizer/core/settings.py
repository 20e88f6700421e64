import os
from dataclasses import dataclass, field

from dotenv import find_dotenv, load_dotenv

from budget_categorizer.logger import get_logger

logger = get_logger(__name__)


CONFIG_FILENAME = "config.yaml"

_CONFIG_FILE_PATH: str | None = None
_CONFIG_FILE_VALUES: dict[str, str] = {}
_EXTERNAL_ENV_KEYS: set[str] = set()

_CONFIG_KEYS = (
    "LOG_LEVEL",
    "LOG_DIR",
    "DATA_DIR",
    "SCORING_THRESHOLD",
    "MIN_LABELED_EXAMPLES_PER_CATEGORY",
    "TRAINING_WINDOW_DAYS",
    "TOP_FEATURES_COUNT",
    "MIN_F1_SCORE_FOR_APPROVAL",
    "NUMBER_OF_TREES",
    "NUMBER_OF_LEAVES",
    "MIN_EXAMPLES_PER_LEAF",
    "LEARNING_RATE",
    "AUTO_APPLY_ENABLED",
    "CONFIDENCE_THRESHOLD",
    "AUTO_APPLY_ACCOUNT_IDS",
    "AUTO_APPLY_EXCLUDED_CATEGORY_IDS",
    "AUTO_APPLY_INTERVAL_MINUTES",
    "AUTO_APPLY_BATCH_SIZE",
    "AUTO_APPLY_MAX_RETRIES",
    "AUTO_APPLY_RETRY_BASE_SECONDS",
    "UNDO_RETENTION_DAYS",
    "UNDO_RATE_ALERT_THRESHOLD",
    "RETRAINING_ENABLED",
    "RETRAINING_INTERVAL_HOURS",
)


def _resolve_dotenv_path() -> str | None:
    config_dir = os.getenv("CONFIG_DIR")
    if config_dir:
        candidate = os.path.join(config_dir, ".env")
        if os.path.exists(candidate):
            return candidate
    resolved = find_dotenv(usecwd=True)
    return resolved or None


def _resolve_config_path() -> str:
    config_dir = os.getenv("CONFIG_DIR")
    if config_dir:
        return os.path.join(config_dir, CONFIG_FILENAME)
    cwd = os.getcwd()
    candidate = os.path.join(cwd, "config", CONFIG_FILENAME)
    if os.path.exists(candidate):
        return candidate
    return os.path.join(cwd, CONFIG_FILENAME)


def _strip_inline_comment(raw_value: str) -> str:
    in_single = False
    in_double = False
    escaped = False
    for index, char in enumerate(raw_value):
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if char == '"' and not in_single:
            in_double = not in_double
            continue
        if char == "'" and not in_double:
            in_single = not in_single
            continue
        if char == "#" and not in_single and not in_double:
            return raw_value[:index].rstrip()
    return raw_value


def _unquote_value(raw_value: str) -> str:
    if len(raw_value) < 2:
        return raw_value
    if raw_value[0] == raw_value[-1] == '"':
        return raw_value[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    if raw_value[0] == raw_value[-1] == "'":
        return raw_value[1:-1].replace("\\'", "'").replace("\\\\", "\\")
    return raw_value


def read_config_file(path: str | None) -> dict[str, str]:
    """Read flat ``KEY: value`` pairs; anything nested or commented is ignored."""
    if not path or not os.path.exists(path):
        return {}

    values: dict[str, str] = {}
    with open(path, encoding="utf-8") as handle:
        for line in handle:
            stripped = line.strip()
            if not stripped or stripped.startswith("#") or ":" not in stripped:
                continue
            key, raw_value = stripped.split(":", 1)
            key = key.strip()
            if not key:
                continue
            cleaned = _strip_inline_comment(raw_value).strip()
            if not cleaned:
                continue
            value = _unquote_value(cleaned)
            if value:
                values[key] = value
    return values


def load_environment() -> None:
    global _CONFIG_FILE_PATH
    global _CONFIG_FILE_VALUES
    global _EXTERNAL_ENV_KEYS

    dotenv_path = _resolve_dotenv_path()
    if dotenv_path:
        load_dotenv(dotenv_path=dotenv_path, override=False)

    _EXTERNAL_ENV_KEYS = set(os.environ.keys())

    _CONFIG_FILE_PATH = _resolve_config_path()
    _CONFIG_FILE_VALUES = read_config_file(_CONFIG_FILE_PATH)

    for key in _CONFIG_KEYS:
        if key not in os.environ and key in _CONFIG_FILE_VALUES:
            os.environ[key] = _CONFIG_FILE_VALUES[key]


def get_config_path() -> str | None:
    return _CONFIG_FILE_PATH


def is_env_override(name: str) -> bool:
    return name in _EXTERNAL_ENV_KEYS


def ensure_dirs(*paths: str | None) -> None:
    for path in paths:
        if path and path not in {".", "./"}:
            os.makedirs(path, exist_ok=True)


def get_env_int(name: str, default: int, min_value: int | None = None) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("[ENV] Invalid %s='%s', using default %s.", name, raw, default)
        return default
    if min_value is not None and value < min_value:
        logger.warning(
            "[ENV] %s='%s' below minimum %s, using default %s.",
            name,
            raw,
            min_value,
            default,
        )
        return default
    return value


def get_env_float(name: str, default: float = 0.0) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("[ENV] Invalid %s='%s', using default %s.", name, raw, default)
        return default


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def parse_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    items: list[str] = []
    seen = set()
    for part in raw.split(","):
        item = part.strip()
        if item and item not in seen:
            items.append(item)
            seen.add(item)
    return items


def get_env_list(name: str) -> list[str]:
    return parse_list(os.getenv(name))


@dataclass(frozen=True)
class MLOptions:
    min_labeled_examples_per_category: int = 10
    training_window_days: int = 90
    top_features_count: int = 3
    min_f1_score_for_approval: float = 0.85
    number_of_trees: int = 100
    number_of_leaves: int = 20
    min_examples_per_leaf: int = 10
    learning_rate: float = 0.2
    scoring_threshold: float = 0.5
    random_seed: int = 42


@dataclass(frozen=True)
class AutomationOptions:
    enabled: bool = False
    confidence_threshold: float = 0.85
    account_ids: tuple[str, ...] = field(default_factory=tuple)
    excluded_category_ids: tuple[str, ...] = field(default_factory=tuple)
    interval_minutes: int = 15
    batch_size: int = 100
    max_retries: int = 5
    retry_base_seconds: float = 1.0
    undo_retention_days: int = 30
    undo_rate_alert_threshold: float = 0.20
    retraining_enabled: bool = False
    retraining_interval_hours: int = 168


def load_ml_options() -> MLOptions:
    defaults = MLOptions()
    return MLOptions(
        min_labeled_examples_per_category=get_env_int(
            "MIN_LABELED_EXAMPLES_PER_CATEGORY",
            defaults.min_labeled_examples_per_category,
            min_value=1,
        ),
        training_window_days=get_env_int(
            "TRAINING_WINDOW_DAYS", defaults.training_window_days, min_value=1
        ),
        top_features_count=get_env_int(
            "TOP_FEATURES_COUNT", defaults.top_features_count, min_value=1
        ),
        min_f1_score_for_approval=get_env_float(
            "MIN_F1_SCORE_FOR_APPROVAL", defaults.min_f1_score_for_approval
        ),
        number_of_trees=get_env_int("NUMBER_OF_TREES", defaults.number_of_trees, min_value=1),
        number_of_leaves=get_env_int("NUMBER_OF_LEAVES", defaults.number_of_leaves, min_value=2),
        min_examples_per_leaf=get_env_int(
            "MIN_EXAMPLES_PER_LEAF", defaults.min_examples_per_leaf, min_value=1
        ),
        learning_rate=get_env_float("LEARNING_RATE", defaults.learning_rate),
        scoring_threshold=get_env_float("SCORING_THRESHOLD", defaults.scoring_threshold),
    )


def load_automation_options() -> AutomationOptions:
    defaults = AutomationOptions()
    return AutomationOptions(
        enabled=get_env_bool("AUTO_APPLY_ENABLED", defaults.enabled),
        confidence_threshold=get_env_float("CONFIDENCE_THRESHOLD", defaults.confidence_threshold),
        account_ids=tuple(get_env_list("AUTO_APPLY_ACCOUNT_IDS")),
        excluded_category_ids=tuple(get_env_list("AUTO_APPLY_EXCLUDED_CATEGORY_IDS")),
        interval_minutes=get_env_int(
            "AUTO_APPLY_INTERVAL_MINUTES", defaults.interval_minutes, min_value=1
        ),
        batch_size=get_env_int("AUTO_APPLY_BATCH_SIZE", defaults.batch_size, min_value=1),
        max_retries=get_env_int("AUTO_APPLY_MAX_RETRIES", defaults.max_retries, min_value=0),
        retry_base_seconds=get_env_float(
            "AUTO_APPLY_RETRY_BASE_SECONDS", defaults.retry_base_seconds
        ),
        undo_retention_days=get_env_int(
            "UNDO_RETENTION_DAYS", defaults.undo_retention_days, min_value=1
        ),
        undo_rate_alert_threshold=get_env_float(
            "UNDO_RATE_ALERT_THRESHOLD", defaults.undo_rate_alert_threshold
        ),
        retraining_enabled=get_env_bool("RETRAINING_ENABLED", defaults.retraining_enabled),
        retraining_interval_hours=get_env_int(
            "RETRAINING_INTERVAL_HOURS", defaults.retraining_interval_hours, min_value=1
        ),
    )


_SENSITIVE_ENV_KEYS = (
    "KEY",
    "TOKEN",
    "SECRET",
    "PASSWORD",
    "PASS",
    "AUTH",
    "PRIVATE",
)


def _mask_env_value(name: str, value: str) -> str:
    sanitized = value.replace("\r", "\\r").replace("\n", "\\n")
    if not any(marker in name.upper() for marker in _SENSITIVE_ENV_KEYS):
        return sanitized
    if len(sanitized) <= 4:
        return "****"
    return f"{sanitized[:2]}...{sanitized[-2:]}"


def log_environment() -> None:
    logger.info("[ENV] Logging configured environment variables (masked where needed).")
    for key in _CONFIG_KEYS:
        raw_value = os.getenv(key)
        value = "<unset>" if raw_value is None else _mask_env_value(key, raw_value)
        logger.info("[ENV] %s=%s", key, value)


load_environment()

DATA_DIR = os.getenv("DATA_DIR", ".")
LOG_DIR = os.getenv("LOG_DIR")
CONFIG_DIR = os.getenv("CONFIG_DIR")

ensure_dirs(DATA_DIR, LOG_DIR, CONFIG_DIR)

# Bounds accepted for monitoring and training windows at the HTTP boundary.
MIN_WINDOW_DAYS = 1
MAX_WINDOW_DAYS = 365
