import os
from dataclasses import dataclass
from typing import Any, Literal

from budget_categorizer.core import settings
from budget_categorizer.logger import get_logger
from budget_categorizer.models import AutoApplySettings

ValueType = Literal["string", "int", "float", "bool", "list"]

logger = get_logger(__name__)


@dataclass(frozen=True)
class ConfigField:
    key: str
    description: str
    category: str
    value_type: ValueType = "string"
    options: tuple[str, ...] | None = None
    min_value: float | int | None = None
    max_value: float | int | None = None
    restart_required: bool = False


CONFIG_FIELDS: tuple[ConfigField, ...] = (
    ConfigField(
        key="AUTO_APPLY_ENABLED",
        description="Run the auto-apply sweep on a schedule.",
        category="Automation",
        value_type="bool",
    ),
    ConfigField(
        key="CONFIDENCE_THRESHOLD",
        description="Minimum confidence (0-1) for an automatic assignment.",
        category="Automation",
        value_type="float",
        min_value=0.0,
        max_value=1.0,
    ),
    ConfigField(
        key="AUTO_APPLY_ACCOUNT_IDS",
        description="Comma-separated account ids eligible for auto-apply. Empty means all.",
        category="Automation",
        value_type="list",
    ),
    ConfigField(
        key="AUTO_APPLY_EXCLUDED_CATEGORY_IDS",
        description="Comma-separated category ids never auto-applied.",
        category="Automation",
        value_type="list",
    ),
    ConfigField(
        key="AUTO_APPLY_INTERVAL_MINUTES",
        description="Minutes between scheduled sweeps.",
        category="Automation",
        value_type="int",
        min_value=1,
        max_value=1440,
    ),
    ConfigField(
        key="MIN_F1_SCORE_FOR_APPROVAL",
        description="F1 score a newly trained model needs to become active.",
        category="Machine learning",
        value_type="float",
        min_value=0.0,
        max_value=1.0,
        restart_required=True,
    ),
    ConfigField(
        key="TRAINING_WINDOW_DAYS",
        description="Default number of days of labeled examples used for training.",
        category="Machine learning",
        value_type="int",
        min_value=settings.MIN_WINDOW_DAYS,
        max_value=settings.MAX_WINDOW_DAYS,
        restart_required=True,
    ),
    ConfigField(
        key="DATA_DIR",
        description="Directory for learning profiles and stored models.",
        category="Storage",
        restart_required=True,
    ),
    ConfigField(
        key="LOG_LEVEL",
        description="Logging verbosity for the application.",
        category="Storage",
        options=("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"),
        restart_required=True,
    ),
)

CONFIG_TEMPLATE = """# Budget Categorizer configuration
# These settings only take effect when the same environment variable is not set.
# Remove the leading "#" to enable a setting here.

# Run the auto-apply sweep on a schedule (true/false)
# AUTO_APPLY_ENABLED:

# Minimum confidence for automatic assignment (0-1)
# CONFIDENCE_THRESHOLD:

# Accounts eligible for auto-apply (comma-separated, empty means all)
# AUTO_APPLY_ACCOUNT_IDS:

# Categories never auto-applied (comma-separated)
# AUTO_APPLY_EXCLUDED_CATEGORY_IDS:

# Minutes between scheduled sweeps
# AUTO_APPLY_INTERVAL_MINUTES:

# F1 score a trained model needs to become active (0-1)
# MIN_F1_SCORE_FOR_APPROVAL:

# Default training window in days
# TRAINING_WINDOW_DAYS:

# Data directory (profiles.json, models.pkl)
# DATA_DIR:

# Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
# LOG_LEVEL:
"""

_FIELDS_BY_KEY = {field.key: field for field in CONFIG_FIELDS}


def get_config_keys() -> tuple[str, ...]:
    return tuple(field.key for field in CONFIG_FIELDS)


def get_config_path() -> str | None:
    config_path = settings.get_config_path()
    if config_path:
        return config_path
    return os.path.join(os.getcwd(), "config", settings.CONFIG_FILENAME)


def _validate_value(field: ConfigField, raw_value: str) -> tuple[str, str | None]:
    value = raw_value.strip()
    if not value:
        return "", None

    if "\n" in value or "\r" in value:
        return value, "Value must be a single line."

    if field.options:
        normalized = value.upper()
        if normalized not in field.options:
            return value, f"Must be one of: {', '.join(field.options)}."
        return normalized, None

    if field.value_type == "bool":
        lowered = value.lower()
        if lowered in ("1", "true", "yes", "on"):
            return "true", None
        if lowered in ("0", "false", "no", "off"):
            return "false", None
        return value, "Must be true or false."

    if field.value_type == "list":
        return ",".join(settings.parse_list(value)), None

    if field.value_type == "int":
        try:
            parsed = int(value)
        except ValueError:
            return value, "Must be a whole number."
        if field.min_value is not None and parsed < field.min_value:
            return value, f"Must be at least {field.min_value}."
        if field.max_value is not None and parsed > field.max_value:
            return value, f"Must be at most {field.max_value}."
        return str(parsed), None

    if field.value_type == "float":
        try:
            parsed = float(value)
        except ValueError:
            return value, "Must be a number."
        if field.min_value is not None and parsed < field.min_value:
            return value, f"Must be at least {field.min_value}."
        if field.max_value is not None and parsed > field.max_value:
            return value, f"Must be at most {field.max_value}."
        return str(parsed), None

    return value, None


def apply_config_updates(values: dict[str, str]) -> tuple[dict[str, str], dict[str, str]]:
    """Validate and persist editable keys; returns (errors, applied updates)."""
    errors: dict[str, str] = {}
    updates: dict[str, str] = {}

    for field in CONFIG_FIELDS:
        if settings.is_env_override(field.key):
            continue

        raw_value = values.get(field.key)
        if raw_value is None:
            continue

        cleaned, error = _validate_value(field, raw_value)
        if error:
            errors[field.key] = error
            continue
        updates[field.key] = cleaned

    if errors:
        return errors, {}

    _write_config_file(updates)
    _apply_runtime_overrides(updates)
    return {}, updates


def auto_apply_settings_values(new_settings: AutoApplySettings) -> dict[str, str]:
    return {
        "AUTO_APPLY_ENABLED": "true" if new_settings.enabled else "false",
        "CONFIDENCE_THRESHOLD": str(new_settings.minimum_confidence),
        "AUTO_APPLY_ACCOUNT_IDS": ",".join(new_settings.account_ids),
        "AUTO_APPLY_EXCLUDED_CATEGORY_IDS": ",".join(new_settings.excluded_category_ids),
        "AUTO_APPLY_INTERVAL_MINUTES": str(new_settings.interval_minutes),
    }


def save_auto_apply_settings(new_settings: AutoApplySettings) -> dict[str, str]:
    errors, updates = apply_config_updates(auto_apply_settings_values(new_settings))
    if errors:
        # Values already passed pydantic validation; anything left here is a bug.
        raise ValueError(f"Invalid auto-apply settings: {errors}")
    skipped = [
        key for key in auto_apply_settings_values(new_settings)
        if settings.is_env_override(key)
    ]
    if skipped:
        logger.info("[CONFIG] Not persisting %s: set via environment.", ", ".join(skipped))
    return updates


def _write_config_file(updates: dict[str, str]) -> None:
    if not updates:
        return
    config_path = get_config_path()
    if not config_path:
        raise RuntimeError("No configuration path available.")

    config_dir = os.path.dirname(config_path)
    if config_dir:
        os.makedirs(config_dir, exist_ok=True)
    lines: list[str]
    if os.path.exists(config_path):
        with open(config_path, encoding="utf-8") as handle:
            lines = handle.read().splitlines()
    else:
        lines = [str(line) for line in CONFIG_TEMPLATE.splitlines()]

    key_indexes: dict[str, int] = {}
    for index, line in enumerate(lines):
        stripped = line.strip()
        if not stripped or ":" not in stripped:
            continue
        candidate = stripped
        if candidate.startswith("#"):
            candidate = candidate[1:].lstrip()
        key = candidate.split(":", 1)[0].strip()
        if key in updates and key not in key_indexes:
            key_indexes[key] = index

    for key, value in updates.items():
        formatted = _format_yaml_value(value)
        new_line = f"{key}: {formatted}" if value else f"# {key}:"
        if key in key_indexes:
            lines[key_indexes[key]] = new_line
        else:
            lines.append(new_line)

    with open(config_path, "w", encoding="utf-8") as handle:
        handle.write("\n".join(lines).rstrip("\n") + "\n")
    logger.info("[CONFIG] Wrote %s to %s", ", ".join(sorted(updates)), config_path)


def _apply_runtime_overrides(updates: dict[str, str]) -> None:
    for key, value in updates.items():
        if settings.is_env_override(key):
            continue
        if value:
            os.environ[key] = value
        else:
            os.environ.pop(key, None)


def apply_runtime_updates(app: Any, updates: dict[str, str]) -> None:
    if not updates:
        return
    state = getattr(app, "state", None)
    if state is None:
        return

    restart = [key for key in updates if _FIELDS_BY_KEY[key].restart_required]
    if restart:
        logger.info("[CONFIG] Restart required for: %s", ", ".join(restart))

    if "AUTO_APPLY_ENABLED" in updates:
        _refresh_scheduler(getattr(state, "scheduler", None), getattr(state, "orchestrator", None))


def _refresh_scheduler(scheduler: Any, orchestrator: Any) -> None:
    from budget_categorizer.services.automation import AutoApplyScheduler, AutomationOrchestrator

    if not isinstance(scheduler, AutoApplyScheduler) or not isinstance(
        orchestrator, AutomationOrchestrator
    ):
        return
    if orchestrator.current.enabled and not scheduler.running:
        scheduler.start()
        logger.info("[CONFIG] Auto-apply scheduler enabled.")


def _format_yaml_value(value: str) -> str:
    if not value:
        return ""
    needs_quotes = value[:1].isspace() or value[-1:].isspace()
    for marker in (":", "#", '"', "'"):
        if marker in value:
            needs_quotes = True
            break
    if not needs_quotes:
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f"\"{escaped}\""
