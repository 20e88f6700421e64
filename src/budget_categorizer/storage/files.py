import json
import os
import pickle

from budget_categorizer.logger import get_logger
from budget_categorizer.models import ClassifierModel, LearningProfile
from budget_categorizer.storage.memory import InMemoryModelStore, InMemoryProfileStore

logger = get_logger(__name__)


class FileProfileStore(InMemoryProfileStore):
    """Learning profiles persisted as JSON after every recorded label."""

    def __init__(self, data_path: str = "profiles.json") -> None:
        super().__init__()
        self.data_path = data_path
        self.load()

    def load(self) -> None:
        if not os.path.exists(self.data_path):
            return
        try:
            with open(self.data_path, encoding="utf-8") as f:
                raw = json.load(f)
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("[STORE] Could not read %s (%s); starting empty.", self.data_path, exc)
            self.items = {}
            return
        self.items = {
            category_id: LearningProfile.model_validate({"category_id": category_id, **payload})
            for category_id, payload in raw.items()
        }
        logger.info("[STORE] Loaded %s learning profiles from %s", len(self.items), self.data_path)

    def save(self) -> None:
        payload = {
            category_id: profile.model_dump(exclude={"category_id"})
            for category_id, profile in self.items.items()
        }
        with open(self.data_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)

    async def _persist(self) -> None:
        self.save()


class FileModelStore(InMemoryModelStore):
    """Model rows pickled to disk; survives restarts so the active model does too."""

    def __init__(self, data_path: str = "models.pkl") -> None:
        super().__init__()
        self.data_path = data_path
        self.load()

    def load(self) -> None:
        if not os.path.exists(self.data_path):
            return
        try:
            with open(self.data_path, "rb") as f:
                rows = pickle.load(f)
        except (pickle.UnpicklingError, EOFError, OSError) as exc:
            logger.warning("[STORE] Could not read %s (%s); starting empty.", self.data_path, exc)
            self.items = {}
            return
        self.items = {
            row["version"]: ClassifierModel.model_validate(row)
            for row in rows
        }
        logger.info("[STORE] Loaded %s model versions from %s", len(self.items), self.data_path)

    def save(self) -> None:
        rows = [model.model_dump() for model in self.items.values()]
        with open(self.data_path, "wb") as f:
            pickle.dump(rows, f)

    async def _persist(self) -> None:
        self.save()
