"""YAML configuration loader for MiniMoney.

Loads the seed config files from the config/ directory:
  settings.yaml, categories.yaml
"""

from pathlib import Path

import yaml

DEFAULT_DB_PATH = "finance.db"
DEFAULT_SCHEDULER_INTERVAL = 3600


class Config:
    """Loads and provides access to all YAML configuration files."""

    def __init__(self, config_dir: Path | str = "config"):
        self.config_dir = Path(config_dir)
        if not self.config_dir.is_dir():
            raise FileNotFoundError(f"Config directory not found: {self.config_dir}")

        self._settings: dict | None = None
        self._categories: dict | None = None

    def _load(self, filename: str) -> dict | list:
        path = self.config_dir / filename
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            raise ValueError(f"Empty config file: {path}")
        return data

    @property
    def settings(self) -> dict:
        if self._settings is None:
            self._settings = self._load("settings.yaml")
        return self._settings

    @property
    def categories(self) -> dict[str, list[dict]]:
        """Predefined categories keyed by transaction type ("income"/"expense")."""
        if self._categories is None:
            data = self._load("categories.yaml")
            self._categories = data.get("categories", data)
        return self._categories

    @property
    def database_path(self) -> str:
        return self.settings.get("database", {}).get("path", DEFAULT_DB_PATH)

    @property
    def scheduler_interval(self) -> float:
        """Seconds between auto billing passes. Default: one hour."""
        value = self.settings.get("scheduler", {}).get(
            "interval_seconds", DEFAULT_SCHEDULER_INTERVAL,
        )
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise ValueError(
                f"scheduler.interval_seconds must be a positive number, got {value!r}"
            )
        return value

    @property
    def scheduler_run_on_start(self) -> bool:
        return bool(self.settings.get("scheduler", {}).get("run_on_start", True))

    def category_keys(self, txn_type: str) -> list[str]:
        return [c["key"] for c in self.categories.get(txn_type, []) if c.get("key")]

    def is_known_category(self, txn_type: str, key: str) -> bool:
        return key in self.category_keys(txn_type)

    def category_icon(self, txn_type: str, key: str) -> str:
        for cat in self.categories.get(txn_type, []):
            if cat.get("key") == key:
                return cat.get("icon", "")
        return ""
