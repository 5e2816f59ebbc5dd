"""Project configuration management."""

from __future__ import annotations

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Any

from harvester import paths

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "ProblemHarvester/1.0 (Educational Research)"


class ProjectConfig:
    """Access to project configuration values."""

    def __init__(self, config_path: Path | None = None, data: dict[str, Any] | None = None) -> None:
        self._config_path = config_path
        self._data: dict[str, Any] = dict(data) if data is not None else {}
        self._loaded = data is not None

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return

        config_path = self._config_path or paths.get_config_file()
        if config_path.exists():
            try:
                with open(config_path, "r", encoding="utf-8") as f:
                    self._data = json.load(f)
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Ignoring unreadable config %s: %s", config_path, exc)
                self._data = {}

        self._loaded = True

    def _number(self, key: str, default: float) -> float:
        value = self.get(key, default)
        try:
            return float(value)
        except (TypeError, ValueError):
            logger.warning("Config %s=%r is not numeric, using %s", key, value, default)
            return default

    @property
    def user_agent(self) -> str:
        """Agent string used for HTTP requests and robots group matching."""
        return self.get("user_agent", DEFAULT_USER_AGENT)

    @property
    def page_timeout_seconds(self) -> float:
        return self._number("page_timeout_seconds", 30.0)

    @property
    def robots_timeout_seconds(self) -> float:
        return self._number("robots_timeout_seconds", 5.0)

    @property
    def robots_ttl_hours(self) -> float:
        return self._number("robots_ttl_hours", 24.0)

    @property
    def robots_failure_ttl_minutes(self) -> float:
        return self._number("robots_failure_ttl_minutes", 60.0)

    @property
    def max_fetch_retries(self) -> int:
        return int(self._number("max_fetch_retries", 3))

    @property
    def worker_count(self) -> int:
        """Thread pool size bounding concurrent crawl jobs."""
        return max(1, int(self._number("worker_count", 4)))

    @property
    def max_pages_per_job(self) -> int:
        return int(self._number("max_pages_per_job", 200))

    @property
    def max_page_failures(self) -> int:
        return int(self._number("max_page_failures", 0))

    @property
    def ocr_confidence_threshold(self) -> float:
        return self._number("ocr_confidence_threshold", 0.6)

    @property
    def duplicate_threshold(self) -> float:
        return self._number("duplicate_threshold", 0.8)

    @property
    def review_threshold(self) -> float:
        return self._number("review_threshold", 0.5)

    @property
    def similarity_sample_size(self) -> int:
        return min(500, int(self._number("similarity_sample_size", 500)))

    @property
    def timezone(self) -> str | None:
        """IANA zone (e.g. ``Asia/Seoul``) whose wall clock anchors night runs."""
        return self.get("timezone")

    @property
    def require_manual_review(self) -> bool:
        """If False, AI approval is terminal unless a problem is flagged for MANUAL."""
        return bool(self.get("require_manual_review", True))

    def get(self, key: str, default: Any = None) -> Any:
        """Get a raw configuration value."""
        self._ensure_loaded()
        return self._data.get(key, default)


@lru_cache(maxsize=1)
def get_config() -> ProjectConfig:
    """Get the singleton configuration instance."""
    return ProjectConfig()
