"""Tests for project configuration, paths and access control."""

from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path

import pytest

from harvester import paths
from harvester.access import Actor, actor_from_env, require_permission
from harvester.config import DEFAULT_USER_AGENT, ProjectConfig
from harvester.errors import AuthorizationError, ValidationError
from harvester.knowledge.pipeline.config import (
    PipelineConfig,
    get_schedule_interval,
)


class TestPaths:
    def test_data_root_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv(paths.DATA_ROOT_ENV, raising=False)
        assert paths.get_data_root() == Path("data")

    def test_config_file_follows_data_root(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv(paths.DATA_ROOT_ENV, str(tmp_path))
        monkeypatch.delenv(paths.CONFIG_FILE_ENV, raising=False)
        assert paths.get_config_file() == tmp_path / "config.json"

    def test_config_file_override(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv(paths.CONFIG_FILE_ENV, str(tmp_path / "custom.json"))
        assert paths.get_config_file() == tmp_path / "custom.json"


class TestProjectConfig:
    """Tests for ProjectConfig loading and defaults."""

    def test_defaults_without_file(self, tmp_path: Path) -> None:
        config = ProjectConfig(tmp_path / "missing.json")

        assert config.user_agent == DEFAULT_USER_AGENT
        assert config.page_timeout_seconds == 30.0
        assert config.robots_timeout_seconds == 5.0
        assert config.worker_count == 4
        assert config.ocr_confidence_threshold == 0.6
        assert config.duplicate_threshold == 0.8
        assert config.review_threshold == 0.5
        assert config.require_manual_review is True

    def test_loads_json_file(self, tmp_path: Path) -> None:
        config_path = tmp_path / "config.json"
        config_path.write_text(json.dumps({"worker_count": 8, "user_agent": "Bot/2"}), encoding="utf-8")

        config = ProjectConfig(config_path)

        assert config.worker_count == 8
        assert config.user_agent == "Bot/2"

    def test_unreadable_file_is_empty_config(self, tmp_path: Path) -> None:
        config_path = tmp_path / "config.json"
        config_path.write_text("{not json", encoding="utf-8")

        assert ProjectConfig(config_path).max_fetch_retries == 3

    def test_non_numeric_value_uses_default(self) -> None:
        assert ProjectConfig(data={"page_timeout_seconds": "soon"}).page_timeout_seconds == 30.0

    def test_sample_size_is_capped(self) -> None:
        assert ProjectConfig(data={"similarity_sample_size": 5000}).similarity_sample_size == 500


class TestPipelineConfig:
    def test_from_project_config(self) -> None:
        project = ProjectConfig(data={"robots_ttl_hours": 12, "worker_count": 2, "max_page_failures": 3})

        config = PipelineConfig.from_project_config(project)

        assert config.politeness.robots_ttl == timedelta(hours=12)
        assert config.politeness.robots_failure_ttl == timedelta(hours=1)
        assert config.worker_count == 2
        assert config.max_page_failures == 3

    def test_overrides_ignore_none(self) -> None:
        config = PipelineConfig.from_project_config(ProjectConfig(data={}), worker_count=None, max_pages_per_job=5)

        assert config.worker_count == 4
        assert config.max_pages_per_job == 5

    def test_validation(self) -> None:
        with pytest.raises(ValueError):
            PipelineConfig(worker_count=0)
        with pytest.raises(ValueError):
            PipelineConfig(max_page_failures=-1)

    def test_schedule_intervals(self) -> None:
        assert get_schedule_interval("hourly") == timedelta(hours=1)
        assert get_schedule_interval("weekly") == timedelta(days=7)
        with pytest.raises(KeyError):
            get_schedule_interval("fortnightly")


class TestAccess:
    """Tests for role-based permission checks."""

    def test_admin_can_do_everything(self) -> None:
        actor = Actor("root", "ADMIN")

        assert require_permission(actor, "configure_settings") is actor

    def test_operator_cannot_manage_sources(self) -> None:
        with pytest.raises(AuthorizationError) as exc_info:
            require_permission(Actor("op", "OPERATOR"), "manage_source")

        assert exc_info.value.to_dict()["code"] == "FORBIDDEN"

    def test_quality_manager_can_reject(self) -> None:
        assert Actor("qm", "QUALITY_MANAGER").can("reject_items")
        assert not Actor("op", "OPERATOR").can("reject_items")

    def test_missing_actor(self) -> None:
        with pytest.raises(AuthorizationError):
            require_permission(None, "view_dashboard")

    def test_unknown_permission_is_a_programming_error(self) -> None:
        with pytest.raises(ValueError):
            require_permission(Actor("root", "ADMIN"), "launch_rockets")

    def test_actor_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HARVESTER_ACTOR", "kim")
        monkeypatch.setenv("HARVESTER_ROLE", "data_manager")

        actor = actor_from_env()

        assert actor == Actor("kim", "DATA_MANAGER")

    def test_explicit_values_win(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HARVESTER_ROLE", "OPERATOR")

        assert actor_from_env("lee", "ADMIN").role == "ADMIN"

    def test_unknown_role(self) -> None:
        with pytest.raises(ValidationError):
            actor_from_env("x", "JANITOR")
