"""Tests for settings loading."""

import json
from pathlib import Path

import pytest

from gitboard.config import ENV_OVERRIDES, SyncSettings, expand_env_vars, load_settings
from gitboard.exceptions import ConfigError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ENV_OVERRIDES.values():
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def global_config(tmp_path):
    return tmp_path / "global.json"


@pytest.fixture
def repo(tmp_path):
    path = tmp_path / "repo"
    path.mkdir()
    return path


def write_json(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")


class TestExpandEnvVars:
    def test_set_variable(self, monkeypatch):
        monkeypatch.setenv("BOARD_HOST", "git.example.com")
        assert expand_env_vars("ssh://${BOARD_HOST}/board") == "ssh://git.example.com/board"

    def test_default_used_when_unset(self, monkeypatch):
        monkeypatch.delenv("BOARD_BRANCH", raising=False)
        assert expand_env_vars("${BOARD_BRANCH:-main}") == "main"

    def test_unset_without_default(self, monkeypatch):
        monkeypatch.delenv("BOARD_BRANCH", raising=False)
        assert expand_env_vars("x${BOARD_BRANCH}y") == "xy"


class TestSyncSettings:
    def test_defaults(self, repo):
        settings = SyncSettings(repo_path=repo)

        assert settings.document_path == repo / "todos.json"
        assert settings.max_race_retries == 3
        assert settings.backoff_base == 1.0
        assert settings.sync_on_write is False

    def test_from_dict_coerces_strings(self):
        settings = SyncSettings.from_dict(
            {"max_pull_attempts": "5", "debounce": "0.5", "sync_on_write": "yes"}
        )

        assert settings.max_pull_attempts == 5
        assert settings.debounce == 0.5
        assert settings.sync_on_write is True

    @pytest.mark.parametrize(
        "data",
        [
            {"max_pull_attempts": 0},
            {"max_race_retries": -1},
            {"backoff_base": -1},
            {"auto_sync_interval": 0},
            {"log_level": "chatty"},
            {"sync_on_write": "maybe"},
            {"max_push_attempts": "many"},
        ],
    )
    def test_invalid_values(self, data):
        with pytest.raises(ConfigError):
            SyncSettings.from_dict(data)

    def test_log_level_normalised(self):
        assert SyncSettings(log_level="debug").log_level == "DEBUG"


class TestLoadSettings:
    def test_layering(self, repo, global_config, monkeypatch):
        write_json(global_config, {"remote_name": "upstream", "debounce": 1.0, "branch": "main"})
        write_json(repo / ".gitboard" / "config.json", {"debounce": 2.0, "max_race_retries": 5})
        monkeypatch.setenv("GITBOARD_RACE_RETRIES", "7")

        settings = load_settings(repo, global_config=global_config, branch="dev")

        assert settings.repo_path == repo
        assert settings.remote_name == "upstream"
        assert settings.debounce == 2.0
        assert settings.max_race_retries == 7
        assert settings.branch == "dev"

    def test_missing_files_use_defaults(self, repo, global_config):
        settings = load_settings(repo, global_config=global_config)
        assert settings.remote_name == "origin"

    def test_repo_from_environment(self, repo, global_config, monkeypatch):
        monkeypatch.setenv("GITBOARD_REPO", str(repo))
        assert load_settings(global_config=global_config).repo_path == repo

    def test_project_config_cannot_move_repo(self, repo, global_config, tmp_path):
        write_json(repo / ".gitboard" / "config.json", {"repo_path": str(tmp_path / "elsewhere")})
        assert load_settings(repo, global_config=global_config).repo_path == repo

    def test_env_expansion_in_files(self, repo, global_config, monkeypatch):
        monkeypatch.setenv("TEAM_REMOTE", "git@example.com:team/board.git")
        write_json(global_config, {"remote_url": "${TEAM_REMOTE}"})

        settings = load_settings(repo, global_config=global_config)

        assert settings.remote_url == "git@example.com:team/board.git"

    def test_malformed_file(self, repo, global_config):
        global_config.write_text("{oops", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_settings(repo, global_config=global_config)

    def test_non_object_file(self, repo, global_config):
        write_json(global_config, {})
        global_config.write_text("[1, 2]", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_settings(repo, global_config=global_config)
