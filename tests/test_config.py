"""Tests for config.py — TOML loading, env overrides, validation, property access."""

import os
from pathlib import Path

import pytest

from config import Config, ConfigError, load_config

SAMPLE_TOML = """\
[github]
token = "ghp_file"
repo = "acme/app"

[webhook]
port = 9000
secret = "hook"

[poller]
interval = 15
page_size = 10

[notifications]
horizon = 120
"""


@pytest.fixture
def isolated_env(monkeypatch):
    """Private copy of os.environ with every devrelay variable removed."""
    env = {k: v for k, v in os.environ.items()
           if not k.startswith(("GITHUB_", "WEBHOOK_", "POLL_", "DEDUP_", "GIT_",
                                "AWS_", "DEVRELAY_"))}
    monkeypatch.setattr(os, "environ", env)
    return env


class TestDefaults:
    def test_empty_config_is_valid(self):
        cfg = Config({}, environ={})
        assert cfg.github_token == ""
        assert cfg.github_repo == ""
        assert cfg.github_api_url == "https://api.github.com"
        assert cfg.webhook_enabled is True
        assert cfg.webhook_port == 8080
        assert cfg.webhook_path == "/webhook"
        assert cfg.poll_interval == 30.0
        assert cfg.poll_page_size == 5
        assert cfg.dedup_horizon == 3600.0
        assert cfg.dedup_max_entries == 1000
        assert cfg.log_level == "INFO"
        assert cfg.log_file is None

    def test_polling_off_without_credentials(self):
        assert Config({"github": {"repo": "acme/app"}}, environ={}).poll_enabled is False
        assert Config({"github": {"token": "t"}}, environ={}).poll_enabled is False

    def test_polling_on_with_token_and_repo(self):
        cfg = Config({"github": {"token": "t", "repo": "acme/app"}}, environ={})
        assert cfg.poll_enabled is True

    def test_polling_explicitly_disabled(self):
        cfg = Config({"github": {"token": "t", "repo": "acme/app"},
                      "poller": {"enabled": False}}, environ={})
        assert cfg.poll_enabled is False

    def test_api_url_trailing_slash_stripped(self):
        cfg = Config({"github": {"api_url": "https://ghe.example/api/v3/"}}, environ={})
        assert cfg.github_api_url == "https://ghe.example/api/v3"

    def test_raw_access(self):
        cfg = Config({"custom": {"a": {"b": 1}}}, environ={})
        assert cfg.raw("custom", "a", "b") == 1
        assert cfg.raw("custom", "missing", default="x") == "x"


class TestEnvOverrides:
    def test_env_wins_over_toml(self):
        cfg = Config({"github": {"token": "from-file"}},
                     environ={"GITHUB_TOKEN": "from-env"})
        assert cfg.github_token == "from-env"

    def test_caller_data_left_untouched(self):
        data = {"github": {"repo": "acme/app"}, "webhook": {"port": "9000"}}
        cfg = Config(data, environ={"GITHUB_TOKEN": "x", "WEBHOOK_PORT": "7000",
                                    "GIT_WORKDIR": "/srv"})
        assert cfg.github_token == "x"
        assert cfg.webhook_port == 7000
        assert data == {"github": {"repo": "acme/app"}, "webhook": {"port": "9000"}}

    def test_numeric_env_coerced(self):
        cfg = Config({}, environ={"WEBHOOK_PORT": "9090", "POLL_INTERVAL": "2.5",
                                  "DEDUP_HORIZON": "60"})
        assert cfg.webhook_port == 9090
        assert cfg.poll_interval == 2.5
        assert cfg.dedup_horizon == 60.0

    def test_empty_env_value_ignored(self):
        cfg = Config({"github": {"repo": "acme/app"}}, environ={"GITHUB_REPO": ""})
        assert cfg.github_repo == "acme/app"

    def test_log_level_uppercased(self):
        assert Config({}, environ={"DEVRELAY_LOG_LEVEL": "debug"}).log_level == "DEBUG"

    def test_aws_region(self):
        assert Config({}, environ={"AWS_REGION": "eu-west-1"}).s3_region == "eu-west-1"


class TestValidation:
    def test_non_numeric_port(self):
        with pytest.raises(ConfigError, match="port must be a number"):
            Config({}, environ={"WEBHOOK_PORT": "eighty"})

    def test_port_out_of_range(self):
        with pytest.raises(ConfigError, match="port out of range"):
            Config({"webhook": {"port": 70000}}, environ={})

    @pytest.mark.parametrize("repo", ["acme", "acme/app/extra", "/app", "acme/"])
    def test_bad_repo(self, repo):
        with pytest.raises(ConfigError, match="owner/name"):
            Config({"github": {"repo": repo}}, environ={})

    def test_non_positive_interval(self):
        with pytest.raises(ConfigError, match="interval"):
            Config({"poller": {"interval": 0}}, environ={})

    def test_page_size_bounds(self):
        with pytest.raises(ConfigError, match="page_size"):
            Config({"poller": {"page_size": 101}}, environ={})

    def test_non_positive_horizon(self):
        with pytest.raises(ConfigError, match="horizon"):
            Config({"notifications": {"horizon": -1}}, environ={})

    @pytest.mark.parametrize("key", ["max_entries", "history_size"])
    @pytest.mark.parametrize("value", [0, -1, "ten", True, 2.5])
    def test_notification_sizes_must_be_positive_integers(self, key, value):
        with pytest.raises(ConfigError, match=f"{key} must be a positive integer"):
            Config({"notifications": {key: value}}, environ={})

    def test_notification_sizes_accept_one(self):
        cfg = Config({"notifications": {"max_entries": 1, "history_size": 1}}, environ={})
        assert cfg.dedup_max_entries == 1
        assert cfg.history_size == 1

    def test_bad_log_level(self):
        with pytest.raises(ConfigError, match="level"):
            Config({"logging": {"level": "chatty"}}, environ={})

    def test_all_errors_reported_together(self):
        with pytest.raises(ConfigError) as exc:
            Config({"github": {"repo": "bad"}, "poller": {"interval": -5}}, environ={})
        msg = str(exc.value)
        assert "owner/name" in msg
        assert "interval" in msg


class TestLoadConfig:
    def test_load_valid(self, tmp_path, isolated_env):
        p = tmp_path / "devrelay.toml"
        p.write_text(SAMPLE_TOML)
        cfg = load_config(p)
        assert cfg.github_repo == "acme/app"
        assert cfg.webhook_port == 9000
        assert cfg.poll_interval == 15.0
        assert cfg.poll_page_size == 10
        assert cfg.dedup_horizon == 120.0
        assert cfg.webhook_secret == "hook"

    def test_without_file_uses_environment(self, isolated_env):
        isolated_env["GITHUB_REPO"] = "acme/env"
        cfg = load_config()
        assert cfg.github_repo == "acme/env"

    def test_load_missing_file(self, tmp_path, isolated_env):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.toml")

    def test_load_invalid_toml(self, tmp_path, isolated_env):
        p = tmp_path / "devrelay.toml"
        p.write_text("[github\nrepo = ")
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(p)

    def test_load_with_overrides(self, tmp_path, isolated_env):
        p = tmp_path / "devrelay.toml"
        p.write_text(SAMPLE_TOML)
        cfg = load_config(p, overrides={"webhook.enabled": False, "poller.enabled": False})
        assert cfg.webhook_enabled is False
        assert cfg.poll_enabled is False

    def test_dotenv_loaded_beside_toml(self, tmp_path, isolated_env):
        p = tmp_path / "devrelay.toml"
        p.write_text("[github]\nrepo = \"acme/app\"\n")
        (tmp_path / ".env").write_text('# secrets\nGITHUB_TOKEN="ghp_dotenv"\n')
        cfg = load_config(p)
        assert cfg.github_token == "ghp_dotenv"
        assert cfg.poll_enabled is True

    def test_dotenv_does_not_override_environment(self, tmp_path, isolated_env):
        isolated_env["GITHUB_TOKEN"] = "ghp_real"
        p = tmp_path / "devrelay.toml"
        p.write_text("")
        (tmp_path / ".env").write_text("GITHUB_TOKEN=ghp_dotenv\n")
        assert load_config(p).github_token == "ghp_real"

    def test_log_file_resolved(self, tmp_path, isolated_env):
        p = tmp_path / "devrelay.toml"
        p.write_text(f'[logging]\nfile = "{tmp_path}/devrelay.log"\n')
        cfg = load_config(p)
        assert cfg.log_file == Path(tmp_path / "devrelay.log").resolve()
