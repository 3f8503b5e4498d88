"""Tests for chatdelta.config."""

from __future__ import annotations

import pytest

from chatdelta.config import ChatDeltaConfig, load_config
from chatdelta.core.providers import Provider
from chatdelta.core.resilience import BackoffKind


TOML = """
[chatdelta]
timeout = 45
max_retries = 2
retry_strategy = "linear"
retry_delay = 0.5
temperature = 0.7
max_tokens = 2048
summary_priority = ["claude", "gemini", "gpt"]
log_dir = "/tmp/chatdelta-logs"

[chatdelta.models]
gpt = "gpt-4o-mini"
"""


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "chatdelta.toml"
    path.write_text(TOML)
    return path


class TestChatDeltaConfig:
    """Defaults, parsing and validation."""

    def test_defaults(self):
        config = ChatDeltaConfig()
        client_config = config.to_client_configuration()

        assert client_config.timeout == 30.0
        assert client_config.max_retries == 0
        assert client_config.retry_strategy.kind is BackoffKind.EXPONENTIAL
        assert config.summary_providers() == [Provider.GEMINI, Provider.GPT, Provider.CLAUDE]

    def test_from_dict(self):
        config = ChatDeltaConfig.from_dict(
            {"timeout": "10", "max_retries": 3, "models": {"claude": "claude-3-opus"}}
        )
        assert config.timeout == 10.0
        assert config.max_retries == 3
        assert config.model_for(Provider.CLAUDE) == "claude-3-opus"

    def test_from_dict_ignores_bad_priority(self, caplog):
        config = ChatDeltaConfig.from_dict({"summary_priority": "gpt"})
        assert config.summary_priority == ["gemini", "gpt", "claude"]
        assert "summary_priority" in caplog.text

    def test_from_toml(self, config_file):
        config = ChatDeltaConfig.from_toml(config_file)

        client_config = config.to_client_configuration()
        assert client_config.timeout == 45.0
        assert client_config.max_attempts == 3
        assert client_config.retry_strategy.delay_for(2) == pytest.approx(1.0)
        assert client_config.temperature == 0.7
        assert client_config.max_tokens == 2048
        assert config.summary_providers()[0] is Provider.CLAUDE
        assert config.log_dir == "/tmp/chatdelta-logs"

    def test_from_toml_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ChatDeltaConfig.from_toml(tmp_path / "missing.toml")

    def test_model_for_accepts_aliases(self):
        config = ChatDeltaConfig(models={"openai": "gpt-4o"})
        assert config.model_for(Provider.GPT) == "gpt-4o"
        assert config.model_for(Provider.GEMINI) == Provider.GEMINI.profile.default_model

    @pytest.mark.parametrize(
        "overrides",
        [
            {"timeout": 0},
            {"max_retries": -1},
            {"temperature": 2.5},
            {"retry_strategy": "random"},
            {"summary_priority": ["gpt", "llama"]},
            {"models": {"llama": "7b"}},
        ],
    )
    def test_validate_rejects(self, overrides):
        config = ChatDeltaConfig(**overrides)
        with pytest.raises(ValueError):
            config.validate()

    def test_apply_overrides_skips_none_and_merges_models(self):
        config = ChatDeltaConfig(models={"gpt": "gpt-4o"})

        config.apply_overrides(
            timeout=None, max_retries=4, models={"claude": "claude-3-haiku", "gemini": None}
        )

        assert config.timeout == 30.0
        assert config.max_retries == 4
        assert config.models == {"gpt": "gpt-4o", "claude": "claude-3-haiku"}

    def test_apply_overrides_unknown_key(self):
        with pytest.raises(ValueError, match="Unknown configuration key"):
            ChatDeltaConfig().apply_overrides(colour="blue")


class TestLoadConfig:
    """Layer precedence: defaults < TOML < environment."""

    def test_env_overrides_toml(self, config_file):
        config = load_config(
            config_file,
            environ={"CHATDELTA_TIMEOUT": "12", "CHATDELTA_SUMMARY_PRIORITY": "gpt, claude"},
        )
        assert config.timeout == 12.0
        assert config.max_retries == 2
        assert config.summary_priority == ["gpt", "claude"]

    def test_empty_env_values_are_unset(self, config_file):
        config = load_config(config_file, environ={"CHATDELTA_TIMEOUT": ""})
        assert config.timeout == 45.0

    def test_invalid_env_value_warns(self, config_file, caplog):
        config = load_config(config_file, environ={"CHATDELTA_MAX_RETRIES": "many"})
        assert config.max_retries == 2
        assert "CHATDELTA_MAX_RETRIES" in caplog.text

    @pytest.mark.parametrize(
        "var, value, field, expected",
        [
            ("CHATDELTA_RETRY_STRATEGY", "bogus", "retry_strategy", "linear"),
            (
                "CHATDELTA_SUMMARY_PRIORITY",
                "gpt,foo",
                "summary_priority",
                ["claude", "gemini", "gpt"],
            ),
        ],
    )
    def test_unknown_names_in_env_are_ignored(
        self, config_file, caplog, var, value, field, expected
    ):
        config = load_config(config_file, environ={var: value})

        assert getattr(config, field) == expected
        assert var in caplog.text
        config.validate()

    def test_env_names_are_normalized(self, config_file):
        config = load_config(
            config_file,
            environ={"CHATDELTA_RETRY_STRATEGY": " Fixed ", "CHATDELTA_SUMMARY_PRIORITY": "openai"},
        )
        assert config.retry_strategy == "fixed"
        assert config.summary_providers() == [Provider.GPT]

    def test_use_env_false(self, config_file):
        config = load_config(config_file, use_env=False, environ={"CHATDELTA_TIMEOUT": "1"})
        assert config.timeout == 45.0

    def test_explicit_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.toml")

    def test_default_locations(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setattr(
            "chatdelta.config.DEFAULT_CONFIG_PATHS", (tmp_path / "chatdelta.toml",)
        )
        (tmp_path / "chatdelta.toml").write_text("[chatdelta]\nmax_tokens = 99\n")

        assert load_config(environ={}).max_tokens == 99

    def test_broken_default_file_is_skipped(self, tmp_path, monkeypatch, caplog):
        path = tmp_path / "chatdelta.toml"
        path.write_text("[chatdelta\n")
        monkeypatch.setattr("chatdelta.config.DEFAULT_CONFIG_PATHS", (path,))

        config = load_config(environ={})

        assert config.max_tokens == 1024
        assert "Failed to load config" in caplog.text
