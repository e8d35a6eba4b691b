"""Tests for config.py — TOML loading, validation, env overrides, defaults."""

import pytest

from config import Config, ConfigError, load_config

MINIMAL_TOML = """\
[assistant]
name = "Jarvis"

[provider]
name = "ollama"
model = "llama3.1"
ollama_url = "http://gpu-box:11434"

[channels]
always_trigger = ["telegram", "whatsapp"]

[channels.telegram]
allow_from = [111, 222]
"""

_ENV_VARS = ("CLAWD_ANTHROPIC_KEY", "CLAWD_OPENWEBUI_KEY", "CLAWD_HTTP_TOKEN",
             "CLAWD_TELEGRAM_TOKEN", "CLAWD_WHATSAPP_TOKEN", "CLAWD_WHATSAPP_VERIFY_TOKEN")


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    # setenv first so monkeypatch also undoes values written by .env loading
    for var in _ENV_VARS:
        monkeypatch.setenv(var, "")
        monkeypatch.delenv(var)


@pytest.fixture
def toml_file(tmp_path):
    path = tmp_path / "clawd.toml"
    path.write_text(MINIMAL_TOML)
    return path


class TestLoad:
    def test_loads_file(self, toml_file):
        cfg = load_config(toml_file)
        assert cfg.assistant_name == "Jarvis"
        assert cfg.provider == "ollama"
        assert cfg.model == "llama3.1"
        assert cfg.provider_urls["ollama"] == "http://gpu-box:11434"
        assert cfg.always_trigger_channels == ["telegram", "whatsapp"]
        assert cfg.telegram_allow_from == [111, 222]

    def test_no_file_uses_defaults(self):
        cfg = load_config(None)
        assert cfg.assistant_name == "Andy"
        assert cfg.provider == "anthropic"
        assert cfg.primary_group == "local:main"
        assert cfg.always_trigger_channels == ["telegram"]
        assert cfg.max_tokens == 4096
        assert cfg.output_truncation == 100_000
        assert cfg.http_enabled is False

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.toml")

    def test_invalid_toml(self, tmp_path):
        path = tmp_path / "bad.toml"
        path.write_text("[assistant\nname=")
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(path)

    def test_overrides(self, toml_file):
        cfg = load_config(toml_file, overrides={"channels.local.interactive": False})
        assert cfg.local_interactive is False
        assert cfg.local_enabled is True


class TestSecrets:
    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("CLAWD_ANTHROPIC_KEY", "sk-env")
        cfg = Config({"api_keys": {"anthropic": "sk-file"}})
        assert cfg.credentials["anthropic_api_key"] == "sk-env"

    def test_dotenv_beside_config(self, toml_file, monkeypatch):
        (toml_file.parent / ".env").write_text('# secrets\nCLAWD_TELEGRAM_TOKEN="123:abc"\n')
        cfg = load_config(toml_file)
        assert cfg.telegram_token == "123:abc"

    def test_environment_beats_dotenv(self, toml_file, monkeypatch):
        (toml_file.parent / ".env").write_text("CLAWD_TELEGRAM_TOKEN=from-file\n")
        monkeypatch.setenv("CLAWD_TELEGRAM_TOKEN", "from-env")
        assert load_config(toml_file).telegram_token == "from-env"


class TestValidation:
    def test_unknown_provider(self):
        with pytest.raises(ConfigError, match="provider"):
            Config({"provider": {"name": "gemini"}})

    def test_non_positive_max_tokens(self):
        with pytest.raises(ConfigError, match="max_tokens"):
            Config({"provider": {"max_tokens": 0}})

    def test_blank_assistant_name(self):
        with pytest.raises(ConfigError, match="name"):
            Config({"assistant": {"name": "  "}})

    def test_http_requires_token(self):
        with pytest.raises(ConfigError, match="auth token"):
            Config({"http": {"enabled": True}})

    def test_http_with_token(self, monkeypatch):
        monkeypatch.setenv("CLAWD_HTTP_TOKEN", "secret")
        cfg = Config({"http": {"enabled": True}})
        assert cfg.http_auth_token == "secret"

    def test_allow_from_must_be_ids(self):
        with pytest.raises(ConfigError, match="allow_from"):
            Config({"channels": {"telegram": {"allow_from": ["alice"]}}})

    @pytest.mark.parametrize("value", [0, -5, 121, 600, "60"])
    def test_bash_max_timeout_bounds(self, value):
        with pytest.raises(ConfigError, match="bash_max_timeout"):
            Config({"tools": {"bash_max_timeout": value}})

    def test_bash_max_timeout_at_ceiling(self):
        assert Config({"tools": {"bash_max_timeout": 120}}).bash_max_timeout == 120

    def test_all_errors_reported_together(self):
        with pytest.raises(ConfigError) as exc:
            Config({"provider": {"name": "gemini", "max_tokens": -1}})
        assert "max_tokens" in str(exc.value)
        assert "one of" in str(exc.value)


class TestPaths:
    def test_paths_expand_home(self, monkeypatch, tmp_path):
        monkeypatch.setenv("HOME", str(tmp_path))
        cfg = Config({"paths": {"state_dir": "~/state"}})
        assert cfg.state_dir == (tmp_path / "state").resolve()

    def test_anthropic_url_only_when_set(self):
        assert "anthropic" not in Config({}).provider_urls
        cfg = Config({"provider": {"anthropic_url": "https://proxy.local"}})
        assert cfg.provider_urls["anthropic"] == "https://proxy.local"
