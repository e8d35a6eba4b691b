"""Configuration loader for the Clawd daemon.

Loads clawd.toml, applies environment variable overrides for secrets,
validates fields, and provides typed access to all settings. File values
are startup defaults; provider/model/key/name changes made at runtime are
persisted by the orchestrator in the store and win over these.
"""

import logging
import os
import tomllib
from pathlib import Path
from typing import Any

from providers import PROVIDERS

log = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""


# Upper bound for [tools] bash_max_timeout, in seconds
BASH_TIMEOUT_CEILING = 120


# Environment variable overrides for secrets
_ENV_OVERRIDES = {
    "CLAWD_ANTHROPIC_KEY": ("api_keys", "anthropic"),
    "CLAWD_OPENWEBUI_KEY": ("api_keys", "openwebui"),
    "CLAWD_HTTP_TOKEN": ("api_keys", "http_token"),
    "CLAWD_TELEGRAM_TOKEN": ("api_keys", "telegram"),
    "CLAWD_WHATSAPP_TOKEN": ("api_keys", "whatsapp"),
    "CLAWD_WHATSAPP_VERIFY_TOKEN": ("api_keys", "whatsapp_verify"),
}


def _deep_get(d: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if not isinstance(d, dict):
            return default
        d = d.get(key, default)
    return d


def _resolve_path(p: str) -> Path:
    return Path(p).expanduser().resolve()


class Config:
    """Immutable configuration loaded from clawd.toml."""

    def __init__(self, data: dict, config_dir: Path | None = None):
        self._data = data
        self._config_dir = config_dir or Path.cwd()
        self._apply_env_overrides()
        self._validate()

    def _apply_env_overrides(self):
        for env_var, (section, key) in _ENV_OVERRIDES.items():
            val = os.environ.get(env_var)
            if val:
                self._data.setdefault(section, {})[key] = val

    def _validate(self):
        errors = []
        if not isinstance(self.assistant_name, str) or not self.assistant_name.strip():
            errors.append("[assistant] name must be a non-empty string")
        if self.provider not in PROVIDERS:
            errors.append(f"[provider] name must be one of {', '.join(PROVIDERS)}")
        if not isinstance(self.max_tokens, int) or self.max_tokens <= 0:
            errors.append("[provider] max_tokens must be a positive integer")
        if not isinstance(self.always_trigger_channels, list):
            errors.append("[channels] always_trigger must be a list")
        if not isinstance(self.scheduler_tick_seconds, (int, float)) or self.scheduler_tick_seconds <= 0:
            errors.append("[scheduler] tick_seconds must be positive")
        if (not isinstance(self.bash_max_timeout, int)
                or not 0 < self.bash_max_timeout <= BASH_TIMEOUT_CEILING):
            errors.append(f"[tools] bash_max_timeout must be an integer from 1 to {BASH_TIMEOUT_CEILING}")
        if self.http_enabled and not self.http_auth_token:
            errors.append("[http] enabled requires an auth token (CLAWD_HTTP_TOKEN)")
        allow = self.telegram_allow_from
        if not isinstance(allow, list) or not all(isinstance(a, int) for a in allow):
            errors.append("[channels.telegram] allow_from must be a list of user ids")
        if errors:
            raise ConfigError("Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors))

    # --- Assistant ---

    @property
    def assistant_name(self) -> str:
        return _deep_get(self._data, "assistant", "name", default="Andy")

    @property
    def primary_group(self) -> str:
        return _deep_get(self._data, "assistant", "primary_group", default="local:main")

    # --- Provider ---

    @property
    def provider(self) -> str:
        return _deep_get(self._data, "provider", "name", default="anthropic")

    @property
    def model(self) -> str:
        return _deep_get(self._data, "provider", "model", default="claude-sonnet-4-5")

    @property
    def max_tokens(self) -> int:
        return _deep_get(self._data, "provider", "max_tokens", default=4096)

    @property
    def provider_urls(self) -> dict[str, str]:
        urls = {
            "ollama": _deep_get(self._data, "provider", "ollama_url", default="http://localhost:11434"),
            "openwebui": _deep_get(self._data, "provider", "openwebui_url", default=""),
        }
        anthropic_url = _deep_get(self._data, "provider", "anthropic_url", default="")
        if anthropic_url:
            urls["anthropic"] = anthropic_url
        return urls

    # --- Channels ---

    @property
    def always_trigger_channels(self) -> list[str]:
        return _deep_get(self._data, "channels", "always_trigger", default=["telegram"])

    @property
    def local_enabled(self) -> bool:
        return _deep_get(self._data, "channels", "local", "enabled", default=True)

    @property
    def local_interactive(self) -> bool:
        return _deep_get(self._data, "channels", "local", "interactive", default=True)

    @property
    def telegram_token(self) -> str:
        return self.api_key("telegram")

    @property
    def telegram_allow_from(self) -> list[int]:
        return _deep_get(self._data, "channels", "telegram", "allow_from", default=[])

    @property
    def telegram_chunk_limit(self) -> int:
        return _deep_get(self._data, "channels", "telegram", "chunk_limit", default=4000)

    @property
    def whatsapp_phone_number_id(self) -> str:
        return _deep_get(self._data, "channels", "whatsapp", "phone_number_id", default="")

    @property
    def whatsapp_access_token(self) -> str:
        return self.api_key("whatsapp")

    @property
    def whatsapp_verify_token(self) -> str:
        return self.api_key("whatsapp_verify")

    @property
    def whatsapp_allowed_numbers(self) -> list[str]:
        return _deep_get(self._data, "channels", "whatsapp", "allowed_numbers", default=[])

    # --- HTTP API ---

    @property
    def http_enabled(self) -> bool:
        return _deep_get(self._data, "http", "enabled", default=False)

    @property
    def http_host(self) -> str:
        return _deep_get(self._data, "http", "host", default="127.0.0.1")

    @property
    def http_port(self) -> int:
        return _deep_get(self._data, "http", "port", default=8100)

    @property
    def http_auth_token(self) -> str:
        return self.api_key("http_token")

    @property
    def http_rate_limit(self) -> int:
        return _deep_get(self._data, "http", "rate_limit", default=30)

    @property
    def http_rate_window(self) -> int:
        return _deep_get(self._data, "http", "rate_window", default=60)

    @property
    def http_response_timeout(self) -> float:
        return _deep_get(self._data, "http", "response_timeout", default=300.0)

    # --- Tools ---

    @property
    def output_truncation(self) -> int:
        return _deep_get(self._data, "tools", "output_truncation", default=100_000)

    @property
    def bash_timeout(self) -> int:
        return _deep_get(self._data, "tools", "bash_timeout", default=30)

    @property
    def bash_max_timeout(self) -> int:
        return _deep_get(self._data, "tools", "bash_max_timeout", default=120)

    @property
    def fetch_max_response(self) -> int:
        return _deep_get(self._data, "tools", "fetch_max_response", default=20_000)

    @property
    def fetch_block_private(self) -> bool:
        return _deep_get(self._data, "tools", "fetch_block_private", default=True)

    @property
    def node_binary(self) -> str:
        return _deep_get(self._data, "tools", "node", default="node")

    @property
    def node_flags(self) -> list[str] | None:
        """Explicit node flags; None picks the permission flag from the node version."""
        return _deep_get(self._data, "tools", "node_flags")

    @property
    def javascript_timeout(self) -> int:
        return _deep_get(self._data, "tools", "javascript_timeout", default=10)

    # --- Scheduler ---

    @property
    def scheduler_tick_seconds(self) -> float:
        return _deep_get(self._data, "scheduler", "tick_seconds", default=30)

    # --- Paths ---

    @property
    def state_dir(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "state_dir", default="~/.clawd"))

    @property
    def workspace_dir(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "workspace_dir",
                                       default="~/.clawd/workspace"))

    @property
    def db_path(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "db", default="~/.clawd/clawd.db"))

    @property
    def log_file(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "log_file",
                                       default="~/.clawd/clawd.log"))

    @property
    def log_max_bytes(self) -> int:
        return _deep_get(self._data, "logging", "max_bytes", default=10 * 1024 * 1024)

    @property
    def log_backup_count(self) -> int:
        return _deep_get(self._data, "logging", "backup_count", default=3)

    # --- API Keys ---

    def api_key(self, name: str) -> str:
        return _deep_get(self._data, "api_keys", name, default="")

    @property
    def credentials(self) -> dict[str, str]:
        return {
            "anthropic_api_key": self.api_key("anthropic"),
            "openwebui_api_key": self.api_key("openwebui"),
        }

    # --- Raw access ---

    def raw(self, *keys: str, default: Any = None) -> Any:
        return _deep_get(self._data, *keys, default=default)


def _load_dotenv(toml_path: Path) -> None:
    """Load .env file from same directory as clawd.toml if it exists."""
    env_file = toml_path.parent / ".env"
    if not env_file.exists():
        return
    with open(env_file, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, val = line.partition("=")
            key = key.strip()
            val = val.strip().strip('"').strip("'")
            # Environment takes precedence
            if key not in os.environ:
                os.environ[key] = val


def load_config(path: str | Path | None, overrides: dict | None = None) -> Config:
    """Load and validate config from a TOML file.

    Args:
        path: Path to clawd.toml. None runs on built-in defaults.
        overrides: Dotted-key overrides applied before validation
                   (e.g. CLI args: {"channels.local.enabled": False}).
    """
    data: dict = {}
    config_dir = None
    if path is not None:
        p = Path(path).expanduser().resolve()
        if not p.exists():
            raise ConfigError(f"Config file not found: {p}")
        _load_dotenv(p)
        try:
            with open(p, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML in {p}: {e}") from e
        config_dir = p.parent
    if overrides:
        for key_path, value in overrides.items():
            keys = key_path.split(".")
            d = data
            for k in keys[:-1]:
                d = d.setdefault(k, {})
            d[keys[-1]] = value
    return Config(data, config_dir=config_dir)
