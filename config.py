"""Configuration loader for the devrelay daemon.

Loads an optional devrelay.toml, applies environment variable overrides,
validates every field, and provides typed access to all settings.
Immutable after load — no runtime config reloading.
"""

import copy
import logging
import os
import tomllib
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


# Environment variable → (section, key). Environment always wins over TOML.
_ENV_OVERRIDES = {
    "GITHUB_TOKEN": ("github", "token"),
    "GITHUB_REPO": ("github", "repo"),
    "GITHUB_API_URL": ("github", "api_url"),
    "WEBHOOK_HOST": ("webhook", "host"),
    "WEBHOOK_PORT": ("webhook", "port"),
    "WEBHOOK_SECRET": ("webhook", "secret"),
    "POLL_INTERVAL": ("poller", "interval"),
    "POLL_PAGE_SIZE": ("poller", "page_size"),
    "DEDUP_HORIZON": ("notifications", "horizon"),
    "GIT_WORKDIR": ("git", "workdir"),
    "AWS_REGION": ("s3", "region"),
    "DEVRELAY_LOG_LEVEL": ("logging", "level"),
    "DEVRELAY_LOG_FILE": ("logging", "file"),
}

# Keys whose env values arrive as strings but must be numbers
_NUMERIC_KEYS = {
    ("webhook", "port"): int,
    ("poller", "interval"): float,
    ("poller", "page_size"): int,
    ("notifications", "horizon"): float,
}

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _deep_get(d: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if not isinstance(d, dict):
            return default
        d = d.get(key, default)
    return d


def _resolve_path(p: str) -> Path:
    return Path(p).expanduser().resolve()


class Config:
    """Immutable configuration: TOML data + environment overrides."""

    def __init__(self, data: dict | None = None, environ: dict | None = None):
        self._data = copy.deepcopy(data) if data is not None else {}
        self._environ = os.environ if environ is None else environ
        self._errors: list[str] = []
        self._apply_env_overrides()
        self._coerce_numbers()
        self._validate()

    def _apply_env_overrides(self):
        for env_var, (section, key) in _ENV_OVERRIDES.items():
            val = self._environ.get(env_var)
            if val:
                self._data.setdefault(section, {})[key] = val

    def _coerce_numbers(self):
        for (section, key), kind in _NUMERIC_KEYS.items():
            val = _deep_get(self._data, section, key)
            if val is None or isinstance(val, bool):
                continue
            try:
                self._data[section][key] = kind(val)
            except (TypeError, ValueError):
                self._errors.append(f"[{section}] {key} must be a number, got {val!r}")

    def _validate(self):
        errors = self._errors
        repo = self.github_repo
        if repo and (repo.count("/") != 1 or repo.startswith("/") or repo.endswith("/")):
            errors.append(f"[github] repo must look like 'owner/name', got {repo!r}")
        port = _deep_get(self._data, "webhook", "port", default=8080)
        if isinstance(port, int) and not 0 <= port <= 65535:
            errors.append(f"[webhook] port out of range: {port}")
        interval = _deep_get(self._data, "poller", "interval", default=30.0)
        if isinstance(interval, float | int) and interval <= 0:
            errors.append("[poller] interval must be positive")
        page_size = _deep_get(self._data, "poller", "page_size", default=5)
        if isinstance(page_size, int) and not 1 <= page_size <= 100:
            errors.append("[poller] page_size must be between 1 and 100")
        horizon = _deep_get(self._data, "notifications", "horizon", default=3600.0)
        if isinstance(horizon, float | int) and horizon <= 0:
            errors.append("[notifications] horizon must be positive")
        for key, default in (("max_entries", 1000), ("history_size", 50)):
            value = _deep_get(self._data, "notifications", key, default=default)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                errors.append(f"[notifications] {key} must be a positive integer, got {value!r}")
        if self.log_level not in _LOG_LEVELS:
            errors.append(f"[logging] level must be one of {', '.join(_LOG_LEVELS)}")
        if errors:
            raise ConfigError("Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors))

    # --- GitHub ---

    @property
    def github_token(self) -> str:
        return _deep_get(self._data, "github", "token", default="")

    @property
    def github_repo(self) -> str:
        return _deep_get(self._data, "github", "repo", default="")

    @property
    def github_api_url(self) -> str:
        return _deep_get(self._data, "github", "api_url",
                         default="https://api.github.com").rstrip("/")

    # --- Webhook ---

    @property
    def webhook_enabled(self) -> bool:
        return _deep_get(self._data, "webhook", "enabled", default=True)

    @property
    def webhook_host(self) -> str:
        return _deep_get(self._data, "webhook", "host", default="0.0.0.0")  # noqa: S104

    @property
    def webhook_port(self) -> int:
        return _deep_get(self._data, "webhook", "port", default=8080)

    @property
    def webhook_path(self) -> str:
        return _deep_get(self._data, "webhook", "path", default="/webhook")

    @property
    def webhook_secret(self) -> str:
        return _deep_get(self._data, "webhook", "secret", default="")

    @property
    def webhook_max_body_bytes(self) -> int:
        return _deep_get(self._data, "webhook", "max_body_bytes", default=5 * 1024 * 1024)

    @property
    def webhook_grace_period(self) -> float:
        return _deep_get(self._data, "webhook", "grace_period", default=5.0)

    # --- Poller ---

    @property
    def poll_enabled(self) -> bool:
        """Polling needs both a credential and a target."""
        if not _deep_get(self._data, "poller", "enabled", default=True):
            return False
        return bool(self.github_token and self.github_repo)

    @property
    def poll_interval(self) -> float:
        return _deep_get(self._data, "poller", "interval", default=30.0)

    @property
    def poll_page_size(self) -> int:
        return _deep_get(self._data, "poller", "page_size", default=5)

    @property
    def poll_timeout(self) -> float:
        return _deep_get(self._data, "poller", "timeout", default=10.0)

    @property
    def poll_connect_timeout(self) -> float:
        return _deep_get(self._data, "poller", "connect_timeout", default=5.0)

    # --- Notifications ---

    @property
    def dedup_horizon(self) -> float:
        return _deep_get(self._data, "notifications", "horizon", default=3600.0)

    @property
    def dedup_max_entries(self) -> int:
        return _deep_get(self._data, "notifications", "max_entries", default=1000)

    @property
    def history_size(self) -> int:
        return _deep_get(self._data, "notifications", "history_size", default=50)

    # --- Tools ---

    @property
    def git_workdir(self) -> Path:
        return _resolve_path(_deep_get(self._data, "git", "workdir", default=str(Path.cwd())))

    @property
    def git_timeout(self) -> float:
        return _deep_get(self._data, "git", "timeout", default=60.0)

    @property
    def s3_region(self) -> str:
        return _deep_get(self._data, "s3", "region", default="")

    @property
    def tool_truncation_limit(self) -> int:
        return _deep_get(self._data, "tools", "truncation_limit", default=30000)

    # --- Logging ---

    @property
    def log_level(self) -> str:
        return str(_deep_get(self._data, "logging", "level", default="INFO")).upper()

    @property
    def log_file(self) -> Path | None:
        p = _deep_get(self._data, "logging", "file", default="")
        return _resolve_path(p) if p else None

    @property
    def log_max_bytes(self) -> int:
        return _deep_get(self._data, "logging", "max_bytes", default=10 * 1024 * 1024)

    @property
    def log_backup_count(self) -> int:
        return _deep_get(self._data, "logging", "backup_count", default=3)

    # --- Raw access ---

    def raw(self, *keys: str, default: Any = None) -> Any:
        return _deep_get(self._data, *keys, default=default)


def _load_dotenv(toml_path: Path) -> None:
    """Load .env file from same directory as devrelay.toml if it exists."""
    env_file = toml_path.parent / ".env"
    if not env_file.exists():
        return
    with open(env_file, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            key, _, val = line.partition("=")
            key = key.strip()
            val = val.strip().strip('"').strip("'")
            # Only set if not already in environment (env takes precedence)
            if key not in os.environ:
                os.environ[key] = val


def load_config(path: str | Path | None = None, overrides: dict | None = None) -> Config:
    """Load and validate config.

    Args:
        path: Optional devrelay.toml. Without one, configuration comes from
              the environment alone.
        overrides: Dotted-key overrides applied to the raw TOML data before
                   constructing Config (e.g. CLI args).
    """
    data: dict = {}
    if path:
        p = Path(path).expanduser().resolve()
        if not p.exists():
            raise ConfigError(f"Config file not found: {p}")
        _load_dotenv(p)
        try:
            with open(p, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML in {p}: {e}") from e
        log.debug("Loaded config file %s", p)
    if overrides:
        for key_path, value in overrides.items():
            keys = key_path.split(".")
            d = data
            for k in keys[:-1]:
                d = d.setdefault(k, {})
            d[keys[-1]] = value
    return Config(data)
