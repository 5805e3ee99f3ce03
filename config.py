"""Configuration loader for the Telegram bridge.

Loads an optional bridge.toml, loads .env files from the automaton state
directory, applies environment variable overrides for secrets, validates
required fields, and provides typed access to all settings.
Immutable after load. No runtime config reloading.
"""

import logging
import os
import tomllib
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


# Environment variable overrides for secrets
_ENV_OVERRIDES = {
    "TELEGRAM_BOT_TOKEN": ("telegram", "token"),
    "TELEGRAM_ALLOWED_IDS": ("telegram", "allowed_ids"),
}

_DEFAULT_STATE_DIR = "~/.automaton"

DEFAULT_REJECTION = "⛔ You are not authorised to talk to this Automaton."
DEFAULT_WELCOME = (
    "👋 *Automaton bridge is online.*\n\n"
    "Send me any message and I'll pass it to your Automaton. "
    "It will reply once it processes its inbox.\n\n"
    "⚠️ The Automaton runs on its own loop — replies may take 30–90 seconds "
    "depending on what it's doing."
)
DEFAULT_ACK = "📨 *Message received.* Waiting for your Automaton to respond..."


def _deep_get(d: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if not isinstance(d, dict):
            return default
        d = d.get(key, default)
    return d


def _resolve_path(p: str | Path) -> Path:
    return Path(p).expanduser().resolve()


def parse_allowed_ids(raw: Any) -> frozenset[int]:
    """Parse allowed sender ids from a comma-separated string or a list.

    Raises ValueError on any entry that is not an integer.
    """
    if raw is None or raw == "":
        return frozenset()
    if isinstance(raw, str):
        items = [s.strip() for s in raw.split(",")]
    elif isinstance(raw, (list, tuple, set, frozenset)):
        items = [str(s).strip() for s in raw]
    else:
        items = [str(raw).strip()]
    ids = set()
    for item in items:
        if not item:
            continue
        try:
            ids.add(int(item))
        except ValueError:
            raise ValueError(f"not a numeric Telegram user id: {item!r}") from None
    return frozenset(ids)


class Config:
    """Immutable configuration for the bridge."""

    def __init__(self, data: dict):
        self._data = data
        self._apply_env_overrides()
        self._allowed_ids: frozenset[int] = frozenset()
        self._validate()

    def _apply_env_overrides(self):
        for env_var, key_path in _ENV_OVERRIDES.items():
            val = os.environ.get(env_var)
            if val:
                section, key = key_path
                if section not in self._data:
                    self._data[section] = {}
                self._data[section][key] = val

    def _validate(self):
        errors = []
        if not _deep_get(self._data, "telegram", "token"):
            errors.append("TELEGRAM_BOT_TOKEN is not set (env, .env or [telegram] token)")
        try:
            self._allowed_ids = parse_allowed_ids(
                _deep_get(self._data, "telegram", "allowed_ids"),
            )
        except ValueError as e:
            errors.append(f"TELEGRAM_ALLOWED_IDS is invalid: {e}")
        else:
            if not self._allowed_ids:
                errors.append(
                    "TELEGRAM_ALLOWED_IDS is not set "
                    "(message @userinfobot on Telegram to find your ID)"
                )
        if self.chunk_limit <= 0:
            errors.append("[telegram] chunk_limit must be positive")
        if errors:
            raise ConfigError("Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors))

    # --- Telegram ---

    @property
    def telegram_token(self) -> str:
        return self._data["telegram"]["token"]

    @property
    def allowed_ids(self) -> frozenset[int]:
        return self._allowed_ids

    @property
    def chunk_limit(self) -> int:
        return int(_deep_get(self._data, "telegram", "chunk_limit", default=4000))

    @property
    def parse_mode(self) -> str:
        return _deep_get(self._data, "telegram", "parse_mode", default="Markdown")

    @property
    def poll_timeout(self) -> int:
        return int(_deep_get(self._data, "telegram", "poll_timeout", default=30))

    # --- Bridge timing ---

    @property
    def poll_retry_delay(self) -> float:
        return float(_deep_get(self._data, "bridge", "poll_retry_delay", default=5.0))

    @property
    def reply_check_interval(self) -> float:
        return float(_deep_get(self._data, "bridge", "reply_check_interval", default=5.0))

    @property
    def typing_interval(self) -> float:
        return float(_deep_get(self._data, "bridge", "typing_interval", default=4.0))

    # --- Messages ---

    @property
    def rejection_message(self) -> str:
        return _deep_get(self._data, "messages", "rejection", default=DEFAULT_REJECTION)

    @property
    def welcome_message(self) -> str:
        return _deep_get(self._data, "messages", "welcome", default=DEFAULT_WELCOME)

    @property
    def ack_message(self) -> str:
        return _deep_get(self._data, "messages", "ack", default=DEFAULT_ACK)

    # --- Paths ---

    @property
    def state_dir(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "state_dir",
                                       default=_DEFAULT_STATE_DIR))

    @property
    def db_path(self) -> Path:
        p = _deep_get(self._data, "paths", "db", default="")
        return _resolve_path(p) if p else self.state_dir / "state.db"

    @property
    def log_file(self) -> Path:
        p = _deep_get(self._data, "paths", "log_file", default="")
        return _resolve_path(p) if p else self.state_dir / "telegram-bridge.log"

    @property
    def pid_file(self) -> Path:
        p = _deep_get(self._data, "paths", "pid_file", default="")
        return _resolve_path(p) if p else self.state_dir / "telegram-bridge.pid"

    # --- Logging ---

    @property
    def log_max_bytes(self) -> int:
        return _deep_get(self._data, "logging", "max_bytes", default=5 * 1024 * 1024)

    @property
    def log_backup_count(self) -> int:
        return _deep_get(self._data, "logging", "backup_count", default=3)


def _load_dotenv(env_file: Path) -> None:
    """Load a .env file into os.environ if it exists."""
    if not env_file.exists():
        return
    log.debug("Loading environment from %s", env_file)
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


def load_config(path: str | Path | None = None, required: bool = False,
                overrides: dict | None = None) -> Config:
    """Load and validate config.

    Args:
        path: Path to bridge.toml. The file is optional unless ``required``.
        required: Raise ConfigError if ``path`` does not exist.
        overrides: Dict of dotted-key overrides applied to the raw TOML data
                   before constructing Config (e.g. CLI args).
    """
    data: dict = {}
    if path is not None:
        p = Path(path).expanduser().resolve()
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            _load_dotenv(p.parent / ".env")
        elif required:
            raise ConfigError(f"Config file not found: {p}")
    if overrides:
        for key_path, value in overrides.items():
            keys = key_path.split(".")
            d = data
            for k in keys[:-1]:
                d = d.setdefault(k, {})
            d[keys[-1]] = value
    state_dir = _resolve_path(_deep_get(data, "paths", "state_dir", default=_DEFAULT_STATE_DIR))
    _load_dotenv(state_dir / ".env")
    return Config(data)
