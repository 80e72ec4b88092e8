"""Configuration loading and validation."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


@dataclass
class StorageConfig:
    sqlite_path: str = "crosswire.db"


@dataclass
class SyncConfig:
    # Scheduler thresholds
    fresh_hours: float = 4.0
    stale_hours: float = 24.0
    min_force_interval_minutes: float = 5.0
    # A run whose flag has been set longer than this is eligible for an
    # administrative reset. It is never cleared automatically.
    max_run_minutes: float = 30.0
    fetch_timeout_seconds: float = 120.0
    platforms: list[str] = field(default_factory=lambda: ["gmail", "slack"])


@dataclass
class UnificationConfig:
    fuzzy_name_threshold: float = 0.7
    max_candidates: int = 5
    bot_rules_file: str = "bot_rules.yaml"


@dataclass
class GmailConfig:
    client_id: str = ""
    client_secret: str = ""
    token_uri: str = "https://oauth2.googleapis.com/token"
    initial_query: str = "newer_than:30d"
    max_initial_messages: int = 500


@dataclass
class SlackConfig:
    api_base_url: str = "https://slack.com/api"
    page_size: int = 200
    max_channels: int = 50
    initial_days: int = 30


@dataclass
class AIConfig:
    enabled: bool = False
    provider: str = "ollama"
    model: str = "mistral-nemo"
    ollama_base_url: str = "http://localhost:11434"
    ollama_api_key: str = ""
    max_body_chars: int = 2000
    max_workers: int = 1

    def to_provider_dict(self) -> dict:
        """Return a dict suitable for passing to get_provider()."""
        return {
            "ollama_base_url": self.ollama_base_url,
            "ollama_api_key": self.ollama_api_key,
        }


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass
class Config:
    storage: StorageConfig = field(default_factory=StorageConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    unification: UnificationConfig = field(default_factory=UnificationConfig)
    gmail: GmailConfig = field(default_factory=GmailConfig)
    slack: SlackConfig = field(default_factory=SlackConfig)
    ai: AIConfig = field(default_factory=AIConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _dict_to_config(data: dict) -> Config:
    """Convert a raw dict to a Config dataclass, handling nested structures."""
    from dacite import Config as DaciteConfig
    from dacite import from_dict

    return from_dict(data_class=Config, data=data, config=DaciteConfig(cast=[float]))


def _find_config_file() -> Path | None:
    """Search for config file in standard locations."""
    env_path = os.environ.get("CROSSWIRE_CONFIG")
    if env_path:
        p = Path(env_path)
        if p.exists():
            return p

    local = Path("config.yaml")
    if local.exists():
        return local

    xdg = Path.home() / ".config" / "crosswire" / "config.yaml"
    if xdg.exists():
        return xdg

    return None


def _load_dotenv() -> None:
    """Load .env file from current directory if it exists."""
    env_path = Path(".env")
    if not env_path.exists():
        return
    for line in env_path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        value = value.strip()
        # Don't overwrite already-set env vars
        if key not in os.environ:
            os.environ[key] = value


def _apply_env_overrides(config: Config) -> Config:
    """Override config values from environment variables.

    Supports:
        CROSSWIRE_DB         -> config.storage.sqlite_path
        CROSSWIRE_LOG_LEVEL  -> config.logging.level
        GOOGLE_CLIENT_ID     -> config.gmail.client_id
        GOOGLE_CLIENT_SECRET -> config.gmail.client_secret
        ollama_host          -> config.ai.ollama_base_url
        ollama_api_key       -> config.ai.ollama_api_key
        model_name           -> config.ai.model
    """
    if os.environ.get("CROSSWIRE_DB"):
        config.storage.sqlite_path = os.environ["CROSSWIRE_DB"]
    if os.environ.get("CROSSWIRE_LOG_LEVEL"):
        config.logging.level = os.environ["CROSSWIRE_LOG_LEVEL"]
    if os.environ.get("GOOGLE_CLIENT_ID"):
        config.gmail.client_id = os.environ["GOOGLE_CLIENT_ID"]
    if os.environ.get("GOOGLE_CLIENT_SECRET"):
        config.gmail.client_secret = os.environ["GOOGLE_CLIENT_SECRET"]
    if os.environ.get("ollama_host"):
        config.ai.ollama_base_url = os.environ["ollama_host"]
    if os.environ.get("ollama_api_key"):
        config.ai.ollama_api_key = os.environ["ollama_api_key"]
    if os.environ.get("model_name"):
        config.ai.model = os.environ["model_name"]
    return config


def load_config(path: str | Path | None = None) -> Config:
    """Load configuration from YAML file, merging with defaults.

    Also loads .env file and applies environment variable overrides.
    """
    _load_dotenv()

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        config_path = _find_config_file()

    if config_path is None:
        config = Config()
    else:
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        config = _dict_to_config(raw)

    return _apply_env_overrides(config)
