"""Configuration management for autoscan."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from autoscan.exceptions import ConfigurationError


# Paths
DEFAULT_CONFIG_PATH = Path("~/.autoscan/config.yaml").expanduser()
DEFAULT_STATE_PATH = Path("~/.autoscan/state.db").expanduser()
LOCAL_CONFIG_FILENAME = "autoscan.yaml"


class BackendConfig(BaseModel):
    """Scan backend connection."""

    base_url: str = "http://127.0.0.1:8443"
    timeout: float = 30.0
    user_agent: str = "autoscan/0.1.0"


class WatchBudget(BaseModel):
    """Completion watch budget (milliseconds)."""

    poll_interval_ms: int = 5000
    soft_timeout_ms: int = 600_000
    hard_timeout_ms: int = 900_000
    absolute_timeout_ms: int = 1_200_000
    max_empty_or_error_attempts: int = 10

    @model_validator(mode="after")
    def _check_tiers(self) -> "WatchBudget":
        if self.poll_interval_ms <= 0:
            raise ValueError("poll_interval_ms must be > 0")
        if not (0 < self.soft_timeout_ms <= self.hard_timeout_ms <= self.absolute_timeout_ms):
            raise ValueError("timeouts must satisfy 0 < soft <= hard <= absolute")
        if self.max_empty_or_error_attempts < 0:
            raise ValueError("max_empty_or_error_attempts must be >= 0")
        return self

    @property
    def poll_interval_s(self) -> float:
        return self.poll_interval_ms / 1000.0

    @property
    def soft_timeout_s(self) -> float:
        return self.soft_timeout_ms / 1000.0

    @property
    def hard_timeout_s(self) -> float:
        return self.hard_timeout_ms / 1000.0

    @property
    def absolute_timeout_s(self) -> float:
        return self.absolute_timeout_ms / 1000.0


class PipelineConfig(BaseModel):
    """Pipeline runner pacing and persistence."""

    step_delay_s: float = 1.0
    resume_step_delay_s: float = 2.0
    refresh_settle_s: float = 1.0
    consolidation_settle_s: float = 3.0
    state_store: Literal["sqlite", "http", "memory"] = "sqlite"


class StateConfig(BaseModel):
    """Run-state storage configuration."""

    path: str = str(DEFAULT_STATE_PATH)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for autoscan."""

    backend: BackendConfig = Field(default_factory=BackendConfig)
    watch: WatchBudget = Field(default_factory=WatchBudget)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="AUTOSCAN_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Environment beats values passed in from YAML.
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping")

        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid config in {config_path}: {e}") from e

    @classmethod
    def load(cls) -> "Config":
        """Load configuration; env vars are applied by pydantic-settings."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def resolved_state_path(self) -> Path:
        """Expanded run-state database path."""
        return Path(self.state.path).expanduser()


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
