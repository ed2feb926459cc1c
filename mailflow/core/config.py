"""Configuration management for the mailflow automation engine."""

import os
from pathlib import Path
from typing import Dict, List, Optional, Any, Union
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml
import structlog
from dotenv import load_dotenv

logger = structlog.get_logger(__name__)


class AppConfig(BaseModel):
    """Application configuration."""
    name: str = "Mailflow Automation Engine"
    version: str = "1.0.0"
    debug: bool = False


class SQLiteConfig(BaseModel):
    """SQLite database configuration."""
    database_path: str = "./data/mailflow.db"
    busy_timeout: int = 30000  # milliseconds
    journal_mode: str = "WAL"

    @field_validator('journal_mode')
    @classmethod
    def validate_journal_mode(cls, v):
        valid_modes = ['DELETE', 'TRUNCATE', 'PERSIST', 'MEMORY', 'WAL', 'OFF']
        if v.upper() not in valid_modes:
            raise ValueError(f'Invalid journal mode: {v}. Must be one of {valid_modes}')
        return v.upper()


class GmailConfig(BaseModel):
    """Gmail API configuration."""
    scopes: List[str] = Field(default_factory=lambda: [
        "https://www.googleapis.com/auth/gmail.modify",
        "https://www.googleapis.com/auth/gmail.send"
    ])
    batch_size: int = 10  # page size for list calls
    max_messages_per_poll: int = 500
    rate_limit: Dict[str, int] = Field(default_factory=lambda: {
        "requests_per_second": 10,
        "quota_per_user_per_second": 250
    })


class OAuthConfig(BaseModel):
    """Google OAuth client used to refresh stored mailbox tokens."""
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    token_uri: str = "https://oauth2.googleapis.com/token"


class SchedulerConfig(BaseModel):
    """Polling scheduler configuration."""
    interval_seconds: int = 60
    default_polling_interval: int = 300  # seconds, per mailbox

    @field_validator('interval_seconds', 'default_polling_interval')
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError(f'Interval must be positive, got {v}')
        return v


class WebhookConfig(BaseModel):
    """Outbound webhook action configuration."""
    timeout_seconds: float = 30.0
    default_method: str = "POST"

    @field_validator('default_method')
    @classmethod
    def validate_method(cls, v):
        valid_methods = ['GET', 'POST', 'PUT', 'PATCH', 'DELETE']
        if v.upper() not in valid_methods:
            raise ValueError(f'Invalid webhook method: {v}. Must be one of {valid_methods}')
        return v.upper()


class OllamaConfig(BaseModel):
    """Ollama configuration for AI generated replies."""
    host: str = "http://localhost:11434"
    model: str = "llama3.2:3b"
    timeout: int = 60
    system_prompt: str = (
        "You are a helpful email assistant. Write professional, concise, "
        "and friendly email replies."
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    format: str = "dev"  # dev | json

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f'Invalid log level: {v}. Must be one of {valid_levels}')
        return v.upper()

    @field_validator('format')
    @classmethod
    def validate_format(cls, v):
        if v not in ('dev', 'json'):
            raise ValueError(f'Invalid log format: {v}. Must be dev or json')
        return v


class Config(BaseSettings):
    """Main configuration class."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    app: AppConfig = Field(default_factory=AppConfig)
    sqlite: SQLiteConfig = Field(default_factory=SQLiteConfig)
    gmail: GmailConfig = Field(default_factory=GmailConfig)
    oauth: OAuthConfig = Field(default_factory=OAuthConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    ollama: OllamaConfig = Field(default_factory=OllamaConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode='after')
    def validate_configuration(self):
        """Validate interdependent configuration fields."""
        db_dir = Path(self.sqlite.database_path).parent
        try:
            db_dir.mkdir(parents=True, exist_ok=True)
        except PermissionError:
            raise ValueError(f"Cannot create database directory: {db_dir}")

        if self.scheduler.interval_seconds > self.scheduler.default_polling_interval:
            logger.warning(
                "Scheduler interval longer than mailbox polling interval",
                interval_seconds=self.scheduler.interval_seconds,
                default_polling_interval=self.scheduler.default_polling_interval,
                suggestion="Mailboxes will be polled less often than configured"
            )

        if self.gmail.batch_size > 500:
            raise ValueError(f"Gmail batch size {self.gmail.batch_size} exceeds the API limit of 500")

        if self.gmail.max_messages_per_poll < 1:
            raise ValueError("Gmail max_messages_per_poll must be positive")

        if not self.oauth.client_id or not self.oauth.client_secret:
            logger.debug("OAuth client credentials not configured; token refresh will fail")

        return self

    @classmethod
    def load_from_yaml(cls, config_path: Optional[Union[str, Path]] = None) -> "Config":
        """Load configuration from YAML file with environment variable overrides."""
        if config_path is None:
            config_path = Path("config/default.yaml")

        config_path = Path(config_path)

        load_dotenv()

        config_data = {}
        if config_path.exists():
            with open(config_path, 'r', encoding='utf-8') as f:
                config_data = yaml.safe_load(f) or {}

        env_overrides = cls._get_env_overrides()
        config_data = cls._merge_configs(config_data, env_overrides)

        return cls(**config_data)

    @staticmethod
    def _get_env_overrides() -> Dict[str, Any]:
        """Extract configuration overrides from environment variables."""
        overrides = {}

        env_mapping = {
            'MAILFLOW_DB_PATH': 'sqlite.database_path',
            'SQLITE_BUSY_TIMEOUT': 'sqlite.busy_timeout',
            'GOOGLE_CLIENT_ID': 'oauth.client_id',
            'GOOGLE_CLIENT_SECRET': 'oauth.client_secret',
            'SCHEDULER_INTERVAL': 'scheduler.interval_seconds',
            'WEBHOOK_TIMEOUT': 'webhook.timeout_seconds',
            'OLLAMA_HOST': 'ollama.host',
            'OLLAMA_MODEL': 'ollama.model',
            'LOG_LEVEL': 'logging.level',
            'LOG_FORMAT': 'logging.format',
            'APP_DEBUG': 'app.debug',
        }

        for env_var, config_key in env_mapping.items():
            value = os.getenv(env_var)
            if value is not None:
                if config_key in ['sqlite.busy_timeout', 'scheduler.interval_seconds']:
                    value = int(value)
                elif config_key in ['webhook.timeout_seconds']:
                    value = float(value)
                elif config_key in ['app.debug']:
                    value = value.lower() in ('true', '1', 'yes', 'on')

                keys = config_key.split('.')
                current = overrides
                for key in keys[:-1]:
                    if key not in current:
                        current[key] = {}
                    current = current[key]
                current[keys[-1]] = value

        return overrides

    @staticmethod
    def _merge_configs(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge configuration dictionaries."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = Config._merge_configs(result[key], value)
            else:
                result[key] = value

        return result

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "app": self.app.model_dump(),
            "sqlite": self.sqlite.model_dump(),
            "gmail": self.gmail.model_dump(),
            "oauth": self.oauth.model_dump(),
            "scheduler": self.scheduler.model_dump(),
            "webhook": self.webhook.model_dump(),
            "ollama": self.ollama.model_dump(),
            "logging": self.logging.model_dump(),
        }


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load_from_yaml()
    return _config


def reload_config(config_path: Optional[Union[str, Path]] = None) -> Config:
    """Reload configuration from file."""
    global _config
    _config = Config.load_from_yaml(config_path)
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance (mainly for testing)."""
    global _config
    _config = config
