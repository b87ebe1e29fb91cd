"""
Configuration management for the knowledge crawler.

Values come from an optional YAML file and are then overridden by
environment variables, so containers can be configured without a file.
"""

import os
import logging
from pathlib import Path
from typing import Dict, List, Any, Optional, Mapping
from dataclasses import dataclass, field

import yaml


DEFAULT_START_URL = 'https://www.jiandanxinli.com/knowledge'


class ConfigError(ValueError):
    """Raised when configuration values are invalid."""
    pass


@dataclass
class CrawlerConfig:
    """Configuration for crawler behavior."""
    start_url: str = DEFAULT_START_URL
    concurrency: int = 1
    request_timeout: float = 10.0
    max_attempts: int = 3
    backoff_base_delay: float = 2.0
    fetch_retry_attempts: int = 3
    fetch_retry_delay: float = 5.0
    jitter_min: float = 2.0
    jitter_max: float = 5.0
    poll_interval: float = 1.0
    user_agents: List[str] = field(default_factory=list)
    cookies: List[str] = field(default_factory=lambda: [
        '7d0c05cfbd949a8750e2b03c4de48209|1734706167|1734706167',
    ])
    referer: str = 'https://www.jiandanxinli.com/'
    retry_failed_listings: bool = False


@dataclass
class DatabaseConfig:
    """Configuration for article storage."""
    type: str = 'mongodb'
    mongodb: Dict[str, Any] = field(default_factory=lambda: {
        'uri': 'mongodb://localhost:27018',
        'database': 'crawler_data',
        'collection': 'jiandan_articles',
    })
    file: Dict[str, Any] = field(default_factory=lambda: {
        'data_directory': 'data',
    })


@dataclass
class RedisConfig:
    """Configuration for the Redis queue broker."""
    host: str = 'localhost'
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    queue_name: str = 'crawler-queue'


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str = 'INFO'
    file: str = 'logs/crawler.log'
    format: str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    json: bool = False


@dataclass
class ApiConfig:
    """Configuration for the HTTP trigger server."""
    host: str = '0.0.0.0'
    port: int = 3000


@dataclass
class Config:
    """Main configuration class."""
    crawler: CrawlerConfig = field(default_factory=CrawlerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    api: ApiConfig = field(default_factory=ApiConfig)


# (section, attribute, converter) for each supported environment variable
ENV_OVERRIDES = {
    'CRAWLER_START_URL': ('crawler', 'start_url', str),
    'CRAWLER_CONCURRENCY': ('crawler', 'concurrency', int),
    'CRAWLER_FETCH_TIMEOUT': ('crawler', 'request_timeout', float),
    'CRAWLER_MAX_ATTEMPTS': ('crawler', 'max_attempts', int),
    'CRAWLER_USER_AGENTS': ('crawler', 'user_agents',
                            lambda v: [ua.strip() for ua in v.split('|') if ua.strip()]),
    'CRAWLER_DB_TYPE': ('database', 'type', str),
    'REDIS_HOST': ('redis', 'host', str),
    'REDIS_PORT': ('redis', 'port', int),
    'REDIS_DB': ('redis', 'db', int),
    'REDIS_PASSWORD': ('redis', 'password', str),
    'LOG_LEVEL': ('logging', 'level', str),
}

MONGO_ENV_OVERRIDES = {
    'MONGO_URI': 'uri',
    'MONGO_DATABASE': 'database',
    'MONGO_COLLECTION': 'collection',
}


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_path: Optional[str] = "config.yaml",
                 environ: Optional[Mapping[str, str]] = None):
        self.config_path = Path(config_path) if config_path else None
        self.environ = os.environ if environ is None else environ
        self._config: Optional[Config] = None
        self.logger = logging.getLogger(__name__)

    def load_config(self) -> Config:
        """Load configuration from YAML file and environment."""
        config_data: Dict[str, Any] = {}
        if self.config_path and self.config_path.exists():
            with open(self.config_path, 'r') as file:
                config_data = yaml.safe_load(file) or {}
        elif self.config_path:
            self.logger.info(f"Configuration file not found, using defaults: {self.config_path}")

        try:
            database_data = dict(config_data.get('database') or {})
            defaults = DatabaseConfig()
            database_data['mongodb'] = {**defaults.mongodb, **(database_data.get('mongodb') or {})}
            database_data['file'] = {**defaults.file, **(database_data.get('file') or {})}

            self._config = Config(
                crawler=CrawlerConfig(**(config_data.get('crawler') or {})),
                database=DatabaseConfig(**database_data),
                redis=RedisConfig(**(config_data.get('redis') or {})),
                logging=LoggingConfig(**(config_data.get('logging') or {})),
                api=ApiConfig(**(config_data.get('api') or {})),
            )
        except TypeError as e:
            raise ConfigError(f"Unknown configuration key: {e}") from e

        self._apply_env_overrides()
        self._validate_config()
        return self._config

    def _apply_env_overrides(self):
        """Override loaded values with environment variables."""
        for env_name, (section, attribute, convert) in ENV_OVERRIDES.items():
            value = self.environ.get(env_name)
            if value is None or value == '':
                continue
            try:
                setattr(getattr(self._config, section), attribute, convert(value))
            except ValueError as e:
                raise ConfigError(f"Invalid value for {env_name}: {value!r}") from e

        for env_name, key in MONGO_ENV_OVERRIDES.items():
            value = self.environ.get(env_name)
            if value:
                self._config.database.mongodb[key] = value

    def _validate_config(self):
        """Validate configuration values."""
        if not self._config:
            raise ConfigError("Configuration not loaded")

        crawler = self._config.crawler
        if not crawler.start_url:
            raise ConfigError("start_url must be provided")

        if crawler.concurrency < 1:
            raise ConfigError("concurrency must be at least 1")

        if crawler.max_attempts < 1:
            raise ConfigError("max_attempts must be at least 1")

        if crawler.fetch_retry_attempts < 1:
            raise ConfigError("fetch_retry_attempts must be at least 1")

        if crawler.jitter_min < 0 or crawler.jitter_max < crawler.jitter_min:
            raise ConfigError("jitter range must satisfy 0 <= jitter_min <= jitter_max")

        if crawler.request_timeout <= 0:
            raise ConfigError("request_timeout must be positive")

        if not crawler.cookies:
            raise ConfigError("cookie pool must not be empty")

        if self._config.database.type not in ['mongodb', 'file']:
            raise ConfigError("Database type must be 'mongodb' or 'file'")

        self.logger.debug("Configuration validation passed")

    @property
    def config(self) -> Config:
        """Get the loaded configuration."""
        if not self._config:
            raise ConfigError("Configuration not loaded. Call load_config() first.")
        return self._config


def load_config(config_path: Optional[str] = "config.yaml",
                environ: Optional[Mapping[str, str]] = None) -> Config:
    """Load configuration from file and environment."""
    return ConfigManager(config_path, environ).load_config()
