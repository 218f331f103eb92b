#!/usr/bin/env python3
"""
Configuration management for Feed Monitor.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, validation, and the sources.yaml file that
declares which feeds are monitored, and provides a clean interface for accessing
configuration values throughout the application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering for real-time logging.
    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
    """
    try:
        environ["PYTHONUNBUFFERED"] = "1"
    except Exception:
        pass

    level_str = environ.get("LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(level_str, INFO)

    show_timestamps = environ.get("LOG_TIMESTAMPS", "true").lower() != "false"

    if show_timestamps:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True  # Force reconfiguration if already configured
    )

    try:
        sys.stdout.reconfigure(line_buffering=True)
        sys.stderr.reconfigure(line_buffering=True)
    except AttributeError:
        # Captured streams (e.g. under pytest) may not support reconfigure
        pass

    # Reduce Azure SDK verbosity unless explicitly overridden
    azure_level_str = environ.get("AZURE_LOG_LEVEL", "WARNING").upper()
    environ["AZURE_LOG_LEVEL"] = azure_level_str
    azure_level = level_map.get(azure_level_str, WARNING)
    for name in ("azure", "azure.core", "azure.monitor"):
        getLogger(name).setLevel(azure_level)

    return getLogger("FeedMonitor")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "scheduler", "health")

    Returns:
        A logger instance named "FeedMonitor.{name}"
    """
    return getLogger(f"FeedMonitor.{name}")

# Create single global logger instance
logger = _setup_global_logger()

# Per-source keys accepted in sources.yaml, mapped to store column names
SOURCE_BOOLEAN_KEYS = {
    'active': 'active',
    'auto_scrape': 'auto_scrape',
    'scraping_enabled': 'scraping_enabled',
    'requires_javascript': 'requires_javascript',
    'adaptive_fetching': 'adaptive_fetching_enabled',
}
SOURCE_INTEGER_KEYS = {
    'interval_minutes': 'fetch_interval_minutes',
    'health_auto_pause_threshold': 'health_auto_pause_threshold',
    'items_retention_days': 'items_retention_days',
    'max_items': 'max_items',
    'min_scrape_interval': 'min_scrape_interval_seconds',
}


class Config:
    """Configuration manager for Feed Monitor.

    Values are loaded from:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)
    4. sources.yaml (monitored feeds)
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()
        self._load_sources()

    def _load_environment(self):
        """Load environment variables from .env file and secrets file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

        self._load_secrets_file()

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Validate and parse a positive integer environment variable."""
        try:
            value = int(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        """Validate and parse a positive float environment variable."""
        try:
            value = float(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "feeds.db")
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; FeedMonitor/1.0)")

        # Per-source defaults (used when sources.yaml omits a value)
        self.DEFAULT_FETCH_INTERVAL_MINUTES = self._validate_positive_int("DEFAULT_FETCH_INTERVAL_MINUTES", 360, 1)
        self.DEFAULT_HEALTH_AUTO_PAUSE_THRESHOLD = self._validate_positive_int("DEFAULT_HEALTH_AUTO_PAUSE_THRESHOLD", 5, 1)
        self.DEFAULT_SCRAPER_ADAPTER = environ.get("DEFAULT_SCRAPER_ADAPTER", "readability")

        # Adaptive fetch interval
        self.MAX_FETCH_INTERVAL_MINUTES = self._validate_positive_int("MAX_FETCH_INTERVAL_MINUTES", 24 * 60, 1)
        self.FETCH_BACKOFF_CAP_MULTIPLIER = self._validate_positive_int("FETCH_BACKOFF_CAP_MULTIPLIER", 16, 1)

        # HTTP request configuration
        self.FETCH_TIMEOUT_SECONDS = self._validate_positive_float("FETCH_TIMEOUT_SECONDS", 60.0, 1.0)
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 5)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)

        # Scheduler configuration
        self.SCHEDULER_MAX_CONCURRENT_FETCHES = self._validate_positive_int("SCHEDULER_MAX_CONCURRENT_FETCHES", 5, 1)
        self.SCHEDULER_TICK_SECONDS = self._validate_positive_float("SCHEDULER_TICK_SECONDS", 60.0, 1.0)
        self.SCHEDULER_BATCH_SIZE = self._validate_positive_int("SCHEDULER_BATCH_SIZE", 100, 1)

        # Scraping configuration
        self.SCRAPE_MAX_IN_FLIGHT_PER_SOURCE = self._validate_positive_int("SCRAPE_MAX_IN_FLIGHT_PER_SOURCE", 25, 1)
        self.SCRAPE_WORKER_CONCURRENCY = self._validate_positive_int("SCRAPE_WORKER_CONCURRENCY", 3, 1)
        self.SCRAPE_REQUESTS_PER_MINUTE = self._validate_positive_int("SCRAPE_REQUESTS_PER_MINUTE", 30, 1)
        self.SCRAPE_POLL_SECONDS = self._validate_positive_float("SCRAPE_POLL_SECONDS", 5.0, 0.1)
        self.SCRAPE_MIN_INTERVAL_SECONDS = self._validate_positive_int("SCRAPE_MIN_INTERVAL_SECONDS", 0, 0)
        self.SCRAPE_STALE_AFTER_SECONDS = self._validate_positive_int("SCRAPE_STALE_AFTER_SECONDS", 900, 1)

        # File size limits
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)

        # File paths
        base_dir = path.dirname(path.abspath(__file__))
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.SOURCES_CONFIG_PATH = environ.get("SOURCES_CONFIG_PATH", path.join(base_dir, "sources.yaml"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE is set, loads the YAML mapping it points to (either top-level
        or nested under `environment`) and exports each entry as an environment variable.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not isinstance(secrets_config, dict):
            if secrets_config is not None:
                logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        env_vars = secrets_config.get('environment') if isinstance(secrets_config.get('environment'), dict) else secrets_config
        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}={value}")

        logger.info(f"Successfully loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets', 'sources')

        Returns:
            Parsed YAML (mapping/list/primitive) or None on failure.
        """
        try:
            if not path.isfile(file_path):
                logger.warning(f"{kind.capitalize()} file not found at {file_path}")
                return None
            if not access(file_path, R_OK):
                logger.error(f"No read permission for {kind} file at {file_path}")
                return None
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
            if not data:
                logger.warning(f"Empty or invalid YAML in {kind} file {file_path}")
                return None
            return data
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in {kind} file {file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading {kind} file {file_path}: {e}")
        return None

    def _load_sources(self) -> None:
        """Populate self.SOURCES from sources.yaml.

        Any failure results in an empty mapping; individual invalid entries are skipped.
        """
        config_data = self._safe_read_yaml(self.SOURCES_CONFIG_PATH, 5 * 1024 * 1024, 'sources')
        sources_section = config_data.get('sources') if isinstance(config_data, dict) else None
        if not isinstance(sources_section, dict):
            if config_data is not None:
                logger.warning(f"No valid sources found in {self.SOURCES_CONFIG_PATH}")
            self.SOURCES = {}
            return

        new_sources: Dict[str, Dict[str, Any]] = {}
        for slug, source_cfg in sources_section.items():
            normalized = self.normalize_source_config(slug, source_cfg)
            if normalized:
                new_sources[slug] = normalized

        self.SOURCES = new_sources
        logger.info(f"Successfully loaded {len(self.SOURCES)} sources from {self.SOURCES_CONFIG_PATH}")

    def normalize_source_config(self, slug: str, source_cfg: Any) -> Dict[str, Any] | None:
        """Turn one sources.yaml entry into store column values, applying defaults."""
        if not isinstance(source_cfg, dict) or not source_cfg.get('url'):
            logger.warning(f"Skipping invalid source configuration for '{slug}': {source_cfg}")
            return None

        normalized: Dict[str, Any] = {
            'slug': str(slug),
            'name': str(source_cfg.get('name') or slug),
            'feed_url': str(source_cfg['url']).strip(),
            'website_url': source_cfg.get('website_url'),
            'fetch_interval_minutes': self.DEFAULT_FETCH_INTERVAL_MINUTES,
            'health_auto_pause_threshold': self.DEFAULT_HEALTH_AUTO_PAUSE_THRESHOLD,
            'items_retention_days': None,
            'max_items': None,
            'min_scrape_interval_seconds': None,
            'active': True,
            'auto_scrape': False,
            'scraping_enabled': False,
            'requires_javascript': False,
            'adaptive_fetching_enabled': True,
            'scraper_adapter': str(source_cfg.get('scraper') or self.DEFAULT_SCRAPER_ADAPTER),
        }

        for key, column in SOURCE_BOOLEAN_KEYS.items():
            if key in source_cfg:
                normalized[column] = bool(source_cfg[key])

        for key, column in SOURCE_INTEGER_KEYS.items():
            raw = source_cfg.get(key)
            if raw is None:
                continue
            try:
                value = int(str(raw).strip())
            except ValueError:
                logger.warning(f"Invalid {key} value '{raw}' for source '{slug}'; using default")
                continue
            # Retention and scrape spacing may be zero; fetch intervals and thresholds must be positive
            min_val = 0 if key in ('items_retention_days', 'max_items', 'min_scrape_interval') else 1
            if value < min_val:
                logger.warning(f"{key} must be >= {min_val} for source '{slug}'; using default")
                continue
            normalized[column] = value

        return normalized

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "default_fetch_interval_minutes": self.DEFAULT_FETCH_INTERVAL_MINUTES,
            "max_fetch_interval_minutes": self.MAX_FETCH_INTERVAL_MINUTES,
            "fetch_timeout_seconds": self.FETCH_TIMEOUT_SECONDS,
            "max_concurrent_fetches": self.SCHEDULER_MAX_CONCURRENT_FETCHES,
            "tick_seconds": self.SCHEDULER_TICK_SECONDS,
            "source_count": len(self.SOURCES),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }

# Global configuration instance
config = Config()
