#!/usr/bin/env python3
"""
Configuration management for the achievement feed client.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, validation, and provides a clean interface
for accessing configuration values throughout the application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

# Default REST routes for each feed source (relative to FEED_API_BASE_URL)
DEFAULT_SOURCE_ENDPOINTS = {
    "all": "/achievements",
    "connections": "/connections-achievements",
    "popular": "/popular-achievements",
    "mine": "/my-achievements",
}


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering for real-time logging.
    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
    """
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

    # Reduce Azure SDK verbosity unless explicitly overridden
    azure_level = level_map.get(environ.get("AZURE_LOG_LEVEL", "WARNING").upper(), WARNING)
    for name in ("azure", "azure.core", "azure.monitor"):
        getLogger(name).setLevel(azure_level)

    return getLogger("AchievementFeed")


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "coordinator", "controller", "feed_api")

    Returns:
        A logger instance named "AchievementFeed.{name}"
    """
    return getLogger(f"AchievementFeed.{name}")


# Create single global logger instance
logger = _setup_global_logger()


class Config:
    """Configuration manager for the achievement feed client.

    Configuration is loaded from multiple sources:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)
    4. feed.yaml configuration file (source endpoints, pagination)

    Example secrets.yaml format:
    ```yaml
    FEED_API_BASE_URL: "https://portal.example.com/api"
    FEED_API_TOKEN: "your-bearer-token"
    ```
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()
        self._load_feed_settings()

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

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.0) -> float:
        """Validate and parse a non-negative float environment variable."""
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
        # Backend connection
        self.FEED_API_BASE_URL = environ.get("FEED_API_BASE_URL", "http://localhost:8000/api").strip().rstrip("/")
        self.FEED_API_TOKEN = environ.get("FEED_API_TOKEN") or None
        self.USER_AGENT = environ.get("USER_AGENT", "AchievementFeed/1.0 (+aiohttp)")
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 1)

        # Pagination
        self.FEED_PAGE_SIZE = self._validate_positive_int("FEED_PAGE_SIZE", 25, 1)

        # Request coordination: throttle between calls on one channel, 429 backoff
        self.FEED_MIN_REQUEST_INTERVAL = self._validate_positive_float("FEED_MIN_REQUEST_INTERVAL", 1.0, 0.0)
        self.FEED_RATE_LIMIT_RETRIES = self._validate_positive_int("FEED_RATE_LIMIT_RETRIES", 3, 0)
        self.FEED_RATE_LIMIT_BACKOFF_BASE = self._validate_positive_float("FEED_RATE_LIMIT_BACKOFF_BASE", 2.0, 0.0)

        base_dir = path.dirname(path.abspath(__file__))
        self.FEED_CONFIG_PATH = environ.get("FEED_CONFIG_PATH", path.join(base_dir, "feed.yaml"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE is set, loads the specified YAML file and sets
        environment variables from it. Both a top-level mapping and a mapping
        nested under `environment:` are accepted.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env for secrets")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not isinstance(secrets_config, dict):
            if secrets_config is not None:
                logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        if isinstance(secrets_config.get('environment'), dict):
            env_vars = secrets_config['environment']
        else:
            env_vars = secrets_config

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
                logger.debug(f"Set environment variable {key} from secrets file")
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")

        logger.info(f"Loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets', 'feed')

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

    def _load_feed_settings(self) -> None:
        """Populate SOURCE_ENDPOINTS (and optionally FEED_PAGE_SIZE) from feed.yaml.

        Any failure leaves the built-in defaults in place.
        """
        self.SOURCE_ENDPOINTS: Dict[str, str] = dict(DEFAULT_SOURCE_ENDPOINTS)
        config_data = self._safe_read_yaml(self.FEED_CONFIG_PATH, 1024 * 1024, 'feed')
        if not isinstance(config_data, dict):
            return

        sources_section = config_data.get('sources')
        if isinstance(sources_section, dict):
            for name, endpoint in sources_section.items():
                key = str(name).lower()
                if key not in DEFAULT_SOURCE_ENDPOINTS:
                    logger.warning(f"Ignoring unknown feed source '{name}' in {self.FEED_CONFIG_PATH}")
                    continue
                if not isinstance(endpoint, str) or not endpoint.strip():
                    logger.warning(f"Invalid endpoint for source '{name}': {endpoint!r}")
                    continue
                self.SOURCE_ENDPOINTS[key] = "/" + endpoint.strip().lstrip("/")
        elif sources_section is not None:
            logger.warning(f"'sources' in {self.FEED_CONFIG_PATH} must be a mapping")

        pagination_section = config_data.get('pagination')
        if isinstance(pagination_section, dict) and "FEED_PAGE_SIZE" not in environ:
            raw = pagination_section.get('page_size')
            if raw is not None:
                try:
                    page_size = int(str(raw).strip())
                    if page_size >= 1:
                        self.FEED_PAGE_SIZE = page_size
                    else:
                        logger.warning(f"page_size must be >=1; keeping {self.FEED_PAGE_SIZE} (got {raw})")
                except ValueError:
                    logger.warning(f"Invalid page_size value '{raw}' in feed.yaml; keeping {self.FEED_PAGE_SIZE}")

        logger.debug(f"Loaded feed settings: endpoints={self.SOURCE_ENDPOINTS} page_size={self.FEED_PAGE_SIZE}")

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "api_base_url": self.FEED_API_BASE_URL,
            "has_api_token": bool(self.FEED_API_TOKEN),
            "http_timeout": self.HTTP_TIMEOUT,
            "page_size": self.FEED_PAGE_SIZE,
            "min_request_interval": self.FEED_MIN_REQUEST_INTERVAL,
            "rate_limit_retries": self.FEED_RATE_LIMIT_RETRIES,
            "rate_limit_backoff_base": self.FEED_RATE_LIMIT_BACKOFF_BASE,
            "source_endpoints": dict(self.SOURCE_ENDPOINTS),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


# Global configuration instance
config = Config()
