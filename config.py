#!/usr/bin/env python3
"""
Configuration management for the Reading Shelf service.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, the shelf.yaml file, and provides a clean
interface for accessing configuration values throughout the application.
"""

from os import environ, path
from typing import Dict, Any, List
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

    # aiohttp access logs are noisy at INFO
    getLogger("aiohttp.access").setLevel(max(level, WARNING))

    return getLogger("ReadingShelf")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "proxy", "server")

    Returns:
        A logger instance named "ReadingShelf.{name}"
    """
    return getLogger(f"ReadingShelf.{name}")

# Create single global logger instance
logger = _setup_global_logger()


DEFAULT_FEED_URL = "https://www.goodreads.com/user/updates_rss/135088892"
DEFAULT_COVER_URL = "https://s.gr-assets.com/assets/nophoto/book/111x148-bcc042a9c91a29c1d680899eff700a03.png"
DEFAULT_REFERER = "https://www.goodreads.com/"
DEFAULT_NO_PHOTO_MARKER = "nophoto/book"

DEFAULT_ALLOWED_HOSTS = [
    "i.gr-assets.com",
    "images.gr-assets.com",
    "s.gr-assets.com",
    "www.goodreads.com",
    "m.media-amazon.com",
    "images-na.ssl-images-amazon.com",
    "covers.openlibrary.org",
    "books.google.com",
    "images.squarespace-cdn.com",
]

DEFAULT_USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.0 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/118.0.0.0 Safari/537.36 Edg/118.0.2088.76",
]

DEFAULT_CACHE_CONTROL = {
    "image": "public, max-age=86400",
    "override": "public, max-age=604800",
    "default_cover": "public, max-age=604800",
    "placeholder": "public, max-age=3600",
    "shelf": "s-maxage=21600, stale-while-revalidate=86400",
}

CACHE_MODES = ("prefer-cache", "no-cache")


class Config:
    """Configuration manager for the Reading Shelf service.

    Values come from, in increasing precedence:
    1. Built-in defaults
    2. shelf.yaml (feed URL, proxy allow-list, identity pool, cover overrides)
    3. Environment variables (and a .env file next to this module)

    Example shelf.yaml:
    ```yaml
    feed:
      url: "https://www.goodreads.com/user/updates_rss/135088892"
    proxy:
      allowed_hosts: ["i.gr-assets.com", "s.gr-assets.com"]
      user_agents: ["Mozilla/5.0 ..."]
      cache_mode: prefer-cache
    covers:
      "Norwegian Wood": "https://m.media-amazon.com/images/I/71piKAdU7fL.jpg"
    ```
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()
        self._load_shelf_config()

    def _load_environment(self):
        """Load environment variables from a .env file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

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
        """Validate and set all environment-driven configuration values."""
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; ReadingShelf/1.0)")

        # HTTP request configuration
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 15, 1)
        self.MAX_RETRIES = self._validate_positive_int("MAX_RETRIES", 2, 0)
        self.RETRY_DELAY_BASE = self._validate_positive_float("RETRY_DELAY_BASE", 0.5, 0.0)
        self.MAX_IMAGE_BYTES = self._validate_positive_int("MAX_IMAGE_BYTES", 5 * 1024 * 1024, 1024)

        # In-process image cache (only used with cache_mode=prefer-cache)
        self.IMAGE_CACHE_TTL = self._validate_positive_int("IMAGE_CACHE_TTL", 300, 0)
        self.IMAGE_CACHE_MAX_ENTRIES = self._validate_positive_int("IMAGE_CACHE_MAX_ENTRIES", 128, 1)

        # Server configuration
        self.SERVER_HOST = environ.get("SERVER_HOST", "0.0.0.0")
        self.SERVER_PORT = self._validate_positive_int("SERVER_PORT", 8080, 1)
        # Prefix for the proxy URLs handed out with each entry ("" keeps them relative)
        self.PUBLIC_BASE_URL = environ.get("PUBLIC_BASE_URL", "").strip().rstrip("/")

        base_dir = path.dirname(path.abspath(__file__))
        self.SHELF_CONFIG_PATH = environ.get("SHELF_CONFIG_PATH", path.join(base_dir, "shelf.yaml"))

    # ------------------------------------------------------------------
    # YAML loading helpers
    # ------------------------------------------------------------------
    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'shelf')

        Returns:
            Parsed YAML (mapping/list/primitive) or None on failure.
        """
        try:
            if not path.isfile(file_path):
                logger.warning(f"{kind.capitalize()} file not found at {file_path}")
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

    def _string_list(self, value: Any, label: str, default: List[str]) -> List[str]:
        """Coerce a YAML list of strings, falling back to ``default`` when unusable."""
        if value is None:
            return list(default)
        if not isinstance(value, list):
            logger.warning(f"{label} must be a list; using defaults")
            return list(default)
        items = [str(v).strip() for v in value if isinstance(v, str) and v.strip()]
        if not items:
            logger.warning(f"{label} is empty; using defaults")
            return list(default)
        return items

    def _load_shelf_config(self) -> None:
        """Populate feed, proxy, override and cache settings from shelf.yaml.

        Idempotent and resilient: any missing or invalid section keeps its defaults.
        """
        data = self._safe_read_yaml(self.SHELF_CONFIG_PATH, 1024 * 1024, 'shelf')
        if not isinstance(data, dict):
            if data is not None:
                logger.warning(f"Shelf configuration in {self.SHELF_CONFIG_PATH} must be a mapping")
            data = {}

        feed_section = data.get('feed') if isinstance(data.get('feed'), dict) else {}
        proxy_section = data.get('proxy') if isinstance(data.get('proxy'), dict) else {}
        covers_section = data.get('covers')
        cache_section = data.get('cache') if isinstance(data.get('cache'), dict) else {}

        feed_url = feed_section.get('url') if isinstance(feed_section.get('url'), str) else None
        self.FEED_URL = environ.get("FEED_URL") or (feed_url or "").strip() or DEFAULT_FEED_URL

        self.ALLOWED_HOSTS = [
            h.lower() for h in self._string_list(proxy_section.get('allowed_hosts'), 'proxy.allowed_hosts', DEFAULT_ALLOWED_HOSTS)
        ]
        self.USER_AGENTS = self._string_list(proxy_section.get('user_agents'), 'proxy.user_agents', DEFAULT_USER_AGENTS)
        self.DEFAULT_COVER_URL = str(proxy_section.get('default_cover') or DEFAULT_COVER_URL).strip()
        self.DEFAULT_REFERER = str(proxy_section.get('default_referer') or DEFAULT_REFERER).strip()
        self.NO_PHOTO_MARKER = str(proxy_section.get('no_photo_marker') or DEFAULT_NO_PHOTO_MARKER).strip()

        cache_mode = str(proxy_section.get('cache_mode') or "prefer-cache").strip().lower()
        if cache_mode not in CACHE_MODES:
            logger.warning(f"Unknown proxy.cache_mode '{cache_mode}'; using prefer-cache")
            cache_mode = "prefer-cache"
        self.CACHE_MODE = cache_mode

        overrides: Dict[str, str] = {}
        if isinstance(covers_section, dict):
            for title, url in covers_section.items():
                if isinstance(title, str) and isinstance(url, str) and url.strip():
                    overrides[title.strip()] = url.strip()
                else:
                    logger.warning(f"Skipping invalid cover override: {title}={url}")
        elif covers_section is not None:
            logger.warning("covers section must be a mapping of title to URL; ignoring")
        self.FALLBACK_COVERS = overrides

        cache_control = dict(DEFAULT_CACHE_CONTROL)
        for key, value in cache_section.items():
            if key in cache_control and isinstance(value, str) and value.strip():
                cache_control[key] = value.strip()
            else:
                logger.warning(f"Ignoring unknown or invalid cache setting: {key}")
        self.CACHE_CONTROL = cache_control

        logger.info(
            "Loaded shelf configuration: feed=%s allowed_hosts=%d user_agents=%d overrides=%d cache_mode=%s",
            self.FEED_URL,
            len(self.ALLOWED_HOSTS),
            len(self.USER_AGENTS),
            len(self.FALLBACK_COVERS),
            self.CACHE_MODE,
        )

    def reload(self):
        """Reload environment and shelf.yaml configuration."""
        logger.info("Reloading shelf configuration")
        self._validate_and_set_config()
        self._load_shelf_config()

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "feed_url": self.FEED_URL,
            "http_timeout": self.HTTP_TIMEOUT,
            "max_retries": self.MAX_RETRIES,
            "max_image_bytes": self.MAX_IMAGE_BYTES,
            "allowed_hosts": len(self.ALLOWED_HOSTS),
            "user_agents": len(self.USER_AGENTS),
            "cover_overrides": len(self.FALLBACK_COVERS),
            "cache_mode": self.CACHE_MODE,
            "image_cache_ttl": self.IMAGE_CACHE_TTL,
            "public_base_url": self.PUBLIC_BASE_URL or "(relative)",
        }

# Global configuration instance
config = Config()
