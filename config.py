#!/usr/bin/env python3
"""
Settings and logging for the geo feed poller.

Values come from, in increasing precedence order of loading:
process environment, ``.env`` next to this file, the YAML file named by
SECRETS_FILE (its keys are exported into the environment), and finally
``scrapers.yaml`` for the identity/location pairs to poll.

Only ``main.py`` reads the global ``config`` object. The runner, scraper,
enricher and API client receive plain values when they are built.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, List, Optional
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

_LEVELS = {"DEBUG": DEBUG, "INFO": INFO, "WARNING": WARNING, "ERROR": ERROR}


def _setup_global_logger():
    """Configure the root logger once: stdout, line buffered.

    LOG_LEVEL picks the level (default INFO), LOG_TIMESTAMPS=false drops the
    time prefix (useful under systemd/docker which add their own), and
    AIOHTTP_LOG_LEVEL tunes the aiohttp loggers (default WARNING).
    """
    environ["PYTHONUNBUFFERED"] = "1"

    level = _LEVELS.get(environ.get("LOG_LEVEL", "INFO").upper(), INFO)
    prefix = '%(asctime)s - ' if environ.get("LOG_TIMESTAMPS", "true").lower() != "false" else ''
    basicConfig(
        level=level,
        format=prefix + '%(name)s - %(levelname)s - %(message)s',
        handlers=[StreamHandler(sys.stdout)],
        force=True,
    )
    sys.stdout.reconfigure(line_buffering=True)
    sys.stderr.reconfigure(line_buffering=True)

    aiohttp_level = _LEVELS.get(environ.get("AIOHTTP_LOG_LEVEL", "WARNING").upper(), WARNING)
    for name in ("aiohttp", "aiohttp.client", "azure.monitor.opentelemetry.exporter"):
        getLogger(name).setLevel(aiohttp_level)

    return getLogger("GeoPoller")


def get_logger(name: str):
    """Logger named ``GeoPoller.<name>``; one per module, e.g. ``get_logger("api")``."""
    return getLogger(f"GeoPoller.{name}")


logger = _setup_global_logger()


class Config:
    """Validated runtime settings plus the scraper definitions.

    ``scrapers.yaml`` layout::

        defaults:
          stagger_seconds: 2        # windup spacing between scrapers
          poll:                     # PollConfig fields shared by all scrapers
            interval_seconds: 60
        scrapers:
          - identity: "3b5c...e1"
            location: {name: Wuerzburg, latitude: 49.79, longitude: 9.95}
            poll: {windup_delay_seconds: 10}
    """

    def __init__(self):
        self._load_environment()
        self._validate_and_set_config()
        self._load_scraper_definitions()

    def _load_environment(self):
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Environment overrides read from {dotenv_path}")
        self._load_secrets_file()

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Integer setting from the environment; invalid or too small values fall back to ``default``."""
        raw = environ.get(env_var)
        if raw is None or raw == "":
            return default
        try:
            value = int(raw)
        except ValueError:
            logger.warning(f"{env_var}={raw!r} is not an integer; using {default}")
            return default
        if value < min_val:
            logger.warning(f"{env_var}={value} is below {min_val}; using {default}")
            return default
        return value

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        """Float setting from the environment; invalid or too small values fall back to ``default``."""
        raw = environ.get(env_var)
        if raw is None or raw == "":
            return default
        try:
            value = float(raw)
        except ValueError:
            logger.warning(f"{env_var}={raw!r} is not a number; using {default}")
            return default
        if value < min_val:
            logger.warning(f"{env_var}={value} is below {min_val}; using {default}")
            return default
        return value

    def _validate_and_set_config(self):
        # API endpoint and client identification
        self.API_BASE_URL = environ.get("API_BASE_URL", "https://api.go-tellm.com/api").rstrip("/")
        self.CLIENT_ID = environ.get("CLIENT_ID", "81e8a76e-1e02-4d17-9ba0-8a7020261b26")
        self.CLIENT_VERSION = environ.get("CLIENT_VERSION") or "4.63.0"
        self.API_VERSION = environ.get("API_VERSION", "0.2")
        self.HMAC_SECRET = environ.get("HMAC_SECRET") or None
        self.USER_AGENT = environ.get("USER_AGENT") or f"Jodel/{self.CLIENT_VERSION} Dalvik/2.1.0 (Linux; U; Android 5.1.1; )"

        # HTTP behaviour
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 5)
        self.MAX_RETRIES = self._validate_positive_int("MAX_RETRIES", 3, 0)
        self.RETRY_DELAY_BASE = self._validate_positive_float("RETRY_DELAY_BASE", 1.0, 0.1)
        self.PAGE_SIZE = self._validate_positive_int("PAGE_SIZE", 100, 1)
        # 0 disables client-side pacing
        self.REQUESTS_PER_MINUTE = self._validate_positive_int("REQUESTS_PER_MINUTE", 0, 0)

        # Storage
        base_dir = path.dirname(path.abspath(__file__))
        self.DATA_PATH = environ.get("DATA_PATH", base_dir)
        self.DATABASE_PATH = environ.get("DATABASE_PATH", path.join(self.DATA_PATH, "items.db"))
        self.SCHEMA_FILE_PATH = environ.get("SCHEMA_FILE_PATH", path.join(base_dir, "schema.sql"))
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 1, 1)
        self.SCRAPERS_CONFIG_PATH = environ.get("SCRAPERS_CONFIG_PATH", path.join(base_dir, "scrapers.yaml"))

        # Reply backfill
        self.ENRICH_BATCH_SIZE = self._validate_positive_int("ENRICH_BATCH_SIZE", 10, 1)
        self.ENRICH_REQUEUE_DELAY_SECONDS = self._validate_positive_float("ENRICH_REQUEUE_DELAY_SECONDS", 100.0, 0.0)
        self.ENRICH_IDLE_DELAY_SECONDS = self._validate_positive_float("ENRICH_IDLE_DELAY_SECONDS", 60.0, 0.0)
        self.ENRICH_SETTLE_DELAY_SECONDS = self._validate_positive_float("ENRICH_SETTLE_DELAY_SECONDS", 2.0, 0.0)
        self.ENRICH_ERROR_DELAY_SECONDS = self._validate_positive_float("ENRICH_ERROR_DELAY_SECONDS", 5.0, 0.0)

    # ------------------------------------------------------------------
    # YAML sources
    # ------------------------------------------------------------------
    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Optional[Any]:
        """Parse a YAML file, returning None (and logging why) when it is unusable."""
        if not path.isfile(file_path):
            logger.warning(f"No {kind} file at {file_path}")
            return None
        if not access(file_path, R_OK):
            logger.error(f"{kind} file {file_path} is not readable")
            return None
        size = path.getsize(file_path)
        if size > max_size:
            logger.error(f"{kind} file {file_path} is {size} bytes, over the {max_size} byte limit")
            return None
        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f"Invalid YAML in {kind} file {file_path}: {e}")
            return None
        except OSError as e:
            logger.error(f"Could not read {kind} file {file_path}: {e}")
            return None
        if not data:
            logger.warning(f"{kind} file {file_path} is empty")
            return None
        return data

    def _load_secrets_file(self):
        """Export the keys of the SECRETS_FILE YAML (top level or under ``environment``) into the environment."""
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set")
            return

        data = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if data is None:
            return
        if not isinstance(data, dict):
            logger.warning(f"Ignoring secrets file {secrets_file_path}: expected a mapping")
            return

        values = data['environment'] if isinstance(data.get('environment'), dict) else data
        exported = 0
        for key, value in values.items():
            if not isinstance(key, str) or value is None:
                logger.warning(f"Ignoring secrets entry {key!r}")
                continue
            environ[key] = str(value)
            exported += 1
        logger.info(f"Exported {exported} settings from {secrets_file_path}")

    def _load_scraper_definitions(self) -> None:
        """Fill ``SCRAPERS`` with ``{'identity', 'location', 'poll'}`` dicts and ``STAGGER_SECONDS``.

        Per-scraper ``poll`` keys override ``defaults.poll``. Entries lacking an
        identity or a location mapping are skipped; value validation happens
        when the scraper is built.
        """
        self.SCRAPERS: List[Dict[str, Any]] = []
        self.STAGGER_SECONDS = 0.0
        data = self._safe_read_yaml(self.SCRAPERS_CONFIG_PATH, 5 * 1024 * 1024, 'scrapers')
        if data is None:
            return
        if not isinstance(data, dict):
            logger.warning(f"Ignoring {self.SCRAPERS_CONFIG_PATH}: expected a mapping")
            return

        defaults = data.get('defaults') if isinstance(data.get('defaults'), dict) else {}
        default_poll = defaults.get('poll') if isinstance(defaults.get('poll'), dict) else {}
        stagger = defaults.get('stagger_seconds', 0)
        try:
            self.STAGGER_SECONDS = max(0.0, float(stagger))
        except (TypeError, ValueError):
            logger.warning(f"stagger_seconds={stagger!r} is not a number; using 0")

        entries = data.get('scrapers')
        if not isinstance(entries, list):
            logger.warning(f"{self.SCRAPERS_CONFIG_PATH} has no 'scrapers' list")
            return

        for index, entry in enumerate(entries):
            if not isinstance(entry, dict) or not entry.get('identity') or not isinstance(entry.get('location'), dict):
                logger.warning(f"Skipping scraper #{index}: identity and location mapping are required")
                continue
            poll = dict(default_poll)
            if isinstance(entry.get('poll'), dict):
                poll.update(entry['poll'])
            self.SCRAPERS.append({
                'identity': str(entry['identity']),
                'location': dict(entry['location']),
                'poll': poll,
            })

        logger.info(f"{len(self.SCRAPERS)} scrapers defined in {self.SCRAPERS_CONFIG_PATH}")

    def get_config_summary(self) -> Dict[str, Any]:
        """Non-secret view of the settings, for the status command and debug logs."""
        return {
            "api_base_url": self.API_BASE_URL,
            "client_version": self.CLIENT_VERSION,
            "database_path": self.DATABASE_PATH,
            "page_size": self.PAGE_SIZE,
            "timeout_seconds": self.HTTP_TIMEOUT,
            "retries": self.MAX_RETRIES,
            "requests_per_minute": self.REQUESTS_PER_MINUTE,
            "scraper_count": len(self.SCRAPERS),
            "stagger_seconds": self.STAGGER_SECONDS,
            "has_hmac_secret": bool(self.HMAC_SECRET),
        }


config = Config()
