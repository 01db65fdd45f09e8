"""Structured logging configuration using structlog.

Library modules log through stdlib ``logging.getLogger(__name__)``; this
module configures structlog for applications embedding the session core and
for the auth audit trail (:mod:`clavis.events`):

- JSON output for production environments
- Console output with colors for development
- Context-variable merging (bind a request id with ``structlog.contextvars``)
- Redaction of credentials, tokens and cookie values

Usage:
    # During application startup
    from clavis.logging import configure_logging
    configure_logging()

    # In application code
    from clavis.logging import get_logger
    logger = get_logger(__name__)
    logger.info("login_started", return_to="/dashboard")
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from collections.abc import MutableMapping

Processor = structlog.types.Processor

# Exact field names that are always redacted
SENSITIVE_FIELDS: frozenset[str] = frozenset(
    {
        "authorization",
        "bearer",
        "code",
        "code_verifier",
        "credential",
        "set-cookie",
        "state",
    }
)

# Substrings marking a field as sensitive (e.g. access_token, cookie_password)
SENSITIVE_SUBSTRINGS: tuple[str, ...] = ("password", "token", "secret", "cookie")

REDACTED_VALUE: str = "***REDACTED***"

_VALID_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


class LoggingSettings(BaseSettings):
    """Logging configuration settings from environment variables.

    Loads configuration from environment variables:
    - LOG_LEVEL: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    - ENVIRONMENT: Environment name (development, staging, production, test)

    Example:
        >>> LoggingSettings(log_level="debug", environment="production").use_json_logs
        True
    """

    model_config = SettingsConfigDict(
        env_prefix="",
        extra="ignore",
        populate_by_name=True,
    )

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    environment: str = Field(default="development", alias="ENVIRONMENT")

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Any) -> str:
        return v.upper() if isinstance(v, str) else str(v)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        if v not in _VALID_LEVELS:
            msg = f"log_level must be one of {sorted(_VALID_LEVELS)}"
            raise ValueError(msg)
        return v

    @property
    def use_json_logs(self) -> bool:
        """JSON rendering in production, console rendering elsewhere."""
        return self.environment == "production"

    @property
    def log_level_int(self) -> int:
        return getattr(logging, self.log_level, logging.INFO)


class SensitiveDataProcessor:
    """Structlog processor that redacts credentials and session material.

    Redacts values whose key:

    1. is in SENSITIVE_FIELDS (case-insensitive), or
    2. contains one of SENSITIVE_SUBSTRINGS.

    Nested dicts (such as an audit event's ``metadata``) are redacted too.

    Example:
        >>> processor = SensitiveDataProcessor()
        >>> processor(None, "info", {"event": "x", "refresh_token": "rt"})["refresh_token"]
        '***REDACTED***'
    """

    def __call__(
        self,
        logger: Any,
        method_name: str,
        event_dict: MutableMapping[str, Any],
    ) -> MutableMapping[str, Any]:
        return self._redact(event_dict)

    def _redact(self, mapping: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
        for key in list(mapping.keys()):
            value = mapping[key]
            if self._is_sensitive(str(key)):
                mapping[key] = REDACTED_VALUE
            elif isinstance(value, dict):
                mapping[key] = self._redact(dict(value))
        return mapping

    @staticmethod
    def _is_sensitive(key: str) -> bool:
        key_lower = key.lower()
        if key_lower in SENSITIVE_FIELDS:
            return True
        return any(part in key_lower for part in SENSITIVE_SUBSTRINGS)


@lru_cache(maxsize=1)
def get_logging_settings() -> LoggingSettings:
    """Get cached LoggingSettings instance.

    Clear cache with ``get_logging_settings.cache_clear()`` for testing.
    """
    return LoggingSettings()


def build_processors(settings: LoggingSettings) -> list[Processor]:
    """Assemble the structlog processor chain for ``settings``."""
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        SensitiveDataProcessor(),
        structlog.processors.format_exc_info,
    ]
    if settings.use_json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    return processors


def configure_logging(settings: LoggingSettings | None = None) -> None:
    """Configure structlog for structured logging.

    Also sets the level of the ``clavis`` stdlib logger hierarchy so library
    events honour ``LOG_LEVEL``. Call once during application startup.

    Args:
        settings: Optional LoggingSettings instance. If not provided,
            settings are loaded from environment variables.
    """
    if settings is None:
        settings = get_logging_settings()

    structlog.configure(
        processors=build_processors(settings),
        wrapper_class=structlog.make_filtering_bound_logger(settings.log_level_int),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.getLogger("clavis").setLevel(settings.log_level_int)


def get_logger(name: str | None = None) -> Any:
    """Get a structlog logger, bound to ``name`` when given.

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("callback_completed", return_to="/")
    """
    logger = structlog.get_logger()
    if name is not None:
        logger = logger.bind(logger=name)
    return logger
