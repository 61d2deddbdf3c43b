#!/usr/bin/env python3
"""
Daemon configuration.

Values are resolved from (lowest to highest precedence):
- built-in defaults
- environment variables (DEFERQ_DB_PATH, DEFERQ_INTERVAL, DEFERQ_LOG_LEVEL,
  and the VVERBOSE switch)
- command-line flags
"""

import os
from dataclasses import dataclass, replace
from enum import IntEnum
from pathlib import Path
from typing import Mapping, Optional

from deferq.errors import ConfigError

DEFAULT_INTERVAL = 5
DEFAULT_DB_PATH = Path.home() / ".deferq" / "deferq.db"


class LogLevel(IntEnum):
    """How much the daemon reports"""

    SILENT = 0
    NORMAL = 1
    VERBOSE = 2

    @classmethod
    def parse(cls, value) -> "LogLevel":
        """
        Parse a log level from a name ("silent", "normal", "verbose") or a number.

        :param value: LogLevel, int or string
        :return: LogLevel
        """
        if isinstance(value, LogLevel):
            return value
        text = str(value).strip().lower()
        if text.isdigit():
            try:
                return cls(int(text))
            except ValueError:
                raise ConfigError(f"Unknown log level: {value}") from None
        try:
            return cls[text.upper()]
        except KeyError:
            raise ConfigError(f"Unknown log level: {value}") from None


def parse_interval(value) -> int:
    """Validate a poll interval: a positive whole number of seconds."""
    try:
        interval = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Interval must be an integer, got {value!r}") from None
    if isinstance(value, float) and value != interval:
        raise ConfigError(f"Interval must be a whole number of seconds, got {value!r}")
    if interval <= 0:
        raise ConfigError(f"Interval must be positive, got {interval}")
    return interval


@dataclass(frozen=True)
class DaemonConfig:
    """Settings for a SchedulerDaemon run."""

    db_path: Path = DEFAULT_DB_PATH
    interval: int = DEFAULT_INTERVAL
    log_level: LogLevel = LogLevel.NORMAL

    def __post_init__(self):
        object.__setattr__(self, "db_path", Path(self.db_path))
        object.__setattr__(self, "interval", parse_interval(self.interval))
        object.__setattr__(self, "log_level", LogLevel.parse(self.log_level))

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "DaemonConfig":
        """
        Build a configuration from environment variables.

        :param environ: Mapping to read from (default: os.environ)
        :return: DaemonConfig
        """
        environ = os.environ if environ is None else environ

        log_level = LogLevel.NORMAL
        if environ.get("DEFERQ_LOG_LEVEL"):
            log_level = LogLevel.parse(environ["DEFERQ_LOG_LEVEL"])
        elif environ.get("VVERBOSE"):
            log_level = LogLevel.VERBOSE

        return cls(
            db_path=Path(environ.get("DEFERQ_DB_PATH") or DEFAULT_DB_PATH),
            interval=environ.get("DEFERQ_INTERVAL") or DEFAULT_INTERVAL,
            log_level=log_level,
        )

    def override(self, **values) -> "DaemonConfig":
        """Return a copy with every non-None value applied."""
        changes = {key: value for key, value in values.items() if value is not None}
        return replace(self, **changes)
