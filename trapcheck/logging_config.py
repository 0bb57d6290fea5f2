"""Logging configuration setup."""

import copy
import logging
import logging.config
import re
import sys
from typing import Any, Optional, Set

from trapcheck.constants import DEFAULT_LOG_LEVEL

# ── Secret redaction filter ──────────────────────────────────────────────

_REDACTED = "***REDACTED***"
_MIN_SECRET_LEN = 4


class SecretRedactionFilter(logging.Filter):
    """Replaces registered secrets in log records with a placeholder.

    The API token and each check's submission secret are registered.  The
    secret is also the last segment of the submission URL, and httpx logs
    request URLs as ``httpx.URL`` objects, so non-string arguments are
    scrubbed through their ``str()`` form as well.  Numbers pass untouched
    so ``%d`` style formatting keeps working.
    """

    def __init__(self) -> None:
        super().__init__()
        self._secrets: Set[str] = set()
        self._pattern: Optional[re.Pattern] = None

    def register(self, *values: str) -> None:
        """Add secret values; empty and very short values are ignored."""
        fresh = {v for v in values if v and len(v) >= _MIN_SECRET_LEN} - self._secrets
        if not fresh:
            return
        self._secrets |= fresh
        # longest first so a secret containing another is replaced whole
        ordered = sorted(self._secrets, key=len, reverse=True)
        self._pattern = re.compile("|".join(re.escape(s) for s in ordered))

    def redact(self, text: str) -> str:
        if self._pattern is None:
            return text
        return self._pattern.sub(_REDACTED, text)

    def _scrub(self, value: Any) -> Any:
        if value is None or isinstance(value, (bool, int, float)):
            return value
        text = value if isinstance(value, str) else str(value)
        redacted = self.redact(text)
        return value if redacted == text else redacted

    def filter(self, record: logging.LogRecord) -> bool:
        if self._pattern is None:
            return True
        if isinstance(record.msg, str):
            record.msg = self.redact(record.msg)
        if isinstance(record.args, dict):
            record.args = {k: self._scrub(v) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(self._scrub(a) for a in record.args)
        return True


secret_redaction_filter = SecretRedactionFilter()

BASE_LOG_CFG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "console": {
            "format": "%(asctime)s %(levelname)-7s %(name)s: %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
        "simple_file": {
            "format": "%(asctime)s - %(name)25s:%(lineno)-4d - %(levelname)-7s - %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
    },
    "handlers": {
        "console_handler": {
            "class": "logging.StreamHandler",
            "level": "DEBUG",
            "formatter": "console",
            "stream": "ext://sys.stderr",
        },
    },
    "loggers": {
        "trapcheck": {
            "handlers": ["console_handler"],
            "propagate": False,
            "level": DEFAULT_LOG_LEVEL,
        },
        "httpx": {
            "handlers": ["console_handler"],
            "propagate": False,
            "level": "WARNING",
        },
        "httpcore": {
            "handlers": ["console_handler"],
            "propagate": False,
            "level": "WARNING",
        },
    },
    "root": {
        "handlers": ["console_handler"],
        "level": "WARNING",
    },
}

_VALID_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def setup_logging(log_lvl_str: str, log_file: Optional[str] = None) -> str:
    """Configure logging for the command line tool.

    Args:
        log_lvl_str: Desired level for trapcheck loggers (e.g. ``"debug"``).
        log_file: Optional path; when given, records are also appended there.

    Returns:
        The level actually applied.
    """
    log_lvl_valid = log_lvl_str.upper()
    if log_lvl_valid not in _VALID_LEVELS:
        print(f"Warning: invalid log level '{log_lvl_str}'. Using 'INFO'.", file=sys.stderr)
        log_lvl_valid = "INFO"

    log_cfg: dict = copy.deepcopy(BASE_LOG_CFG)
    log_cfg["loggers"]["trapcheck"]["level"] = log_lvl_valid
    if log_lvl_valid == "DEBUG":
        log_cfg["loggers"]["httpx"]["level"] = "INFO"
        log_cfg["root"]["level"] = "DEBUG"

    if log_file:
        log_cfg["handlers"]["file_handler"] = {
            "class": "logging.FileHandler",
            "level": "DEBUG",
            "formatter": "simple_file",
            "filename": log_file,
            "encoding": "utf-8",
        }
        for cfg in log_cfg["loggers"].values():
            cfg["handlers"].append("file_handler")
        log_cfg["root"]["handlers"].append("file_handler")

    logging.config.dictConfig(log_cfg)
    for name in ("", "trapcheck", "httpx", "httpcore"):
        for handler in logging.getLogger(name).handlers:
            if secret_redaction_filter not in handler.filters:
                handler.addFilter(secret_redaction_filter)
    return log_lvl_valid
