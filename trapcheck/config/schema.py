"""Pydantic configuration models for trapcheck.

Durations are written the way the monitoring agent documents them
(``500ms``, ``10s``, ``1m30s``) and validated up front, so a typo fails at
load time instead of at the first submission.
"""

from __future__ import annotations

import re
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from trapcheck.constants import (
    APP_NAME,
    DEFAULT_API_TIMEOUT,
    DEFAULT_API_URL,
    DEFAULT_BROKER_MAX_RESPONSE_TIME,
    DEFAULT_CHECK_TYPE,
    DEFAULT_LOG_LEVEL,
    DEFAULT_SUBMISSION_TIMEOUT,
)
from trapcheck.models import CheckBundle

# ── Durations ────────────────────────────────────────────────────────────

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: str) -> float:
    """Parse a duration string into seconds.

    Accepts a sequence of ``<number><unit>`` parts (units ns, us, ms, s, m,
    h) or a bare ``0``.  Raises ``ValueError`` on anything else.
    """
    text = value.strip()
    if text == "0":
        return 0.0
    if not text:
        raise ValueError("invalid duration (empty)")
    pos = 0
    total = 0.0
    for match in _DURATION_PART_RE.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration '{value}'")
    return total


# ── Sections ─────────────────────────────────────────────────────────────


class APISettings(BaseModel):
    """Monitoring API connection settings."""

    url: str = Field(default=DEFAULT_API_URL, description="API base URL.")
    token: str = Field(default="", description="API token. Supports ${ENV_VAR} and ${ENV_VAR:-fallback}.")
    app_name: str = Field(default=APP_NAME, description="Application name bound to the token.")
    ca_file: Optional[str] = Field(
        default=None, description="CA bundle for a private API endpoint."
    )
    timeout: float = Field(default=DEFAULT_API_TIMEOUT, gt=0)

    @field_validator("url")
    @classmethod
    def _validate_url(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"URL '{v}' must start with http:// or https://")
        return v


class TrapCheckConfig(BaseModel):
    """Settings for one check session."""

    check: Optional[CheckBundle] = Field(
        default=None,
        description="Check bundle settings; set 'cid' to use an existing bundle.",
    )
    check_type: str = Field(default=DEFAULT_CHECK_TYPE, description="httptrap variant.")
    submission_url: str = Field(
        default="",
        description="Explicit submission URL (e.g. a local agent); disables check refresh.",
    )
    submission_timeout: str = DEFAULT_SUBMISSION_TIMEOUT
    broker_max_response_time: str = DEFAULT_BROKER_MAX_RESPONSE_TIME
    trace_metrics: str = Field(
        default="",
        description="Directory to write traced payloads to, or '-' to log them.",
    )
    broker_select_tags: List[str] = Field(default_factory=list)
    check_search_tags: List[str] = Field(default_factory=list)
    public_ca: bool = Field(
        default=False,
        description="Broker uses a publicly trusted certificate; skip CA pinning.",
    )

    @field_validator("submission_timeout", "broker_max_response_time")
    @classmethod
    def _validate_duration(cls, v: str) -> str:
        parse_duration(v)
        return v.strip()

    @field_validator("check_type")
    @classmethod
    def _validate_check_type(cls, v: str) -> str:
        v = v.strip()
        if v and not v.startswith("httptrap"):
            raise ValueError(f"check type must be httptrap variant ({v})")
        return v or DEFAULT_CHECK_TYPE

    @field_validator("submission_url")
    @classmethod
    def _validate_submission_url(cls, v: str) -> str:
        v = v.strip()
        if v and not v.startswith(("http://", "https://")):
            raise ValueError(f"URL '{v}' must start with http:// or https://")
        return v

    @property
    def submission_timeout_seconds(self) -> float:
        return parse_duration(self.submission_timeout)

    @property
    def broker_max_response_seconds(self) -> float:
        return parse_duration(self.broker_max_response_time)


class LoggingSettings(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = DEFAULT_LOG_LEVEL
    file: Optional[str] = Field(default=None, description="Also log to this file.")

    @field_validator("level", mode="before")
    @classmethod
    def _upper(cls, v: str) -> str:
        return v.upper() if isinstance(v, str) else v


class FileConfig(BaseModel):
    """Top-level layout of a trapcheck YAML configuration file::

        api:
          token: ${CIRCONUS_API_TOKEN}
        trapcheck:
          check_type: httptrap
          trace_metrics: "-"
        logging:
          level: info
    """

    api: APISettings = Field(default_factory=APISettings)
    trapcheck: TrapCheckConfig = Field(default_factory=TrapCheckConfig)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
