"""Data models for brokers, check bundles and submission results.

Broker and check bundle models mirror the monitoring API JSON contract,
where server-managed fields carry a leading underscore (``_cid``,
``_details``...).  Python attribute names drop the underscore; the API
names are kept as aliases so ``model_validate`` accepts raw API payloads and
``to_api`` produces them.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from trapcheck.constants import (
    CONFIG_SUBMISSION_URL,
    NO_ERROR,
    NO_SUBMIT_UUID,
    STATUS_ACTIVE,
)

# ── Brokers ──────────────────────────────────────────────────────────────


class BrokerInstance(BaseModel):
    """One instance (cluster member) of a broker."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    cn: str = ""
    status: str = ""
    modules: List[str] = Field(default_factory=list)
    ip: Optional[str] = None
    external_host: Optional[str] = None
    port: Optional[int] = None
    external_port: int = 0

    @field_validator("modules", mode="before")
    @classmethod
    def _none_to_list(cls, v: Any) -> Any:
        return v or []

    @field_validator("external_port", mode="before")
    @classmethod
    def _none_to_zero(cls, v: Any) -> Any:
        return v or 0

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE


class Broker(BaseModel):
    """Immutable snapshot of a broker as returned by ``GET /broker``."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    cid: str = Field(alias="_cid")
    name: str = Field(default="", alias="_name")
    type: str = Field(default="", alias="_type")
    tags: List[str] = Field(default_factory=list, alias="_tags")
    details: List[BrokerInstance] = Field(default_factory=list, alias="_details")

    @field_validator("tags", "details", mode="before")
    @classmethod
    def _none_to_list(cls, v: Any) -> Any:
        return v or []

    @property
    def active_instances(self) -> List[BrokerInstance]:
        return [d for d in self.details if d.is_active]


# ── Check bundles ────────────────────────────────────────────────────────


class CheckBundle(BaseModel):
    """A check bundle (``/check_bundle``).

    Unknown API fields are preserved so a fetched bundle can be sent back
    with ``update_check_bundle`` without losing data.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    cid: str = Field(default="", alias="_cid")
    check_uuids: List[str] = Field(default_factory=list, alias="_check_uuids")
    checks: List[str] = Field(default_factory=list, alias="_checks")
    brokers: List[str] = Field(default_factory=list)
    config: Dict[str, str] = Field(default_factory=dict)
    display_name: str = ""
    metric_filters: List[List[str]] = Field(default_factory=list)
    metrics: List[Dict[str, Any]] = Field(default_factory=list)
    notes: Optional[str] = None
    period: int = 0
    status: str = ""
    tags: List[str] = Field(default_factory=list)
    target: str = ""
    timeout: float = 0
    type: str = ""

    @field_validator(
        "check_uuids", "checks", "brokers", "metric_filters", "metrics", "tags", mode="before"
    )
    @classmethod
    def _none_to_list(cls, v: Any) -> Any:
        return v or []

    @field_validator("config", mode="before")
    @classmethod
    def _stringify_config(cls, v: Any) -> Any:
        if not v:
            return {}
        return {str(k): "" if val is None else str(val) for k, val in v.items()}

    @property
    def submission_url(self) -> Optional[str]:
        return self.config.get(CONFIG_SUBMISSION_URL)

    def to_api(self) -> Dict[str, Any]:
        """Serialise to the API JSON shape (aliased keys, unset CID dropped)."""
        data = self.model_dump(by_alias=True)
        if not data.get("_cid"):
            for key in ("_cid", "_check_uuids", "_checks"):
                data.pop(key, None)
        return data


# ── Submission ───────────────────────────────────────────────────────────


class SubmissionResult(BaseModel):
    """Outcome of one metric submission.

    ``stats``, ``filtered`` and ``error`` come from the broker response body;
    the remaining fields are filled in by the submission pipeline.
    """

    model_config = ConfigDict(extra="ignore")

    stats: int = Field(default=0, ge=0)
    filtered: int = Field(default=0, ge=0)
    error: str = NO_ERROR
    check_uuid: str = ""
    submit_uuid: str = NO_SUBMIT_UUID
    bytes_sent: int = 0
    payload_size: int = 0
    compressed: bool = False
    submit_duration: float = 0.0
    last_request_duration: float = 0.0

    @field_validator("error", mode="before")
    @classmethod
    def _normalise_error(cls, v: Any) -> Any:
        # an explicit "none" distinguishes a clean submit from a missing field
        if v is None or v == "":
            return NO_ERROR
        return v

    @field_validator("filtered", "stats", mode="before")
    @classmethod
    def _none_to_zero(cls, v: Any) -> Any:
        return v or 0
