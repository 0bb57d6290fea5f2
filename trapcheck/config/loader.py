"""Configuration file loading and validation.

Reads a YAML file, expands ``${ENV_VAR}`` placeholders and validates the
result against :class:`~trapcheck.config.schema.FileConfig`.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional, Set

import yaml
from pydantic import ValidationError

from trapcheck.config.env import expand_env_vars
from trapcheck.config.schema import FileConfig
from trapcheck.errors import ConfigurationError

logger = logging.getLogger(__name__)

_YAML_EXTS = frozenset({".yaml", ".yml"})
_PYDANTIC_VALUE_ERROR = "Value error, "


def _read_config_file(cfg_fpath: str) -> Dict[str, Any]:
    """Parse the YAML file at *cfg_fpath*; an empty file gives an empty mapping."""
    ext = os.path.splitext(cfg_fpath)[1].lower()
    if ext not in _YAML_EXTS:
        raise ConfigurationError(
            f"Unsupported config file extension '{ext}' for {cfg_fpath} (use .yaml or .yml)"
        )
    if not os.path.isfile(cfg_fpath):
        raise ConfigurationError(f"Configuration file does not exist: {cfg_fpath}")

    try:
        with open(cfg_fpath, "r", encoding="utf-8") as f:
            raw_data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Error reading configuration file {cfg_fpath}: {exc}") from exc

    raw_data = raw_data if raw_data is not None else {}
    if not isinstance(raw_data, dict):
        raise ConfigurationError(
            f"{cfg_fpath}: top level must be a mapping with api/trapcheck/logging sections, "
            f"got {type(raw_data).__name__}"
        )
    return raw_data


def _format_validation_errors(exc: ValidationError) -> str:
    """One ``  - section.key: message`` line per error, keyed as in the YAML file."""
    lines: List[str] = []
    for err in exc.errors():
        key = ".".join(str(part) for part in err["loc"]) or "(top level)"
        msg = err["msg"]
        if msg.startswith(_PYDANTIC_VALUE_ERROR):
            msg = msg[len(_PYDANTIC_VALUE_ERROR):]
        lines.append(f"  - {key}: {msg}")
    return "\n".join(lines)


def validate_config(raw_data: Dict[str, Any]) -> FileConfig:
    """Expand env references in *raw_data* and validate it."""
    unset: Set[str] = set()
    raw_data = expand_env_vars(raw_data, unset)
    if unset:
        logger.warning(
            "configuration references unset environment variable(s): %s",
            ", ".join(sorted(unset)),
        )
    try:
        return FileConfig.model_validate(raw_data)
    except ValidationError as exc:
        error_summary = _format_validation_errors(exc)
        raise ConfigurationError(
            f"Configuration validation failed ({len(exc.errors())} error(s)):\n{error_summary}"
        ) from exc


def load_config(cfg_fpath: Optional[str] = None) -> FileConfig:
    """Load the configuration file at *cfg_fpath*.

    With no path, defaults are returned with the API token taken from
    ``CIRCONUS_API_TOKEN``.
    """
    if cfg_fpath is None:
        return validate_config({"api": {"token": os.environ.get("CIRCONUS_API_TOKEN", "")}})

    logger.debug("Loading configuration file: %s", cfg_fpath)
    config = validate_config(_read_config_file(cfg_fpath))
    logger.info("Configuration '%s' loaded.", cfg_fpath)
    return config
