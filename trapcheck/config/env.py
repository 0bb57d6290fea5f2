"""Environment references in configuration values.

``${NAME}`` is replaced by the variable's value and ``${NAME:-fallback}``
uses *fallback* when NAME is unset or empty.  A plain ``${NAME}`` whose
variable is unset is left as written and its name reported, so the loader
can warn before an unexpanded API token is sent to the API.
"""

from __future__ import annotations

import os
import re
from typing import Any, Optional, Set

_ENV_REF_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


def expand_env_vars(value: Any, unset: Optional[Set[str]] = None) -> Any:
    """Expand environment references in every string inside *value*.

    Parameters
    ----------
    value:
        Parsed YAML: mappings and lists are walked, other scalars returned as is.
    unset:
        When given, names of referenced variables that are unset (and have
        no fallback) are added to it.
    """
    if isinstance(value, str):
        return _ENV_REF_RE.sub(lambda m: _resolve(m, unset), value)
    if isinstance(value, dict):
        return {k: expand_env_vars(v, unset) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env_vars(item, unset) for item in value]
    return value


def _resolve(match: "re.Match[str]", unset: Optional[Set[str]]) -> str:
    name, fallback = match.group(1), match.group(2)
    current = os.environ.get(name)
    if fallback is not None:
        return current or fallback
    if current is None:
        if unset is not None:
            unset.add(name)
        return match.group(0)
    return current
