"""Tag reconciliation for an existing check bundle."""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Tuple

from pydantic import ValidationError

from trapcheck.api.client import API
from trapcheck.errors import APIError, CheckBundleError
from trapcheck.models import CheckBundle

logger = logging.getLogger(__name__)


def merge_tags(
    current: Iterable[str], wanted: Iterable[str], log: logging.Logger = logger
) -> Tuple[List[str], bool]:
    """Merge *wanted* into *current*.

    Tags are ``category:value``.  A wanted tag whose category already exists
    with another value replaces it; unknown tags are appended.  Returns
    ``(tags, changed)``.
    """
    tags = list(current)
    changed = False
    for tag in wanted:
        if not tag or tag in tags:
            continue
        category = tag.split(":", 1)[0] if ":" in tag else None
        replaced = False
        if category is not None:
            for i, existing in enumerate(tags):
                if ":" in existing and existing.split(":", 1)[0] == category:
                    log.warning("modifying tag: new: %s old: %s", tag, existing)
                    tags[i] = tag
                    replaced = True
                    break
        if not replaced:
            log.warning("adding missing tag: %s curr: %s", tag, tags)
            tags.append(tag)
        changed = True
    return tags, changed


def update_check_tags(
    client: API,
    bundle: Optional[CheckBundle],
    tags: Iterable[str],
    log: logging.Logger = logger,
) -> Optional[CheckBundle]:
    """Make sure *bundle* carries *tags*, updating it through the API if needed.

    Returns the updated bundle, or ``None`` when nothing changed.
    """
    if bundle is None:
        raise CheckBundleError("invalid state, check bundle is nil")
    merged, changed = merge_tags(bundle.tags, tags, log)
    if not changed:
        return None
    updated = bundle.model_copy(update={"tags": merged})
    try:
        return client.update_check_bundle(updated)
    except (APIError, ValidationError) as exc:
        raise CheckBundleError(f"api updating check bundle tags: {exc}") from exc
