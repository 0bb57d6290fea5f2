"""Check bundle resolution and tag management."""

from trapcheck.check.resolver import CheckResolver, ResolvedCheck, make_secret
from trapcheck.check.tags import merge_tags, update_check_tags

__all__ = [
    "CheckResolver",
    "ResolvedCheck",
    "make_secret",
    "merge_tags",
    "update_check_tags",
]
