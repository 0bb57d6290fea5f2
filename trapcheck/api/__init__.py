"""Monitoring API access: the collaborator protocol and an httpx client."""

from trapcheck.api.client import API, APIClient

__all__ = [
    "API",
    "APIClient",
]
