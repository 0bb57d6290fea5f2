"""
trapcheck - deliver metric payloads to Circonus httptrap brokers.

Discovers and caches brokers, establishes pinned TLS trust to the broker
backing a check, and submits metric batches with compression, tracing and
bounded retries.
"""

import logging

from trapcheck.constants import APP_NAME, APP_VERSION
from trapcheck.errors import TrapCheckError

__version__ = APP_VERSION
__app_name__ = APP_NAME

logging.getLogger(__name__).addHandler(logging.NullHandler())

from trapcheck.api.client import APIClient  # noqa: E402
from trapcheck.config.schema import TrapCheckConfig  # noqa: E402
from trapcheck.trapcheck import TrapCheck  # noqa: E402

__all__ = [
    "APIClient",
    "TrapCheck",
    "TrapCheckConfig",
    "TrapCheckError",
    "APP_NAME",
    "APP_VERSION",
    "__version__",
    "__app_name__",
]
