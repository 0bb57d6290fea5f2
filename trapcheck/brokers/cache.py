"""Process-wide cache of the broker list.

Every check session in a process needs the same broker list, so one
:class:`BrokerCache` is shared between them to avoid redundant API calls.
The cache is an ordinary object: sessions take it as a dependency and fall
back to :meth:`BrokerCache.shared` when none is given.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, ClassVar, Iterable, List, Optional

from trapcheck.api.client import API
from trapcheck.constants import BROKER_CACHE_TTL
from trapcheck.errors import (
    BrokerCacheError,
    BrokerListEmptyError,
    BrokerListNotInitializedError,
    BrokerNotFoundError,
    ConfigurationError,
)
from trapcheck.models import Broker

logger = logging.getLogger(__name__)


class BrokerCache:
    """Thread-safe, lazily refreshed broker list.

    Parameters
    ----------
    clock:
        Monotonic time source in seconds; replaceable for tests.

    All reads and writes hold one re-entrant lock.  Only :meth:`fetch_all`
    holds it across an API call.  Readers get a new list object, so a
    refresh never mutates a list already handed out.
    """

    _shared: ClassVar[Optional["BrokerCache"]] = None
    _shared_lock: ClassVar[threading.Lock] = threading.Lock()

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._lock = threading.RLock()
        self._clock = clock
        self._client: Optional[API] = None
        self._log: logging.Logger = logger
        self._brokers: Optional[List[Broker]] = None
        self._last_refresh: Optional[float] = None

    @classmethod
    def shared(cls) -> "BrokerCache":
        """Return the process-wide cache, creating it on first use."""
        with cls._shared_lock:
            if cls._shared is None:
                cls._shared = cls()
            return cls._shared

    # ── lifecycle ───────────────────────────────────────────────────

    def initialize(self, client: Optional[API], log: Optional[logging.Logger]) -> None:
        """Bind the API client and logger and perform the initial fetch.

        The first caller wins; once the cache is populated later calls do
        nothing.
        """
        if client is None:
            raise ConfigurationError("invalid init call, client is None")
        if log is None:
            raise ConfigurationError("invalid init call, logger is None")

        with self._lock:
            if self._client is None:
                self._client = client
                self._log = log
            if self._brokers is not None:
                return
            self.fetch_all()

    @property
    def initialized(self) -> bool:
        with self._lock:
            return self._brokers is not None

    @property
    def last_refresh(self) -> Optional[float]:
        """Clock reading of the last successful fetch (``None`` if never)."""
        with self._lock:
            return self._last_refresh

    # ── refresh ─────────────────────────────────────────────────────

    def fetch_all(self) -> None:
        """Unconditionally replace the snapshot with a fresh API listing."""
        with self._lock:
            if self._client is None:
                raise BrokerListNotInitializedError()
            self._log.info("fetching broker list")
            try:
                brokers = self._client.fetch_brokers()
            except Exception as exc:
                raise BrokerCacheError(f"error fetching broker list: {exc}") from exc
            self._brokers = list(brokers)
            self._last_refresh = self._clock()
            self._log.debug("broker list refreshed, %d broker(s)", len(self._brokers))

    def refresh_if_stale(self, ttl: float = BROKER_CACHE_TTL) -> bool:
        """Fetch only when the last successful fetch is older than *ttl* seconds.

        Returns ``True`` if a fetch was performed.
        """
        with self._lock:
            last = self._last_refresh
            if last is not None and (self._clock() - last) <= ttl:
                return False
            self.fetch_all()
            return True

    # ── reads ───────────────────────────────────────────────────────

    def list(self) -> List[Broker]:
        """Return the current broker snapshot."""
        with self._lock:
            return list(self._snapshot())

    def get(self, cid: str) -> Broker:
        """Return the broker with *cid*.

        An empty snapshot triggers one synchronous fetch before giving up.
        """
        if not cid:
            raise BrokerNotFoundError("invalid cid (empty)")

        with self._lock:
            if self._brokers is None:
                raise BrokerListNotInitializedError()
            if not self._brokers:
                self._log.warning("broker list is empty, refetching")
                self.fetch_all()
            for broker in self._snapshot():
                if broker.cid == cid:
                    self._log.debug("using cached broker %s", broker.cid)
                    return broker

        raise BrokerNotFoundError(f"no broker with CID ({cid}) found")

    def search(self, tags: Iterable[str]) -> List[Broker]:
        """Return brokers carrying every tag in *tags* (case-insensitive)."""
        wanted = {t.lower() for t in tags}
        with self._lock:
            found = [
                b for b in self._snapshot() if wanted <= {t.lower() for t in b.tags}
            ]
        if not found:
            raise BrokerNotFoundError(
                f"no brokers found with tags ({','.join(sorted(wanted))})"
            )
        return found

    def _snapshot(self) -> List[Broker]:
        # caller holds the lock
        if self._brokers is None:
            raise BrokerListNotInitializedError()
        if not self._brokers:
            raise BrokerListEmptyError()
        return self._brokers
