"""Broker selection and validation.

A broker is usable for a check type when one of its active instances
supports the check's module and answers a TCP connection within the
configured response time.  Selection prefers enterprise brokers and picks
uniformly at random among the valid candidates.
"""

from __future__ import annotations

import logging
import os
import secrets
import socket
import time
from typing import Callable, List, Optional, Sequence, Tuple

from trapcheck.brokers.cache import BrokerCache
from trapcheck.constants import (
    BROKER_CONNECT_ATTEMPTS,
    BROKER_CONNECT_RETRY_DELAY,
    BROKER_TYPE_ENTERPRISE,
    DEFAULT_BROKER_PORT,
    KNOWN_BROKER_TYPES,
    PUBLIC_BROKER_HOSTS,
)
from trapcheck.errors import (
    BrokerCacheError,
    BrokerSelectionError,
    NoBrokerInstancesError,
    NoBrokersFoundError,
    NoValidBrokersError,
    NoValidInstanceError,
    UnknownBrokerTypeError,
)
from trapcheck.models import Broker, BrokerInstance

logger = logging.getLogger(__name__)

_PROXY_ENV_VARS = ("HTTP_PROXY", "HTTPS_PROXY", "http_proxy", "https_proxy")


def base_check_type(check_type: str) -> str:
    """Return the module name of a check type (``httptrap:cua:x`` → ``httptrap``)."""
    idx = check_type.find(":")
    if idx > 0:
        return check_type[:idx]
    return check_type


def instance_supports(instance: BrokerInstance, check_type: str) -> bool:
    """Whether *instance* has the module for *check_type* loaded."""
    if not check_type:
        return False
    return base_check_type(check_type) in instance.modules


def instance_address(instance: BrokerInstance) -> Optional[Tuple[str, int]]:
    """Resolve the host and port a client should use for *instance*.

    External host wins over IP, external port over port.  Returns ``None``
    when the instance has no host at all.
    """
    if instance.external_port:
        port = instance.external_port
    elif instance.port:
        port = instance.port
    else:
        port = DEFAULT_BROKER_PORT

    host = instance.external_host or instance.ip or ""
    if not host:
        return None
    if host in PUBLIC_BROKER_HOSTS:
        port = 443
    return host, port


def proxy_configured() -> bool:
    return any(os.environ.get(name) for name in _PROXY_ENV_VARS)


class BrokerSelector:
    """Resolve the broker a check submits through.

    Parameters
    ----------
    cache:
        The shared :class:`BrokerCache`.
    max_response_time:
        Seconds a broker has to accept a TCP connection.
    log:
        Session logger.
    connect_attempts / connect_retry_delay:
        Connection attempts per instance and the pause between them.
    """

    def __init__(
        self,
        cache: BrokerCache,
        max_response_time: float,
        *,
        log: Optional[logging.Logger] = None,
        connect_attempts: int = BROKER_CONNECT_ATTEMPTS,
        connect_retry_delay: float = BROKER_CONNECT_RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._cache = cache
        self._max_response_time = max_response_time
        self._log = log or logger
        self._connect_attempts = connect_attempts
        self._connect_retry_delay = connect_retry_delay
        self._sleep = sleep

    # ── explicit ────────────────────────────────────────────────────

    def fetch_broker(self, cid: str, check_type: str) -> Broker:
        """Load broker *cid* from the cache and make sure it can be used."""
        if not cid:
            raise BrokerSelectionError("invalid broker cid (empty)")
        if not check_type:
            raise BrokerSelectionError("invalid check type (empty)")
        try:
            broker = self._cache.get(cid)
        except BrokerCacheError as exc:
            raise BrokerSelectionError(f"retrieving broker ({cid}): {exc}") from exc
        try:
            self.validate(broker, check_type)
        except BrokerSelectionError as exc:
            raise BrokerSelectionError(
                f"{broker.name} ({cid}) is an invalid broker for check type {check_type}: {exc}"
            ) from exc
        return broker

    # ── automatic ───────────────────────────────────────────────────

    def select(self, check_type: str, select_tags: Sequence[str] = ()) -> Broker:
        """Pick a valid broker for *check_type*, optionally restricted by tags."""
        try:
            if select_tags:
                candidates = self._cache.search(select_tags)
            else:
                candidates = self._cache.list()
        except BrokerCacheError as exc:
            raise BrokerSelectionError(f"listing brokers: {exc}") from exc

        if not candidates:
            raise NoBrokersFoundError()

        valid: List[Broker] = []
        for broker in candidates:
            try:
                self.validate(broker, check_type)
            except BrokerSelectionError as exc:
                self._log.debug("skipping, broker '%s' -- invalid: %s", broker.name, exc)
                continue
            valid.append(broker)

        if any(b.type == BROKER_TYPE_ENTERPRISE for b in valid):
            valid = [b for b in valid if b.type == BROKER_TYPE_ENTERPRISE]

        if not valid:
            raise NoValidBrokersError(len(candidates))

        selected = valid[secrets.randbelow(len(valid))]
        self._log.info("selected broker '%s'", selected.name)
        return selected

    # ── validation ──────────────────────────────────────────────────

    def is_valid_broker(self, broker: Broker, check_type: str) -> bool:
        try:
            self.validate(broker, check_type)
        except BrokerSelectionError:
            return False
        return True

    def validate(self, broker: Broker, check_type: str) -> BrokerInstance:
        """Return the first instance of *broker* usable for *check_type*.

        Raises a :class:`BrokerSelectionError` subclass naming the cause.
        """
        if broker.type not in KNOWN_BROKER_TYPES:
            raise UnknownBrokerTypeError(broker.name, broker.type)
        if not broker.details:
            raise NoBrokerInstancesError(broker.name)

        skip_connect = "httptrap" in check_type.lower() and proxy_configured()

        for instance in broker.details:
            if not instance.is_active:
                self._log.debug(
                    "skipping -- broker '%s' instance '%s' -- not active (%s)",
                    broker.name,
                    instance.cn,
                    instance.status,
                )
                continue

            if not instance_supports(instance, check_type):
                self._log.debug(
                    "skipping -- broker '%s' instance '%s' -- does not support check type %s (%s)",
                    broker.name,
                    instance.cn,
                    check_type,
                    ",".join(instance.modules),
                )
                continue

            address = instance_address(instance)
            if address is None:
                self._log.debug(
                    "skipping -- broker '%s' instance '%s' -- no IP or external host set",
                    broker.name,
                    instance.cn,
                )
                continue

            if skip_connect:
                # a direct connection says nothing when traffic goes through a proxy
                self._log.debug("skipping connection test, proxy environment var(s) set")
                return instance

            if self._reachable(broker, instance, address):
                return instance

        raise NoValidInstanceError(broker.name, check_type)

    def _reachable(self, broker: Broker, instance: BrokerInstance, address: Tuple[str, int]) -> bool:
        host, port = address
        for attempt in range(1, self._connect_attempts + 1):
            try:
                conn = socket.create_connection((host, port), timeout=self._max_response_time)
            except OSError as exc:
                self._log.debug(
                    "broker '%s' instance '%s' -- unable to connect (%s:%d): %s -- attempt %d of %d",
                    broker.name,
                    instance.cn,
                    host,
                    port,
                    exc,
                    attempt,
                    self._connect_attempts,
                )
                if attempt < self._connect_attempts:
                    self._sleep(self._connect_retry_delay)
                continue
            conn.close()
            self._log.debug("broker '%s' instance '%s' -- is valid", broker.name, instance.cn)
            return True
        return False
