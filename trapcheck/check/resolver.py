"""Check bundle resolution: fetch by CID, or find-or-create.

A check bundle ties the application to a broker and carries the
submission URL.  Bundles are found by type, target and search tags; when
none exists one is created on an automatically selected broker.
"""

from __future__ import annotations

import logging
import os
import secrets
import socket
import sys
from dataclasses import dataclass
from typing import List, Optional, Sequence

from pydantic import ValidationError

from trapcheck.api.client import API
from trapcheck.brokers.selector import BrokerSelector
from trapcheck.constants import (
    CONFIG_ASYNC_METRICS,
    CONFIG_SECRET,
    CONFIG_SUBMISSION_URL,
    DEFAULT_CHECK_TYPE,
    STATUS_ACTIVE,
)
from trapcheck.errors import APIError, CheckBundleError
from trapcheck.models import Broker, CheckBundle

logger = logging.getLogger(__name__)


@dataclass
class ResolvedCheck:
    bundle: CheckBundle
    created: bool = False
    broker: Optional[Broker] = None


def make_secret() -> str:
    """Random 16 hex character secret for a new check's submission URL."""
    return secrets.token_hex(8)


def instance_id() -> str:
    """``<hostname>:<program name>``, used for display name, target and notes."""
    app = os.path.basename(sys.argv[0]) if sys.argv and sys.argv[0] else "trapcheck"
    try:
        host = socket.gethostname()
    except OSError:
        host = "unknown"
    return f"{host}:{app}"


class CheckResolver:
    """Locates, creates and refreshes a session's check bundle.

    Parameters
    ----------
    client:
        Monitoring API client.
    selector:
        Used to choose a broker when a new bundle has to be created.
    search_tags:
        Tags identifying this application's check; defaults to
        ``service:<program name>``.
    broker_select_tags:
        Restrict automatic broker selection to brokers with these tags.
    """

    def __init__(
        self,
        client: API,
        selector: BrokerSelector,
        *,
        search_tags: Sequence[str] = (),
        broker_select_tags: Sequence[str] = (),
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._client = client
        self._selector = selector
        self.search_tags: List[str] = list(search_tags)
        self._broker_select_tags = list(broker_select_tags)
        self._log = log or logger

    # ── public API ──────────────────────────────────────────────────

    def initialize(self, cfg: Optional[CheckBundle]) -> ResolvedCheck:
        """Fetch the bundle named by ``cfg.cid`` or find/create one."""
        cfg = cfg.model_copy(deep=True) if cfg is not None else CheckBundle()
        if cfg.cid:
            return ResolvedCheck(bundle=self.fetch(cfg.cid))

        cfg = self.apply_defaults(cfg)
        found = self.find(cfg)
        if found is not None:
            return ResolvedCheck(bundle=found)
        return self.create(cfg)

    def fetch(self, cid: str) -> CheckBundle:
        """Fetch an existing bundle; it must be active and have a submission URL."""
        try:
            bundle = self._client.fetch_check_bundle(cid)
        except (APIError, ValidationError) as exc:
            raise CheckBundleError(f"retrieving check bundle ({cid}): {exc}") from exc
        if bundle.status != STATUS_ACTIVE:
            raise CheckBundleError(f"invalid check bundle ({bundle.cid}), not active")
        if not bundle.submission_url:
            raise CheckBundleError(
                f"invalid check bundle ({bundle.cid}) no '{CONFIG_SUBMISSION_URL}' in config"
            )
        return bundle

    def refresh(self, bundle: CheckBundle) -> CheckBundle:
        """Pull a fresh copy of *bundle* from the API."""
        if not bundle.cid:
            raise CheckBundleError("invalid state, check bundle has no cid")
        try:
            fresh = self._client.fetch_check_bundle(bundle.cid)
        except (APIError, ValidationError) as exc:
            raise CheckBundleError(f"refreshing check bundle ({bundle.cid}): {exc}") from exc
        if not fresh.submission_url:
            raise CheckBundleError("no submission url found in check bundle config")
        return fresh

    def find(self, cfg: CheckBundle) -> Optional[CheckBundle]:
        """Search for an active bundle matching type, target and search tags.

        Several results are narrowed to the one with exactly ``cfg.type``;
        more than one exact match is an error rather than a guess.
        """
        query = '(active:1)(type:"{}")(target:"{}")(tags:{})'.format(
            cfg.type, cfg.target, ",".join(self.search_tags)
        )
        try:
            bundles = self._client.search_check_bundles(query)
        except (APIError, ValidationError) as exc:
            raise CheckBundleError(f"search check bundles ({query}): {exc}") from exc

        if not bundles:
            return None
        if len(bundles) == 1:
            return bundles[0]

        exact = [b for b in bundles if b.type == cfg.type]
        if not exact:
            raise CheckBundleError(
                f"multiple ({len(bundles)}) bundles found matching '{query}' "
                f"none are type ({cfg.type})"
            )
        if len(exact) > 1:
            raise CheckBundleError(f"multiple ({len(exact)}) check bundles found matching '{query}'")
        return exact[0]

    def create(self, cfg: CheckBundle) -> ResolvedCheck:
        """Create a bundle from *cfg*, selecting a broker if none is set."""
        broker: Optional[Broker] = None
        if not cfg.brokers:
            broker = self._selector.select(cfg.type, self._broker_select_tags)
            cfg.brokers = [broker.cid]
        try:
            bundle = self._client.create_check_bundle(cfg)
        except (APIError, ValidationError) as exc:
            raise CheckBundleError(f"create check bundle: {exc}") from exc
        self._log.info("created check bundle %s (%s)", bundle.cid, bundle.display_name)
        return ResolvedCheck(bundle=bundle, created=True, broker=broker)

    def apply_defaults(self, cfg: CheckBundle) -> CheckBundle:
        """Fill unset fields of a new httptrap bundle with sensible defaults."""
        ident = instance_id()
        app = ident.split(":", 1)[1]

        if not cfg.type:
            cfg.type = DEFAULT_CHECK_TYPE
        if not cfg.status:
            cfg.status = STATUS_ACTIVE
        cfg.metrics = []
        if not cfg.metric_filters:
            cfg.metric_filters = [["allow", ".", ""]]

        if not self.search_tags:
            self.search_tags = [f"service:{app}"]
        cfg.tags = list(cfg.tags) + [t for t in self.search_tags if t not in cfg.tags]

        if not cfg.display_name:
            cfg.display_name = ident
        if not cfg.target:
            cfg.target = ident
        if cfg.notes is None:
            cfg.notes = f"tcid:{ident}"

        if not cfg.period:
            cfg.period = 60
        if not cfg.timeout:
            cfg.timeout = 10

        config = dict(cfg.config)
        if not config.get(CONFIG_ASYNC_METRICS):
            config[CONFIG_ASYNC_METRICS] = "true"
        if not config.get(CONFIG_SECRET):
            config[CONFIG_SECRET] = make_secret()
        cfg.config = config
        return cfg
