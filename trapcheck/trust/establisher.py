"""Per-session TLS trust for broker submissions."""

from __future__ import annotations

import json
import logging
import ssl
from typing import Optional
from urllib.parse import urlsplit

from trapcheck.api.client import API
from trapcheck.brokers.selector import BrokerSelector
from trapcheck.constants import CA_CERT_PATH, PUBLIC_CA_SUBMISSION_HOSTS
from trapcheck.errors import CACertError, TrustError
from trapcheck.models import Broker, CheckBundle
from trapcheck.trust.verifier import (
    TrustConfig,
    broker_cn_list,
    build_hostname_config,
    build_pinned_config,
)

logger = logging.getLogger(__name__)


class TrustEstablisher:
    """Builds, caches and invalidates the TLS configuration of one check session.

    Parameters
    ----------
    client:
        Monitoring API client, used to fetch the broker CA certificate.
    selector:
        Resolves the check's broker when it is not yet known.
    custom_context:
        Caller supplied ``ssl.SSLContext``; used verbatim, no pinning.  It is
        shared, not copied (``SSLContext`` cannot be cloned with its loaded
        client certificates), so later changes the caller makes to it apply
        to this session too.
    public_ca:
        Always trust the system CA store instead of pinning.
    """

    def __init__(
        self,
        client: API,
        selector: BrokerSelector,
        *,
        custom_context: Optional[ssl.SSLContext] = None,
        public_ca: bool = False,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._client = client
        self._selector = selector
        self._custom_context = None if public_ca else custom_context
        self._public_ca = public_ca
        self._log = log or logger
        self.broker: Optional[Broker] = None
        self.trust: Optional[TrustConfig] = None

    def is_public(self, submission_url: str) -> bool:
        """Whether *submission_url* is served with a publicly trusted certificate."""
        if self._public_ca:
            return True
        host = urlsplit(submission_url).hostname or ""
        return host in PUBLIC_CA_SUBMISSION_HOSTS

    def invalidate(self) -> None:
        """Forget the broker and TLS configuration; both are rebuilt on next use."""
        self.broker = None
        self.trust = None

    def establish(self, submission_url: str, bundle: Optional[CheckBundle]) -> Optional[TrustConfig]:
        """Return the TLS configuration for *submission_url*.

        ``None`` means no custom TLS is needed: the URL is plain http or
        the endpoint uses a public CA.
        """
        if self.trust is not None:
            return self.trust

        if not submission_url:
            raise TrustError("invalid state, no submission url")
        if urlsplit(submission_url).scheme == "http":
            return None

        if self._custom_context is not None:
            self.trust = TrustConfig(ssl_context=self._custom_context)
            return self.trust

        if self.is_public(submission_url):
            return None

        if self.broker is None:
            if bundle is None:
                raise TrustError("invalid state, check bundle not initialized")
            if not bundle.brokers:
                raise TrustError("invalid check bundle, 0 brokers")
            self.broker = self._selector.fetch_broker(bundle.brokers[0], bundle.type)

        try:
            cn, cn_list = broker_cn_list(self.broker, submission_url)
        except TrustError as exc:
            raise TrustError(f"broker cn list: {exc}") from exc

        try:
            ca_pem = self.fetch_ca_cert()
        except CACertError as exc:
            raise CACertError(f"fetch broker ca cert: {exc}") from exc

        if cn_list:
            self.trust = build_pinned_config(ca_pem, cn, cn_list)
        else:
            self.trust = build_hostname_config(ca_pem, cn)
        self._log.debug(
            "broker TLS config set, server name %s, acceptable cns %s",
            cn,
            ",".join(cn_list) or cn,
        )
        return self.trust

    def fetch_ca_cert(self) -> str:
        """Fetch the broker CA certificate PEM from the monitoring API."""
        self._log.debug("fetching broker cert from api")
        try:
            raw = self._client.get(CA_CERT_PATH)
        except Exception as exc:
            raise CACertError(f"fetch broker CA cert from API: {exc}") from exc

        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise CACertError(f"json unmarshal cert: {exc}") from exc

        contents = data.get("contents") if isinstance(data, dict) else None
        if not contents:
            raise CACertError(f"unable to find ca cert contents {data!r}")
        return contents
