"""The check session: one check bundle, one broker, one TLS configuration.

A :class:`TrapCheck` resolves (or creates) an httptrap check bundle, makes
sure the shared broker list is loaded, establishes trust with the check's
broker and then submits metric payloads to it::

    client = APIClient(token)
    tc = TrapCheck(client, TrapCheckConfig(check_search_tags=["service:web"]))
    result = tc.send_metrics(b'{"requests": {"_type": "L", "_value": 1}}')

Sessions are not safe for concurrent use; the broker cache they share is.
"""

from __future__ import annotations

import logging
import ssl
import threading
import time
from typing import Callable, Iterable, Optional

import httpx

from trapcheck.api.client import API
from trapcheck.brokers.cache import BrokerCache
from trapcheck.brokers.selector import BrokerSelector
from trapcheck.check.resolver import CheckResolver
from trapcheck.check.tags import update_check_tags
from trapcheck.config.schema import TrapCheckConfig, parse_duration
from trapcheck.constants import CONFIG_SECRET, REFRESH_RETRY_DELAY
from trapcheck.errors import (
    BrokerCacheError,
    CheckBundleError,
    ConfigurationError,
    StaleEndpointError,
    TrapCheckError,
)
from trapcheck.logging_config import secret_redaction_filter
from trapcheck.models import CheckBundle, SubmissionResult
from trapcheck.submit.pipeline import SubmissionPipeline
from trapcheck.submit.trace import PayloadTracer, check_trace_destination
from trapcheck.trust.establisher import TrustEstablisher

logger = logging.getLogger(__name__)


def _validate_check_type(check_type: str) -> None:
    if check_type and not check_type.startswith("httptrap"):
        raise ConfigurationError(f"check type must be httptrap variant ({check_type})")


def _duration(name: str, value: str) -> float:
    try:
        return parse_duration(value)
    except ValueError as exc:
        raise ConfigurationError(f"parsing {name} ({value}): {exc}") from exc


class TrapCheck:
    """A check session.

    Parameters
    ----------
    client:
        Monitoring API client.
    config:
        Session settings; defaults find or create a check for this program.
    logger:
        Logger used by the session and its components.
    broker_cache:
        Broker list cache; defaults to the process-wide shared cache.
    submit_tls_context:
        Caller supplied ``ssl.SSLContext`` for submissions (e.g. to a local
        agent over https).  Ignored when ``config.public_ca`` is set.
    transport:
        Optional httpx transport for submissions.
    """

    def __init__(
        self,
        client: API,
        config: Optional[TrapCheckConfig] = None,
        *,
        logger: Optional[logging.Logger] = None,
        broker_cache: Optional[BrokerCache] = None,
        submit_tls_context: Optional[ssl.SSLContext] = None,
        transport: Optional[httpx.BaseTransport] = None,
        _bundle: Optional[CheckBundle] = None,
    ) -> None:
        if client is None:
            raise ConfigurationError("invalid configuration (nil api client)")

        self._client = client
        self._config = config.model_copy(deep=True) if config is not None else TrapCheckConfig()
        self._log = logger if logger is not None else logging.getLogger(__name__)
        self._custom_url = self._config.submission_url
        self._new_check_bundle = False
        self._bundle: Optional[CheckBundle] = None
        self._submission_url = ""
        self.refresh_delay = REFRESH_RETRY_DELAY
        self._sleep: Callable[[float], None] = time.sleep

        if _bundle is not None:
            check_type = _bundle.type
        elif self._config.check is not None and self._config.check.type:
            check_type = self._config.check.type
        else:
            check_type = self._config.check_type
        _validate_check_type(check_type)

        max_response = _duration(
            "broker max response time", self._config.broker_max_response_time
        )
        submit_timeout = _duration("submission timeout", self._config.submission_timeout)

        tracer: Optional[PayloadTracer] = None
        if self._config.trace_metrics:
            try:
                check_trace_destination(self._config.trace_metrics)
            except ValueError as exc:
                self._log.warning(
                    "trace metrics directory (%s): %s -- disabling",
                    self._config.trace_metrics,
                    exc,
                )
            else:
                tracer = PayloadTracer(self._config.trace_metrics, self._log)

        self._cache = broker_cache if broker_cache is not None else BrokerCache.shared()
        try:
            self._cache.initialize(client, self._log)
        except BrokerCacheError as exc:
            raise BrokerCacheError(f"initializing broker list: {exc}") from exc

        self._selector = BrokerSelector(self._cache, max_response, log=self._log)
        self.trust = TrustEstablisher(
            client,
            self._selector,
            custom_context=submit_tls_context,
            public_ca=self._config.public_ca,
            log=self._log,
        )
        self._resolver = CheckResolver(
            client,
            self._selector,
            search_tags=self._config.check_search_tags,
            broker_select_tags=self._config.broker_select_tags,
            log=self._log,
        )
        self.pipeline = SubmissionPipeline(
            self.trust,
            timeout=submit_timeout,
            custom_submission_url=bool(self._custom_url),
            tracer=tracer,
            log=self._log,
            transport=transport,
        )

        if _bundle is not None:
            if not _bundle.submission_url:
                raise CheckBundleError("invalid check bundle, no submission url found")
            self._bind_bundle(_bundle)
        elif self._custom_url:
            # the configured bundle, if any, is assumed valid for the custom URL
            self._bundle = self._config.check
            self._submission_url = self._custom_url
        else:
            cfg = self._config.check
            if cfg is not None and not cfg.type:
                cfg = cfg.model_copy(update={"type": check_type})
            resolved = self._resolver.initialize(cfg)
            self._new_check_bundle = resolved.created
            self._bind_bundle(resolved.bundle)
            if resolved.broker is not None:
                self.trust.broker = resolved.broker

        self.trust.establish(self._submission_url, self._bundle)

    @classmethod
    def from_check_bundle(
        cls,
        client: API,
        bundle: CheckBundle,
        config: Optional[TrapCheckConfig] = None,
        **kwargs,
    ) -> "TrapCheck":
        """Create a session for an already known *bundle*, skipping the search."""
        if bundle is None:
            raise ConfigurationError("invalid check bundle (nil)")
        return cls(client, config, _bundle=bundle.model_copy(deep=True), **kwargs)

    # ── submission ──────────────────────────────────────────────────

    def send_metrics(
        self, metrics: bytes, cancel: Optional[threading.Event] = None
    ) -> SubmissionResult:
        """Submit *metrics* (httptrap JSON) to the check's broker.

        When the broker no longer knows the check, the bundle is refreshed
        and the payload is resubmitted exactly once.
        """
        try:
            return self.pipeline.submit(metrics, self._submission_url, self._bundle, cancel)
        except StaleEndpointError as exc:
            if self._custom_url:
                raise
            self._log.warning("submission endpoint not found, refreshing check: %s", exc)
            self._refresh()
            self._log.warning("check refreshed, retrying submission in %.1fs", self.refresh_delay)
            self._sleep(self.refresh_delay)

        try:
            return self.pipeline.submit(metrics, self._submission_url, self._bundle, cancel)
        except TrapCheckError as exc:
            self._log.warning("unable to submit after refresh: %s", exc)
            raise

    # ── accessors ───────────────────────────────────────────────────

    def is_new_check_bundle(self) -> bool:
        """``True`` when this session created its check bundle."""
        return self._new_check_bundle

    def get_check_bundle(self) -> CheckBundle:
        """A copy of the bundle in use; its CID can be persisted for fast restarts."""
        if self._bundle is None:
            raise CheckBundleError("trap check not initialized/created")
        return self._bundle.model_copy(deep=True)

    def refresh_check_bundle(self) -> CheckBundle:
        """Pull a fresh copy of the bundle and rebuild broker trust."""
        if self._custom_url:
            raise CheckBundleError(
                "check bundle could not be refreshed - using custom submission URL "
                f"{self._custom_url}"
            )
        self._refresh()
        return self.get_check_bundle()

    def get_broker_tls_config(self) -> Optional[ssl.SSLContext]:
        """The SSL context used for submissions.

        ``None`` when the endpoint needs no custom TLS (public CA or plain
        http).  Sharing the context lets other sessions skip the CA fetch.
        """
        if self._bundle is None and not self._custom_url:
            raise CheckBundleError("invalid state, check bundle not initialized")
        if not self._submission_url:
            raise CheckBundleError("invalid state, no submission url")
        if self.trust.is_public(self._submission_url):
            return None
        if self._submission_url.startswith("http://"):
            return None
        if self.trust.trust is None:
            raise TrapCheckError("tls config has not been initialized")
        return self.trust.trust.ssl_context

    def trace_metrics(self, dest: str) -> str:
        """Change payload tracing; ``""`` disables it.  Returns the previous setting.

        An unusable destination raises :class:`ConfigurationError` and
        leaves the current setting in place.
        """
        current = self.pipeline.tracer.dest if self.pipeline.tracer is not None else ""
        if not dest:
            self.pipeline.tracer = None
            return current
        try:
            check_trace_destination(dest)
        except ValueError as exc:
            raise ConfigurationError(f"trace metrics ({dest}): {exc}") from exc
        self.pipeline.tracer = PayloadTracer(dest, self._log)
        return current

    def update_check_tags(self, tags: Iterable[str]) -> Optional[CheckBundle]:
        """Add or replace *tags* on the check bundle; returns the updated bundle."""
        updated = update_check_tags(self._client, self._bundle, tags, self._log)
        if updated is not None:
            self._bundle = updated
        return updated

    # ── internals ───────────────────────────────────────────────────

    def _bind_bundle(self, bundle: CheckBundle) -> None:
        url = bundle.submission_url
        if not url:
            raise CheckBundleError("no submission url found in check bundle config")
        self._bundle = bundle
        self._submission_url = url
        secret_redaction_filter.register(bundle.config.get(CONFIG_SECRET, ""))

    def _refresh(self) -> None:
        if self._bundle is None:
            raise CheckBundleError("invalid state check bundle nil")
        fresh = self._resolver.refresh(self._bundle)
        self._bind_bundle(fresh)
        self.trust.invalidate()
        self.trust.establish(self._submission_url, self._bundle)
