"""Metric submission to a broker.

One call of :meth:`SubmissionPipeline.submit` runs::

    ensure TLS → compress (> 1 KiB) → trace → PUT with retry → classify

A fresh HTTP client is created per call and closed when it returns;
submissions are infrequent bursts, so predictable cleanup is worth more
than connection reuse.
"""

from __future__ import annotations

import gzip
import io
import logging
import threading
import time
import uuid
from typing import Any, Callable, Dict, Optional, Tuple

import httpx
from pydantic import ValidationError

from trapcheck.constants import (
    APP_NAME,
    APP_VERSION,
    CANCEL_POLL_INTERVAL,
    COMPRESSION_THRESHOLD,
    NO_SUBMIT_UUID,
    SUBMIT_CONNECT_TIMEOUT,
)
from trapcheck.errors import (
    CertificateNameMismatchError,
    CompressionError,
    EmptyPayloadError,
    StaleEndpointError,
    SubmissionCancelledError,
    SubmissionError,
    SubmissionRejectedError,
    TransportError,
    TrustError,
)
from trapcheck.models import CheckBundle, SubmissionResult
from trapcheck.submit.retry import RetryPolicy, find_cause
from trapcheck.submit.trace import PayloadTracer
from trapcheck.telemetry.tracing import start_span
from trapcheck.trust.establisher import TrustEstablisher
from trapcheck.trust.verifier import TrustConfig

logger = logging.getLogger(__name__)


def compress(payload: bytes) -> bytes:
    """Gzip *payload*, refusing short writes."""
    buf = io.BytesIO()
    try:
        with gzip.GzipFile(fileobj=buf, mode="wb") as zw:
            written = zw.write(payload)
    except OSError as exc:
        raise CompressionError(f"compressing metrics: {exc}") from exc
    if written != len(payload):
        raise CompressionError(
            f"write length mismatch data length {len(payload)} != written length {written}"
        )
    return buf.getvalue()


class SubmissionPipeline:
    """Delivers payloads for one check session.

    Parameters
    ----------
    trust:
        The session's :class:`TrustEstablisher`.
    timeout:
        Overall per-request timeout in seconds.
    custom_submission_url:
        ``True`` when the caller pinned the submission URL; a 404 is then
        terminal because there is no check binding to refresh.
    retry_policy:
        Backoff policy for transport errors and retryable statuses.
    tracer:
        Optional :class:`PayloadTracer`.
    transport:
        Optional httpx transport (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        trust: TrustEstablisher,
        *,
        timeout: float,
        custom_submission_url: bool = False,
        retry_policy: Optional[RetryPolicy] = None,
        tracer: Optional[PayloadTracer] = None,
        log: Optional[logging.Logger] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._trust = trust
        self._timeout = timeout
        self._custom_url = custom_submission_url
        self.retry_policy = retry_policy or RetryPolicy()
        self.tracer = tracer
        self._log = log or logger
        self._transport = transport
        self._sleep = sleep

    def submit(
        self,
        metrics: bytes,
        submission_url: str,
        bundle: Optional[CheckBundle] = None,
        cancel: Optional[threading.Event] = None,
    ) -> SubmissionResult:
        """Send *metrics* to *submission_url* and return the broker's verdict.

        Raises :class:`StaleEndpointError` when the broker no longer knows
        the check and the binding should be refreshed.
        """
        if not metrics:
            raise EmptyPayloadError()

        start = time.monotonic()

        try:
            trust = self._trust.establish(submission_url, bundle)
        except TrustError as exc:
            raise TrustError(f"unable to set TLS config: {exc}") from exc

        compressed = len(metrics) > COMPRESSION_THRESHOLD
        data = compress(metrics) if compressed else metrics

        submit_uuid = NO_SUBMIT_UUID
        if self.tracer is not None:
            if self.tracer.to_log:
                self.tracer.log_payload(metrics)
            else:
                submit_uuid = str(uuid.uuid4())
                self.tracer.write(data, submit_uuid, compressed)

        headers = {
            "User-Agent": f"{APP_NAME}/{APP_VERSION}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Connection": "close",
            "Content-Length": str(len(data)),
        }
        if compressed:
            headers["Content-Encoding"] = "gzip"

        resp, req_start = self._send(submission_url, data, headers, trust, metrics, cancel)

        if resp.status_code == 404 and not self._custom_url:
            raise StaleEndpointError(submission_url, resp.status_code, resp.reason_phrase)
        if resp.status_code != 200:
            raise SubmissionRejectedError(submission_url, resp.status_code, resp.reason_phrase)

        try:
            result = SubmissionResult.model_validate_json(resp.content)
        except ValidationError as exc:
            raise SubmissionError(f"parsing response ({resp.text}): {exc}") from exc

        if bundle is not None and bundle.check_uuids:
            result.check_uuid = bundle.check_uuids[0]
        result.submit_uuid = submit_uuid
        result.bytes_sent = len(data)
        result.payload_size = len(metrics)
        result.compressed = compressed
        result.submit_duration = time.monotonic() - start
        result.last_request_duration = time.monotonic() - req_start
        return result

    # ── transport ───────────────────────────────────────────────────

    def _client(self, trust: Optional[TrustConfig]) -> httpx.Client:
        kwargs: Dict[str, Any] = {
            "verify": trust.ssl_context if trust is not None else True,
            "trust_env": True,
            "timeout": httpx.Timeout(self._timeout, connect=SUBMIT_CONNECT_TIMEOUT),
            "limits": httpx.Limits(max_connections=1, max_keepalive_connections=0),
        }
        if self._transport is not None:
            kwargs["transport"] = self._transport
        return httpx.Client(**kwargs)

    def _send(
        self,
        url: str,
        data: bytes,
        headers: Dict[str, str],
        trust: Optional[TrustConfig],
        metrics: bytes,
        cancel: Optional[threading.Event],
    ) -> Tuple[httpx.Response, float]:
        extensions: Dict[str, Any] = {}
        if trust is not None and trust.acceptable_cns and trust.server_name:
            extensions["sni_hostname"] = trust.server_name

        policy = self.retry_policy
        with self._client(trust) as client:
            attempt = 0
            while True:
                attempt += 1
                if cancel is not None and cancel.is_set():
                    raise SubmissionCancelledError()
                if attempt > 1:
                    self._log.info("retrying... %s %d", url, attempt - 1)

                req_start = time.monotonic()
                resp: Optional[httpx.Response] = None
                error: Optional[Exception] = None
                with start_span(
                    "trapcheck.submit.attempt",
                    {"url.full": url, "trapcheck.attempt": attempt},
                ) as span:
                    try:
                        resp = self._put(client, url, data, headers, extensions, cancel)
                    except (httpx.HTTPError, TrustError) as exc:
                        mismatch = find_cause(exc, CertificateNameMismatchError)
                        if mismatch is not None:
                            self._log.warning(
                                "certificate name mismatch (refreshing TLS config) common cause, "
                                "new broker added to cluster or check moved to new broker: %s",
                                mismatch,
                            )
                            self._trust.invalidate()
                            if mismatch is exc:
                                raise
                            raise mismatch from exc
                        error = exc
                        span.record_exception(exc)
                    if resp is not None:
                        span.set_attribute("http.response.status_code", resp.status_code)

                status = resp.status_code if resp is not None else None
                if status is not None and status != 200:
                    self._log.warning("non-200 response %s: %d %s", url, status, resp.reason_phrase)
                    if status == 406:
                        self._log.warning(
                            "broker couldn't parse payload: '%s'",
                            metrics.decode("utf-8", errors="replace"),
                        )
                elif error is not None:
                    self._log.warning("request error (%s): %s", url, error)

                decision = policy.decide(attempt, error, status)
                if decision.retry:
                    self._wait(decision.wait, cancel)
                    continue

                if error is not None:
                    raise TransportError(
                        f"making request: {url} giving up after {attempt} attempt(s): {error}"
                    ) from error
                if policy.retryable(None, status):
                    raise TransportError(
                        f"making request: {url} giving up after {attempt} attempt(s) (HTTP {status})"
                    )
                return resp, req_start

    def _wait(self, delay: float, cancel: Optional[threading.Event]) -> None:
        if cancel is None:
            self._sleep(delay)
        elif cancel.wait(delay):
            raise SubmissionCancelledError()

    def _put(
        self,
        client: httpx.Client,
        url: str,
        data: bytes,
        headers: Dict[str, str],
        extensions: Dict[str, Any],
        cancel: Optional[threading.Event],
    ) -> httpx.Response:
        """PUT *data*; a set *cancel* event abandons the request mid-flight.

        With an event the request runs on a short-lived worker thread and
        the caller watches both.  On cancellation the client is closed,
        which tears down the connection under the worker.
        """
        if cancel is None:
            return client.put(url, content=data, headers=headers, extensions=extensions)

        outcome: Dict[str, Any] = {}
        done = threading.Event()

        def run() -> None:
            try:
                outcome["response"] = client.put(
                    url, content=data, headers=headers, extensions=extensions
                )
            except BaseException as exc:  # re-raised on the caller's thread
                outcome["error"] = exc
            finally:
                done.set()

        worker = threading.Thread(target=run, name="trapcheck-submit", daemon=True)
        worker.start()
        while not done.wait(CANCEL_POLL_INTERVAL):
            if cancel.is_set():
                self._log.warning("submission to %s cancelled in flight", url)
                client.close()
                raise SubmissionCancelledError()

        if "error" in outcome:
            raise outcome["error"]
        return outcome["response"]
