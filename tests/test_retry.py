"""Tests for the submission retry policy."""

from __future__ import annotations

import ssl

import httpx
import pytest

from trapcheck.errors import CACertError, CertificateNameMismatchError
from trapcheck.submit.retry import RetryPolicy, find_cause


def _chained(outer: BaseException, inner: BaseException) -> BaseException:
    try:
        try:
            raise inner
        except BaseException as exc:
            raise outer from exc
    except BaseException as exc:
        return exc


class TestBackoff:
    def test_doubles_and_caps(self):
        policy = RetryPolicy()
        assert [policy.backoff(n) for n in range(1, 8)] == [0.05, 0.1, 0.2, 0.4, 0.8, 1.6, 2.0]

    def test_custom_bounds(self):
        policy = RetryPolicy(max_attempts=3, wait_min=1.0, wait_max=1.5)
        assert policy.backoff(1) == 1.0
        assert policy.backoff(2) == 1.5


class TestDecide:
    @pytest.mark.parametrize("status", [429, 500, 502, 503, 504])
    def test_retryable_status(self, status):
        decision = RetryPolicy().decide(1, None, status)
        assert decision.retry
        assert decision.wait == 0.05

    @pytest.mark.parametrize("status", [200, 400, 401, 404, 406, 501])
    def test_terminal_status(self, status):
        assert not RetryPolicy().decide(1, None, status).retry

    def test_transport_error_retries(self):
        assert RetryPolicy().decide(2, httpx.ConnectError("refused"), None).wait == 0.1

    def test_stops_at_max_attempts(self):
        policy = RetryPolicy()
        assert policy.decide(6, None, 503).retry
        assert not policy.decide(7, None, 503).retry

    def test_trust_errors_are_terminal(self):
        policy = RetryPolicy()
        assert not policy.decide(1, CertificateNameMismatchError("baz", ["foo"]), None).retry
        assert not policy.decide(1, CACertError("bad ca"), None).retry

    def test_certificate_verification_is_terminal(self):
        err = _chained(
            httpx.ConnectError("handshake failed"),
            ssl.SSLCertVerificationError("certificate verify failed"),
        )
        assert not RetryPolicy().decide(1, err, None).retry

    def test_nothing_to_retry(self):
        assert not RetryPolicy().decide(1, None, None).retry


class TestFindCause:
    def test_walks_chain(self):
        inner = CertificateNameMismatchError("baz", ["foo"])
        err = _chained(httpx.ConnectError("boom"), inner)
        assert find_cause(err, CertificateNameMismatchError) is inner

    def test_missing(self):
        assert find_cause(httpx.ReadTimeout("slow"), ssl.SSLError) is None
        assert find_cause(None, ssl.SSLError) is None
