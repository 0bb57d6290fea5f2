"""Tests for CN-pinned TLS verification and the per-session trust establisher."""

from __future__ import annotations

import json
import logging
import socket
import ssl
from unittest.mock import MagicMock

import pytest
from conftest import BrokerPKI, FakeAPI, make_broker, make_bundle, make_instance

from trapcheck.brokers.cache import BrokerCache
from trapcheck.brokers.selector import BrokerSelector
from trapcheck.errors import CACertError, CertificateNameMismatchError, TrustError
from trapcheck.trust.establisher import TrustEstablisher
from trapcheck.trust.verifier import (
    PinnedCertVerifier,
    PinnedSSLContext,
    broker_cn_list,
    build_hostname_config,
    build_pinned_config,
    load_ca_certificates,
    peer_common_name,
)

log = logging.getLogger("test.trust")


def _handshake(ctx: ssl.SSLContext, port: int, server_name: str) -> None:
    sock = socket.create_connection(("127.0.0.1", port), timeout=5)
    try:
        tls = ctx.wrap_socket(sock, server_hostname=server_name)
    except BaseException:
        sock.close()
        raise
    tls.close()


def _bio_handshake(ctx: ssl.SSLContext, port: int, server_name: str) -> ssl.SSLObject:
    """Handshake over memory BIOs, the way TLS-in-TLS proxy tunnels do it."""
    incoming, outgoing = ssl.MemoryBIO(), ssl.MemoryBIO()
    tls = ctx.wrap_bio(incoming, outgoing, server_hostname=server_name)
    with socket.create_connection(("127.0.0.1", port), timeout=5) as sock:
        while True:
            try:
                tls.do_handshake()
                break
            except ssl.SSLWantReadError:
                pending = outgoing.read()
                if pending:
                    sock.sendall(pending)
                data = sock.recv(65536)
                if not data:
                    raise ConnectionError("server closed during handshake")
                incoming.write(data)
        pending = outgoing.read()
        if pending:
            sock.sendall(pending)
    return tls


# ── Verifier ─────────────────────────────────────────────────────────────


class TestPinnedCertVerifier:
    def test_accepts_listed_cn(self, pki):
        der = pki.leaf("foo")[2]
        assert peer_common_name(der) == "foo"
        assert PinnedCertVerifier(["foo", "bar"]).verify_peer(der) == "foo"

    def test_accepts_any_listed_cn(self, pki):
        assert PinnedCertVerifier(["foo", "bar"]).verify_peer(pki.leaf("bar")[2]) == "bar"

    def test_rejects_unlisted_cn(self, pki):
        with pytest.raises(CertificateNameMismatchError) as exc_info:
            PinnedCertVerifier(["foo", "bar"]).verify_peer(pki.leaf("baz")[2])
        assert exc_info.value.common_name == "baz"
        assert exc_info.value.acceptable == ("foo", "bar")

    def test_substring_is_not_a_match(self, pki):
        with pytest.raises(CertificateNameMismatchError):
            PinnedCertVerifier(["foobar"]).verify_peer(pki.leaf("foo")[2])

    def test_no_certificate(self):
        with pytest.raises(TrustError):
            PinnedCertVerifier(["foo"]).verify_peer(None)


class TestContexts:
    def test_load_ca_rejects_garbage(self):
        with pytest.raises(CACertError):
            load_ca_certificates("not a certificate")

    def test_pinned_config(self, pki):
        cfg = build_pinned_config(pki.ca_pem, "foo", ["foo", "bar"])
        assert isinstance(cfg.ssl_context, PinnedSSLContext)
        assert cfg.ssl_context.check_hostname is False
        assert cfg.ssl_context.verify_mode == ssl.CERT_REQUIRED
        assert cfg.ssl_context.minimum_version == ssl.TLSVersion.TLSv1_2
        assert cfg.acceptable_cns == ("foo", "bar")
        assert cfg.server_name == "foo"
        assert cfg.pinned

    def test_pinned_handshake_accepts_listed_cn(self, pki, broker_server):
        server = broker_server("bar")
        cfg = build_pinned_config(pki.ca_pem, "foo", ["foo", "bar"])
        _handshake(cfg.ssl_context, server.port, "foo")

    def test_pinned_handshake_rejects_other_cn(self, pki, broker_server):
        server = broker_server("baz")
        cfg = build_pinned_config(pki.ca_pem, "foo", ["foo", "bar"])
        with pytest.raises(CertificateNameMismatchError):
            _handshake(cfg.ssl_context, server.port, "foo")

    def test_bio_handshake_accepts_listed_cn(self, pki, broker_server):
        server = broker_server("foo")
        cfg = build_pinned_config(pki.ca_pem, "foo", ["foo", "bar"])
        tls = _bio_handshake(cfg.ssl_context, server.port, "foo")
        assert peer_common_name(tls.getpeercert(binary_form=True)) == "foo"

    def test_bio_handshake_rejects_other_cn(self, pki, broker_server):
        server = broker_server("baz")
        cfg = build_pinned_config(pki.ca_pem, "foo", ["foo", "bar"])
        with pytest.raises(CertificateNameMismatchError) as exc_info:
            _bio_handshake(cfg.ssl_context, server.port, "foo")
        assert exc_info.value.common_name == "baz"

    def test_pinned_handshake_rejects_other_ca(self, tmp_path, broker_server):
        server = broker_server("foo")
        other = BrokerPKI(tmp_path)
        cfg = build_pinned_config(other.ca_pem, "foo", ["foo"])
        with pytest.raises(ssl.SSLCertVerificationError):
            _handshake(cfg.ssl_context, server.port, "foo")

    def test_hostname_config(self, pki, broker_server):
        server = broker_server("localhost")
        cfg = build_hostname_config(pki.ca_pem, "localhost")
        assert cfg.ssl_context.check_hostname is True
        assert cfg.acceptable_cns == ()
        _handshake(cfg.ssl_context, server.port, "localhost")


# ── CN list ──────────────────────────────────────────────────────────────


class TestBrokerCNList:
    def test_ip_host_matches_instances(self):
        broker = make_broker(
            instances=[
                make_instance(cn="foo", ip="10.1.2.3"),
                make_instance(cn="bar", ip="10.9.9.9", external_host="10.1.2.3"),
                make_instance(cn="qux", ip="10.5.5.5"),
            ]
        )
        cn, cns = broker_cn_list(broker, "https://10.1.2.3:43191/module/httptrap/x/y")
        assert cn == "foo"
        assert cns == ["foo", "bar"]

    def test_inactive_instances_ignored(self):
        broker = make_broker(
            instances=[
                make_instance(cn="old", ip="10.1.2.3", status="decommissioned"),
                make_instance(cn="new", ip="10.1.2.3"),
            ]
        )
        assert broker_cn_list(broker, "https://10.1.2.3/x") == ("new", ["new"])

    def test_fqdn_host(self):
        broker = make_broker(instances=[make_instance(cn="foo", ip="10.1.2.3")])
        assert broker_cn_list(broker, "https://broker.example.net:443/x") == (
            "broker.example.net",
            [],
        )

    def test_unmatched_ip(self):
        broker = make_broker(instances=[make_instance(cn="foo", ip="10.1.2.3")])
        with pytest.raises(TrustError):
            broker_cn_list(broker, "https://10.0.0.1/x")


# ── Establisher ──────────────────────────────────────────────────────────


def _establisher(api, **kwargs):
    cache = BrokerCache()
    cache.initialize(api, log)
    selector = BrokerSelector(cache, 0.5, log=log, connect_attempts=1)
    return TrustEstablisher(api, selector, log=log, **kwargs)


class TestTrustEstablisher:
    def test_plain_http_needs_nothing(self, fake_api):
        est = _establisher(fake_api)
        assert est.establish("http://127.0.0.1:43191/module/httptrap/x/y", make_bundle()) is None
        assert fake_api.ca_fetches == 0

    def test_missing_url(self, fake_api):
        with pytest.raises(TrustError):
            _establisher(fake_api).establish("", make_bundle())

    def test_public_host(self, fake_api):
        est = _establisher(fake_api)
        assert est.establish("https://api.circonus.com/module/httptrap/x/y", make_bundle()) is None
        assert est.is_public("https://api.circonus.com/x")
        assert not est.is_public("https://10.1.2.3/x")

    def test_public_ca_flag_ignores_custom_context(self, fake_api):
        custom = ssl.create_default_context()
        est = _establisher(fake_api, custom_context=custom, public_ca=True)
        assert est.establish("https://10.1.2.3/x", make_bundle()) is None
        assert est.is_public("https://10.1.2.3/x")

    def test_custom_context_used_verbatim(self, fake_api):
        custom = ssl.create_default_context()
        est = _establisher(fake_api, custom_context=custom)
        cfg = est.establish("https://10.1.2.3/x", make_bundle())
        assert cfg.ssl_context is custom
        assert cfg.acceptable_cns == ()
        assert fake_api.ca_fetches == 0

    def test_custom_context_is_shared_with_caller(self, fake_api):
        custom = ssl.create_default_context()
        est = _establisher(fake_api, custom_context=custom)
        cfg = est.establish("https://10.1.2.3/x", make_bundle())
        custom.minimum_version = ssl.TLSVersion.TLSv1_3
        assert cfg.ssl_context.minimum_version == ssl.TLSVersion.TLSv1_3
        est.invalidate()
        assert est.establish("https://10.1.2.3/x", make_bundle()).ssl_context is custom

    def test_pinned_config_built_and_cached(self, pki, listener):
        broker = make_broker(
            instances=[make_instance(cn="foo", port=listener), make_instance(cn="bar", port=listener)]
        )
        api = FakeAPI(brokers=[broker], ca_pem=pki.ca_pem)
        est = _establisher(api)
        url = f"https://127.0.0.1:{listener}/module/httptrap/x/y"

        cfg = est.establish(url, make_bundle(url))
        assert isinstance(cfg.ssl_context, PinnedSSLContext)
        assert cfg.server_name == "foo"
        assert cfg.acceptable_cns == ("foo", "bar")
        assert est.broker.cid == "/broker/1"

        assert est.establish(url, make_bundle(url)) is cfg
        assert api.ca_fetches == 1

        est.invalidate()
        assert est.broker is None and est.trust is None
        assert est.establish(url, make_bundle(url)) is not cfg
        assert api.ca_fetches == 2

    def test_fqdn_uses_hostname_verification(self, pki, listener):
        api = FakeAPI(brokers=[make_broker(instances=[make_instance(port=listener)])], ca_pem=pki.ca_pem)
        cfg = _establisher(api).establish("https://localhost:8443/x", make_bundle())
        assert not isinstance(cfg.ssl_context, PinnedSSLContext)
        assert cfg.ssl_context.check_hostname is True
        assert cfg.server_name == "localhost"

    def test_bundle_without_brokers(self, fake_api):
        with pytest.raises(TrustError, match="0 brokers"):
            _establisher(fake_api).establish("https://10.1.2.3/x", make_bundle(brokers=()))

    def test_no_bundle(self, fake_api):
        with pytest.raises(TrustError):
            _establisher(fake_api).establish("https://10.1.2.3/x", None)

    def test_ca_without_contents(self, listener):
        api = FakeAPI(brokers=[make_broker(instances=[make_instance(port=listener)])])
        api.get = MagicMock(return_value=json.dumps({"contents": ""}).encode())
        with pytest.raises(CACertError):
            _establisher(api).establish(f"https://127.0.0.1:{listener}/x", make_bundle())

    def test_ca_fetch_failure(self, listener):
        api = FakeAPI(brokers=[make_broker(instances=[make_instance(port=listener)])])
        api.get = MagicMock(side_effect=RuntimeError("403 forbidden"))
        with pytest.raises(CACertError, match="403 forbidden"):
            _establisher(api).establish(f"https://127.0.0.1:{listener}/x", make_bundle())
