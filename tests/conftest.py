"""Shared fixtures: broker factories, a throwaway PKI and a local broker server."""

from __future__ import annotations

import datetime
import ipaddress
import json
import socket
import ssl
import threading
import time
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Dict, List, Optional, Tuple

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from trapcheck.models import Broker, CheckBundle

_PROXY_VARS = ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "http_proxy", "https_proxy", "all_proxy")


@pytest.fixture(autouse=True)
def _no_proxy_env(monkeypatch):
    for name in _PROXY_VARS:
        monkeypatch.delenv(name, raising=False)


# ── Model factories ──────────────────────────────────────────────────────


def make_instance(
    cn: str = "broker1.example.net",
    *,
    ip: Optional[str] = "127.0.0.1",
    port: Optional[int] = 43191,
    external_host: Optional[str] = None,
    external_port: int = 0,
    status: str = "active",
    modules: Tuple[str, ...] = ("httptrap", "json"),
) -> Dict[str, Any]:
    return {
        "cn": cn,
        "ip": ip,
        "port": port,
        "external_host": external_host,
        "external_port": external_port,
        "status": status,
        "modules": list(modules),
    }


def make_broker(
    cid: str = "/broker/1",
    *,
    name: str = "test-broker",
    broker_type: str = "enterprise",
    tags: Tuple[str, ...] = (),
    instances: Optional[List[Dict[str, Any]]] = None,
) -> Broker:
    return Broker.model_validate(
        {
            "_cid": cid,
            "_name": name,
            "_type": broker_type,
            "_tags": list(tags),
            "_details": [make_instance()] if instances is None else instances,
        }
    )


def make_bundle(
    submission_url: str = "http://127.0.0.1:43191/module/httptrap/abc/secret",
    *,
    cid: str = "/check_bundle/1234",
    brokers: Tuple[str, ...] = ("/broker/1",),
    check_type: str = "httptrap",
    status: str = "active",
) -> CheckBundle:
    return CheckBundle.model_validate(
        {
            "_cid": cid,
            "_check_uuids": ["11111111-2222-3333-4444-555555555555"],
            "brokers": list(brokers),
            "config": {"submission_url": submission_url, "secret": "secret"},
            "display_name": "host:app",
            "status": status,
            "type": check_type,
            "tags": ["service:app"],
        }
    )


class FakeAPI:
    """In-memory stand-in for the monitoring API."""

    def __init__(self, brokers=None, ca_pem: str = "") -> None:
        self.brokers: List[Broker] = list(brokers or [])
        self.ca_pem = ca_pem
        self.bundles: Dict[str, CheckBundle] = {}
        self.broker_fetches = 0
        self.ca_fetches = 0
        self.bundle_fetches = 0

    def get(self, path: str) -> bytes:
        assert path == "/pki/ca.crt"
        self.ca_fetches += 1
        return json.dumps({"contents": self.ca_pem}).encode()

    def fetch_broker(self, cid: str) -> Broker:
        return next(b for b in self.brokers if b.cid == cid)

    def fetch_brokers(self) -> List[Broker]:
        self.broker_fetches += 1
        return list(self.brokers)

    def search_brokers(self, query=None, filters=None) -> List[Broker]:
        return list(self.brokers)

    def fetch_check_bundle(self, cid: str) -> CheckBundle:
        self.bundle_fetches += 1
        return self.bundles[cid].model_copy(deep=True)

    def create_check_bundle(self, bundle: CheckBundle) -> CheckBundle:
        cid = f"/check_bundle/{len(self.bundles) + 1}"
        config = dict(bundle.config)
        config.setdefault("submission_url", f"http://127.0.0.1:43191/module/httptrap/{len(self.bundles) + 1}/s")
        created = bundle.model_copy(deep=True, update={"cid": cid, "config": config})
        self.bundles[created.cid] = created
        return created

    def search_check_bundles(self, query=None, filters=None) -> List[CheckBundle]:
        return []

    def update_check_bundle(self, bundle: CheckBundle) -> CheckBundle:
        self.bundles[bundle.cid] = bundle
        return bundle


@pytest.fixture
def fake_api():
    return FakeAPI(brokers=[make_broker()])


# ── PKI ──────────────────────────────────────────────────────────────────


def _name(cn: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])


def _key_usage(*, ca: bool) -> x509.KeyUsage:
    return x509.KeyUsage(
        digital_signature=True,
        content_commitment=False,
        key_encipherment=False,
        data_encipherment=False,
        key_agreement=False,
        key_cert_sign=ca,
        crl_sign=ca,
        encipher_only=False,
        decipher_only=False,
    )


class BrokerPKI:
    """A private CA issuing leaf certificates identified by CN."""

    def __init__(self, directory) -> None:
        self._dir = directory
        self._now = datetime.datetime.now(datetime.timezone.utc)
        self.ca_key = ec.generate_private_key(ec.SECP256R1())
        self.ca_cert = (
            x509.CertificateBuilder()
            .subject_name(_name("Test Broker CA"))
            .issuer_name(_name("Test Broker CA"))
            .public_key(self.ca_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(self._now - datetime.timedelta(days=1))
            .not_valid_after(self._now + datetime.timedelta(days=30))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .add_extension(_key_usage(ca=True), critical=True)
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(self.ca_key.public_key()),
                critical=False,
            )
            .sign(self.ca_key, hashes.SHA256())
        )
        self.ca_pem = self.ca_cert.public_bytes(serialization.Encoding.PEM).decode()
        self._leaves: Dict[str, Tuple[str, str, bytes]] = {}

    def leaf(self, cn: str) -> Tuple[str, str, bytes]:
        """Return ``(cert_path, key_path, der)`` for a server cert with *cn*."""
        if cn in self._leaves:
            return self._leaves[cn]
        key = ec.generate_private_key(ec.SECP256R1())
        cert = (
            x509.CertificateBuilder()
            .subject_name(_name(cn))
            .issuer_name(self.ca_cert.subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(self._now - datetime.timedelta(days=1))
            .not_valid_after(self._now + datetime.timedelta(days=30))
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(_key_usage(ca=False), critical=True)
            .add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False
            )
            .add_extension(
                x509.SubjectAlternativeName(
                    [x509.DNSName("localhost"), x509.IPAddress(ipaddress.ip_address("127.0.0.1"))]
                ),
                critical=False,
            )
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(self.ca_key.public_key()),
                critical=False,
            )
            .sign(self.ca_key, hashes.SHA256())
        )
        cert_path = self._dir / f"{cn}.crt"
        key_path = self._dir / f"{cn}.key"
        cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
        key_path.write_bytes(
            key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.PKCS8,
                serialization.NoEncryption(),
            )
        )
        entry = (str(cert_path), str(key_path), cert.public_bytes(serialization.Encoding.DER))
        self._leaves[cn] = entry
        return entry


@pytest.fixture(scope="session")
def pki(tmp_path_factory):
    return BrokerPKI(tmp_path_factory.mktemp("pki"))


# ── Local broker server ──────────────────────────────────────────────────


class BrokerServer:
    """A local httptrap endpoint recording every PUT it receives.

    ``delay`` holds each response back by that many seconds.
    """

    def __init__(self, httpd: HTTPServer, scheme: str) -> None:
        self.httpd = httpd
        self.scheme = scheme
        self.port = httpd.server_address[1]
        self.requests: List[Dict[str, Any]] = []
        self.responses: List[Tuple[int, Any]] = []
        self.delay = 0.0

    def url(self, path: str = "/module/httptrap/abc/secret") -> str:
        return f"{self.scheme}://127.0.0.1:{self.port}{path}"

    def next_response(self) -> Tuple[int, Any]:
        if self.responses:
            return self.responses.pop(0)
        return 200, {"stats": 1, "filtered": 0, "error": ""}


def _handler_for(server_ref: List[BrokerServer]):
    class Handler(BaseHTTPRequestHandler):
        def do_PUT(self):
            server = server_ref[0]
            length = int(self.headers.get("Content-Length", "0"))
            body = self.rfile.read(length)
            server.requests.append({"path": self.path, "headers": dict(self.headers), "body": body})
            if server.delay:
                time.sleep(server.delay)
            status, payload = server.next_response()
            data = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(data)))
            self.end_headers()
            self.wfile.write(data)

        def log_message(self, format, *args):  # noqa: A002
            pass

    return Handler


@pytest.fixture
def broker_server(pki):
    """Factory: ``broker_server()`` for http, ``broker_server("cn")`` for https."""
    started: List[BrokerServer] = []

    def start(cn: Optional[str] = None) -> BrokerServer:
        ref: List[BrokerServer] = []
        httpd = HTTPServer(("127.0.0.1", 0), _handler_for(ref))
        scheme = "http"
        if cn is not None:
            cert_path, key_path, _ = pki.leaf(cn)
            ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
            ctx.load_cert_chain(cert_path, key_path)
            httpd.socket = ctx.wrap_socket(httpd.socket, server_side=True)
            scheme = "https"
        server = BrokerServer(httpd, scheme)
        ref.append(server)
        threading.Thread(target=httpd.serve_forever, daemon=True).start()
        started.append(server)
        return server

    yield start

    for server in started:
        server.httpd.shutdown()
        server.httpd.server_close()


@pytest.fixture
def listener():
    """A listening TCP socket; returns its port."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(512)
    yield sock.getsockname()[1]
    sock.close()


@pytest.fixture
def closed_port():
    """A local port with nothing listening on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port
