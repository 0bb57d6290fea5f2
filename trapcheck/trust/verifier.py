"""Pinned TLS verification for broker submission endpoints.

Broker certificates are issued by the monitoring vendor's private CA and
identify the broker instance by common name.  One submission host may
front several instances, each with its own certificate, so the peer is
accepted when its CN is any of the instance CNs that map to that host.

:class:`PinnedCertVerifier` holds the pinned CA and CN allow-list.
:class:`PinnedSSLContext` is the ``ssl.SSLContext`` handed to the HTTP
transport; the sockets and BIO objects it creates run the verifier once the handshake
(and therefore chain validation against the pinned CA) has completed.
"""

from __future__ import annotations

import ipaddress
import ssl
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

from cryptography import x509
from cryptography.x509.oid import NameOID

from trapcheck.errors import CACertError, CertificateNameMismatchError, TrustError
from trapcheck.models import Broker


@dataclass(frozen=True)
class TrustConfig:
    """TLS settings used for submissions to one broker."""

    ssl_context: ssl.SSLContext
    server_name: str = ""
    acceptable_cns: Tuple[str, ...] = ()
    ca_pem: str = ""
    pinned: bool = False


def load_ca_certificates(ca_pem: str) -> List[x509.Certificate]:
    """Parse PEM text into certificates, raising :class:`CACertError` if none."""
    try:
        certs = x509.load_pem_x509_certificates(ca_pem.encode("utf-8"))
    except ValueError as exc:
        raise CACertError(f"unable to parse CA certificate: {exc}") from exc
    if not certs:
        raise CACertError("no certificates found in CA PEM")
    return certs


def peer_common_name(der_cert: bytes) -> str:
    """Return the subject CN of a DER encoded certificate ('' if absent)."""
    cert = x509.load_der_x509_certificate(der_cert)
    attrs = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not attrs:
        return ""
    value = attrs[0].value
    return value.decode("utf-8") if isinstance(value, bytes) else value


class PinnedCertVerifier:
    """Peer check against a fixed CN allow-list."""

    def __init__(self, acceptable_cns: Sequence[str]) -> None:
        self._acceptable = tuple(acceptable_cns)

    @property
    def acceptable_cns(self) -> Tuple[str, ...]:
        return self._acceptable

    def verify_peer(self, der_cert: Optional[bytes]) -> str:
        """Accept the leaf certificate or raise :class:`CertificateNameMismatchError`."""
        if not der_cert:
            raise TrustError("peer presented no certificate")
        common_name = peer_common_name(der_cert)
        if common_name not in self._acceptable:
            raise CertificateNameMismatchError(common_name, self._acceptable)
        return common_name


class PinnedSSLSocket(ssl.SSLSocket):
    """``SSLSocket`` that checks the peer CN as part of the handshake."""

    def do_handshake(self, block=False):
        super().do_handshake(block)
        try:
            self.context.verifier.verify_peer(self.getpeercert(binary_form=True))
        except TrustError:
            self.close()
            raise


class PinnedSSLObject(ssl.SSLObject):
    """``SSLObject`` (``wrap_bio``) variant of :class:`PinnedSSLSocket`.

    TLS-in-TLS connections through an https proxy take this path.
    """

    def do_handshake(self):
        super().do_handshake()
        self.context.verifier.verify_peer(self.getpeercert(binary_form=True))


class PinnedSSLContext(ssl.SSLContext):
    """Client context whose connections are checked by a :class:`PinnedCertVerifier`.

    The check runs inside ``do_handshake`` of both the socket and the
    memory-BIO object classes, so ``wrap_socket`` and ``wrap_bio`` enforce
    the CN allow-list alike.
    """

    sslsocket_class = PinnedSSLSocket
    sslobject_class = PinnedSSLObject

    def __new__(cls, verifier: PinnedCertVerifier) -> "PinnedSSLContext":
        return super().__new__(cls, ssl.PROTOCOL_TLS_CLIENT)

    def __init__(self, verifier: PinnedCertVerifier) -> None:
        self.verifier = verifier


def build_pinned_config(ca_pem: str, server_name: str, acceptable_cns: Sequence[str]) -> TrustConfig:
    """Build a CN-pinned TLS configuration (hostname checks replaced by the CN list)."""
    load_ca_certificates(ca_pem)
    ctx = PinnedSSLContext(PinnedCertVerifier(acceptable_cns))
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_REQUIRED
    _load_pool(ctx, ca_pem)
    return TrustConfig(
        ssl_context=ctx,
        server_name=server_name,
        acceptable_cns=tuple(acceptable_cns),
        ca_pem=ca_pem,
        pinned=True,
    )


def build_hostname_config(ca_pem: str, server_name: str) -> TrustConfig:
    """Pinned CA pool with ordinary hostname verification (FQDN submission hosts)."""
    load_ca_certificates(ca_pem)
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    ctx.check_hostname = True
    ctx.hostname_checks_common_name = True
    ctx.verify_mode = ssl.CERT_REQUIRED
    _load_pool(ctx, ca_pem)
    return TrustConfig(ssl_context=ctx, server_name=server_name, ca_pem=ca_pem, pinned=True)


def _load_pool(ctx: ssl.SSLContext, ca_pem: str) -> None:
    try:
        ctx.load_verify_locations(cadata=ca_pem)
    except ssl.SSLError as exc:
        raise CACertError(f"unable to append cert to pool: {exc}") from exc


def broker_cn_list(broker: Broker, submission_url: str) -> Tuple[str, List[str]]:
    """Map the submission host to the broker instance CNs.

    Returns ``(primary_cn, acceptable_cns)``.  When the host is a name
    rather than an IP the hostname itself is returned with an empty list;
    the caller falls back to ordinary hostname verification.
    """
    host = urlsplit(submission_url).hostname or ""
    if not host:
        raise TrustError(f"no host in submission URL ({submission_url})")

    try:
        ipaddress.ip_address(host)
    except ValueError:
        return host, []

    cn_list = [
        d.cn for d in broker.active_instances if d.ip == host or d.external_host == host
    ]
    if not cn_list:
        raise TrustError(f"unable to match URL host ({host}) to broker instance")
    return cn_list[0], cn_list
