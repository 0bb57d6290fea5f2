"""TLS trust for broker submission endpoints."""

from trapcheck.trust.establisher import TrustEstablisher
from trapcheck.trust.verifier import (
    PinnedCertVerifier,
    PinnedSSLContext,
    TrustConfig,
    broker_cn_list,
)

__all__ = [
    "PinnedCertVerifier",
    "PinnedSSLContext",
    "TrustConfig",
    "TrustEstablisher",
    "broker_cn_list",
]
