"""Custom exception classes for trapcheck."""

from typing import Optional, Sequence


class TrapCheckError(Exception):
    """Base class for all custom exceptions in trapcheck."""

    pass


class ConfigurationError(TrapCheckError):
    """Raised when a configuration value or required dependency is invalid."""

    pass


# ── Monitoring API ───────────────────────────────────────────────────────


class APIError(TrapCheckError):
    """Raised when the monitoring API returns an unexpected status or fails."""

    def __init__(self, message: str, status_code: Optional[int] = None, detail: str = ""):
        self.status_code = status_code
        self.detail = detail
        full_msg = message
        if status_code is not None:
            full_msg += f" (HTTP {status_code})"
        if detail:
            full_msg += f": {detail}"
        super().__init__(full_msg)


# ── Broker cache ─────────────────────────────────────────────────────────


class BrokerCacheError(TrapCheckError):
    """Raised when the broker list cannot be fetched or read."""

    pass


class BrokerListNotInitializedError(BrokerCacheError):
    """The broker list has never been populated."""

    def __init__(self) -> None:
        super().__init__("invalid state, broker list not initialized")


class BrokerListEmptyError(BrokerCacheError):
    """The broker list was populated but holds no brokers."""

    def __init__(self) -> None:
        super().__init__("invalid state, empty broker list")


class BrokerNotFoundError(BrokerCacheError):
    """No broker in the list matches the requested CID or tags."""

    pass


# ── Broker selection ─────────────────────────────────────────────────────


class BrokerSelectionError(TrapCheckError):
    """Raised when no usable broker can be resolved."""

    pass


class UnknownBrokerTypeError(BrokerSelectionError):
    def __init__(self, broker_name: str, broker_type: str):
        self.broker_name = broker_name
        self.broker_type = broker_type
        super().__init__(f"broker '{broker_name}' has unknown type ({broker_type})")


class NoBrokerInstancesError(BrokerSelectionError):
    def __init__(self, broker_name: str):
        self.broker_name = broker_name
        super().__init__(f"broker '{broker_name}' invalid, no instance details")


class NoValidInstanceError(BrokerSelectionError):
    def __init__(self, broker_name: str, check_type: str):
        self.broker_name = broker_name
        self.check_type = check_type
        super().__init__(
            f"broker '{broker_name}' has no valid instances for check type '{check_type}'"
        )


class NoBrokersFoundError(BrokerSelectionError):
    def __init__(self) -> None:
        super().__init__("zero brokers found")


class NoValidBrokersError(BrokerSelectionError):
    def __init__(self, num_found: int):
        self.num_found = num_found
        super().__init__(f"found {num_found} broker(s), zero are valid")


# ── TLS trust ────────────────────────────────────────────────────────────


class TrustError(TrapCheckError):
    """Raised when a TLS configuration for the broker cannot be established."""

    pass


class CACertError(TrustError):
    """The broker CA certificate could not be fetched or parsed."""

    pass


class CertificateNameMismatchError(TrustError):
    """The peer certificate common name is not acceptable for the broker."""

    def __init__(self, common_name: str, acceptable: Sequence[str]):
        self.common_name = common_name
        self.acceptable = tuple(acceptable)
        super().__init__(
            f"certificate name mismatch, cn: {common_name!r}, "
            f"acceptable: {','.join(self.acceptable)!r}"
        )


# ── Check bundles ────────────────────────────────────────────────────────


class CheckBundleError(TrapCheckError):
    """Raised when the check bundle cannot be found, created or refreshed."""

    pass


# ── Submission ───────────────────────────────────────────────────────────


class SubmissionError(TrapCheckError):
    """Raised when a metric payload could not be delivered."""

    pass


class EmptyPayloadError(SubmissionError):
    def __init__(self) -> None:
        super().__init__("zero length data, no metrics to submit")


class CompressionError(SubmissionError):
    """Compressing the payload failed or wrote a short count."""

    pass


class TransportError(SubmissionError):
    """The request could not be completed within the retry budget."""

    pass


class SubmissionRejectedError(SubmissionError):
    """The broker answered with a terminal non-200 status."""

    def __init__(self, url: str, status_code: int, reason: str = ""):
        self.url = url
        self.status_code = status_code
        detail = f"{url} {status_code} {reason}".rstrip()
        super().__init__(f"submitting metrics ({detail})")


class StaleEndpointError(SubmissionRejectedError):
    """The submission URL returned 404; the check binding should be refreshed."""

    pass


class SubmissionCancelledError(SubmissionError):
    def __init__(self) -> None:
        super().__init__("submission cancelled")
