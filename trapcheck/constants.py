"""Shared constants for trapcheck."""

APP_NAME = "circonus-trapcheck"
APP_VERSION = "0.1.0"

# Monitoring API defaults
DEFAULT_API_URL = "https://api.circonus.com/v2"
DEFAULT_API_TIMEOUT = 10.0  # seconds
CA_CERT_PATH = "/pki/ca.crt"

# Broker types as reported by the API ("circonus" is the standard public kind)
BROKER_TYPE_CIRCONUS = "circonus"
BROKER_TYPE_ENTERPRISE = "enterprise"
KNOWN_BROKER_TYPES = frozenset({BROKER_TYPE_CIRCONUS, BROKER_TYPE_ENTERPRISE})

STATUS_ACTIVE = "active"

# Broker reachability
DEFAULT_BROKER_PORT = 43191
DEFAULT_BROKER_MAX_RESPONSE_TIME = "500ms"
BROKER_CONNECT_ATTEMPTS = 5
BROKER_CONNECT_RETRY_DELAY = 2.0  # seconds
# Public broker hosts only accept submissions on 443
PUBLIC_BROKER_HOSTS = frozenset({"trap.noit.circonus.net", "api.circonus.net"})

# Submissions to these hosts use certificates from a public CA
PUBLIC_CA_SUBMISSION_HOSTS = frozenset({"api.circonus.com"})

# Broker list cache
BROKER_CACHE_TTL = 300.0  # seconds

# Check bundles
DEFAULT_CHECK_TYPE = "httptrap"
CONFIG_SUBMISSION_URL = "submission_url"
CONFIG_SECRET = "secret"
CONFIG_ASYNC_METRICS = "asynch_metrics"

# Submission
DEFAULT_SUBMISSION_TIMEOUT = "10s"
COMPRESSION_THRESHOLD = 1024  # bytes
SUBMIT_CONNECT_TIMEOUT = 10.0  # seconds, dial + TLS handshake
CANCEL_POLL_INTERVAL = 0.05  # seconds between cancellation checks while a request is in flight
SUBMIT_MAX_ATTEMPTS = 7
SUBMIT_RETRY_WAIT_MIN = 0.05  # seconds
SUBMIT_RETRY_WAIT_MAX = 2.0  # seconds
REFRESH_RETRY_DELAY = 2.0  # seconds between a check refresh and the resubmit
TRACE_TS_FORMAT = "%Y%m%d_%H%M%S"
NO_SUBMIT_UUID = "n/a"
NO_ERROR = "none"

# Logging defaults
DEFAULT_LOG_LEVEL = "INFO"
