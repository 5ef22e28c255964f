"""Constants and defaults for cdnlat."""

# Latency color thresholds (milliseconds): green <= fast, yellow <= medium, red above
METRIC_THRESHOLDS = {
    "ttfb": {"fast": 50.0, "medium": 150.0},
    "cdn": {"fast": 20.0, "medium": 60.0},
    "origin": {"fast": 30.0, "medium": 100.0},
}

# Default campaign settings
DEFAULT_CONFIG_PATH = "config.yaml"
DEFAULT_PATH = "/"
DEFAULT_TIMEOUT = 30.0
DEFAULT_INTERVAL = 0.1
DEFAULT_OUTPUT_DIR = "./output"

# Extra slack on top of the request timeout before a probe is abandoned
PROBE_GRACE_S = 5.0

# Connection pool limits per endpoint handle
MAX_CONNECTIONS = 100
MAX_KEEPALIVE_CONNECTIONS = 100
KEEPALIVE_EXPIRY = 90.0

DEFAULT_HTTPS_PORT = 443

# Header carrying origin processing time in seconds, e.g. "0.045" or "0.045s"
ORIGIN_TIME_HEADER = "x-source-response-time"

# Browser-like user agent
USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

# Percentiles reported per metric
PERCENTILES = {"p50": 0.50, "p90": 0.90, "p95": 0.95, "p99": 0.99}

# Output layout under the output directory
LOG_SUBDIR = "logs"
REPORT_SUBDIR = "reports"
TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"
