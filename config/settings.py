"""Application settings constants."""

from __future__ import annotations

# Hard ceiling for a single availability probe; the probe process is killed after this.
PROBE_TIMEOUT_SECONDS = 10.0

# Grace period between SIGTERM and SIGKILL when a capture is stopped on request.
STOP_GRACE_SECONDS = 5.0

# Forced-kill escalation used per process while the service is shutting down.
SHUTDOWN_KILL_GRACE_SECONDS = 3.0

# Upper bound on how long shutdown waits for in-flight start requests to settle.
SHUTDOWN_PENDING_START_WAIT_SECONDS = PROBE_TIMEOUT_SECONDS + 2.0

DEFAULT_SCAN_INTERVAL_SECONDS = 60
MIN_SCAN_INTERVAL_SECONDS = 30
MAX_SCAN_INTERVAL_SECONDS = 3600

# How often a running capture is checked against its duration/size limits.
DEFAULT_LIMIT_CHECK_SECONDS = 10

# Expected size of a new capture when the free-space and aggregate checks run.
DEFAULT_ESTIMATED_CAPTURE_SIZE_MB = 1000

DEFAULT_CAPTURE_BINARY = "streamlink"
DEFAULT_CAPTURE_FLAGS = ("--twitch-disable-ads", "--twitch-low-latency")
DEFAULT_SOURCE_URL_TEMPLATE = "https://twitch.tv/{name}"
DEFAULT_OUTPUT_EXTENSION = "mp4"
DEFAULT_QUALITY = "best"

# Used-percentage thresholds for the disk status indicator.
DISK_WARNING_PERCENT = 85
DISK_CRITICAL_PERCENT = 95

# Rough per-capture bandwidth used for the dashboard throughput estimate.
ESTIMATED_MB_PER_SECOND_PER_CAPTURE = 6

LOG_RETENTION_DAYS = 7
