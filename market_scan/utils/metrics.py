from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# Request metrics
REQUEST_COUNT = Counter(
    "market_scan_requests_total",
    "Total number of API requests",
    ["method", "endpoint", "status_code"],
)

REQUEST_LATENCY = Histogram(
    "market_scan_request_duration_seconds",
    "Request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# Scan submission metrics
SCAN_SUBMISSIONS = Counter(
    "market_scan_submissions_total",
    "Scan submissions by outcome",
    ["outcome"],
)

ANALYSIS_REQUEST_LATENCY = Histogram(
    "market_scan_analysis_request_seconds",
    "Latency of the outbound analysis service call",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

# Live update metrics
PUSH_EVENTS = Counter(
    "market_scan_push_events_total",
    "Push events received by live bridges",
    ["channel", "outcome"],
)

ACTIVE_SUBSCRIPTIONS = Gauge(
    "market_scan_active_subscriptions",
    "Number of open live update subscriptions",
)
