"""Prometheus metrics instrumentation."""

from __future__ import annotations

from prometheus_client import Counter, Gauge

pages_saved = Counter("inspector_pages_saved", "Inspected pages persisted to the run store")
fetch_failures = Counter(
    "inspector_fetch_failures", "Fetches that produced no page", ["reason"]
)
fetches_in_flight = Gauge("inspector_fetches_in_flight", "Fetches currently holding a governor slot")
store_write_failures = Counter(
    "store_write_failures", "Run store writes that failed", ["kind"]
)
