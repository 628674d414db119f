"""Prometheus metrics for catalog stock sync."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("catalog_stock_sync", "Catalog stock sync application info")
app_info.info({"version": "0.1.0", "name": "catalog-stock-sync"})

# Gateway metrics
gateway_calls_total = Counter(
    "gateway_calls_total",
    "Total number of outbound marketplace API calls",
    ["outcome"],
)

gateway_queue_wait_seconds = Histogram(
    "gateway_queue_wait_seconds",
    "Time callers spent queued behind the rate window",
    buckets=[0.01, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
)

gateway_utilization_percent = Gauge(
    "gateway_utilization_percent",
    "Share of the per-minute request ceiling used in the trailing window",
)

# Scan metrics
scan_pages_total = Counter(
    "scan_pages_total",
    "Total number of scan pages processed",
    ["outcome"],
)

scan_restarts_total = Counter(
    "scan_restarts_total",
    "Total number of scan restarts",
    ["reason"],
)

scan_duplicates_total = Counter(
    "scan_duplicates_total",
    "Item identifiers returned again at pagination boundaries",
)

# Reconciliation metrics
records_reconciled_total = Counter(
    "records_reconciled_total",
    "Catalog records reconciled by classification",
    ["classification"],
)

detail_fetch_failures_total = Counter(
    "detail_fetch_failures_total",
    "Items that failed inside a detail batch",
)

# Webhook metrics
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total number of webhook deliveries",
    ["topic", "status"],
)

webhook_latency_seconds = Histogram(
    "webhook_latency_seconds",
    "Webhook acknowledgement latency",
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0],
)

webhook_processing_total = Counter(
    "webhook_processing_total",
    "Webhook events processed asynchronously by outcome",
    ["status"],
)

# Alert metrics
stock_alerts_total = Counter(
    "stock_alerts_total",
    "Stock alerts recorded",
    ["alert_type"],
)

alerts_sent_total = Counter(
    "alerts_sent_total",
    "Stock alerts delivered to the notifier",
    ["status"],
)

# Scheduler metrics
scheduler_runs_total = Counter(
    "scheduler_runs_total",
    "Total number of scheduler runs",
    ["job_type", "status"],
)

scheduler_last_run_timestamp = Gauge(
    "scheduler_last_run_timestamp",
    "Timestamp of last scheduler run",
    ["job_type"],
)

# Encryption metrics
decryption_failures_total = Counter(
    "decryption_failures_total",
    "Total number of decryption failures",
)


def record_gateway_call(outcome: str):
    """Record an outbound call result (ok, retry, error)."""
    gateway_calls_total.labels(outcome=outcome).inc()


def record_queue_wait(seconds: float, utilization: float):
    """Record time spent waiting for a rate window slot."""
    gateway_queue_wait_seconds.observe(seconds)
    gateway_utilization_percent.set(utilization)


def record_scan_page(completed: bool, duplicates: int):
    """Record a scanned page."""
    outcome = "completed" if completed else "page"
    scan_pages_total.labels(outcome=outcome).inc()
    if duplicates:
        scan_duplicates_total.inc(duplicates)


def record_scan_restart(reason: str):
    """Record a scan restart."""
    scan_restarts_total.labels(reason=reason).inc()


def record_reconciliation(new: int, updated: int, unchanged: int, conflicts: int = 0):
    """Record reconciliation counts."""
    records_reconciled_total.labels(classification="new").inc(new)
    records_reconciled_total.labels(classification="updated").inc(updated)
    records_reconciled_total.labels(classification="unchanged").inc(unchanged)
    if conflicts:
        records_reconciled_total.labels(classification="conflict").inc(conflicts)


def record_detail_failures(count: int):
    """Record items that failed inside a detail batch."""
    detail_fetch_failures_total.inc(count)


def record_webhook(topic: str, status: str, duration: float):
    """Record a webhook acknowledgement."""
    webhook_requests_total.labels(topic=topic, status=status).inc()
    webhook_latency_seconds.observe(duration)


def record_webhook_processing(status: str):
    """Record an asynchronous webhook processing outcome."""
    webhook_processing_total.labels(status=status).inc()


def record_stock_alert(alert_type: str):
    """Record a stored stock alert."""
    stock_alerts_total.labels(alert_type=alert_type).inc()


def record_alert_sent(success: bool):
    """Record an alert being delivered."""
    status = "success" if success else "error"
    alerts_sent_total.labels(status=status).inc()


def record_decryption_failure():
    """Record a failed decryption of a stored credential."""
    decryption_failures_total.inc()


def record_scheduler_run(job_type: str, success: bool):
    """Record a scheduler job run."""
    status = "success" if success else "error"
    scheduler_runs_total.labels(job_type=job_type, status=status).inc()
    scheduler_last_run_timestamp.labels(job_type=job_type).set(time.time())
