"""Prometheus metrics for the cart worker."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

app_info = Info("cartwatch", "Cart price monitor application info")
app_info.info({"version": "0.1.0", "name": "cartwatch"})

# Cart scrape metrics
cart_scrapes_total = Counter(
    "cart_scrapes_total",
    "Total number of cart scrape attempts",
    ["status"],
)

cart_scrape_duration_seconds = Histogram(
    "cart_scrape_duration_seconds",
    "Time spent scraping a cart",
    buckets=[1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0],
)

listings_reconciled_total = Counter(
    "listings_reconciled_total",
    "Listings processed by the price reconciler",
    ["outcome"],  # updated, missing, failed
)

price_changes_total = Counter(
    "price_changes_total",
    "Total number of price changes detected",
    ["direction"],
)

notifications_sent_total = Counter(
    "notifications_sent_total",
    "Price notifications sent",
    ["channel", "status"],
)

# SKU acquisition metrics
sku_adds_total = Counter(
    "sku_adds_total",
    "SKU add-to-cart attempts",
    ["status"],  # success, failed, skipped
)

acquisition_runs_total = Counter(
    "acquisition_runs_total",
    "SKU acquisition runs",
    ["status"],
)

# Session metrics
active_browser_sessions = Gauge(
    "active_browser_sessions",
    "Number of live per-account browser sessions",
)

session_disposals_total = Counter(
    "session_disposals_total",
    "Browser sessions disposed",
    ["reason"],
)

account_status_transitions_total = Counter(
    "account_status_transitions_total",
    "Account status transitions applied by the scheduler",
    ["status"],
)

# Scheduler metrics
scheduler_runs_total = Counter(
    "scheduler_runs_total",
    "Scheduler job runs",
    ["job_type", "status"],
)

scheduler_last_run_timestamp = Gauge(
    "scheduler_last_run_timestamp",
    "Timestamp of last scheduler run",
    ["job_type"],
)

decryption_failures_total = Counter(
    "decryption_failures_total",
    "Cookie blob decryption failures",
    ["exception_type"],
)


def record_scrape(success: bool, duration: float):
    """Record a finished cart scrape."""
    status = "success" if success else "error"
    cart_scrapes_total.labels(status=status).inc()
    cart_scrape_duration_seconds.observe(duration)


def record_price_change(old_price: float, new_price: float):
    """Record a price change."""
    direction = "up" if new_price > old_price else "down"
    price_changes_total.labels(direction=direction).inc()


def record_notification(channel: str, success: bool):
    status = "success" if success else "error"
    notifications_sent_total.labels(channel=channel, status=status).inc()


def record_scheduler_run(job_type: str, success: bool):
    """Record a scheduler job run."""
    status = "success" if success else "error"
    scheduler_runs_total.labels(job_type=job_type, status=status).inc()
    scheduler_last_run_timestamp.labels(job_type=job_type).set(time.time())


def record_decryption_failure(exception_type: str):
    decryption_failures_total.labels(exception_type=exception_type).inc()
