"""
Shared Prometheus Metrics for the pipeline jobs
"""
from prometheus_client import Counter, Histogram

# Total job runs by outcome
JOB_RUNS = Counter(
    "costpulse_job_runs_total",
    "Total number of pipeline job runs",
    ["job_name", "status"]
)

# Duration of jobs
JOB_DURATION = Histogram(
    "costpulse_job_duration_seconds",
    "Duration of pipeline jobs in seconds",
    ["job_name"],
    buckets=[5, 15, 30, 60, 120, 300, 600, 1200, 1800]
)

# Outbound source requests by outcome (success or error class)
SOURCE_REQUEST_ATTEMPTS = Counter(
    "costpulse_source_request_attempts_total",
    "Billing source request attempts",
    ["request", "outcome"]
)

# Records passing / failing validation
RECORDS_VALIDATED = Counter(
    "costpulse_records_validated_total",
    "Records processed by the record validator",
    ["dataset", "result"]
)

# Subscription x dataset outcomes
DATASET_OUTCOMES = Counter(
    "costpulse_dataset_outcomes_total",
    "Collection outcomes per subscription and dataset",
    ["dataset", "status"]
)

ANOMALIES_FLAGGED = Counter(
    "costpulse_anomalies_flagged_total",
    "Cost anomalies flagged by the baseline engine",
    ["severity"]
)

REPORTS_SENT = Counter(
    "costpulse_reports_sent_total",
    "Weekly report dispatch outcomes",
    ["status"]
)
