from prometheus_client import Counter


ratelimit_decisions_total = Counter(
    "carecall_ratelimit_decisions_total",
    "Quota guard decisions",
    ["action", "outcome"],
)

ratelimit_store_errors_total = Counter(
    "carecall_ratelimit_store_errors_total",
    "Counter store calls that failed or timed out",
)

ratelimit_anomalies_total = Counter(
    "carecall_ratelimit_anomalies_total",
    "Anomalies flagged by the rate-limit observer",
    ["anomaly_type"],
)
