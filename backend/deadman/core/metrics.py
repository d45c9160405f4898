"""Prometheus metrics for the scheduling engine (exposed under /metrics)."""

from prometheus_client import Counter, Histogram

REMINDERS_TOTAL = Counter(
    "deadman_reminders_total",
    "Reminder send attempts by outcome",
    ["outcome"],  # sent | retry | failed
)
SECRETS_TRIGGERED_TOTAL = Counter(
    "deadman_secrets_triggered_total",
    "Secrets transitioned to triggered",
)
DISCLOSURE_DELIVERIES_TOTAL = Counter(
    "deadman_disclosure_deliveries_total",
    "Disclosure deliveries by channel and outcome",
    ["channel", "outcome"],  # outcome: sent | failed
)
DECRYPTION_FAILURES_TOTAL = Counter(
    "deadman_decryption_failures_total",
    "Disclosures aborted because the payload could not be decrypted",
)
SWEEP_DURATION_SECONDS = Histogram(
    "deadman_sweep_duration_seconds",
    "Wall time of one sweep invocation",
    ["kind"],  # full | reminders | secrets
)
