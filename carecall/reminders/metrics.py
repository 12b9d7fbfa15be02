from prometheus_client import Counter


reminders_created_total = Counter(
    "carecall_reminders_created_total",
    "Total reminders created",
    ["source", "recurring"],
)

reminder_transitions_total = Counter(
    "carecall_reminder_transitions_total",
    "Total reminder lifecycle transitions",
    ["event_type", "source"],
)

reminder_rejections_total = Counter(
    "carecall_reminder_rejections_total",
    "Total reminder commands rejected by a lifecycle rule",
    ["code"],
)

reminder_concurrent_conflicts_total = Counter(
    "carecall_reminder_concurrent_conflicts_total",
    "Total reminder writes that lost the optimistic version check",
)

reminder_duplicate_completions_total = Counter(
    "carecall_reminder_duplicate_completions_total",
    "Total completion signals ignored as already applied",
)
