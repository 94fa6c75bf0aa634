from prometheus_client import Counter, Gauge, Histogram

SAMPLES_INSERTED = Counter(
    "tracker_samples_inserted_total",
    "Samples appended to the time-series store",
)

SAMPLES_PRUNED = Counter(
    "tracker_samples_pruned_total",
    "Samples deleted by the retention pruner",
)

# Pruning deletes in bulk, so buckets reach into tens of seconds
PRUNE_DURATION = Histogram(
    "tracker_prune_duration_seconds",
    "Duration of one retention pass",
    buckets=[0.01, 0.05, 0.1, 0.5, 1, 2.5, 5, 10, 30, 60],
)

RECORD_REFRESH_DURATION = Histogram(
    "tracker_record_refresh_duration_seconds",
    "Duration of one record refresh cycle over all services",
)

TRACKED_SERVICES = Gauge(
    "tracker_tracked_services",
    "Number of services registered for tracking",
)

CONNECTED_CLIENTS = Gauge(
    "tracker_connected_clients",
    "Dashboard clients currently synced over the WebSocket channel",
)

MESSAGES_SENT = Counter(
    "tracker_sync_messages_sent_total",
    "Sync messages sent to clients",
    ["message"],
)
