"""
Prometheus metrics for monitoring.

Metrics collected:
- Task outcomes by type and status (counter)
- Task processing duration (histogram)
- Broker delivery outcomes (counter)
- Reclaimed and cleaned-up tasks (counter)
- Live status subscribers (gauge)
- Queue length by status (gauge)
"""

from prometheus_client import Counter, Gauge, Histogram, Info

app_info = Info("taskengine_app", "Task engine application information")

tasks_submitted_total = Counter(
    "tasks_submitted_total",
    "Total tasks created by producers and batch expansion",
    ["task_type"],
)

tasks_processed_total = Counter(
    "tasks_processed_total",
    "Total processor invocations by outcome",
    ["task_type", "outcome"],
)

task_duration_seconds = Histogram(
    "task_duration_seconds",
    "Task processing duration in seconds",
    ["task_type", "outcome"],
    buckets=(1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0),
)

queue_deliveries_total = Counter(
    "queue_deliveries_total",
    "Broker deliveries handled, by disposition",
    ["disposition"],
)

tasks_reclaimed_total = Counter(
    "tasks_reclaimed_total",
    "Stuck processing tasks reset to pending",
)

tasks_cleaned_total = Counter(
    "tasks_cleaned_total",
    "Terminal tasks deleted by the retention sweep",
)

status_subscribers_active = Gauge(
    "status_subscribers_active",
    "Attached status push connections",
)

status_broadcasts_total = Counter(
    "status_broadcasts_total",
    "Status payloads fanned out by hubs",
    ["result"],
)

task_queue_length = Gauge(
    "task_queue_length",
    "Number of tasks per status",
    ["status"],
)
