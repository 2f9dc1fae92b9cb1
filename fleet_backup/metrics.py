from prometheus_client import Counter, Histogram, Gauge

BACKUPS_TOTAL = Counter(
    "fleet_backups_total",
    "Total number of single-database backups.",
    ["database_name", "status"]
)

BACKUP_DURATION_SECONDS = Histogram(
    "fleet_backup_duration_seconds",
    "Duration of single-database backup commands in seconds.",
    ["database_name"]
)

BACKUP_SIZE_BYTES = Gauge(
    "fleet_backup_size_bytes",
    "Size of the last successful backup in bytes.",
    ["database_name"]
)

BACKUP_LAST_STATUS = Gauge(
    "fleet_backup_last_status",
    "Status of the last backup (1 for success, 0 for failure).",
    ["database_name"]
)

BATCH_RUNS_TOTAL = Counter(
    "fleet_batch_runs_total",
    "Total number of batch backup runs by kind and terminal status.",
    ["kind", "status"]
)

BATCH_RUNS_SKIPPED_TOTAL = Counter(
    "fleet_batch_runs_skipped_total",
    "Scheduled runs skipped because the previous run of the configuration was still active.",
    ["configuration_id"]
)

RESTORES_TOTAL = Counter(
    "fleet_restores_total",
    "Total number of single-database restores.",
    ["database_name", "status"]
)

RESTORE_OPERATIONS_IN_PROGRESS = Gauge(
    "fleet_restore_operations_in_progress",
    "Number of restore operations currently running."
)

RETENTION_RUNS_TOTAL = Counter(
    "fleet_retention_runs_total",
    "Total number of retention prune passes."
)

RETENTION_ITEMS_DELETED_TOTAL = Counter(
    "fleet_retention_items_deleted_total",
    "Total number of runs and standalone artifacts deleted by retention.",
    ["item"]
)

BACKUPS_DELETED_TOTAL = Counter(
    "fleet_backups_deleted_total",
    "Total number of runs and artifacts deleted on request.",
    ["item"]
)
