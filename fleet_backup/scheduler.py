import os
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from .backup_manager import BatchOrchestrator
from .errors import RunInProgress
from .logger import get_logger
from .metrics import BATCH_RUNS_SKIPPED_TOTAL
from .retention import RetentionManager
from .schemas import (
    SYSTEM_CALLER, BackupConfiguration, BackupConfigurationCreate, BackupConfigurationUpdate,
    BatchBackupRun, Caller, Kind,
)
from .store import Store
from .utils import new_id, utcnow

logger = get_logger(__name__)

RETENTION_JOB_ID = "retention_policy_job"


def job_id_for(config_id: str) -> str:
    return f"backup_config_{config_id}"


class ScheduledBackupPlanner:
    """
    Owns backup configurations and keeps exactly one cron trigger per
    enabled configuration.

    Runs of the same configuration never overlap: a trigger that fires while
    the previous run is still going is skipped, and ``run_now`` raises
    RunInProgress.
    """

    def __init__(
        self,
        store: Store,
        orchestrator: BatchOrchestrator,
        retention: Optional[RetentionManager] = None,
        scheduler: Optional[BackgroundScheduler] = None,
        timezone: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
        max_workers: int = 4,
        default_retention_days: Optional[int] = None,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.retention = retention
        self.timezone = timezone or os.getenv("TZ", "UTC")
        self.clock = clock
        self.default_retention_days = default_retention_days
        self.scheduler = scheduler or BackgroundScheduler(
            executors={"default": ThreadPoolExecutor(max_workers)},
            job_defaults={"coalesce": True, "max_instances": 1},
            timezone=self.timezone,
        )
        self._run_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # Lifecycle

    def start(self, configurations: Optional[List[dict]] = None) -> None:
        for conf in configurations or []:
            try:
                self.schedule(BackupConfiguration(**conf))
            except ValueError as e:
                logger.error(f"Skipping backup configuration '{conf.get('id')}': {e}")

        if self.retention is not None and self.default_retention_days is not None:
            self.scheduler.add_job(
                self._global_retention,
                "cron",
                hour=1,
                id=RETENTION_JOB_ID,
                name="Enforce Retention Policy",
                replace_existing=True,
            )

        if not self.scheduler.running:
            self.scheduler.start()
        logger.info(f"Backup scheduler started with {len(self.store.configurations)} configurations.")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    # Triggers

    def build_trigger(self, schedule: str) -> CronTrigger:
        if not isinstance(schedule, str) or not schedule.strip():
            raise ValueError(f"Invalid cron schedule {schedule!r}")
        try:
            return CronTrigger.from_crontab(schedule, timezone=self.timezone)
        except ValueError as e:
            raise ValueError(f"Invalid cron schedule '{schedule}': {e}") from e

    def schedule(self, config: BackupConfiguration) -> None:
        """Registers ``config`` and (re)binds its trigger, replacing any previous one."""
        trigger = self.build_trigger(config.schedule)
        self.store.configurations.put(config)
        self.unschedule(config.id)

        if not config.enabled:
            logger.info(f"Backup configuration '{config.name}' is disabled, not scheduling it.")
            return

        self.scheduler.add_job(
            self._fire,
            trigger=trigger,
            args=[config.id],
            id=job_id_for(config.id),
            name=f"Backup for {config.name}",
            replace_existing=True,
        )
        logger.info(f"Scheduled backup job: {config.name} - {config.schedule}")

    def unschedule(self, config_id: str) -> bool:
        job_id = job_id_for(config_id)
        if self.scheduler.get_job(job_id):
            self.scheduler.remove_job(job_id)
            logger.info(f"Removed backup schedule for configuration '{config_id}'.")
            return True
        return False

    def is_scheduled(self, config_id: str) -> bool:
        return self.scheduler.get_job(job_id_for(config_id)) is not None

    def is_running(self, config_id: str) -> bool:
        return self._lock_for(config_id).locked()

    # Configuration CRUD

    def list_configurations(self) -> List[BackupConfiguration]:
        return sorted(self.store.configurations.list(), key=lambda c: c.created_at)

    def get_configuration(self, config_id: str) -> BackupConfiguration:
        return self.store.configurations.require(config_id)

    def create_configuration(self, data: BackupConfigurationCreate) -> BackupConfiguration:
        self.orchestrator.validate_names(data.databases)
        config = BackupConfiguration(id=new_id("cfg"), created_at=self.clock(), **data.model_dump())
        self.schedule(config)
        return config

    def update_configuration(self, config_id: str, data: BackupConfigurationUpdate) -> BackupConfiguration:
        current = self.store.configurations.require(config_id)
        # An explicit null leaves the field unchanged.
        changes = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
        if changes.get("databases"):
            self.orchestrator.validate_names(changes["databases"])
        updated = BackupConfiguration.model_validate({**current.model_dump(), **changes})
        self.schedule(updated)
        return updated

    def delete_configuration(self, config_id: str) -> None:
        self.store.configurations.require(config_id)
        self.unschedule(config_id)
        self.store.configurations.delete(config_id)
        logger.info(f"Deleted backup configuration '{config_id}'.")

    # Runs

    def run_now(self, config_id: str, caller: Optional[Caller] = None) -> BatchBackupRun:
        """Runs the configuration immediately, outside its cron trigger, and waits for it."""
        run = self._begin(config_id, Kind.MANUAL, caller or SYSTEM_CALLER)
        return self._complete(config_id, run, caller or SYSTEM_CALLER)

    def dispatch_now(
        self,
        config_id: str,
        submit: Callable[..., None],
        caller: Optional[Caller] = None,
    ) -> BatchBackupRun:
        """
        Starts a run of the configuration and hands the remaining work to
        ``submit`` (e.g. ``BackgroundTasks.add_task``). Returns the
        in_progress run.
        """
        caller = caller or SYSTEM_CALLER
        run = self._begin(config_id, Kind.MANUAL, caller)
        submit(self._complete, config_id, run, caller)
        return run

    def _fire(self, config_id: str) -> None:
        try:
            run = self._begin(config_id, Kind.SCHEDULED, SYSTEM_CALLER)
        except RunInProgress:
            logger.warning(f"Skipping scheduled backup for configuration '{config_id}': previous run still in progress.")
            BATCH_RUNS_SKIPPED_TOTAL.labels(configuration_id=config_id).inc()
            return
        except Exception as e:
            logger.error(f"Scheduled backup failed to start for configuration '{config_id}': {e}", exc_info=True)
            return
        self._complete(config_id, run, SYSTEM_CALLER)

    def _begin(self, config_id: str, kind: Kind, caller: Caller) -> BatchBackupRun:
        config = self.store.configurations.require(config_id)
        lock = self._lock_for(config_id)
        if not lock.acquire(blocking=False):
            raise RunInProgress(f"A backup run for configuration '{config_id}' is already in progress")
        try:
            logger.info(f"Starting {kind.value} backup run for config: {config.name}")
            databases = self.orchestrator.resolve_targets(config.databases)
            return self.orchestrator.start_batch(databases, kind, caller, configuration_id=config.id)
        except Exception:
            lock.release()
            raise

    def _complete(self, config_id: str, run: BatchBackupRun, caller: Caller) -> BatchBackupRun:
        try:
            config = self.store.configurations.get(config_id)
            retention_days = config.retention_days if config else None
            run = self.orchestrator.execute_batch(run.id, retention_days, caller)
            if config_id in self.store.configurations:
                self.store.configurations.update(config_id, lambda c: setattr(c, "last_backup_at", run.started_at))
            logger.info(f"Backup run {run.id} for configuration '{config_id}' finished with status {run.status.value}")
            return run
        finally:
            self._lock_for(config_id).release()

    def _lock_for(self, config_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._run_locks.get(config_id)
            if lock is None:
                lock = self._run_locks[config_id] = threading.Lock()
            return lock

    def _global_retention(self) -> None:
        try:
            self.retention.prune(self.default_retention_days)
        except Exception as e:
            logger.error(f"Nightly retention failed: {e}", exc_info=True)
