import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from .errors import FileSystemError
from .logger import get_logger
from .metrics import RETENTION_ITEMS_DELETED_TOTAL, RETENTION_RUNS_TOTAL
from .schemas import PruneReport, Status
from .storage import ArtifactStore
from .store import Store
from .utils import utcnow

logger = get_logger(__name__)


class RetentionManager:
    """Deletes batch runs and standalone backups older than a retention window."""

    def __init__(self, store: Store, artifacts: ArtifactStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.artifacts = artifacts
        self.clock = clock
        self._lock = threading.Lock()

    def prune(self, max_age_days: int, configuration_id: Optional[str] = None) -> PruneReport:
        """
        Removes every finished run started before ``now - max_age_days`` and
        every standalone artifact created before it, files first, then the
        tracking record.

        With ``configuration_id`` only that configuration's runs are
        considered and standalone artifacts are left to the global pass.

        A file that is already gone counts as deleted. Any other filesystem
        error is logged, the record is kept for the next pass and pruning
        moves on.
        """
        with self._lock:
            cutoff = self.clock() - timedelta(days=max_age_days)
            report = PruneReport(cutoff=cutoff)
            logger.info(f"Running retention policy, removing backups older than {cutoff.isoformat()}")
            RETENTION_RUNS_TOTAL.inc()

            for run in self.store.runs.list():
                if run.status == Status.IN_PROGRESS or run.started_at >= cutoff:
                    continue
                if configuration_id is not None and run.configuration_id != configuration_id:
                    continue
                try:
                    if not self.artifacts.remove_folder(run.folder):
                        logger.warning(f"Folder of run '{run.id}' was already gone: {run.folder}")
                except FileSystemError as e:
                    logger.error(f"Error deleting backup run {run.id}: {e}")
                    report.errors.append(str(e))
                    continue
                self.store.runs.delete(run.id)
                self.store.artifacts.delete_many([a.id for a in self.store.artifacts.list() if a.run_id == run.id])
                report.deleted_runs.append(run.id)
                logger.info(f"Deleted old backup run: {run.id}")

            standalone = self.store.artifacts.list() if configuration_id is None else []
            for artifact in standalone:
                if artifact.run_id is not None or artifact.created_at >= cutoff:
                    continue
                try:
                    self.artifacts.remove_file(artifact.path)
                except FileSystemError as e:
                    logger.error(f"Error deleting backup file {artifact.file_name}: {e}")
                    report.errors.append(str(e))
                    continue
                self.store.artifacts.delete(artifact.id)
                report.deleted_artifacts.append(artifact.id)
                logger.info(f"Deleted old backup: {artifact.file_name}")

            if report.deleted_runs:
                RETENTION_ITEMS_DELETED_TOTAL.labels(item="run").inc(len(report.deleted_runs))
            if report.deleted_artifacts:
                RETENTION_ITEMS_DELETED_TOTAL.labels(item="artifact").inc(len(report.deleted_artifacts))
            return report
