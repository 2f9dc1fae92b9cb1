import os
import re
import time
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple

from .errors import FileSystemError, InvalidIdentifier, NotFound, PermissionDenied, RunInProgress, SubprocessFailure
from .logger import get_logger
from .metrics import (
    BACKUPS_TOTAL, BACKUP_DURATION_SECONDS, BACKUP_SIZE_BYTES, BACKUP_LAST_STATUS,
    BACKUPS_DELETED_TOTAL, BATCH_RUNS_TOTAL, RESTORES_TOTAL,
)
from .provisioner import TenantDatabaseProvisioner
from .retention import RetentionManager
from .runner import Outcome, SubprocessBackupRunner
from .schemas import (
    SYSTEM_CALLER, BackupArtifact, BatchBackupRun, Caller, Credential, DatabaseResult, Kind, Status,
)
from .storage import ArtifactStore, run_artifact_id
from .store import Store
from .utils import file_timestamp, is_valid_identifier, new_id, utcnow

logger = get_logger(__name__)

DEFAULT_RESTORE_DELAY_SECONDS = 2.0


class BatchOrchestrator:
    """
    Runs backups and restores over a list of databases, one database at a
    time, recording a result for every database.

    A failing database never aborts the loop. Only a failure of the
    orchestration itself (folder, manifest, credentials) marks a run failed.
    """

    def __init__(
        self,
        store: Store,
        artifacts: ArtifactStore,
        runner: SubprocessBackupRunner,
        provisioner: Optional[TenantDatabaseProvisioner] = None,
        retention: Optional[RetentionManager] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
        restore_delay: float = DEFAULT_RESTORE_DELAY_SECONDS,
    ):
        self.store = store
        self.artifacts = artifacts
        self.runner = runner
        self.provisioner = provisioner
        self.retention = retention
        self.clock = clock
        self.sleep = sleep
        self.restore_delay = restore_delay

    # Access

    def check_access(self, caller: Optional[Caller], databases: Iterable[str]) -> None:
        """Raises PermissionDenied unless the caller is admin or owns every database."""
        if caller is None or caller.is_admin:
            return
        if caller.tenant_id is None or self.provisioner is None:
            raise PermissionDenied("Access denied: caller is not associated with a tenant")
        for database in databases:
            if not self.provisioner.owns_database(caller.tenant_id, database):
                raise PermissionDenied(f"Access denied to database '{database}'")

    def credential_for(self, caller: Optional[Caller]) -> Optional[Credential]:
        """Tenant callers act with their own login; admins use the service login."""
        if caller is None or caller.is_admin:
            return None
        return self.provisioner.credentials_for(caller.tenant_id)

    def validate_names(self, databases: Iterable[str]) -> None:
        for database in databases:
            if not is_valid_identifier(database):
                raise InvalidIdentifier(f"Invalid database name: {database!r}")

    def resolve_targets(self, databases: Optional[List[str]]) -> List[str]:
        """An empty target list means every online user database on the server."""
        if databases:
            return list(databases)
        return self.runner.list_databases()

    # Batch backup

    def allocate_run_id(self, kind: Kind, configuration_id: Optional[str], moment: datetime) -> str:
        parts = [kind.value]
        if configuration_id:
            parts.append(re.sub(r"[^\w-]", "-", str(configuration_id)))
        parts.append(file_timestamp(moment))
        return new_id("_".join(parts))

    def start_batch(
        self,
        databases: List[str],
        kind: Kind,
        caller: Optional[Caller] = None,
        configuration_id: Optional[str] = None,
    ) -> BatchBackupRun:
        """
        Synchronous half of a batch backup: validates the targets, creates the
        run folder and records the run as in_progress, manifest included.
        Raises when the run cannot be started; nothing is recorded then.
        """
        caller = caller or SYSTEM_CALLER
        databases = list(databases)
        self.validate_names(databases)
        self.check_access(caller, databases)

        started_at = self.clock()
        while True:
            run_id = self.allocate_run_id(kind, configuration_id, started_at)
            run = BatchBackupRun(
                id=run_id,
                kind=kind,
                configuration_id=configuration_id,
                started_at=started_at,
                databases=databases,
                folder=os.path.join(self.artifacts.batch_root, run_id),
                initiated_by=caller.label,
            )
            if self.store.runs.add_new(run):
                break

        try:
            self.artifacts.ensure_dirs()
            self.artifacts.create_run_folder(run.id)
            self.artifacts.write_manifest(run)
        except FileSystemError:
            self.store.runs.delete(run.id)
            self.artifacts.remove_folder(run.folder)
            raise

        logger.info(f"Started {kind.value} batch run {run.id} for {len(databases)} databases")
        return run

    def execute_batch(
        self,
        run_id: str,
        retention_days: Optional[int] = None,
        caller: Optional[Caller] = None,
    ) -> BatchBackupRun:
        """Backs up every database of an in_progress run, then finalizes it."""
        run = self.store.runs.require(run_id)
        try:
            credential = self.credential_for(caller)
            for database in run.databases:
                result, artifact = self._backup_into_run(run, database, credential)
                run = self.store.runs.update(run_id, lambda r: _add_result(r, result, artifact))
                if artifact:
                    self.store.artifacts.put(artifact)

            finished_at = self.clock()
            # The manifest must say completed before the in-memory record does.
            self.artifacts.write_manifest(
                run.model_copy(update={"status": Status.COMPLETED, "finished_at": finished_at})
            )
            run = self.store.runs.update(run_id, lambda r: _finish(r, Status.COMPLETED, finished_at))
            logger.info(
                f"Batch run {run_id} completed: {len(run.artifacts)}/{len(run.databases)} databases backed up, "
                f"{run.total_size}"
            )
        except Exception as e:
            logger.error(f"Batch run {run_id} failed: {e}", exc_info=True)
            run = self._fail_run(run_id, str(e))

        BATCH_RUNS_TOTAL.labels(kind=run.kind.value, status=run.status.value).inc()

        if retention_days is not None and self.retention is not None:
            try:
                self.retention.prune(retention_days, configuration_id=run.configuration_id)
            except Exception as e:
                logger.error(f"Retention after run {run_id} failed: {e}", exc_info=True)
        return run

    def run_batch(
        self,
        databases: List[str],
        kind: Kind,
        initiator: Optional[Caller] = None,
        configuration_id: Optional[str] = None,
        retention_days: Optional[int] = None,
    ) -> BatchBackupRun:
        run = self.start_batch(databases, kind, initiator, configuration_id)
        return self.execute_batch(run.id, retention_days, initiator)

    def _backup_into_run(
        self, run: BatchBackupRun, database: str, credential: Optional[Credential]
    ) -> Tuple[DatabaseResult, Optional[BackupArtifact]]:
        path = self.artifacts.run_file_path(run.folder, database)
        try:
            outcome = self.runner.backup(database, path, credential)
        except Exception as e:
            logger.error(f"Backup runner crashed for database '{database}': {e}", exc_info=True)
            outcome = Outcome.failure(str(e))

        if outcome.success:
            try:
                size = self.artifacts.file_size(path)
            except FileSystemError as e:
                outcome = Outcome.failure(str(e), duration=outcome.duration)

        self._record_backup_metrics(database, outcome)
        if not outcome.success:
            logger.error(f"Backup failed for database {database} in run {run.id}: {outcome.reason}")
            return DatabaseResult(database=database, success=False, error=outcome.reason or "Backup failed"), None

        artifact = BackupArtifact(
            id=run_artifact_id(run.id, database),
            run_id=run.id,
            database=database,
            file_name=os.path.basename(path),
            path=path,
            size_bytes=size,
            created_at=self.clock(),
            origin=run.kind,
            owner=self.artifacts.resolve_owner(database),
        )
        BACKUP_SIZE_BYTES.labels(database_name=database).set(size)
        logger.info(f"Backup created for {database}: {path}")
        return DatabaseResult(database=database, success=True, size_bytes=size), artifact

    def _fail_run(self, run_id: str, error: str) -> BatchBackupRun:
        run = self.store.runs.update(run_id, lambda r: _finish(r, Status.FAILED, self.clock(), error))
        try:
            self.artifacts.write_manifest(run)
        except FileSystemError as e:
            logger.error(f"Could not record failure of run {run_id} in its manifest: {e}")
        return run

    def _record_backup_metrics(self, database: str, outcome: Outcome) -> None:
        status = "completed" if outcome.success else "failed"
        BACKUPS_TOTAL.labels(database_name=database, status=status).inc()
        BACKUP_DURATION_SECONDS.labels(database_name=database).observe(outcome.duration)
        BACKUP_LAST_STATUS.labels(database_name=database).set(1 if outcome.success else 0)

    # Single database backup

    def backup_database(self, database: str, caller: Optional[Caller] = None) -> BackupArtifact:
        """Standalone backup of one database into the backup root."""
        caller = caller or SYSTEM_CALLER
        self.validate_names([database])
        self.check_access(caller, [database])
        credential = self.credential_for(caller)

        self.artifacts.ensure_dirs()
        created_at = self.clock()
        path = self.artifacts.standalone_path(database, created_at)

        outcome = self.runner.backup(database, path, credential)
        if outcome.success:
            try:
                size = self.artifacts.file_size(path)
            except FileSystemError as e:
                outcome = Outcome.failure(str(e), duration=outcome.duration)
        self._record_backup_metrics(database, outcome)
        if not outcome.success:
            raise SubprocessFailure(f"Backup of '{database}' failed: {outcome.reason}")

        file_name = os.path.basename(path)
        artifact = BackupArtifact(
            id=os.path.splitext(file_name)[0],
            database=database,
            file_name=file_name,
            path=path,
            size_bytes=size,
            created_at=created_at,
            origin=Kind.MANUAL,
            owner=self.artifacts.resolve_owner(database),
        )
        self.store.artifacts.put(artifact)
        BACKUP_SIZE_BYTES.labels(database_name=database).set(size)
        logger.info(f"Backup created for {database}: {file_name} by {caller.label}")
        return artifact

    # Restore

    def restore_targets(self, run: BatchBackupRun, databases: Optional[List[str]] = None) -> List[str]:
        """Databases of ``run`` that can be restored, optionally narrowed to ``databases``."""
        if run.status == Status.IN_PROGRESS:
            raise RunInProgress(f"Run '{run.id}' is still in progress")
        available = [a.database for a in run.artifacts]
        if not databases:
            return available
        missing = [d for d in databases if d not in available]
        if missing:
            raise NotFound(f"Run '{run.id}' has no backup for: {', '.join(missing)}")
        return [d for d in available if d in databases]

    def restore_batch(
        self,
        run: BatchBackupRun,
        databases: Optional[List[str]] = None,
        credential: Optional[Credential] = None,
        on_result: Optional[Callable[[DatabaseResult], None]] = None,
    ) -> List[DatabaseResult]:
        """
        Restores the run's databases one after another, sleeping
        ``restore_delay`` seconds between two restores. The engine does not
        cope with back-to-back heavy RESTORE commands.
        """
        targets = self.restore_targets(run, databases)
        results = []
        for index, database in enumerate(targets):
            if index > 0 and self.restore_delay > 0:
                self.sleep(self.restore_delay)
            try:
                path = self.artifacts.run_file_path(run.folder, database)
                if not os.path.exists(path):
                    raise FileSystemError(f"Backup file {path} is missing")
                outcome = self.runner.restore(database, path, credential)
                result = DatabaseResult(
                    database=database,
                    success=outcome.success,
                    error=None if outcome.success else (outcome.reason or "Restore failed"),
                )
            except Exception as e:
                logger.error(f"Restore of database {database} from run {run.id} failed: {e}", exc_info=True)
                result = DatabaseResult(database=database, success=False, error=str(e))

            if result.success:
                logger.info(f"Database {database} restored successfully from run {run.id}")
            else:
                logger.error(f"Restore error for {database}: {result.error}")
            RESTORES_TOTAL.labels(database_name=database, status="completed" if result.success else "failed").inc()
            results.append(result)
            if on_result:
                on_result(result)
        return results

    # Listing and deletion

    def list_runs(self) -> List[BatchBackupRun]:
        return sorted(self.store.runs.list(), key=lambda r: r.started_at, reverse=True)

    def list_artifacts(self, caller: Optional[Caller] = None, database: Optional[str] = None) -> List[BackupArtifact]:
        artifacts = self.store.artifacts.list()
        if caller is not None and not caller.is_admin:
            owned = set(self.provisioner.list_owned(caller.tenant_id)) if self.provisioner and caller.tenant_id is not None else set()
            artifacts = [a for a in artifacts if a.database in owned]
        if database:
            artifacts = [a for a in artifacts if a.database == database]
        return sorted(artifacts, key=lambda a: a.created_at, reverse=True)

    def delete_run(self, run_id: str) -> None:
        run = self.store.runs.require(run_id)
        if run.status == Status.IN_PROGRESS:
            raise RunInProgress(f"Run '{run_id}' is still in progress")
        if not self.artifacts.remove_folder(run.folder):
            logger.warning(f"Folder of run '{run_id}' was already gone: {run.folder}")
        self.store.runs.delete(run_id)
        self.store.artifacts.delete_many([a.id for a in self.store.artifacts.list() if a.run_id == run_id])
        BACKUPS_DELETED_TOTAL.labels(item="run").inc()
        logger.info(f"Deleted backup run {run_id}")

    def delete_artifact(self, artifact_id: str, caller: Optional[Caller] = None) -> None:
        artifact = self.store.artifacts.require(artifact_id)
        self.check_access(caller, [artifact.database])
        if not self.artifacts.remove_file(artifact.path):
            logger.warning(f"Backup file was already gone: {artifact.path}")
        if artifact.run_id and artifact.run_id in self.store.runs:
            self.store.runs.update(artifact.run_id, lambda r: _drop_artifact(r, artifact_id))
        self.store.artifacts.delete(artifact_id)
        BACKUPS_DELETED_TOTAL.labels(item="artifact").inc()
        logger.info(f"Deleted backup artifact {artifact_id}")


def _add_result(run: BatchBackupRun, result: DatabaseResult, artifact: Optional[BackupArtifact]) -> None:
    run.results.append(result)
    if artifact:
        run.artifacts.append(artifact)
        run.total_size_bytes += artifact.size_bytes


def _finish(run, status: Status, finished_at: datetime, error: Optional[str] = None) -> None:
    # Terminal states are final.
    if run.status != Status.IN_PROGRESS:
        return
    run.status = status
    run.finished_at = finished_at
    if error:
        run.error = error


def _drop_artifact(run: BatchBackupRun, artifact_id: str) -> None:
    run.artifacts = [a for a in run.artifacts if a.id != artifact_id]
