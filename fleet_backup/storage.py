# fleet_backup/storage.py
"""
On-disk layout of backup artifacts and the manifests that describe them.

    <root>/<database>_<timestamp>.bak            standalone backups
    <root>/batch_backups/<run_id>/<database>.bak
    <root>/batch_backups/<run_id>/backup_info.json

The manifest is the durable record of a batch run. On startup
:meth:`ArtifactStore.reconcile` rebuilds the in-memory registries from it.
"""
import json
import os
import shutil
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from pydantic import ValidationError

from .errors import FileSystemError
from .logger import get_logger
from .schemas import BackupArtifact, BatchBackupRun, DatabaseResult, Kind, Owner, Status
from .store import Store
from .utils import FILE_TIMESTAMP_FORMAT, file_timestamp, format_size

logger = get_logger(__name__)

MANIFEST_FILE = "backup_info.json"
BATCH_DIR = "batch_backups"
BACKUP_EXTENSION = ".bak"


def run_artifact_id(run_id: str, database: str) -> str:
    # Dots never appear in run ids or valid database names.
    return f"{run_id}.{database}"


class ArtifactStore:
    def __init__(
        self,
        root: str,
        store: Store,
        owner_resolver: Optional[Callable[[str], Optional[Owner]]] = None,
    ):
        self.root = os.path.abspath(root)
        self.batch_root = os.path.join(self.root, BATCH_DIR)
        self.store = store
        self.owner_resolver = owner_resolver

    def ensure_dirs(self) -> None:
        try:
            os.makedirs(self.batch_root, exist_ok=True)
        except OSError as e:
            raise FileSystemError(f"Cannot create backup directory {self.batch_root}: {e}") from e

    def create_run_folder(self, run_id: str) -> str:
        folder = os.path.join(self.batch_root, run_id)
        try:
            os.makedirs(folder)
        except OSError as e:
            raise FileSystemError(f"Cannot create run folder {folder}: {e}") from e
        return folder

    def run_file_path(self, folder: str, database: str) -> str:
        return os.path.join(folder, f"{database}{BACKUP_EXTENSION}")

    def standalone_path(self, database: str, moment: datetime) -> str:
        return os.path.join(self.root, f"{database}_{file_timestamp(moment)}{BACKUP_EXTENSION}")

    def file_size(self, path: str) -> int:
        try:
            return os.path.getsize(path)
        except OSError as e:
            raise FileSystemError(f"Backup file {path} is missing or unreadable: {e}") from e

    def resolve_owner(self, database: str) -> Optional[Owner]:
        """Owner of ``database``, or None when unknown or the lookup fails."""
        if self.owner_resolver is None:
            return None
        try:
            return self.owner_resolver(database)
        except Exception as e:
            logger.warning(f"Could not get owner for database {database}: {e}")
            return None

    # Manifests

    def write_manifest(self, run: BatchBackupRun) -> None:
        manifest = {
            "id": run.id,
            "kind": run.kind.value,
            "configuration_id": run.configuration_id,
            "timestamp": run.started_at.isoformat(),
            "finished_at": run.finished_at.isoformat() if run.finished_at else None,
            "databases": run.databases,
            "total_size": format_size(run.total_size_bytes),
            "total_size_bytes": run.total_size_bytes,
            "status": run.status.value,
            "initiated_by": run.initiated_by,
            "error": run.error,
            "results": [
                {
                    **result.model_dump(mode="json"),
                    "file_name": f"{result.database}{BACKUP_EXTENSION}" if result.success else None,
                }
                for result in run.results
            ],
        }
        path = os.path.join(run.folder, MANIFEST_FILE)
        tmp_path = f"{path}.tmp"
        try:
            with open(tmp_path, "w") as f:
                json.dump(manifest, f, indent=2)
            os.replace(tmp_path, path)
        except OSError as e:
            raise FileSystemError(f"Cannot write manifest {path}: {e}") from e

    def load_manifest(self, folder: str) -> BatchBackupRun:
        with open(os.path.join(folder, MANIFEST_FILE), "r") as f:
            data = json.load(f)

        run_id = data["id"]
        kind = Kind(data.get("kind", Kind.SCHEDULED.value))
        results = [DatabaseResult(**{k: v for k, v in r.items() if k != "file_name"}) for r in data.get("results", [])]

        artifacts = []
        for result in results:
            if not result.success:
                continue
            path = self.run_file_path(folder, result.database)
            if not os.path.exists(path):
                logger.warning(f"Backup file {path} listed in manifest of run {run_id} is missing.")
                continue
            artifacts.append(BackupArtifact(
                id=run_artifact_id(run_id, result.database),
                run_id=run_id,
                database=result.database,
                file_name=os.path.basename(path),
                path=path,
                size_bytes=os.path.getsize(path),
                created_at=_parse_datetime(data["timestamp"]),
                origin=kind,
                owner=self.resolve_owner(result.database),
            ))

        return BatchBackupRun(
            id=run_id,
            kind=kind,
            configuration_id=data.get("configuration_id"),
            started_at=_parse_datetime(data["timestamp"]),
            finished_at=_parse_datetime(data["finished_at"]) if data.get("finished_at") else None,
            databases=list(data.get("databases", [])),
            status=Status(data.get("status", Status.COMPLETED.value)),
            total_size_bytes=int(data.get("total_size_bytes", 0)),
            folder=folder,
            artifacts=artifacts,
            results=results,
            initiated_by=data.get("initiated_by", "system"),
            error=data.get("error"),
        )

    # Removal

    def remove_folder(self, folder: str) -> bool:
        """Deletes a run folder. Returns False when it was already gone."""
        if not os.path.exists(folder):
            return False
        try:
            shutil.rmtree(folder)
        except OSError as e:
            raise FileSystemError(f"Cannot delete folder {folder}: {e}") from e
        return True

    def remove_file(self, path: str) -> bool:
        """Deletes a backup file. Returns False when it was already gone."""
        try:
            os.remove(path)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise FileSystemError(f"Cannot delete file {path}: {e}") from e
        return True

    # Startup

    def reconcile(self) -> Tuple[int, int]:
        """
        Rebuilds runs and artifacts from the backup directory. Runs already
        tracked in memory are left alone.

        Manifests that cannot be parsed are skipped with a warning. Runs whose
        manifest still says in_progress were interrupted by a restart and are
        loaded as failed.
        """
        self.ensure_dirs()
        runs_loaded = 0
        artifacts_loaded = 0

        for entry in sorted(os.listdir(self.batch_root)):
            folder = os.path.join(self.batch_root, entry)
            if not os.path.isdir(folder) or entry in self.store.runs:
                continue
            if not os.path.exists(os.path.join(folder, MANIFEST_FILE)):
                logger.warning(f"Skipping backup folder without manifest: {folder}")
                continue
            try:
                run = self.load_manifest(folder)
            except (OSError, ValueError, KeyError, TypeError, ValidationError) as e:
                logger.warning(f"Skipping unreadable manifest in {folder}: {e}")
                continue

            if run.status == Status.IN_PROGRESS:
                logger.warning(f"Run {run.id} was interrupted before completion, marking it failed.")
                run.status = Status.FAILED
                run.error = "interrupted"
                try:
                    self.write_manifest(run)
                except FileSystemError as e:
                    logger.warning(str(e))

            self.store.runs.put(run)
            for artifact in run.artifacts:
                self.store.artifacts.put(artifact)
            runs_loaded += 1
            artifacts_loaded += len(run.artifacts)

        for artifact in self._scan_standalone():
            if artifact.id not in self.store.artifacts:
                self.store.artifacts.put(artifact)
                artifacts_loaded += 1

        logger.info(f"Loaded {runs_loaded} batch runs and {artifacts_loaded} backup artifacts from {self.root}")
        return runs_loaded, artifacts_loaded

    def _scan_standalone(self) -> List[BackupArtifact]:
        artifacts = []
        for file_name in sorted(os.listdir(self.root)):
            path = os.path.join(self.root, file_name)
            if not file_name.endswith(BACKUP_EXTENSION) or not os.path.isfile(path):
                continue
            stem = file_name[: -len(BACKUP_EXTENSION)]
            database, _, stamp = stem.rpartition("_")
            stats = os.stat(path)
            try:
                created_at = datetime.strptime(stamp, FILE_TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
            except ValueError:
                database = database or stem
                created_at = datetime.fromtimestamp(stats.st_mtime, tz=timezone.utc)
            if not database:
                database = stem
            artifacts.append(BackupArtifact(
                id=stem,
                database=database,
                file_name=file_name,
                path=path,
                size_bytes=stats.st_size,
                created_at=created_at,
                origin=Kind.MANUAL,
                owner=self.resolve_owner(database),
            ))
        return artifacts


def _parse_datetime(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
