from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .backup_manager import BatchOrchestrator
from .logger import get_logger
from .metrics import RESTORE_OPERATIONS_IN_PROGRESS
from .schemas import SYSTEM_CALLER, BatchBackupRun, Caller, Credential, RestoreOperation, Status
from .store import Store
from .utils import new_id, utcnow

logger = get_logger(__name__)


class RestoreOperationTracker:
    """
    Starts restores in the background and lets callers poll their progress.

    ``start`` validates and records the operation, hands the sequential
    restore loop to a worker thread and returns the operation id at once.
    ``status`` only reads the latest snapshot of the operation.
    """

    def __init__(
        self,
        store: Store,
        orchestrator: BatchOrchestrator,
        clock: Callable[[], datetime] = utcnow,
        max_workers: int = 1,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.clock = clock
        # One worker: restore operations queue behind each other instead of
        # hitting the engine in parallel.
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="restore")
        self._futures: Dict[str, Future] = {}

    def start(self, run_id: str, databases: Optional[List[str]] = None, caller: Optional[Caller] = None) -> str:
        caller = caller or SYSTEM_CALLER
        run = self.store.runs.require(run_id)
        targets = self.orchestrator.restore_targets(run, databases)
        self.orchestrator.check_access(caller, targets)
        credential = self.orchestrator.credential_for(caller)

        operation = RestoreOperation(
            id=new_id("restore"),
            run_id=run.id,
            databases=targets,
            started_at=self.clock(),
            initiated_by=caller.label,
        )
        while not self.store.restores.add_new(operation):
            operation = operation.model_copy(update={"id": new_id("restore")})

        try:
            future = self.executor.submit(self._run, operation.id, run, targets, credential)
        except RuntimeError as e:
            logger.error(f"Restore operation {operation.id} could not be scheduled: {e}")
            self._finish(operation.id, Status.FAILED, str(e))
            raise
        logger.info(f"Restore operation {operation.id} started for run {run.id}: {', '.join(targets) or 'no databases'}")
        self._futures[operation.id] = future
        future.add_done_callback(lambda _: self._futures.pop(operation.id, None))
        return operation.id

    def status(self, operation_id: str) -> RestoreOperation:
        return self.store.restores.require(operation_id)

    def list(self) -> List[RestoreOperation]:
        return sorted(self.store.restores.list(), key=lambda op: op.started_at, reverse=True)

    def wait(self, operation_id: str, timeout: Optional[float] = None) -> RestoreOperation:
        """Blocks until the operation is terminal. Raises TimeoutError on timeout."""
        future = self._futures.get(operation_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.status(operation_id)

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)

    def _run(self, operation_id: str, run: BatchBackupRun, targets: List[str], credential: Optional[Credential]) -> None:
        RESTORE_OPERATIONS_IN_PROGRESS.inc()
        try:
            results = self.orchestrator.restore_batch(
                run,
                targets,
                credential,
                on_result=lambda result: self.store.restores.update(operation_id, lambda op: op.results.append(result)),
            )
            failed = [r.database for r in results if not r.success]
            self._finish(operation_id, Status.COMPLETED)
            if failed:
                logger.warning(f"Restore operation {operation_id} completed with failures: {', '.join(failed)}")
            else:
                logger.info(f"Restore operation {operation_id} completed successfully")
        except Exception as e:
            logger.error(f"Restore operation {operation_id} failed: {e}", exc_info=True)
            self._finish(operation_id, Status.FAILED, str(e))
        finally:
            RESTORE_OPERATIONS_IN_PROGRESS.dec()

    def _finish(self, operation_id: str, status: Status, error: Optional[str] = None) -> None:
        finished_at = self.clock()

        def apply(op: RestoreOperation) -> None:
            if op.status != Status.IN_PROGRESS:
                return
            op.status = status
            op.finished_at = finished_at
            op.error = error

        self.store.restores.update(operation_id, apply)
