from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends, status
from fastapi.concurrency import run_in_threadpool

from ..dependencies import get_caller, get_services, require_admin
from ..logger import get_logger
from ..schemas import BatchBackupRun, Caller, Kind, RestoreAccepted, RestoreCreate, RunAccepted
from ..services import Services

logger = get_logger(__name__)

router = APIRouter()


@router.post("", response_model=RunAccepted, status_code=status.HTTP_202_ACCEPTED)
async def start_batch_backup(
    background_tasks: BackgroundTasks,
    caller: Caller = Depends(require_admin),
    services: Services = Depends(get_services),
):
    """Back up every database on the server in a new batch run."""
    orchestrator = services.orchestrator
    databases = await run_in_threadpool(orchestrator.resolve_targets, [])
    run = await run_in_threadpool(orchestrator.start_batch, databases, Kind.MANUAL, caller)
    background_tasks.add_task(orchestrator.execute_batch, run.id, None, caller)
    logger.info(f"Batch backup {run.id} of {len(databases)} databases started by {caller.label}")
    return RunAccepted(run_id=run.id, status=run.status)


@router.get("", response_model=List[BatchBackupRun], dependencies=[Depends(require_admin)])
def list_runs(services: Services = Depends(get_services)):
    return services.orchestrator.list_runs()


@router.get("/{run_id}", response_model=BatchBackupRun, dependencies=[Depends(require_admin)])
def get_run(run_id: str, services: Services = Depends(get_services)):
    return services.store.runs.require(run_id)


@router.delete("/{run_id}", status_code=status.HTTP_204_NO_CONTENT, dependencies=[Depends(require_admin)])
def delete_run(run_id: str, services: Services = Depends(get_services)):
    services.orchestrator.delete_run(run_id)


@router.post("/{run_id}/restore", response_model=RestoreAccepted, status_code=status.HTTP_202_ACCEPTED)
def restore_run(
    run_id: str,
    restore_req: RestoreCreate,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    """
    Restore every database of a run, or only ``database`` when given.
    Poll GET /restores/{operation_id} for progress.
    """
    databases = [restore_req.database] if restore_req.database else None
    operation_id = services.restores.start(run_id, databases, caller)
    return RestoreAccepted(operation_id=operation_id)
