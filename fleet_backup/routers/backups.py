from typing import List, Optional

from fastapi import APIRouter, Depends, status
from fastapi.concurrency import run_in_threadpool

from ..dependencies import get_caller, get_services
from ..logger import get_logger
from ..schemas import BackupArtifact, BackupCreate, Caller
from ..services import Services

logger = get_logger(__name__)

router = APIRouter()


@router.get("", response_model=List[BackupArtifact])
def list_backups(
    database: Optional[str] = None,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    """List backup artifacts. Tenants only see backups of databases they own."""
    return services.orchestrator.list_artifacts(caller, database)


@router.post("", response_model=BackupArtifact, status_code=status.HTTP_201_CREATED)
async def create_backup(
    backup_req: BackupCreate,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    """Back up a single database now."""
    logger.info(f"Manual backup of '{backup_req.database}' requested by {caller.label}")
    return await run_in_threadpool(services.orchestrator.backup_database, backup_req.database, caller)


@router.get("/{artifact_id}", response_model=BackupArtifact)
def get_backup(
    artifact_id: str,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    artifact = services.store.artifacts.require(artifact_id)
    services.orchestrator.check_access(caller, [artifact.database])
    return artifact


@router.delete("/{artifact_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_backup(
    artifact_id: str,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    services.orchestrator.delete_artifact(artifact_id, caller)
