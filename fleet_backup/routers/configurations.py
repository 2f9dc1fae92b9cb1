from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status

from ..dependencies import get_services, require_admin
from ..logger import get_logger
from ..schemas import (
    BackupConfiguration, BackupConfigurationCreate, BackupConfigurationUpdate, Caller, RunAccepted,
)
from ..services import Services

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin)])


@router.get("", response_model=List[BackupConfiguration])
def list_configurations(services: Services = Depends(get_services)):
    return services.planner.list_configurations()


@router.post("", response_model=BackupConfiguration, status_code=status.HTTP_201_CREATED)
def create_configuration(data: BackupConfigurationCreate, services: Services = Depends(get_services)):
    logger.info(f"Creating backup configuration '{data.name}' with schedule '{data.schedule}'")
    try:
        return services.planner.create_configuration(data)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/{config_id}", response_model=BackupConfiguration)
def get_configuration(config_id: str, services: Services = Depends(get_services)):
    return services.planner.get_configuration(config_id)


@router.patch("/{config_id}", response_model=BackupConfiguration)
def update_configuration(
    config_id: str,
    data: BackupConfigurationUpdate,
    services: Services = Depends(get_services),
):
    logger.info(f"Updating backup configuration '{config_id}'")
    try:
        return services.planner.update_configuration(config_id, data)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.delete("/{config_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_configuration(config_id: str, services: Services = Depends(get_services)):
    services.planner.delete_configuration(config_id)


@router.post("/{config_id}/run", response_model=RunAccepted, status_code=status.HTTP_202_ACCEPTED)
def run_configuration(
    config_id: str,
    background_tasks: BackgroundTasks,
    caller: Caller = Depends(require_admin),
    services: Services = Depends(get_services),
):
    """Run a backup configuration now. Poll GET /runs/{run_id} for the result."""
    run = services.planner.dispatch_now(config_id, background_tasks.add_task, caller)
    return RunAccepted(run_id=run.id, status=run.status)
