from typing import List

from fastapi import APIRouter, Depends

from ..dependencies import get_caller, get_services, require_admin
from ..schemas import Caller, RestoreOperation
from ..services import Services

router = APIRouter()


@router.get("", response_model=List[RestoreOperation], dependencies=[Depends(require_admin)])
def get_all_restores(services: Services = Depends(get_services)):
    """
    Get a list of all restore operations.
    """
    return services.restores.list()


@router.get("/{operation_id}", response_model=RestoreOperation)
def get_restore_status(
    operation_id: str,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    """
    Poll the progress of a restore operation.
    """
    operation = services.restores.status(operation_id)
    services.orchestrator.check_access(caller, operation.databases)
    return operation
