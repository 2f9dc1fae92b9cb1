from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from ..dependencies import get_caller, get_services
from ..logger import get_logger
from ..schemas import Caller
from ..services import Services

logger = get_logger(__name__)

router = APIRouter()


class DatabaseCreate(BaseModel):
    name: str
    quota_mb: int = Field(default=100, ge=1)


class QuotaUpdate(BaseModel):
    quota_mb: int = Field(ge=1)


def _tenant_id(caller: Caller) -> int:
    if caller.tenant_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Caller is not a tenant")
    return caller.tenant_id


@router.get("", response_model=List[str])
async def list_databases(caller: Caller = Depends(get_caller), services: Services = Depends(get_services)):
    """Admins see every online database on the server, tenants the databases they own."""
    if caller.is_admin:
        return await run_in_threadpool(services.runner.list_databases)
    return services.provisioner.list_owned(_tenant_id(caller))


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_database(
    db: DatabaseCreate,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    tenant_id = _tenant_id(caller)
    logger.info(f"Tenant {tenant_id} is creating database '{db.name}' with quota {db.quota_mb} MB")
    name = await run_in_threadpool(services.provisioner.create_database, tenant_id, db.name, db.quota_mb)
    return {"name": name, "quota_mb": db.quota_mb}


@router.delete("/{database_name}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_database(
    database_name: str,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    tenant_id = _tenant_id(caller)
    logger.info(f"Tenant {tenant_id} is deleting database '{database_name}'")
    await run_in_threadpool(services.provisioner.delete_database, tenant_id, database_name)


@router.patch("/{database_name}/quota", status_code=status.HTTP_204_NO_CONTENT)
def update_quota(
    database_name: str,
    update: QuotaUpdate,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
):
    services.provisioner.update_quota(_tenant_id(caller), database_name, update.quota_mb)
