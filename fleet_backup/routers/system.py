from fastapi import APIRouter, Depends
from fastapi.concurrency import run_in_threadpool

from ..dependencies import get_services, get_settings, require_admin
from ..schemas import PruneCreate, PruneReport
from ..services import Services

router = APIRouter(dependencies=[Depends(require_admin)])


@router.post("/retention/prune", response_model=PruneReport)
async def prune_backups(
    prune_req: PruneCreate,
    services: Services = Depends(get_services),
    settings: dict = Depends(get_settings),
):
    """Delete runs and backups older than ``max_age_days`` (default: global retention_days)."""
    max_age_days = prune_req.max_age_days
    if max_age_days is None:
        max_age_days = settings["global"]["retention_days"]
    return await run_in_threadpool(services.retention.prune, max_age_days)


@router.post("/reconcile")
async def reconcile_backups(services: Services = Depends(get_services)):
    """Re-scan the backup directory and pick up runs and files added out-of-band."""
    runs, artifacts = await run_in_threadpool(services.artifacts.reconcile)
    return {"runs": runs, "artifacts": artifacts}
