import time
from datetime import datetime
from typing import Callable, Optional

from .backup_manager import BatchOrchestrator
from .database import create_db_and_tables, make_engine
from .logger import get_logger
from .provisioner import TenantDatabaseProvisioner
from .restore_manager import RestoreOperationTracker
from .retention import RetentionManager
from .runner import SubprocessBackupRunner
from .scheduler import ScheduledBackupPlanner
from .schemas import Credential
from .storage import ArtifactStore
from .store import Store
from .utils import utcnow

logger = get_logger(__name__)


class Services:
    """Every orchestration component, wired once per application."""

    def __init__(
        self,
        settings: dict,
        runner: Optional[SubprocessBackupRunner] = None,
        db_engine=None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
        scheduler=None,
    ):
        global_conf = settings["global"]
        engine_conf = settings["engine"]

        self.settings = settings
        self.store = Store()
        self.db_engine = db_engine or make_engine(global_conf["database_url"])
        self.runner = runner or SubprocessBackupRunner(
            server=engine_conf["server"],
            sqlcmd=engine_conf.get("sqlcmd", "sqlcmd"),
            credential=Credential(login=engine_conf.get("username"), password=engine_conf.get("password")),
            timeout=global_conf["command_timeout_seconds"],
        )
        self.provisioner = TenantDatabaseProvisioner(
            self.db_engine, self.runner, tenant_quota_mb=global_conf["tenant_quota_mb"]
        )
        self.artifacts = ArtifactStore(global_conf["backup_root"], self.store, owner_resolver=self.provisioner.owner_of)
        self.retention = RetentionManager(self.store, self.artifacts, clock=clock)
        self.orchestrator = BatchOrchestrator(
            self.store,
            self.artifacts,
            self.runner,
            provisioner=self.provisioner,
            retention=self.retention,
            clock=clock,
            sleep=sleep,
            restore_delay=float(global_conf["restore_delay_seconds"]),
        )
        self.restores = RestoreOperationTracker(self.store, self.orchestrator, clock=clock)
        self.planner = ScheduledBackupPlanner(
            self.store,
            self.orchestrator,
            retention=self.retention,
            scheduler=scheduler,
            clock=clock,
            max_workers=int(global_conf["max_parallel_jobs"]),
            default_retention_days=global_conf.get("retention_days"),
        )

    def startup(self) -> None:
        create_db_and_tables(self.db_engine)
        self.artifacts.reconcile()
        self.planner.start(self.settings.get("backup-configs", []))

    def shutdown(self) -> None:
        self.planner.shutdown()
        self.restores.shutdown(wait=False)
