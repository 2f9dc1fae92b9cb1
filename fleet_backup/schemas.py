from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, computed_field

from .utils import format_size, utcnow


class Kind(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class Status(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class Owner(BaseModel):
    tenant_id: int
    label: str


class Credential(BaseModel):
    login: Optional[str] = None
    password: Optional[str] = None
    tenant_id: Optional[int] = None


class Caller(BaseModel):
    """Authenticated identity on whose behalf an operation runs."""
    tenant_id: Optional[int] = None
    label: str = "system"
    is_admin: bool = False


SYSTEM_CALLER = Caller(label="system", is_admin=True)


class BackupConfiguration(BaseModel):
    id: str
    name: str
    enabled: bool = True
    schedule: str
    databases: List[str] = Field(default_factory=list)
    retention_days: int = 30
    created_at: datetime = Field(default_factory=utcnow)
    last_backup_at: Optional[datetime] = None


class BackupArtifact(BaseModel):
    id: str
    run_id: Optional[str] = None
    database: str
    file_name: str
    path: str
    size_bytes: int = 0
    created_at: datetime
    origin: Kind = Kind.MANUAL
    owner: Optional[Owner] = None


class DatabaseResult(BaseModel):
    database: str
    success: bool
    error: Optional[str] = None
    size_bytes: Optional[int] = None


class BatchBackupRun(BaseModel):
    id: str
    kind: Kind
    configuration_id: Optional[str] = None
    started_at: datetime
    finished_at: Optional[datetime] = None
    databases: List[str] = Field(default_factory=list)
    status: Status = Status.IN_PROGRESS
    total_size_bytes: int = 0
    folder: str
    artifacts: List[BackupArtifact] = Field(default_factory=list)
    results: List[DatabaseResult] = Field(default_factory=list)
    initiated_by: str = "system"
    error: Optional[str] = None

    @computed_field
    @property
    def total_size(self) -> str:
        return format_size(self.total_size_bytes)

    @computed_field
    @property
    def failed_databases(self) -> List[str]:
        return [r.database for r in self.results if not r.success]


class RestoreOperation(BaseModel):
    id: str
    run_id: str
    status: Status = Status.IN_PROGRESS
    databases: List[str] = Field(default_factory=list)
    results: List[DatabaseResult] = Field(default_factory=list)
    started_at: datetime
    finished_at: Optional[datetime] = None
    initiated_by: str = "system"
    error: Optional[str] = None

    @computed_field
    @property
    def completed_databases(self) -> int:
        return len(self.results)

    @computed_field
    @property
    def total_databases(self) -> int:
        return len(self.databases)


class PruneReport(BaseModel):
    cutoff: datetime
    deleted_runs: List[str] = Field(default_factory=list)
    deleted_artifacts: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


# Request bodies for the HTTP command surface

class BackupConfigurationCreate(BaseModel):
    name: str
    schedule: str
    databases: List[str] = Field(default_factory=list)
    retention_days: int = Field(default=30, ge=1)
    enabled: bool = True


class BackupConfigurationUpdate(BaseModel):
    name: Optional[str] = None
    schedule: Optional[str] = None
    databases: Optional[List[str]] = None
    retention_days: Optional[int] = Field(default=None, ge=1)
    enabled: Optional[bool] = None


class BackupCreate(BaseModel):
    database: str


class RestoreCreate(BaseModel):
    database: Optional[str] = None


class PruneCreate(BaseModel):
    max_age_days: Optional[int] = Field(default=None, ge=0)


class RunAccepted(BaseModel):
    run_id: str
    status: Status


class RestoreAccepted(BaseModel):
    message: str = "Restore process started."
    operation_id: str
