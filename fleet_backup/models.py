from typing import Optional
from datetime import datetime
from sqlmodel import Field, SQLModel

from .utils import utcnow


class DatabaseOwnershipRecord(SQLModel, table=True):
    __tablename__ = "database_ownership"

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: int = Field(index=True)
    database_name: str = Field(unique=True, index=True)
    quota_mb: int = 100
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class TenantCredential(SQLModel, table=True):
    __tablename__ = "tenant_credential"

    tenant_id: int = Field(primary_key=True)
    label: str
    login: str
    password: str
