from typing import List, Optional

from sqlmodel import Session, select

from .errors import InvalidIdentifier, NotFound, PermissionDenied, QuotaExceeded
from .logger import get_logger
from .models import DatabaseOwnershipRecord, TenantCredential
from .runner import SubprocessBackupRunner
from .schemas import Credential, Owner
from .utils import is_valid_identifier, sanitize_database_name, utcnow

logger = get_logger(__name__)

DEFAULT_DATABASE_QUOTA_MB = 100


class TenantDatabaseProvisioner:
    """
    Tenant ownership of engine databases.

    Ownership records live in the service database; the engine objects
    themselves are created and dropped through the runner using the tenant's
    own login.
    """

    def __init__(self, engine, runner: SubprocessBackupRunner, tenant_quota_mb: int = 1024):
        self.engine = engine
        self.runner = runner
        self.tenant_quota_mb = tenant_quota_mb

    def owns_database(self, tenant_id: int, database: str) -> bool:
        with Session(self.engine) as session:
            record = session.exec(
                select(DatabaseOwnershipRecord).where(
                    DatabaseOwnershipRecord.tenant_id == tenant_id,
                    DatabaseOwnershipRecord.database_name == database,
                )
            ).first()
            return record is not None

    def list_owned(self, tenant_id: int) -> List[str]:
        with Session(self.engine) as session:
            records = session.exec(
                select(DatabaseOwnershipRecord)
                .where(DatabaseOwnershipRecord.tenant_id == tenant_id)
                .order_by(DatabaseOwnershipRecord.database_name)
            ).all()
            return [r.database_name for r in records]

    def credentials_for(self, tenant_id: int) -> Credential:
        with Session(self.engine) as session:
            cred = session.get(TenantCredential, tenant_id)
            if not cred:
                raise NotFound(f"Tenant {tenant_id} does not have engine credentials configured")
            return Credential(login=cred.login, password=cred.password, tenant_id=tenant_id)

    def owner_of(self, database: str) -> Optional[Owner]:
        with Session(self.engine) as session:
            record = session.exec(
                select(DatabaseOwnershipRecord).where(DatabaseOwnershipRecord.database_name == database)
            ).first()
            if not record:
                return None
            cred = session.get(TenantCredential, record.tenant_id)
            label = cred.label if cred else f"tenant-{record.tenant_id}"
            return Owner(tenant_id=record.tenant_id, label=label)

    def set_credentials(self, tenant_id: int, label: str, login: str, password: str) -> None:
        with Session(self.engine) as session:
            cred = session.get(TenantCredential, tenant_id)
            if cred:
                cred.label, cred.login, cred.password = label, login, password
            else:
                cred = TenantCredential(tenant_id=tenant_id, label=label, login=login, password=password)
            session.add(cred)
            session.commit()
        logger.info(f"Stored engine credentials for tenant {tenant_id} (login '{login}').")

    def create_database(self, tenant_id: int, name: str, quota_mb: int = DEFAULT_DATABASE_QUOTA_MB) -> str:
        database = sanitize_database_name(name)
        if not database or not is_valid_identifier(database):
            raise InvalidIdentifier(f"Invalid database name: {name!r}")
        credential = self.credentials_for(tenant_id)

        with Session(self.engine) as session:
            existing = session.exec(
                select(DatabaseOwnershipRecord).where(DatabaseOwnershipRecord.database_name == database)
            ).first()
            if existing and existing.tenant_id == tenant_id:
                raise InvalidIdentifier("You already own a database with this name")
            if existing:
                raise PermissionDenied(f"Database '{database}' belongs to another tenant")
            self._check_quota(session, tenant_id, quota_mb)

        self.runner.create_database(database, credential)

        try:
            with Session(self.engine) as session:
                session.add(DatabaseOwnershipRecord(tenant_id=tenant_id, database_name=database, quota_mb=quota_mb))
                session.commit()
        except Exception:
            logger.error(f"Recording ownership of '{database}' failed, dropping the engine database again.")
            try:
                self.runner.drop_database(database, credential)
            except Exception as drop_error:
                logger.error(f"Could not drop orphaned database '{database}': {drop_error}")
            raise

        logger.info(f"Database {database} created for tenant {tenant_id} with quota {quota_mb} MB")
        return database

    def delete_database(self, tenant_id: int, database: str) -> None:
        if not self.owns_database(tenant_id, database):
            raise PermissionDenied("You do not have permission to delete this database")
        credential = self.credentials_for(tenant_id)

        self.runner.drop_database(database, credential)

        with Session(self.engine) as session:
            record = session.exec(
                select(DatabaseOwnershipRecord).where(
                    DatabaseOwnershipRecord.tenant_id == tenant_id,
                    DatabaseOwnershipRecord.database_name == database,
                )
            ).first()
            if record:
                session.delete(record)
                session.commit()
        logger.info(f"Database {database} deleted by tenant {tenant_id}")

    def update_quota(self, tenant_id: int, database: str, quota_mb: int) -> None:
        with Session(self.engine) as session:
            record = session.exec(
                select(DatabaseOwnershipRecord).where(
                    DatabaseOwnershipRecord.tenant_id == tenant_id,
                    DatabaseOwnershipRecord.database_name == database,
                )
            ).first()
            if not record:
                raise PermissionDenied("You do not have permission to update quota for this database")
            self._check_quota(session, tenant_id, quota_mb - record.quota_mb)
            record.quota_mb = quota_mb
            record.updated_at = utcnow()
            session.add(record)
            session.commit()

    def _check_quota(self, session: Session, tenant_id: int, additional_mb: int) -> None:
        records = session.exec(
            select(DatabaseOwnershipRecord).where(DatabaseOwnershipRecord.tenant_id == tenant_id)
        ).all()
        used = sum(r.quota_mb for r in records)
        if used + additional_mb > self.tenant_quota_mb:
            raise QuotaExceeded(
                f"Tenant {tenant_id} would use {used + additional_mb} MB, above the {self.tenant_quota_mb} MB quota"
            )
