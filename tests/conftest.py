"""Pytest configuration and shared fixtures."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from fleet_backup.backup_manager import BatchOrchestrator
from fleet_backup.database import create_db_and_tables, make_engine
from fleet_backup.errors import SubprocessFailure
from fleet_backup.provisioner import TenantDatabaseProvisioner
from fleet_backup.retention import RetentionManager
from fleet_backup.runner import Outcome
from fleet_backup.schemas import Caller
from fleet_backup.storage import ArtifactStore
from fleet_backup.store import Store


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeRunner:
    """Stands in for sqlcmd: writes fake .bak files and records every call."""

    def __init__(self, databases=None, sizes=None):
        self.databases = list(databases or [])
        self.sizes = dict(sizes or {})
        self.fail_backup = set()
        self.fail_restore = set()
        self.crash_restore = set()
        self.backup_gate = None
        self.backup_started = threading.Event()
        self.calls = []
        self.created = []
        self.dropped = []
        self.fail_create = False

    def backup(self, database, destination, credential=None):
        self.calls.append(("backup", database, destination, credential))
        self.backup_started.set()
        if self.backup_gate is not None:
            self.backup_gate.wait(5)
        if database in self.fail_backup:
            return Outcome.failure(f"Backup of {database} failed: device error")
        with open(destination, "wb") as f:
            f.write(b"x" * self.sizes.get(database, 100))
        return Outcome.ok(duration=0.01)

    def restore(self, database, source, credential=None):
        self.calls.append(("restore", database, source, credential))
        if database in self.crash_restore:
            raise RuntimeError(f"engine connection dropped while restoring {database}")
        if database in self.fail_restore:
            return Outcome.failure("Restore error: exclusive access could not be obtained.")
        return Outcome.ok(duration=0.01)

    def list_databases(self, credential=None):
        return list(self.databases)

    def create_database(self, database, credential=None):
        if self.fail_create:
            raise SubprocessFailure(f"Could not create database '{database}'")
        self.created.append((database, credential))

    def drop_database(self, database, credential=None):
        self.dropped.append((database, credential))

    def calls_for(self, action):
        return [c for c in self.calls if c[0] == action]


class GatedSleep:
    """Sleep replacement that blocks until the test opens the gate."""

    def __init__(self):
        self.calls = []
        self.gate = threading.Event()

    def __call__(self, seconds):
        self.calls.append(seconds)
        self.gate.wait(5)


ADMIN = Caller(label="admin@example.com", is_admin=True)
TENANT = Caller(tenant_id=7, label="alice@example.com")
OTHER_TENANT = Caller(tenant_id=8, label="bob@example.com")


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 6, 1, 2, 0, tzinfo=timezone.utc))


@pytest.fixture
def runner():
    return FakeRunner(databases=["A", "B"], sizes={"A": 1000, "B": 2000, "C": 3000})


@pytest.fixture
def store():
    return Store()


@pytest.fixture
def db_engine():
    engine = make_engine("sqlite://")
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def provisioner(db_engine, runner):
    prov = TenantDatabaseProvisioner(db_engine, runner, tenant_quota_mb=500)
    prov.set_credentials(7, "alice@example.com", "alice_login", "alice-pw")
    prov.set_credentials(8, "bob@example.com", "bob_login", "bob-pw")
    return prov


@pytest.fixture
def artifacts(tmp_path, store, provisioner):
    return ArtifactStore(str(tmp_path / "backups"), store, owner_resolver=provisioner.owner_of)


@pytest.fixture
def retention(store, artifacts, clock):
    return RetentionManager(store, artifacts, clock=clock)


@pytest.fixture
def sleeper():
    return GatedSleep()


@pytest.fixture
def orchestrator(store, artifacts, runner, provisioner, retention, clock, sleeper):
    return BatchOrchestrator(
        store,
        artifacts,
        runner,
        provisioner=provisioner,
        retention=retention,
        clock=clock,
        sleep=sleeper,
        restore_delay=2.0,
    )
