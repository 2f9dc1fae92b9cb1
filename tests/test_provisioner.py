import pytest

from fleet_backup.errors import InvalidIdentifier, NotFound, PermissionDenied, QuotaExceeded, SubprocessFailure
from fleet_backup.schemas import Owner


class TestTenantDatabaseProvisioner:
    def test_create_records_ownership(self, provisioner, runner):
        name = provisioner.create_database(7, "Sales")

        assert name == "Sales"
        assert provisioner.owns_database(7, "Sales")
        assert not provisioner.owns_database(8, "Sales")
        assert provisioner.list_owned(7) == ["Sales"]
        assert provisioner.owner_of("Sales") == Owner(tenant_id=7, label="alice@example.com")
        assert runner.created[0][0] == "Sales"
        assert runner.created[0][1].login == "alice_login"

    def test_requested_name_is_sanitized(self, provisioner):
        assert provisioner.create_database(7, "my-shop db!") == "myshopdb"
        assert provisioner.create_database(7, "2024_reports") == "_2024_reports"

    def test_unusable_name_is_rejected(self, provisioner, runner):
        with pytest.raises(InvalidIdentifier):
            provisioner.create_database(7, "!!!")
        assert runner.created == []

    def test_name_taken(self, provisioner):
        provisioner.create_database(7, "Sales")

        with pytest.raises(InvalidIdentifier, match="already own"):
            provisioner.create_database(7, "Sales")
        with pytest.raises(PermissionDenied):
            provisioner.create_database(8, "Sales")

    def test_quota_is_enforced(self, provisioner, runner):
        provisioner.create_database(7, "one", quota_mb=300)

        with pytest.raises(QuotaExceeded):
            provisioner.create_database(7, "two", quota_mb=300)
        assert provisioner.list_owned(7) == ["one"]
        assert [c[0] for c in runner.created] == ["one"]

        provisioner.update_quota(7, "one", 500)
        with pytest.raises(QuotaExceeded):
            provisioner.update_quota(7, "one", 501)

    def test_engine_failure_records_nothing(self, provisioner, runner):
        runner.fail_create = True

        with pytest.raises(SubprocessFailure):
            provisioner.create_database(7, "Sales")
        assert provisioner.list_owned(7) == []

    def test_only_the_owner_can_delete(self, provisioner, runner):
        provisioner.create_database(7, "Sales")

        with pytest.raises(PermissionDenied):
            provisioner.delete_database(8, "Sales")
        provisioner.delete_database(7, "Sales")

        assert provisioner.list_owned(7) == []
        assert runner.dropped[0][0] == "Sales"
        assert provisioner.owner_of("Sales") is None

    def test_missing_credentials(self, provisioner):
        with pytest.raises(NotFound):
            provisioner.credentials_for(99)
        with pytest.raises(NotFound):
            provisioner.create_database(99, "Sales")
