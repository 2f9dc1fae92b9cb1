import subprocess

import pytest

from fleet_backup.error_parser import parse_engine_error
from fleet_backup.errors import SubprocessFailure
from fleet_backup.runner import SubprocessBackupRunner
from fleet_backup.schemas import Credential


class FakeRun:
    """Records the argv passed to subprocess.run and plays back a canned result."""

    def __init__(self, returncode=0, stdout=b"", stderr=b"", raises=None):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.raises = raises
        self.commands = []

    def __call__(self, cmd, capture_output=False, timeout=None):
        self.commands.append(cmd)
        if self.raises is not None:
            raise self.raises
        return subprocess.CompletedProcess(cmd, self.returncode, self.stdout, self.stderr)


@pytest.fixture
def sqlcmd_runner():
    return SubprocessBackupRunner(server="db.local", sqlcmd="sqlcmd", timeout=5)


def patch_run(monkeypatch, fake):
    monkeypatch.setattr("fleet_backup.runner.subprocess.run", fake)
    return fake


class TestBackup:
    def test_success_builds_backup_statement(self, monkeypatch, sqlcmd_runner):
        fake = patch_run(monkeypatch, FakeRun(stdout=b"BACKUP DATABASE successfully processed"))

        outcome = sqlcmd_runner.backup("Sales", "/backups/Sales.bak")

        assert outcome.success
        assert outcome.reason is None
        cmd = fake.commands[0]
        assert cmd[:4] == ["sqlcmd", "-S", "db.local", "-b"]
        assert "-E" in cmd
        query = cmd[cmd.index("-Q") + 1]
        assert query == "BACKUP DATABASE [Sales] TO DISK = N'/backups/Sales.bak' WITH FORMAT, INIT"

    def test_non_zero_exit_is_parsed(self, monkeypatch, sqlcmd_runner):
        patch_run(monkeypatch, FakeRun(returncode=1, stderr=b"Msg 18456, Login failed for user 'sa'."))

        outcome = sqlcmd_runner.backup("Sales", "/backups/Sales.bak")

        assert not outcome.success
        assert outcome.reason.startswith("Authentication error")
        assert "Login failed" in outcome.output

    def test_timeout_is_a_failed_outcome(self, monkeypatch, sqlcmd_runner):
        patch_run(monkeypatch, FakeRun(raises=subprocess.TimeoutExpired("sqlcmd", 5)))

        outcome = sqlcmd_runner.backup("Sales", "/backups/Sales.bak")

        assert not outcome.success
        assert "timed out" in outcome.reason

    def test_missing_binary_is_a_failed_outcome(self, monkeypatch, sqlcmd_runner):
        patch_run(monkeypatch, FakeRun(raises=FileNotFoundError(2, "No such file or directory")))

        outcome = sqlcmd_runner.backup("Sales", "/backups/Sales.bak")

        assert not outcome.success
        assert "Could not start sqlcmd" in outcome.reason

    def test_unreadable_output_is_a_failed_outcome(self, monkeypatch, sqlcmd_runner):
        patch_run(monkeypatch, FakeRun(stdout=b"\xff\xfe\xfa"))

        outcome = sqlcmd_runner.backup("Sales", "/backups/Sales.bak")

        assert not outcome.success
        assert "unreadable" in outcome.reason

    @pytest.mark.parametrize("name", ["Sales]; DROP DATABASE master; --", "", "1abc", "a b"])
    def test_invalid_name_never_spawns(self, monkeypatch, sqlcmd_runner, name):
        fake = patch_run(monkeypatch, FakeRun())

        outcome = sqlcmd_runner.backup(name, "/backups/x.bak")

        assert not outcome.success
        assert "Invalid database name" in outcome.reason
        assert fake.commands == []

    def test_unsafe_path_never_spawns(self, monkeypatch, sqlcmd_runner):
        fake = patch_run(monkeypatch, FakeRun())

        outcome = sqlcmd_runner.backup("Sales", "/backups/x'; SHUTDOWN; --.bak")

        assert not outcome.success
        assert "Invalid backup path" in outcome.reason
        assert fake.commands == []

    def test_tenant_credential_uses_sql_login(self, monkeypatch, sqlcmd_runner):
        fake = patch_run(monkeypatch, FakeRun())

        sqlcmd_runner.backup("Sales", "/backups/Sales.bak", Credential(login="alice", password="pw", tenant_id=7))

        cmd = fake.commands[0]
        assert cmd[cmd.index("-U") + 1] == "alice"
        assert cmd[cmd.index("-P") + 1] == "pw"
        assert "-E" not in cmd


class TestRestore:
    def test_restore_takes_exclusive_access(self, monkeypatch, sqlcmd_runner):
        fake = patch_run(monkeypatch, FakeRun())

        outcome = sqlcmd_runner.restore("Sales", "/backups/run/Sales.bak")

        assert outcome.success
        query = fake.commands[0][-1]
        assert "SET SINGLE_USER WITH ROLLBACK IMMEDIATE" in query
        assert "RESTORE DATABASE [Sales] FROM DISK = N'/backups/run/Sales.bak' WITH REPLACE" in query
        assert query.endswith("SET MULTI_USER;")

    def test_exclusive_access_error(self, monkeypatch, sqlcmd_runner):
        patch_run(
            monkeypatch,
            FakeRun(returncode=1, stderr=b"Exclusive access could not be obtained because the database is in use."),
        )

        outcome = sqlcmd_runner.restore("Sales", "/backups/run/Sales.bak")

        assert not outcome.success
        assert outcome.reason.startswith("Restore error")


class TestListDatabases:
    def test_parses_one_name_per_line(self, monkeypatch, sqlcmd_runner):
        fake = patch_run(monkeypatch, FakeRun(stdout=b"Billing\r\nSales \r\n\r\n"))

        assert sqlcmd_runner.list_databases() == ["Billing", "Sales"]
        query = fake.commands[0][-1]
        assert "'master', 'tempdb', 'model', 'msdb'" in query
        assert "state = 0" in query

    def test_failure_raises(self, monkeypatch, sqlcmd_runner):
        patch_run(monkeypatch, FakeRun(returncode=1, stderr=b"A network-related error occurred"))

        with pytest.raises(SubprocessFailure, match="Could not list databases"):
            sqlcmd_runner.list_databases()


class TestParseEngineError:
    @pytest.mark.parametrize(
        "stderr, prefix",
        [
            ("Login failed for user 'x'", "Authentication error"),
            ("Database 'Nope' does not exist.", "Database error"),
            ("Cannot open backup device '/x.bak'. Operating system error 5", "File error"),
            ("There is insufficient free space on disk volume", "Disk error"),
            ("Login timeout expired", "Connection error"),
            ("something odd", "Unknown error"),
            ("", "Unknown error"),
        ],
    )
    def test_known_messages(self, stderr, prefix):
        assert parse_engine_error(stderr).startswith(prefix)
