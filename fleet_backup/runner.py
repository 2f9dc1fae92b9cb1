import subprocess
import time
from dataclasses import dataclass
from typing import List, Optional

from .errors import SubprocessFailure
from .error_parser import parse_engine_error
from .logger import get_logger
from .schemas import Credential
from .utils import is_safe_path, is_valid_identifier

logger = get_logger(__name__)

SYSTEM_DATABASES = ("master", "tempdb", "model", "msdb")


@dataclass
class Outcome:
    success: bool
    reason: Optional[str] = None
    output: str = ""
    duration: float = 0.0

    @classmethod
    def ok(cls, output: str = "", duration: float = 0.0) -> "Outcome":
        return cls(True, None, output, duration)

    @classmethod
    def failure(cls, reason: str, output: str = "", duration: float = 0.0) -> "Outcome":
        return cls(False, reason, output, duration)


class SubprocessBackupRunner:
    """
    Runs the engine's native BACKUP/RESTORE statements through ``sqlcmd``,
    one database per call.

    ``backup`` and ``restore`` never raise: every problem (bad name, missing
    binary, non-zero exit, timeout, unreadable output) comes back as a
    failed :class:`Outcome` with a human readable reason.
    """

    def __init__(
        self,
        server: str,
        sqlcmd: str = "sqlcmd",
        credential: Optional[Credential] = None,
        timeout: float = 3600,
    ):
        self.server = server
        self.sqlcmd = sqlcmd
        self.credential = credential or Credential()
        self.timeout = timeout

    def backup(self, database: str, destination: str, credential: Optional[Credential] = None) -> Outcome:
        rejected = self._reject(database, destination)
        if rejected:
            return rejected
        query = f"BACKUP DATABASE [{database}] TO DISK = N'{destination}' WITH FORMAT, INIT"
        logger.info(f"Backing up database '{database}' to {destination}")
        return self._execute(query, credential, database=database)

    def restore(self, database: str, source: str, credential: Optional[Credential] = None) -> Outcome:
        rejected = self._reject(database, source)
        if rejected:
            return rejected
        # Kick other sessions out so RESTORE gets exclusive access, then reopen.
        query = (
            f"IF DB_ID(N'{database}') IS NOT NULL "
            f"ALTER DATABASE [{database}] SET SINGLE_USER WITH ROLLBACK IMMEDIATE; "
            f"RESTORE DATABASE [{database}] FROM DISK = N'{source}' WITH REPLACE; "
            f"ALTER DATABASE [{database}] SET MULTI_USER;"
        )
        logger.info(f"Restoring database '{database}' from {source}")
        return self._execute(query, credential, database=database)

    def list_databases(self, credential: Optional[Credential] = None) -> List[str]:
        """Online user databases on the server. Raises SubprocessFailure."""
        excluded = ", ".join(f"'{name}'" for name in SYSTEM_DATABASES)
        query = (
            "SET NOCOUNT ON; SELECT name FROM sys.databases "
            f"WHERE name NOT IN ({excluded}) AND state = 0 ORDER BY name"
        )
        outcome = self._execute(query, credential, database="master", extra_args=["-h", "-1", "-W"])
        if not outcome.success:
            raise SubprocessFailure(f"Could not list databases: {outcome.reason}")
        return [line.strip() for line in outcome.output.splitlines() if line.strip()]

    def create_database(self, database: str, credential: Optional[Credential] = None) -> None:
        if not is_valid_identifier(database):
            raise SubprocessFailure(f"Refusing to create database with invalid name {database!r}")
        outcome = self._execute(f"CREATE DATABASE [{database}]", credential, database=database)
        if not outcome.success:
            raise SubprocessFailure(f"Could not create database '{database}': {outcome.reason}")

    def drop_database(self, database: str, credential: Optional[Credential] = None) -> None:
        if not is_valid_identifier(database):
            raise SubprocessFailure(f"Refusing to drop database with invalid name {database!r}")
        outcome = self._execute(f"DROP DATABASE [{database}]", credential, database=database)
        if not outcome.success:
            raise SubprocessFailure(f"Could not drop database '{database}': {outcome.reason}")

    def _reject(self, database: str, path: str) -> Optional[Outcome]:
        if not is_valid_identifier(database):
            logger.warning(f"Rejected invalid database name: {database!r}")
            return Outcome.failure(f"Invalid database name: {database!r}")
        if not is_safe_path(path):
            logger.warning(f"Rejected unsafe backup path: {path!r}")
            return Outcome.failure(f"Invalid backup path: {path!r}")
        return None

    def _command(self, query: str, credential: Credential, extra_args: Optional[List[str]] = None) -> List[str]:
        cmd = [self.sqlcmd, "-S", self.server, "-b"]
        if credential.login:
            cmd += ["-U", credential.login, "-P", credential.password or ""]
        else:
            cmd.append("-E")
        cmd += list(extra_args or [])
        cmd += ["-Q", query]
        return cmd

    def _execute(
        self,
        query: str,
        credential: Optional[Credential],
        *,
        database: str,
        extra_args: Optional[List[str]] = None,
    ) -> Outcome:
        credential = credential or self.credential
        cmd = self._command(query, credential, extra_args)
        logger.debug(f"Executing sqlcmd as '{credential.login or 'trusted'}' for '{database}': {query}")

        start_time = time.monotonic()
        try:
            result = subprocess.run(cmd, capture_output=True, timeout=self.timeout)
        except subprocess.TimeoutExpired:
            duration = time.monotonic() - start_time
            logger.error(f"sqlcmd timed out after {self.timeout}s for database '{database}'")
            return Outcome.failure(f"Engine command timed out after {self.timeout} seconds.", duration=duration)
        except OSError as e:
            duration = time.monotonic() - start_time
            logger.error(f"Could not start {self.sqlcmd} for database '{database}': {e}")
            return Outcome.failure(f"Could not start {self.sqlcmd}: {e}", duration=duration)

        duration = time.monotonic() - start_time
        try:
            output = (result.stdout or b"").decode("utf-8") + (result.stderr or b"").decode("utf-8")
        except UnicodeDecodeError:
            logger.error(f"Unreadable sqlcmd output for database '{database}'")
            return Outcome.failure("Engine command produced unreadable output.", duration=duration)

        if result.returncode != 0:
            logger.error(f"sqlcmd failed with exit code {result.returncode} for '{database}': {output.strip()}")
            return Outcome.failure(parse_engine_error(output), output=output, duration=duration)

        return Outcome.ok(output=output, duration=duration)
