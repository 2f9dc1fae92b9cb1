import re
import uuid
from datetime import datetime, timezone

# Conservative SQL Server identifier: letter or underscore first, no brackets or quotes.
IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_@$#-]{0,127}$")
UNSAFE_PATH_RE = re.compile(r"['\";\x00-\x1f]")

FILE_TIMESTAMP_FORMAT = "%Y-%m-%dT%H-%M-%S-%f"
_SIZE_UNITS = ["Bytes", "KB", "MB", "GB", "TB"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_valid_identifier(name: str) -> bool:
    return isinstance(name, str) and bool(IDENTIFIER_RE.match(name))


def is_safe_path(path: str) -> bool:
    return isinstance(path, str) and bool(path) and not UNSAFE_PATH_RE.search(path)


def sanitize_database_name(name: str) -> str:
    """
    Strips everything that is not a word character from a requested
    database name, the way tenant databases are named on creation.
    Returns an empty string when nothing usable is left.
    """
    name = re.sub(r"[^\w]", "", name or "", flags=re.ASCII)
    if name and name[0].isdigit():
        name = f"_{name}"
    return name[:128]


def file_timestamp(moment: datetime) -> str:
    """Timestamp safe for file and folder names, microsecond resolution."""
    return moment.strftime(FILE_TIMESTAMP_FORMAT)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


def format_size(size_bytes: int) -> str:
    """Human readable size, e.g. ``1536 -> '1.5 KB'``."""
    if not size_bytes:
        return "0 Bytes"
    size = float(size_bytes)
    unit = 0
    while size >= 1024 and unit < len(_SIZE_UNITS) - 1:
        size /= 1024
        unit += 1
    return f"{round(size, 2):g} {_SIZE_UNITS[unit]}"
