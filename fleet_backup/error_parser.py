# fleet_backup/error_parser.py

def parse_engine_error(stderr: str) -> str:
    """
    Parses the output of a failed sqlcmd call and returns a human-readable summary.
    """
    text = (stderr or "").lower()

    if "login failed" in text:
        return "Authentication error: the engine rejected the login or password."
    if "does not exist" in text and "database" in text:
        return "Database error: the specified database does not exist."
    if "cannot open backup device" in text or "operating system error" in text:
        return "File error: the engine could not open the backup file. Check the path and its permissions."
    if "exclusive access could not be obtained" in text:
        return "Restore error: the database is in use and exclusive access could not be obtained."
    if "permission" in text and "denied" in text:
        return "Permission error: the login lacks the rights needed for this operation."
    if "timeout expired" in text or "timed out" in text:
        return "Connection error: the engine did not respond before the timeout."
    if "network-related" in text or "tcp provider" in text or "server is not found" in text:
        return "Connection error: could not reach the database server. Check the host and port."
    if "no space left" in text or ("insufficient" in text and "disk" in text):
        return "Disk error: not enough space to write the backup file."

    return "Unknown error: the engine command failed for an unidentified reason. Check the full log for details."
