import os
from typing import Optional

import yaml

from .logger import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"

GLOBAL_DEFAULTS = {
    "backup_root": os.path.join("data", "backups"),
    "database_url": "sqlite:///data/fleet_backup.db",
    "restore_delay_seconds": 2.0,
    "command_timeout_seconds": 3600,
    "max_parallel_jobs": 4,
    "retention_days": 30,
    "tenant_quota_mb": 1024,
}

ENGINE_DEFAULTS = {
    "server": "localhost",
    "sqlcmd": "sqlcmd",
}

DEFAULT_BACKUP_CONFIG = {
    "id": "1",
    "name": "Daily Full Backup",
    "enabled": True,
    "schedule": "0 2 * * *",
    "databases": [],
    "retention_days": 30,
}


def load_config(path: Optional[str] = None) -> dict:
    """
    Loads config.yaml and fills in defaults.

    A missing file or a file that fails to parse yields the defaults, so the
    service can always start.
    """
    config_path = path or os.environ.get("FLEET_BACKUP_CONFIG", DEFAULT_CONFIG_PATH)

    yaml_config = {}
    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            try:
                yaml_config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                logger.error(f"Error parsing {config_path}: {e}")
                yaml_config = {}
    else:
        logger.info(f"No {config_path} found, using default configuration.")

    global_conf = {**GLOBAL_DEFAULTS, **(yaml_config.get("global") or {})}
    engine_conf = _resolve_engine_credentials({**ENGINE_DEFAULTS, **(yaml_config.get("engine") or {})})

    backup_configs = yaml_config.get("backup-configs")
    if backup_configs is None:
        backup_configs = [dict(DEFAULT_BACKUP_CONFIG)]
    backup_configs = _validate_backup_configs(backup_configs, global_conf)

    return {
        "global": global_conf,
        "engine": engine_conf,
        "backup-configs": backup_configs,
    }


def _resolve_engine_credentials(engine_conf: dict) -> dict:
    # Load credentials from environment variables or directly from config
    username_var = engine_conf.pop("username_var", None)
    password_var = engine_conf.pop("password_var", None)

    if "username" not in engine_conf and username_var:
        engine_conf["username"] = os.getenv(username_var)
    if "password" not in engine_conf and password_var:
        engine_conf["password"] = os.getenv(password_var)

    if not engine_conf.get("username") or not engine_conf.get("password"):
        logger.warning("No engine credentials configured, sqlcmd will use trusted authentication.")
        engine_conf["username"] = None
        engine_conf["password"] = None
    return engine_conf


def _validate_backup_configs(configs: list, global_conf: dict) -> list:
    config_ids = [str(conf.get("id")) for conf in configs if conf.get("id") is not None]
    if len(config_ids) > len(set(config_ids)):
        seen = set()
        duplicates = {x for x in config_ids if x in seen or seen.add(x)}
        error_msg = f"Duplicate backup configuration IDs found in config: {sorted(duplicates)}."
        logger.error(error_msg)
        raise ValueError(error_msg)

    valid = []
    for conf in configs:
        if conf.get("id") is None or not conf.get("schedule"):
            logger.warning(
                f"Skipping backup configuration (name: {conf.get('name', 'N/A')}) "
                f"because it is missing the required 'id' or 'schedule' field."
            )
            continue
        conf = dict(conf)
        conf["id"] = str(conf["id"])
        conf.setdefault("name", f"Backup configuration {conf['id']}")
        conf.setdefault("retention_days", global_conf["retention_days"])
        conf["databases"] = list(conf.get("databases") or [])
        valid.append(conf)
    return valid
