"""
Configuration constants and config-file loading for deployscript
"""
import json
import runpy
from pathlib import Path
from typing import Optional

from .errors import ConfigError

# ══════════════════════════════════════════════════════════════════════════════
#  DEFAULTS  ── tunables may be overridden by apply_tunables()
# ══════════════════════════════════════════════════════════════════════════════

DEFAULT_SSH_PORT = 22

# Session establishment
CONNECT_TIMEOUT = 20  # seconds
KEEPALIVE_INTERVAL = 10  # seconds between keep-alive packets
KEEPALIVE_COUNT_MAX = 3  # unanswered keep-alives before the session is declared dead

# Fallback wait for stderr to flush when the channel never signalled EOF
EXEC_FLUSH_GRACE = 0.1  # seconds

# Sleep between polls of a running remote command's output streams
EXEC_POLL_INTERVAL = 0.02  # seconds
EXEC_READ_CHUNK = 32768  # bytes

# Max concurrent SFTP calls during one tree transfer
TRANSFER_CONCURRENCY = 8

# Per-command / per-SFTP-call timeout; None waits forever
OPERATION_TIMEOUT: Optional[float] = None

DEFAULT_BACKUP_DIR = "backups"
DEFAULT_LOG_FILE = "deploy.log"

DEFAULT_CONFIG_PATHS = [
    "deploy.config.py",
    "deploy.config.json",
    "deploy.config.yaml",
    "deploy.config.yml",
]

TASK_KEYS = (
    "name", "disabled", "local_path", "remote_dir", "backup_dir",
    "auto_backup", "auto_clean", "remote_commands", "on_completed",
)

# camelCase spellings accepted for compatibility with older config files
KEY_ALIASES = {
    "privateKey": "private_key",
    "target": "local_path",
    "localPath": "local_path",
    "remoteDir": "remote_dir",
    "backupDir": "backup_dir",
    "autoBackup": "auto_backup",
    "autoClean": "auto_clean",
    "deployedCommands": "remote_commands",
    "remoteCommands": "remote_commands",
    "onCompleted": "on_completed",
    "logFilePath": "log_file",
    "user": "username",
}


def apply_tunables(transfer_concurrency: Optional[int] = None,
                   operation_timeout: Optional[float] = None):
    """Override module-level tunables from a loaded config."""
    global TRANSFER_CONCURRENCY, OPERATION_TIMEOUT
    if transfer_concurrency is not None:
        if int(transfer_concurrency) < 1:
            raise ConfigError("transfer_concurrency must be at least 1")
        TRANSFER_CONCURRENCY = int(transfer_concurrency)
    if operation_timeout is not None:
        OPERATION_TIMEOUT = float(operation_timeout) or None


# ══════════════════════════════════════════════════════════════════════════════
#  DISCOVERY  ── explicit path, then cwd, then home
# ══════════════════════════════════════════════════════════════════════════════

def find_config(context, explicit: Optional[str] = None) -> Path:
    """
    Locate the config file.
    An explicit path wins (relative paths resolve against context.cwd);
    otherwise the first DEFAULT_CONFIG_PATHS hit in cwd, then in home.
    """
    if explicit:
        path = context.resolve(explicit)
        if not path.is_file():
            raise ConfigError(f"Config file not found: {path}")
        return path

    for base in (context.cwd, context.home):
        for name in DEFAULT_CONFIG_PATHS:
            candidate = Path(base) / name
            if candidate.is_file():
                return candidate

    raise ConfigError(
        "Config file not found.\n"
        f"  - Default config: {', '.join(DEFAULT_CONFIG_PATHS)} (cwd, then home).\n"
        "  - Custom config: pass -c/--config."
    )


def load_config_file(path: Path) -> dict:
    """Parse a .json, .yaml/.yml or .py config file into a dict."""
    path = Path(path)
    if not path.is_absolute():
        raise ConfigError(f"Config file path must be absolute: {path}")
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    ext = path.suffix.lower()
    try:
        if ext == ".json":
            with path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        elif ext in (".yaml", ".yml"):
            import yaml
            with path.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        elif ext == ".py":
            namespace = runpy.run_path(str(path))
            data = namespace.get("CONFIG", namespace.get("config"))
        else:
            raise ConfigError(f"Unsupported config file type: {path}")
    except ConfigError:
        raise
    except Exception as exc:
        raise ConfigError(f"Could not read config {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must define a mapping at the top level")
    validate_config(data)
    return data


def validate_config(data: dict):
    """host and username are the only mandatory keys."""
    for key in ("host", "username"):
        value = data.get(key)
        if key == "username" and value is None:
            value = data.get("user")
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f"Config: invalid or missing {key}")
    tasks = data.get("tasks")
    if tasks is not None and not isinstance(tasks, list):
        raise ConfigError("Config: tasks must be a list")


# ══════════════════════════════════════════════════════════════════════════════
#  TRANSFORM  ── raw dict → DeployConfig
# ══════════════════════════════════════════════════════════════════════════════

def normalize_keys(raw: dict) -> dict:
    return {KEY_ALIASES.get(k, k): v for k, v in raw.items()}


def _build_task(values: dict, index: int):
    from .models import TaskSpec

    missing = [k for k in ("local_path", "remote_dir") if not values.get(k)]
    if missing:
        label = values.get("name") or f"#{index}"
        raise ConfigError(f"Config: task {label} is missing {', '.join(missing)}")
    return TaskSpec(
        local_path=str(values["local_path"]),
        remote_dir=str(values["remote_dir"]),
        name=values.get("name"),
        disabled=bool(values.get("disabled", False)),
        backup_dir=values.get("backup_dir"),
        auto_backup=bool(values.get("auto_backup", True)),
        auto_clean=bool(values.get("auto_clean", False)),
        remote_commands=values.get("remote_commands") or (),
        on_completed=values.get("on_completed"),
    )


def to_deploy_config(data: dict):
    """
    Root-level task options act as defaults for every entry in `tasks`.
    Without `tasks`, a root that names local_path + remote_dir is a single task.
    """
    from .models import DeployConfig

    data = normalize_keys(data)
    defaults = {k: v for k, v in data.items() if k in TASK_KEYS and k != "name"}

    tasks = []
    raw_tasks = data.get("tasks") or []
    for index, raw in enumerate(raw_tasks, 1):
        if not isinstance(raw, dict):
            raise ConfigError(f"Config: task #{index} must be a mapping")
        tasks.append(_build_task({**defaults, **normalize_keys(raw)}, index))
    if not raw_tasks and defaults.get("local_path") and defaults.get("remote_dir"):
        tasks.append(_build_task(dict(defaults, name=data.get("name")), 1))

    try:
        port = int(data.get("port") or DEFAULT_SSH_PORT)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Config: port must be a number, got {data.get('port')!r}") from exc

    return DeployConfig(
        host=str(data["host"]).strip(),
        username=str(data["username"]).strip(),
        port=port,
        password=data.get("password") or None,
        private_key=data.get("private_key") or None,
        tasks=tasks,
        logger=bool(data.get("logger", False)),
        log_file=data.get("log_file"),
        transfer_concurrency=data.get("transfer_concurrency"),
        operation_timeout=data.get("operation_timeout"),
    )


def read_deploy_config(context, explicit: Optional[str] = None):
    """Find, load and transform the config. Returns (DeployConfig, path)."""
    path = find_config(context, explicit)
    return to_deploy_config(load_config_file(path)), path
