#!/usr/bin/env python3
"""
deployscript  —  push a local build to a server over SFTP, then run commands
===========================================================================

Subcommands:
  deploy       Run every task from the config file (backup → clean → upload → exec).
  connect      Test the connection to the server.
  backup       Download a remote directory into a timestamped local zip.
  clean        Empty a remote directory.
  upload       Upload a local directory to the server.
  init         Write a template config file.
  view-config  Print the resolved config with secrets masked.

Run 'deployscript <subcommand> --help' for more details.
"""
import argparse
import asyncio
import dataclasses
import getpass
import sys
from pathlib import Path


# ── shared helpers ───────────────────────────────────────────────────────────

def _context():
    from deployscript.models import WorkingContext
    return WorkingContext.from_environment()


def _load(args, context):
    from deployscript import config as _cfg
    from deployscript.utils.logging import log

    deploy_config, path = _cfg.read_deploy_config(context, getattr(args, "config", None))
    log(f"[config] Using {path}")
    return deploy_config


def _prompt_password(spec):
    """Ask for the password when neither a password nor a key was supplied."""
    if spec.has_secret:
        return spec
    print("    Server Account    ")
    print(f" USERNAME : {spec.username}")
    password = getpass.getpass(" PASSWORD : ")
    return dataclasses.replace(spec, password=password)


def _pick_task(deploy_config, name):
    from deployscript.errors import ConfigError

    candidates = [t for t in deploy_config.tasks if not t.disabled]
    if name:
        candidates = [t for t in deploy_config.tasks if t.name == name]
        if not candidates:
            raise ConfigError(f"no task named {name!r} in config")
    return candidates[0] if candidates else None


async def _with_session(spec, step):
    from deployscript.core.session import open_session

    session = await open_session(spec)
    try:
        return await step(session)
    finally:
        await session.close()


# ── deploy ───────────────────────────────────────────────────────────────────

def cmd_deploy(args):
    """Run every enabled task from the config."""
    from deployscript.core.orchestrator import deploy
    from deployscript.utils.logging import log, warn

    context = _context()
    deploy_config = _load(args, context)
    if any(not t.disabled for t in deploy_config.tasks):
        spec = _prompt_password(deploy_config.connection(context))
        deploy_config = dataclasses.replace(deploy_config, password=spec.password)

    report = asyncio.run(deploy(deploy_config, context=context))
    if report.skipped:
        warn(f"{len(report.skipped)} task(s) skipped by the environment check")
    failed = [r for r in report.results
              if r.commands_error is not None or r.callback_error is not None]
    for r in failed:
        stage = "remote commands" if r.commands_error is not None else "callback"
        warn(f"{r.task.label}: {stage} failed")
    if failed:
        log(f"Deploy finished with errors in {len(failed)} task(s)")
    else:
        log("🎉 Deploy finished")


# ── connect ──────────────────────────────────────────────────────────────────

def cmd_connect(args):
    """Open a session and close it again."""
    from deployscript import config as _cfg
    from deployscript.errors import ConfigError
    from deployscript.models import ConnectionSpec

    context = _context()
    base = {}
    try:
        deploy_config = _load(args, context)
        base = dict(host=deploy_config.host, port=deploy_config.port,
                    username=deploy_config.username, password=deploy_config.password,
                    private_key=deploy_config.private_key)
    except ConfigError:
        if args.config or not (args.host and args.username):
            raise

    overrides = dict(host=args.host, port=args.port, username=args.username,
                     password=args.password, private_key=args.private_key)
    merged = {**base, **{k: v for k, v in overrides.items() if v is not None}}
    _cfg.validate_config(merged)
    if merged.get("private_key"):
        merged["private_key"] = str(context.resolve(merged["private_key"]))
    spec = _prompt_password(ConnectionSpec(
        host=merged["host"], port=int(merged.get("port") or _cfg.DEFAULT_SSH_PORT),
        username=merged["username"], password=merged.get("password"),
        private_key=merged.get("private_key"),
    ))

    async def _noop(session):
        return session.connected

    asyncio.run(_with_session(spec, _noop))


# ── backup / clean / upload ──────────────────────────────────────────────────

def cmd_backup(args):
    """Back up one remote directory."""
    from deployscript import config as _cfg
    from deployscript.errors import ConfigError
    from deployscript.operations.backup import backup

    context = _context()
    deploy_config = _load(args, context)
    task = _pick_task(deploy_config, args.task)
    source = args.source or (task.remote_dir if task else None)
    if not source:
        raise ConfigError("backup: no source directory (use -s or configure a task)")
    if args.dest:
        dest = context.resolve(args.dest)
    elif task and task.backup_dir:
        dest = context.resolve(task.backup_dir)
    else:
        dest = context.resolve(_cfg.DEFAULT_BACKUP_DIR)

    spec = _prompt_password(deploy_config.connection(context))
    artifact = asyncio.run(_with_session(spec, lambda s: backup(s, source, dest)))
    print(f"Created {artifact.archive}")


def cmd_clean(args):
    """Empty one remote directory."""
    from deployscript.errors import ConfigError
    from deployscript.operations.clean import clean

    context = _context()
    deploy_config = _load(args, context)
    task = _pick_task(deploy_config, args.task)
    remote_dir = args.dir or (task.remote_dir if task else None)
    if not remote_dir:
        raise ConfigError("clean: no remote directory (use -d or configure a task)")

    spec = _prompt_password(deploy_config.connection(context))
    asyncio.run(_with_session(spec, lambda s: clean(s, remote_dir)))


def cmd_upload(args):
    """Upload one local path into a remote directory."""
    from deployscript.errors import ConfigError
    from deployscript.operations.transfer import upload

    context = _context()
    deploy_config = _load(args, context)
    task = _pick_task(deploy_config, args.task)
    remote_dir = args.dir or (task.remote_dir if task else None)
    target = args.target or (task.local_path if task else None)
    if not (remote_dir and target):
        raise ConfigError("upload: need both -t TARGET and -d DIR (or a configured task)")

    spec = _prompt_password(deploy_config.connection(context))
    local = context.resolve(target)
    asyncio.run(_with_session(spec, lambda s: upload(s, local, remote_dir)))


# ── init ─────────────────────────────────────────────────────────────────────

YAML_TEMPLATE = """\
# deploy.config.yaml: deployscript configuration
#
# Root-level task options (backup_dir, auto_backup, auto_clean, remote_commands)
# are defaults for every entry in `tasks`.
host: 'example.com'
port: 22
username: 'root'
# password: 'secret'           # omit both password and private_key to be prompted
# private_key: '~/.ssh/id_rsa'
auto_backup: true
auto_clean: false
logger: false
tasks:
  - name: 'web'
    local_path: './dist'
    remote_dir: '/var/www/app'
    # backup_dir: './backups'
    remote_commands:
      - 'echo deployed'
"""

JSON_TEMPLATE = """\
{
  "host": "example.com",
  "port": 22,
  "username": "root",
  "auto_backup": true,
  "auto_clean": false,
  "logger": false,
  "tasks": [
    {
      "name": "web",
      "local_path": "./dist",
      "remote_dir": "/var/www/app",
      "remote_commands": ["echo deployed"]
    }
  ]
}
"""

PYTHON_TEMPLATE = """\
# deploy.config.py: deployscript configuration
#
# CONFIG is read as-is; on_completed may be a plain or async function that
# receives the open RemoteSession.


async def restart(session):
    await session.execute(["echo restarted"])


CONFIG = {
    "host": "example.com",
    "port": 22,
    "username": "root",
    "auto_backup": True,
    "auto_clean": False,
    "tasks": [
        {
            "name": "web",
            "local_path": "./dist",
            "remote_dir": "/var/www/app",
            "remote_commands": ["echo deployed"],
            "on_completed": restart,
        },
    ],
}
"""

TEMPLATES = {
    "yaml": ("deploy.config.yaml", YAML_TEMPLATE),
    "json": ("deploy.config.json", JSON_TEMPLATE),
    "python": ("deploy.config.py", PYTHON_TEMPLATE),
}


def cmd_init(args):
    """Create a deploy.config.* file in the current (or home) directory."""
    from deployscript import config as _cfg

    context = _context()
    base = context.home if args.global_ else context.cwd
    existing = [name for name in _cfg.DEFAULT_CONFIG_PATHS if (Path(base) / name).exists()]
    if existing and not args.force:
        print(f"error: {existing[0]} already exists in {base}", file=sys.stderr)
        print("Use --force to overwrite.", file=sys.stderr)
        sys.exit(1)

    filename, content = TEMPLATES[args.type]
    target = Path(base) / filename
    target.write_text(content, encoding="utf-8")
    print(f"Created {target}")


# ── view-config ──────────────────────────────────────────────────────────────

SECRET = "***(secret)"


def _displayable(value):
    if callable(value):
        return f"<function {getattr(value, '__name__', 'callback')}>"
    if isinstance(value, dict):
        return {k: _displayable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_displayable(v) for v in value]
    return value


def masked_config(data: dict) -> dict:
    """Copy of a raw config with credentials hidden."""
    from deployscript import config as _cfg

    shown = _cfg.normalize_keys(dict(data))
    for key in ("username", "password"):
        if key in shown:
            shown[key] = SECRET
    return _displayable(shown)


def cmd_view_config(args):
    """Print where the config came from and what it contains."""
    import yaml
    from deployscript import config as _cfg

    context = _context()
    path = _cfg.find_config(context, args.config)
    data = _cfg.load_config_file(path)
    output = {"path": path.as_posix(), "config": masked_config(data)}
    print(yaml.safe_dump(output, sort_keys=False, allow_unicode=True), end="")


# ── main ─────────────────────────────────────────────────────────────────────

def _add_config_arg(p):
    p.add_argument("-c", "--config", metavar="PATH",
                   help="Config file (default: deploy.config.* in cwd, then home)")
    p.add_argument("-v", "--verbose", action="store_true", help="Show every file transferred")


def build_parser():
    parser = argparse.ArgumentParser(
        prog="deployscript",
        description="Deploy a local build to a server over SFTP",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    deploy_p = subparsers.add_parser("deploy", help="Run every task from the config file")
    _add_config_arg(deploy_p)

    connect_p = subparsers.add_parser("connect", help="Test the connection to the server")
    _add_config_arg(connect_p)
    connect_p.add_argument("-H", "--host", help="Server address")
    connect_p.add_argument("-p", "--port", type=int, metavar="N", help="Server port (default: 22)")
    connect_p.add_argument("-u", "--username", help="SSH username")
    connect_p.add_argument("-w", "--password", help="SSH password")
    connect_p.add_argument("-k", "--private-key", dest="private_key", metavar="PATH",
                           help="SSH private key path")

    backup_p = subparsers.add_parser("backup", help="Back up a remote directory to a local zip")
    _add_config_arg(backup_p)
    backup_p.add_argument("-s", "--source", metavar="DIR", help="Remote source directory")
    backup_p.add_argument("-d", "--dest", metavar="DIR", help="Local backup directory")
    backup_p.add_argument("--task", metavar="NAME", help="Take defaults from this task")

    clean_p = subparsers.add_parser("clean", help="Empty a remote directory")
    _add_config_arg(clean_p)
    clean_p.add_argument("-d", "--dir", metavar="DIR", help="Remote directory")
    clean_p.add_argument("--task", metavar="NAME", help="Take defaults from this task")

    upload_p = subparsers.add_parser("upload", help="Upload a local path to the server")
    _add_config_arg(upload_p)
    upload_p.add_argument("-d", "--dir", metavar="DIR", help="Remote directory")
    upload_p.add_argument("-t", "--target", metavar="PATH", help="Local path to upload")
    upload_p.add_argument("--task", metavar="NAME", help="Take defaults from this task")

    init_p = subparsers.add_parser("init", aliases=["gen"], help="Write a template config file")
    init_p.add_argument("-t", "--type", choices=sorted(TEMPLATES), default="yaml",
                        help="Config format (default: yaml)")
    init_p.add_argument("-g", "--global", dest="global_", action="store_true",
                        help="Write to the home directory instead of cwd")
    init_p.add_argument("--force", action="store_true", help="Overwrite an existing config")

    view_p = subparsers.add_parser("view-config", help="Show the resolved config")
    view_p.add_argument("-c", "--config", metavar="PATH", help="Config file")

    return parser


COMMANDS = {
    "deploy": cmd_deploy,
    "connect": cmd_connect,
    "backup": cmd_backup,
    "clean": cmd_clean,
    "upload": cmd_upload,
    "init": cmd_init,
    "gen": cmd_init,
    "view-config": cmd_view_config,
}


def main(argv=None):
    """CLI entry point for deployscript"""
    from deployscript.errors import DeployError
    from deployscript.utils.logging import error, set_verbose

    parser = build_parser()
    args = parser.parse_args(argv)
    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        sys.exit(1)

    set_verbose(getattr(args, "verbose", False))
    try:
        handler(args)
    except KeyboardInterrupt:
        print()
        error("Interrupted by user.")
        sys.exit(1)
    except (DeployError, OSError) as exc:
        error(f"{args.command} failed: {exc}")
        sys.exit(1)
    sys.exit(0)


if __name__ == "__main__":
    main()
