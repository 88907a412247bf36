"""
Task orchestration: one shared session, tasks run strictly in list order

Per task: environment check → backup → clean → upload → remote commands →
completion callback. A failed environment check skips the task. Backup, clean
and upload failures end the whole run. A remote command that writes to stderr
is recorded and the run carries on.
"""
from pathlib import Path
from typing import Callable, Optional, Sequence

from .. import config as _cfg
from ..errors import DeployError, RemoteCommandError
from ..models import ConnectionSpec, RunReport, TaskResult, TaskSpec, WorkingContext
from ..operations.backup import backup
from ..operations.clean import clean
from ..operations.transfer import upload
from ..utils.logging import echo, error, log, set_log_file, warn
from ..utils.paths import to_posix
from .session import RemoteSession, open_session


def _mark(ok: bool) -> str:
    return "[✓]" if ok else "[✗]"


def _print_environment(task: TaskSpec, index: int, total: int, local: Path,
                       backup_dir: Path, local_ok: bool, remote_ok: bool):
    echo(f"\n{'─' * 64}")
    echo(f"  Task {index}/{total}: {task.label}")
    echo(f"  Auto backup : {'yes' if task.auto_backup else 'no'}")
    echo(f"  Auto clean  : {'yes' if task.auto_clean else 'no'}")
    echo(f"  Remote dir  : {_mark(remote_ok)} {to_posix(task.remote_dir)}")
    echo(f"  Local path  : {_mark(local_ok)} {local}")
    echo(f"  Backup dir  : [*] {backup_dir}")
    echo(f"{'─' * 64}")


def resolve_backup_dir(task: TaskSpec, context: WorkingContext) -> Path:
    if task.backup_dir:
        return context.resolve(task.backup_dir)
    return context.resolve(_cfg.DEFAULT_BACKUP_DIR)


async def _run_task(session: RemoteSession, task: TaskSpec, result: TaskResult,
                    context: WorkingContext, index: int, total: int):
    result.attempted = True
    local = context.resolve(task.local_path)
    backup_dir = resolve_backup_dir(task, context)

    local_ok = local.exists()
    remote_ok = await session.exists_directory(task.remote_dir)
    _print_environment(task, index, total, local, backup_dir, local_ok, remote_ok)
    if not (local_ok and remote_ok):
        warn(f"[task] {task.label}: environment check failed, skipping")
        return
    result.environment_ready = True

    if task.auto_backup:
        artifact = await backup(session, task.remote_dir, backup_dir)
        result.backup_done = True
        result.archive = artifact.archive

    if task.auto_clean:
        await clean(session, task.remote_dir)
        result.clean_done = True

    await upload(session, local, task.remote_dir)
    result.upload_done = True

    if task.remote_commands:
        log(f"[exec] {' && '.join(task.remote_commands)}")
        try:
            executed = await session.execute(task.remote_commands)
            if executed.stdout.strip():
                echo(executed.stdout.rstrip())
            log("[exec] done ✓")
        except RemoteCommandError as exc:
            result.commands_error = exc
            warn(f"[exec] {task.label}: remote command failed: {exc}")

    if task.on_completed is not None:
        result.callback_ran = True
        try:
            await task.on_completed(session)
            log("[callback] done ✓")
        except Exception as exc:
            result.callback_error = exc
            warn(f"[callback] {task.label}: {exc}")

    log(f"[task] {task.label} deployed ✓")


def _print_summary(report: RunReport):
    failed_cmds = [r for r in report.results if r.commands_error is not None]
    failed_cbs = [r for r in report.results if r.callback_error is not None]
    echo()
    echo(f"{'─' * 64}")
    echo(" SUMMARY")
    echo(f"  Deployed   : {len(report.completed)}")
    echo(f"  Skipped    : {len(report.skipped)}")
    echo(f"  Cmd errors : {len(failed_cmds)}")
    echo(f"  Cb errors  : {len(failed_cbs)}")
    echo(f"{'─' * 64}")


async def run_tasks(connection: ConnectionSpec, tasks: Sequence[TaskSpec], *,
                    context: Optional[WorkingContext] = None,
                    opener: Optional[Callable] = None) -> RunReport:
    """
    Open one session, run every enabled task in order, close the session.
    Errors from backup, clean or upload propagate after the session is closed.
    """
    context = context or WorkingContext.from_environment()
    active = [t for t in tasks if not t.disabled]
    report = RunReport()
    if not active:
        log("[deploy] no tasks to run")
        return report

    session = await (opener or open_session)(connection)
    try:
        for index, task in enumerate(active, 1):
            result = TaskResult(task=task)
            report.results.append(result)
            try:
                await _run_task(session, task, result, context, index, len(active))
            except DeployError as exc:
                error(f"[task] {task.label}: {exc}")
                raise
    finally:
        await session.close()

    _print_summary(report)
    return report


async def deploy(config, *, context: Optional[WorkingContext] = None,
                 opener: Optional[Callable] = None) -> RunReport:
    """Run every task of a loaded DeployConfig."""
    context = context or WorkingContext.from_environment()
    _cfg.apply_tunables(config.transfer_concurrency, config.operation_timeout)
    if config.logger or config.log_file:
        set_log_file(context.resolve(config.log_file or _cfg.DEFAULT_LOG_FILE))
    return await run_tasks(config.connection(context), config.tasks,
                           context=context, opener=opener)
