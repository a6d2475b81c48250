"""
Terminal host for the task timer.

Usage:
    avanti-timer track TASK_ID      # track time on a task until Ctrl-C
    avanti-timer total TASK_ID      # print the task total across all users
    avanti-timer recover            # close a session a crashed run left open

Connection settings come from AVANTI_API_URL / AVANTI_API_TOKEN or the
matching options. Sending SIGUSR1 marks the client hidden (the open
session is flushed), SIGUSR2 marks it visible again.

The crash-recovery breadcrumb holds one session and is shared by every
timer pointed at the same path, so timers running side by side each need
their own --breadcrumbs file (or AVANTI_BREADCRUMB_PATH). Otherwise a new
timer closes the other one's open session as an orphan.
"""
import asyncio
import logging
import signal

import click

from ..utils.datetime_utils import format_hms, get_current_time
from . import settings
from .breadcrumbs import BreadcrumbStore
from .controller import TRACKING, TaskTimerController
from .errors import PersistenceError
from .http_ledger import HttpSessionLedger
from .lifecycle import HIDDEN, VISIBLE, PageLifecycle
from .session_manager import SessionManager


def render(controller):
    line = (
        f"\rtask {controller.task_id} [{controller.state}] "
        f"this session {controller.formatted_elapsed}  "
        f"total {format_hms(controller.live_total_seconds)}"
    )
    click.echo(line, nl=False)


async def _track(ledger, breadcrumbs, task_id):
    lifecycle = PageLifecycle()
    lifecycle.install_exit_hook()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()

    async with SessionManager(ledger, breadcrumbs, lifecycle) as manager:
        user = await ledger.whoami()
        task = await ledger.get_task(task_id)
        if task is None:
            raise click.ClickException(f"Task {task_id} not found")

        click.echo(f"Tracking '{task['title']}' as {user['username']} (Ctrl-C to stop)")
        controller = TaskTimerController(
            manager,
            task_id,
            user["id"],
            task_status=task["status"],
            is_view_active=True,
        )
        controller.add_listener(render)

        loop.add_signal_handler(signal.SIGINT, stop.set)
        loop.add_signal_handler(signal.SIGTERM, stop.set)
        if hasattr(signal, "SIGUSR1"):
            loop.add_signal_handler(signal.SIGUSR1, lambda: loop.create_task(lifecycle.set_visibility(HIDDEN)))
            loop.add_signal_handler(signal.SIGUSR2, lambda: loop.create_task(lifecycle.set_visibility(VISIBLE)))

        await controller.mount()
        if controller.state != TRACKING:
            click.echo(f"\nTask is '{controller.task_status}', time is not being recorded")
        await stop.wait()
        await controller.unmount()
        click.echo(f"\nStopped at {get_current_time():%H:%M}. Task total: {controller.formatted_total}")


async def _total(ledger, task_id):
    click.echo(format_hms(await ledger.total_duration(task_id)))


async def _recover(ledger, breadcrumbs):
    recovered = await SessionManager(ledger, breadcrumbs).close_orphaned_sessions()
    click.echo("Closed orphaned session" if recovered else "No orphaned session")


def _run(ctx, action, *args):
    async def runner():
        ledger = HttpSessionLedger(ctx.obj["api_url"], ctx.obj["token"])
        try:
            await action(ledger, *args)
        finally:
            await ledger.close()

    try:
        asyncio.run(runner())
    except PersistenceError as e:
        raise click.ClickException(f"Ledger unavailable: {e}")


@click.group()
@click.option("--api-url", default=settings.API_URL, show_default=True, help="Ledger service base URL.")
@click.option("--token", default=settings.API_TOKEN, help="Bearer token.")
@click.option(
    "--breadcrumbs",
    default=str(settings.BREADCRUMB_PATH),
    show_default=True,
    help="Crash-recovery file. It is shared by every timer using the same path, so give concurrent timers separate files.",
)
@click.option("--verbose", "-v", is_flag=True, help="Log engine activity.")
@click.pass_context
def main(ctx, api_url, token, breadcrumbs, verbose):
    """Track time spent on avanti tasks."""
    logging.basicConfig(level=logging.INFO if verbose else logging.WARNING)
    ctx.ensure_object(dict)
    ctx.obj.update(api_url=api_url, token=token, breadcrumbs=BreadcrumbStore(breadcrumbs))


@main.command()
@click.argument("task_id", type=int)
@click.pass_context
def track(ctx, task_id):
    """Track time on TASK_ID until interrupted."""
    _run(ctx, _track, ctx.obj["breadcrumbs"], task_id)


@main.command()
@click.argument("task_id", type=int)
@click.pass_context
def total(ctx, task_id):
    """Print the total tracked time of TASK_ID."""
    _run(ctx, _total, task_id)


@main.command()
@click.pass_context
def recover(ctx):
    """Close a session left open by a previous run."""
    _run(ctx, _recover, ctx.obj["breadcrumbs"])


if __name__ == "__main__":
    main()
