"""lockstep CLI: inspect and maintain the coordination store.

Every command prints JSON on stdout. Errors print ``{"ok": false, "error": ...}``
and exit with status 1.
"""

from __future__ import annotations

import contextlib
import json
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import click

from lockstep import __version__
from lockstep.config import Config, load_config
from lockstep.errors import CoordinationError
from lockstep.models import (
    VALID_DISCUSSION_CATEGORIES,
    VALID_DISCUSSION_STATUSES,
    VALID_LOCK_STATUSES,
    VALID_TASK_STATUSES,
)
from lockstep.store import (
    DEFAULT_ARCHIVE_AFTER_DAYS,
    DEFAULT_DELETE_AFTER_DAYS,
    Store,
    create_store,
)

log = logging.getLogger(__name__)


class _JsonAwareGroup(click.Group):
    """Group that reports usage and store errors as a JSON object on stdout.

    Unknown commands get close-match suggestions.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except click.ClickException as e:
            click.echo(json.dumps({"ok": False, "error": e.format_message()}))
            code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


def _emit(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


@contextlib.contextmanager
def _open_store(config: Config) -> Iterator[Store]:
    """Open the configured store; store errors become JSON CLI errors."""
    try:
        store = create_store(config)
    except (CoordinationError, ValueError) as e:
        raise click.ClickException(str(e)) from None
    try:
        yield store
    except (CoordinationError, ValueError) as e:
        log.debug("Command failed", exc_info=True)
        raise click.ClickException(str(e)) from None
    finally:
        store.close()


def _project_option(help_text: str = "Project root (default: first configured root or cwd)."):
    return click.option("--project", "-p", "project", default=None, help=help_text)


def _project_root(config: Config, project: str | None) -> str:
    return str(Path(project).expanduser().resolve()) if project else str(config.default_root)


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to stderr.")
@click.option(
    "--storage",
    type=click.Choice(["json", "sqlite"]),
    default=None,
    help="Storage backend (default: LOCKSTEP_STORAGE, config file, then sqlite).",
)
@click.option("--data-dir", type=click.Path(file_okay=False), default=None, help="Data directory.")
@click.option("--log-dir", type=click.Path(file_okay=False), default=None, help="Event log directory.")
@click.pass_context
def main(ctx, verbose: bool, storage: str | None, data_dir: str | None, log_dir: str | None):
    """Coordinate planner and implementer agents through a shared store.

    \b
    Quick start:
      lockstep status                     Tasks, locks and notes at a glance
      lockstep task summary               Task counts per status
      lockstep discussion cleanup         Archive and purge old discussions
      lockstep worktree list              Implementer worktrees in this repo
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    try:
        ctx.obj = load_config(storage=storage, data_dir=data_dir, log_dir=log_dir)
    except ValueError as e:
        raise click.ClickException(str(e)) from None


@main.command()
@click.pass_obj
def status(config: Config):
    """Show all tasks, locks and notes."""
    with _open_store(config) as store:
        snapshot = store.status()
        summary = store.task_summary()
    _emit({"storage": config.storage, "summary": summary, **snapshot})


# -- task --


@main.group()
def task():
    """Inspect tasks."""


@task.command("list")
@click.option("--status", "-s", type=click.Choice(sorted(VALID_TASK_STATUSES)), default=None)
@click.option("--owner", default=None, help="Only tasks owned by this implementer.")
@click.option("--tag", default=None, help="Only tasks carrying this tag.")
@click.option("--limit", "-n", type=int, default=None, help="Return at most N tasks.")
@click.pass_obj
def task_list(config: Config, status: str | None, owner: str | None, tag: str | None, limit):
    """List tasks in creation order."""
    with _open_store(config) as store:
        tasks = store.list_tasks(status=status, owner=owner, tag=tag, limit=limit)
    _emit(tasks)


@task.command("summary")
@click.pass_obj
def task_summary(config: Config):
    """Count tasks per status."""
    with _open_store(config) as store:
        _emit(store.task_summary())


# -- lock --


@main.group()
def lock():
    """Inspect file locks."""


@lock.command("list")
@click.option("--status", "-s", type=click.Choice(sorted(VALID_LOCK_STATUSES)), default=None)
@click.option("--owner", default=None)
@click.pass_obj
def lock_list(config: Config, status: str | None, owner: str | None):
    """List locks, including resolved history."""
    with _open_store(config) as store:
        _emit(store.list_locks(status=status, owner=owner))


# -- note --


@main.group()
def note():
    """Inspect the shared notes feed."""


@note.command("list")
@click.option("--limit", "-n", type=int, default=None, help="Only the N most recent notes.")
@click.pass_obj
def note_list(config: Config, limit: int | None):
    with _open_store(config) as store:
        _emit(store.list_notes(limit))


# -- discussion --


@main.group()
def discussion():
    """Inspect and maintain discussions (sqlite storage only)."""


@discussion.command("list")
@click.option(
    "--status", "-s", type=click.Choice(sorted(VALID_DISCUSSION_STATUSES)), default=None
)
@click.option(
    "--category", "-c", type=click.Choice(sorted(VALID_DISCUSSION_CATEGORIES)), default=None
)
@_project_option("Only discussions for this project root.")
@click.option("--waiting-on", default=None, help="Only discussions waiting on this agent.")
@click.option("--limit", "-n", type=int, default=None)
@click.pass_obj
def discussion_list(
    config: Config,
    status: str | None,
    category: str | None,
    project: str | None,
    waiting_on: str | None,
    limit: int | None,
):
    """List discussions, most urgent first."""
    project_root = _project_root(config, project) if project else None
    with _open_store(config) as store:
        discussions = store.list_discussions(
            status=status,
            category=category,
            project_root=project_root,
            waiting_on=waiting_on,
            limit=limit,
        )
    _emit(discussions)


@discussion.command("show")
@click.argument("discussion_id")
@click.pass_obj
def discussion_show(config: Config, discussion_id: str):
    """Show a discussion and its thread."""
    with _open_store(config) as store:
        found = store.get_discussion(discussion_id)
    if found is None:
        raise click.ClickException(f"Discussion not found: {discussion_id}")
    record, messages = found
    _emit({"discussion": record, "messages": messages})


@discussion.command("cleanup")
@click.option(
    "--archive-days",
    type=click.FloatRange(min=0),
    default=DEFAULT_ARCHIVE_AFTER_DAYS,
    show_default=True,
    help="Archive discussions resolved more than this many days ago.",
)
@click.option(
    "--delete-days",
    type=click.FloatRange(min=0),
    default=DEFAULT_DELETE_AFTER_DAYS,
    show_default=True,
    help="Delete discussions archived more than this many days ago.",
)
@_project_option("Limit cleanup to this project root (default: all projects).")
@click.pass_obj
def discussion_cleanup(
    config: Config, archive_days: float, delete_days: float, project: str | None
):
    """Archive old resolved discussions, then delete old archived ones."""
    project_root = _project_root(config, project) if project else None
    with _open_store(config) as store:
        archived = store.archive_old_discussions(
            older_than_days=archive_days, project_root=project_root
        )
        deleted = store.delete_archived_discussions(
            older_than_days=delete_days, project_root=project_root
        )
    _emit({"archived": archived, "deleted": deleted})


# -- implementer --


@main.group()
def implementer():
    """Inspect registered implementers."""


@implementer.command("list")
@_project_option("Only implementers for this project root.")
@click.pass_obj
def implementer_list(config: Config, project: str | None):
    project_root = _project_root(config, project) if project else None
    with _open_store(config) as store:
        _emit(store.list_implementers(project_root))


@implementer.command("reset")
@_project_option()
@click.pass_obj
def implementer_reset(config: Config, project: str | None):
    """Mark every active implementer of the project as stopped."""
    project_root = _project_root(config, project)
    with _open_store(config) as store:
        count = store.reset_implementers(project_root)
    _emit({"project_root": project_root, "reset": count})


# -- session --


@main.group()
def session():
    """Session maintenance."""


@session.command("reset")
@_project_option()
@click.option(
    "--keep-context", is_flag=True, help="Keep the project context (status back to planning)."
)
@click.option("--yes", is_flag=True, help="Confirm clearing all tasks, locks and notes.")
@click.pass_obj
def session_reset(config: Config, project: str | None, keep_context: bool, yes: bool):
    """Clear tasks, locks and notes and stop the project's implementers."""
    if not yes:
        raise click.ClickException("session reset clears all tasks, locks and notes; pass --yes")
    project_root = _project_root(config, project)
    with _open_store(config) as store:
        result = store.reset_session(project_root, keep_project_context=keep_context)
    _emit({"project_root": project_root, **result})


# -- worktree --


@main.group()
def worktree():
    """Inspect implementer worktrees."""


@worktree.command("list")
@click.argument("repo", required=False, type=click.Path(exists=True, file_okay=False))
@click.pass_obj
def worktree_list(config: Config, repo: str | None):
    from lockstep.worktree import list_worktrees

    _emit(list_worktrees(repo or config.default_root))


@worktree.command("status")
@click.argument("path", type=click.Path(exists=True, file_okay=False))
@click.option("--diff", "show_diff", is_flag=True, help="Include a --stat diff against upstream.")
def worktree_status(path: str, show_diff: bool):
    """Ahead/behind counts and uncommitted files of a worktree."""
    from lockstep.worktree import get_worktree_diff, get_worktree_status

    try:
        result: dict[str, Any] = dict(get_worktree_status(path))
    except CoordinationError as e:
        raise click.ClickException(str(e)) from None
    if show_diff:
        result["diff"] = get_worktree_diff(path)
    _emit(result)


@worktree.command("cleanup")
@click.argument("repo", required=False, type=click.Path(exists=True, file_okay=False))
@click.pass_obj
def worktree_cleanup(config: Config, repo: str | None):
    """Remove stale worktree registrations and unused lockstep branches."""
    from lockstep.worktree import cleanup_orphaned_worktrees

    _emit({"removed": cleanup_orphaned_worktrees(repo or config.default_root)})
