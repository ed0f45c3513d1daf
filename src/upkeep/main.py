"""CLI entrypoint for upkeep."""

from pathlib import Path

import rich_click as click

from upkeep import __version__
from upkeep.controllers import (
    DEFAULT_FALLBACK_PATH,
    CommandResult,
    GitCommand,
    GlobalOptions,
    LinkCommand,
    ListCommand,
    RunCommand,
    UpkeepCliController,
)
from upkeep.errors import EXIT_CONFIG_ERROR

click.rich_click.USE_MARKDOWN = True
CONTROLLER = UpkeepCliController()
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="upkeep")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Task file path. Defaults to `$UPKEEP_CONFIG`, then `~/.config/upkeep/upkeep.yaml`.",
)
@click.option(
    "--temp-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory for logs and the fallback repo clone.",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Console log level.",
)
@click.pass_context
def upkeep(
    ctx: click.Context,
    config_path: Path | None,
    temp_dir: Path | None,
    log_level: str | None,
) -> None:
    """Keep a machine up to date: bootstrap, link dotfiles, sync repos, run updates.

    Without a command, `run` is executed with defaults.
    """

    ctx.obj = GlobalOptions(config_path=config_path, temp_dir=temp_dir, log_level=log_level)
    if ctx.invoked_subcommand is None:
        _finish(ctx, CONTROLLER.run(RunCommand(options=ctx.obj), on_line=click.echo))


@upkeep.command("run")
@click.option(
    "--tasks",
    "task_names",
    multiple=True,
    help="Only run these tasks (comma-separated, can be repeated).",
)
@click.option(
    "--exclude",
    "exclude_names",
    multiple=True,
    help="Skip these tasks (comma-separated, can be repeated).",
)
@click.option("--bootstrap", "bootstrap_only", is_flag=True, help="Run only bootstrap tasks.")
@click.option("--keep-going", is_flag=True, help="Continue after a failed bootstrap task.")
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum number of main tasks running at once.",
)
@click.option(
    "--fallback-url",
    default=None,
    help="Repo to fetch the task file from when it does not exist locally (`owner/repo` ok).",
)
@click.option(
    "--fallback-path",
    type=click.Path(path_type=Path),
    default=DEFAULT_FALLBACK_PATH,
    show_default=True,
    help="Task file path inside the fallback repo.",
)
@click.pass_context
def run(  # noqa: PLR0913
    ctx: click.Context,
    task_names: tuple[str, ...],
    exclude_names: tuple[str, ...],
    bootstrap_only: bool,
    keep_going: bool,
    concurrency: int | None,
    fallback_url: str | None,
    fallback_path: Path,
) -> None:
    """Run bootstrap tasks in order, then all main tasks in parallel."""

    _finish(
        ctx,
        CONTROLLER.run(
            RunCommand(
                options=ctx.obj,
                tasks=_split_names(task_names),
                exclude=_split_names(exclude_names),
                bootstrap_only=bootstrap_only,
                keep_going=keep_going,
                concurrency=concurrency,
                fallback_url=fallback_url,
                fallback_path=fallback_path,
            ),
            on_line=click.echo,
        ),
    )


@upkeep.command("link")
@click.option(
    "--from",
    "from_dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Source directory to mirror as symlinks.",
)
@click.option(
    "--to",
    "to_dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Destination directory.",
)
@click.option(
    "--backup",
    "backup_dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Backup root for displaced files. Defaults to `~/backup`.",
)
@click.pass_context
def link(
    ctx: click.Context,
    from_dir: Path | None,
    to_dir: Path | None,
    backup_dir: Path | None,
) -> None:
    """Link an ad-hoc directory pair, or every link task from the task file."""

    _finish(
        ctx,
        CONTROLLER.link(
            LinkCommand(
                options=ctx.obj,
                from_dir=from_dir,
                to_dir=to_dir,
                backup_dir=backup_dir,
            ),
            on_line=click.echo,
        ),
    )


@upkeep.command("list")
@click.option(
    "--tasks",
    "task_names",
    multiple=True,
    help="Only list these tasks (comma-separated, can be repeated).",
)
@click.pass_context
def list_tasks(ctx: click.Context, task_names: tuple[str, ...]) -> None:
    """List configured tasks without running them."""

    _finish(
        ctx,
        CONTROLLER.list_tasks(ListCommand(options=ctx.obj, tasks=_split_names(task_names))),
    )


@upkeep.command("git")
@click.option("--git-url", required=True, help="Remote URL or `owner/repo` shorthand.")
@click.option(
    "--git-path",
    required=True,
    type=click.Path(path_type=Path),
    help="Local checkout path.",
)
@click.option("--branch", default=None, help="Branch to check out and update.")
@click.option("--remote", default="origin", show_default=True, help="Remote name.")
@click.option("--prune", is_flag=True, help="Delete local branches merged upstream.")
@click.pass_context
def git(  # noqa: PLR0913
    ctx: click.Context,
    git_url: str,
    git_path: Path,
    branch: str | None,
    remote: str,
    prune: bool,
) -> None:
    """Clone or update one repository outside the task file."""

    _finish(
        ctx,
        CONTROLLER.git(
            GitCommand(
                git_url=git_url,
                git_path=git_path,
                options=ctx.obj,
                branch=branch,
                remote=remote,
                prune=prune,
            ),
            on_line=click.echo,
        ),
    )


def _split_names(values: tuple[str, ...]) -> tuple[str, ...]:
    return tuple(name.strip() for value in values for name in value.split(",") if name.strip())


def _finish(ctx: click.Context, result: CommandResult) -> None:
    _emit_lines(result.lines, err=result.exit_code == EXIT_CONFIG_ERROR)
    ctx.exit(result.exit_code)


def _emit_lines(lines: list[str], *, err: bool = False) -> None:
    for line in lines:
        click.echo(line, err=err)


if __name__ == "__main__":  # pragma: no cover
    upkeep()
