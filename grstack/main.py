"""CLI entry point for grstack."""

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

import typer

from grstack import gerrit_ops, git_ops, navigation, workflow_engine
from grstack.config import load_settings
from grstack.exceptions import GrstackError
from grstack.gerrit_ops import Gerrit
from grstack.log import configure_logging
from grstack.models import ChangePatchset
from grstack.workflow_engine import RestackResult

app = typer.Typer(
    name="grstack",
    help="Manage stacks of dependent Gerrit changes: restack, push and navigate.",
    no_args_is_help=True,
)

restack_app = typer.Typer(
    help="Restack changes onto their parents' latest patchsets.",
)
app.add_typer(restack_app, name="restack")


@contextmanager
def exit_on_error() -> Iterator[None]:
    """Report grstack errors as `Error: ...` and exit with status 1."""
    try:
        yield
    except GrstackError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def get_git_dir_or_exit() -> Path:
    """Get the git directory, or exit with error if not in a git repo."""
    with exit_on_error():
        return git_ops.get_git_dir()


def open_gerrit_or_exit() -> Gerrit:
    """Open the Gerrit client for this repository, or exit with error."""
    with exit_on_error():
        return gerrit_ops.open_gerrit(load_settings())


def report_restack(result: RestackResult) -> None:
    if result.success:
        if result.summary:
            typer.echo("Restacked changes:")
            typer.echo(result.summary, nl=False)
        typer.echo(result.message)
    else:
        typer.echo(f"Conflict while restacking change {result.conflict_change}.", err=True)
        typer.echo(result.message)
        raise typer.Exit(1)


@app.callback()
def main_callback(
    log: Optional[str] = typer.Option(
        None,
        "--log",
        help="Log level (debug, info, warning, error). Defaults to $GRSTACK_LOG or info.",
    ),
) -> None:
    if log is None:
        with exit_on_error():
            log = load_settings().log
    configure_logging(log)


@restack_app.callback(invoke_without_command=True)
def restack(ctx: typer.Context) -> None:
    """Restack the current stack of changes."""
    if ctx.invoked_subcommand is not None:
        return

    git_dir = get_git_dir_or_exit()
    with open_gerrit_or_exit() as gerrit, exit_on_error():
        result = workflow_engine.run_restack(git_dir, gerrit)
    report_restack(result)


@restack_app.command(name="continue")
def restack_continue(
    in_progress_commit: Optional[str] = typer.Option(
        None,
        "--in-progress-commit",
        help="Commit to use as the result of the conflicted step, instead of HEAD",
    ),
    restart_in_progress: bool = typer.Option(
        False, "--restart-in-progress", help="Perform the conflicted step again from scratch"
    ),
) -> None:
    """Continue a restack after resolving conflicts."""
    git_dir = get_git_dir_or_exit()
    with open_gerrit_or_exit() as gerrit, exit_on_error():
        result = workflow_engine.run_continue(
            git_dir,
            gerrit,
            in_progress_commit=in_progress_commit,
            restart_in_progress=restart_in_progress,
        )
    report_restack(result)


@restack_app.command()
def abort() -> None:
    """Abort the current restack."""
    git_dir = get_git_dir_or_exit()
    with exit_on_error():
        workflow_engine.run_abort(git_dir)
    typer.echo("Restack aborted.")


@restack_app.command(name="push")
def restack_push() -> None:
    """Push changes restacked by the last restack."""
    git_dir = get_git_dir_or_exit()
    with open_gerrit_or_exit() as gerrit, exit_on_error():
        result = workflow_engine.run_restack_push(git_dir, gerrit)

    if result.pushed:
        typer.echo(f"Pushed {len(result.pushed)} change(s):")
        for change in result.pushed:
            typer.echo(f"  - {change}")
    if not result.success:
        typer.echo(f"Error: {result.message}", err=True)
        raise typer.Exit(1)
    typer.echo(result.message)


@restack_app.command()
def this() -> None:
    """Rebase HEAD's change onto its parent's current patchset."""
    get_git_dir_or_exit()
    with open_gerrit_or_exit() as gerrit, exit_on_error():
        result = workflow_engine.run_restack_this(gerrit)
    if not result.success:
        typer.echo(result.message, err=True)
        raise typer.Exit(1)
    typer.echo(result.message)


@restack_app.command(name="write-todo", hidden=True)
def write_todo(
    git_rebase_todo: Path = typer.Argument(..., help="Path of the git-rebase-todo file"),
    change: int = typer.Option(..., "--change", help="Change whose commits to keep"),
) -> None:
    """Rewrite a git-rebase-todo to keep only one change's commits."""
    with open_gerrit_or_exit() as gerrit, exit_on_error():
        workflow_engine.write_rebase_todo(gerrit, git_rebase_todo, change)


@app.command()
def push(
    branch: Optional[str] = typer.Option(
        None, "--branch", "-b", help="Commit to push (defaults to HEAD)"
    ),
    target: Optional[str] = typer.Argument(
        None, help="Branch to push for review to (defaults to the remote's default branch)"
    ),
    restack: bool = typer.Option(
        False, "--restack", help="Restack the changes that depend on the pushed change"
    ),
) -> None:
    """Push a commit for review."""
    git_dir = get_git_dir_or_exit()
    with open_gerrit_or_exit() as gerrit, exit_on_error():
        result = workflow_engine.run_push(
            git_dir, gerrit, branch=branch, target=target, restack=restack
        )
    if result is not None:
        report_restack(result)


@app.command()
def checkout(
    number: int = typer.Argument(..., help="Change number"),
    patchset: Optional[int] = typer.Option(
        None, "--patchset", "-p", help="Patchset (defaults to the current patchset)"
    ),
) -> None:
    """Check out a change."""
    with open_gerrit_or_exit() as gerrit, exit_on_error():
        if patchset is None:
            target = gerrit.get_change(number).patchset()
        else:
            target = ChangePatchset(change=number, patchset=patchset)
        commit = gerrit.checkout_cl(target)
    typer.echo(f"Checked out {target} at {commit[:8]}.")


@app.command()
def fetch(number: int = typer.Argument(..., help="Change number")) -> None:
    """Fetch a change's current patchset and print its commit hash."""
    with open_gerrit_or_exit() as gerrit, exit_on_error():
        commit = gerrit.fetch_current(number)
    typer.echo(commit)


@app.command()
def up() -> None:
    """Check out the change that depends on this one."""
    with open_gerrit_or_exit() as gerrit, exit_on_error():
        change = navigation.up(gerrit)
    typer.echo(f"Checked out {change}.")


@app.command()
def down() -> None:
    """Check out the change this one depends on."""
    with open_gerrit_or_exit() as gerrit, exit_on_error():
        change = navigation.down(gerrit)
    typer.echo(f"Checked out {change}.")


@app.command()
def top() -> None:
    """Check out the last change of the stack."""
    with open_gerrit_or_exit() as gerrit, exit_on_error():
        change = navigation.top(gerrit)
    typer.echo(f"Checked out {change}.")


@app.command(name="show-chain")
def show_chain(
    query: Optional[str] = typer.Argument(None, help="Change to show (defaults to HEAD's change)"),
) -> None:
    """Display the chain of changes related to a change."""
    with open_gerrit_or_exit() as gerrit, exit_on_error():
        tree = navigation.show_chain(gerrit, query)
    typer.echo(tree, nl=False)


@app.command()
def query(
    query: Optional[str] = typer.Argument(None, help="Gerrit search query"),
    mine: bool = typer.Option(False, "--mine", help="Only show your open changes"),
    needs_review: bool = typer.Option(
        False, "--needs-review", help="Only show open changes you have not reviewed"
    ),
) -> None:
    """Search for changes."""
    search = gerrit_ops.build_query(query, mine=mine, needs_review=needs_review)
    with open_gerrit_or_exit() as gerrit, exit_on_error():
        result = gerrit.query(search)
    table = gerrit_ops.format_query_results(result.changes)
    if table:
        typer.echo(table)
    else:
        typer.echo("No changes found.")


@app.command(context_settings={"allow_extra_args": True, "ignore_unknown_options": True})
def cli(args: Optional[list[str]] = typer.Argument(None, help="Arguments for `gerrit`")) -> None:
    """Run a `gerrit` command on the server over ssh."""
    with open_gerrit_or_exit() as gerrit, exit_on_error():
        result = gerrit.run_gerrit(*(args or []), check=False, capture=False)
    if result.returncode != 0:
        raise typer.Exit(result.returncode)


@app.command()
def api(
    endpoint: str = typer.Argument(..., help="REST API endpoint, e.g. changes/123"),
    method: str = typer.Option("GET", "-X", "--method", help="HTTP method"),
) -> None:
    """Make a request to the Gerrit REST API and print the response."""
    with open_gerrit_or_exit() as gerrit, exit_on_error():
        body = gerrit.http_request(method, endpoint)
    typer.echo(body)


@app.command()
def view(
    query: Optional[str] = typer.Argument(None, help="Change to open (defaults to HEAD's change)"),
) -> None:
    """Open a change in the browser."""
    with open_gerrit_or_exit() as gerrit, exit_on_error():
        if query is None:
            query = git_ops.change_id("HEAD")
        url = gerrit.get_change(query).url
    typer.launch(url)


@app.command(name="clear-cache")
def clear_cache() -> None:
    """Remove every cached Gerrit response."""
    with open_gerrit_or_exit() as gerrit, exit_on_error():
        removed = gerrit.clear_cache()
    typer.echo(f"Removed {removed} cache entries.")


def main():
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
