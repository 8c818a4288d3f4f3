"""Git operations wrapper for grstack.

All git commands are executed via subprocess, capturing output for error handling.
"""

from __future__ import annotations

import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import structlog

from grstack.exceptions import (
    ChangeIdNotFoundError,
    DirtyWorkdirError,
    GitError,
    NotAGitRepoError,
)
from grstack.models import ChangeId, CommitHash

logger = structlog.get_logger(__name__)

_CHANGE_ID_RE = re.compile(r"^Change-Id:\s*(I[0-9a-f]{40})\s*$", re.MULTILINE)


@dataclass
class GitResult:
    """Result of a git command execution."""

    stdout: str
    stderr: str
    returncode: int


def run_git(
    *args: str,
    check: bool = True,
    cwd: Optional[Path] = None,
    input: Optional[str] = None,
    env: Optional[dict[str, str]] = None,
) -> GitResult:
    """Run a git command and return the result.

    Args:
        *args: Git command arguments (e.g., "status", "--porcelain").
        check: If True, raise GitError on non-zero exit code.
        cwd: Working directory for the command.
        input: Text to send to the command's stdin.
        env: Extra environment variables for the command.

    Returns:
        GitResult with stdout, stderr, and returncode.

    Raises:
        GitError: If check=True and command fails.
    """
    cmd = ["git", *args]

    # Set environment to prevent git from opening an editor
    full_env = os.environ.copy()
    full_env["GIT_EDITOR"] = "true"
    if env:
        full_env.update(env)

    logger.debug("Running git", args=list(args))
    result = subprocess.run(
        cmd,
        capture_output=True,
        text=True,
        cwd=cwd,
        env=full_env,
        input=input,
    )

    git_result = GitResult(
        stdout=result.stdout,
        stderr=result.stderr,
        returncode=result.returncode,
    )

    if check and result.returncode != 0:
        error_msg = (
            result.stderr.strip() or result.stdout.strip() or f"Git command failed: {' '.join(cmd)}"
        )
        raise GitError(error_msg, returncode=result.returncode, stderr=result.stderr)

    return git_result


def get_git_dir() -> Path:
    """Get the absolute path of the repository's git directory.

    Returns:
        Path to the git directory (e.g. `<repo>/.git`).

    Raises:
        NotAGitRepoError: If not inside a git repository.
    """
    result = run_git("rev-parse", "--absolute-git-dir", check=False)

    if result.returncode != 0:
        raise NotAGitRepoError()

    return Path(result.stdout.strip())


def rev_parse(ref: str) -> CommitHash:
    """Resolve a ref to a full commit hash."""
    result = run_git("rev-parse", "--verify", f"{ref}^{{commit}}")
    return result.stdout.strip()


def get_head() -> CommitHash:
    """Get the commit hash of HEAD."""
    return rev_parse("HEAD")


def commit_exists(commit: str) -> bool:
    """Check if a commit object exists in the local repository."""
    result = run_git("cat-file", "-e", f"{commit}^{{commit}}", check=False)
    return result.returncode == 0


def is_workdir_clean() -> bool:
    """Check if the working directory is clean (no uncommitted changes).

    Untracked files are ignored; they do not interfere with cherry-picks.

    Returns:
        True if clean, False if there are uncommitted changes.
    """
    result = run_git("status", "--porcelain", "--untracked-files=no")
    return len(result.stdout.strip()) == 0


def require_clean_workdir() -> None:
    """Require the working directory to be clean.

    Raises:
        DirtyWorkdirError: If there are uncommitted changes.
    """
    if not is_workdir_clean():
        raise DirtyWorkdirError()


def parse_change_id(message: str) -> Optional[ChangeId]:
    """Get the last `Change-Id:` trailer of a commit message."""
    matches = _CHANGE_ID_RE.findall(message)
    if not matches:
        return None
    return matches[-1]


def change_id(ref: str = "HEAD") -> ChangeId:
    """Get the Change-Id of a commit.

    Raises:
        ChangeIdNotFoundError: If the commit message has no Change-Id trailer.
    """
    result = run_git("show", "--no-patch", "--format=%B", ref)
    found = parse_change_id(result.stdout)
    if found is None:
        raise ChangeIdNotFoundError(ref)
    return found


def checkout(ref: str) -> GitResult:
    """Check out a ref or commit.

    Raises:
        GitError: If checkout fails.
    """
    return run_git("checkout", "--quiet", ref)


def detach_head() -> GitResult:
    """Detach HEAD at the current commit."""
    return run_git("checkout", "--quiet", "--detach")


def fetch(remote: str, ref: Optional[str] = None) -> GitResult:
    """Fetch from a remote.

    Args:
        remote: Remote name (e.g., 'origin').
        ref: Ref to fetch. If None, the remote's default refspecs are fetched.

    Returns:
        GitResult from the fetch command.
    """
    args = ["fetch", remote]
    if ref is not None:
        args.append(ref)
    return run_git(*args)


def cherry_pick(commit: str, check: bool = False) -> GitResult:
    """Cherry-pick a commit onto HEAD.

    `--ff` fast-forwards when HEAD is already the commit's parent, so a change
    that is already up to date keeps its commit hash.

    Args:
        commit: Commit to cherry-pick.
        check: If True, raise GitError on failure.

    Returns:
        GitResult from the cherry-pick command.
    """
    return run_git("cherry-pick", "--ff", commit, check=check)


def is_cherry_pick_in_progress() -> bool:
    """Check if a cherry-pick is currently stopped on a conflict."""
    result = run_git("rev-parse", "-q", "--verify", "CHERRY_PICK_HEAD", check=False)
    return result.returncode == 0


def cherry_pick_continue(check: bool = False) -> GitResult:
    """Continue a stopped cherry-pick after resolving conflicts.

    Returns:
        GitResult from the cherry-pick --continue command.
    """
    return run_git("cherry-pick", "--continue", check=check)


def cherry_pick_abort() -> GitResult:
    """Abort the current cherry-pick.

    Raises:
        GitError: If there's no cherry-pick to abort.
    """
    return run_git("cherry-pick", "--abort")


def is_rebase_in_progress() -> bool:
    """Check if a rebase is currently in progress.

    Returns:
        True if a rebase is in progress.
    """
    try:
        git_dir = get_git_dir()
    except NotAGitRepoError:
        return False

    # Check for rebase-merge (interactive rebase) or rebase-apply (regular rebase)
    return (git_dir / "rebase-merge").exists() or (git_dir / "rebase-apply").exists()


def rebase_interactive(upstream: str, sequence_editor: str) -> GitResult:
    """Run `git rebase --interactive` with a non-interactive sequence editor.

    Args:
        upstream: The commit to rebase onto.
        sequence_editor: Command that edits the `git-rebase-todo` file.

    Returns:
        GitResult from the rebase command.
    """
    return run_git(
        "rebase",
        "--interactive",
        upstream,
        check=False,
        env={"GIT_SEQUENCE_EDITOR": sequence_editor},
    )


def gerrit_push(remote: str, commit: str, branch: str) -> GitResult:
    """Push a commit to `refs/for/{branch}` for review.

    Raises:
        GitError: If the push fails.
    """
    return run_git("push", remote, f"{commit}:refs/for/{branch}")


def remotes() -> list[str]:
    """Get a list of all git remotes."""
    result = run_git("remote")
    return [line for line in result.stdout.splitlines() if line]


def remote_url(remote: str) -> str:
    """Get the (fetch) URL for a remote."""
    result = run_git("remote", "get-url", remote)
    return result.stdout.strip()


def parse_default_branch(remote: str, symbolic_ref: str) -> Optional[str]:
    """Parse the output of `git symbolic-ref --short refs/remotes/REMOTE/HEAD`.

    Returns:
        The branch name, or None if the ref is not `REMOTE/BRANCH`.
    """
    symbolic_ref = symbolic_ref.strip()
    prefix = f"{remote}/"
    if not symbolic_ref.startswith(prefix) or len(symbolic_ref) == len(prefix):
        return None
    return symbolic_ref[len(prefix):]


def default_branch(remote: str) -> str:
    """Get the default branch of a remote.

    Raises:
        GitError: If the remote's HEAD is unknown or cannot be parsed.
    """
    result = run_git("symbolic-ref", "--short", f"refs/remotes/{remote}/HEAD")
    branch = parse_default_branch(remote, result.stdout)
    if branch is None:
        raise GitError(
            f'Failed to parse branch; expected "{remote}/BRANCH", got {result.stdout.strip()!r}'
        )
    return branch


def credential_fill(host: str, protocol: str = "https") -> tuple[str, str]:
    """Ask git's credential helpers for a username and password.

    Returns:
        (username, password)

    Raises:
        GitError: If no credentials are available.
    """
    result = run_git(
        "credential",
        "fill",
        input=f"protocol={protocol}\nhost={host}\n\n",
        env={"GIT_TERMINAL_PROMPT": "0"},
    )
    fields = {}
    for line in result.stdout.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            fields[key] = value

    if "username" not in fields or "password" not in fields:
        raise GitError(f"No credentials for {protocol}://{host} from 'git credential fill'")
    return fields["username"], fields["password"]
