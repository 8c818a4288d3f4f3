"""Workflow engine for grstack restack, continue, abort and push operations.

Handles the multi-step logic for cherry-picking a stack of changes onto
their parents' latest patchsets, and for pushing the results back.
"""

from __future__ import annotations

import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Optional

import structlog

from grstack import git_ops, stack_manager
from grstack.exceptions import (
    AmbiguousRootError,
    ChangeIdNotFoundError,
    ChangeNotFoundError,
    GitError,
    NoPendingOperationError,
    NoPushTodoError,
    TodoAlreadyExistsError,
    TodoCorruptError,
)
from grstack.models import ChangeNumber, CommitHash
from grstack.state import (
    BranchTarget,
    InProgress,
    ParentTarget,
    PushTodo,
    RefUpdate,
    RestackBefore,
    RestackTodo,
    Step,
)

if TYPE_CHECKING:
    from grstack.gerrit_ops import Gerrit

logger = structlog.get_logger(__name__)

CONTINUE_MESSAGE = (
    "Fix conflicts and then use 'grstack restack continue' to keep going. "
    "Alternatively, use 'grstack restack abort' to quit the restack."
)


@dataclass
class RestackResult:
    """Result of a restack operation."""

    success: bool
    restacked: list[ChangeNumber] = field(default_factory=list)
    conflict_change: Optional[ChangeNumber] = None
    refs: dict[ChangeNumber, RefUpdate] = field(default_factory=dict)
    push_needed: bool = False
    message: str = ""
    summary: str = ""


@dataclass
class PushResult:
    """Result of pushing restacked changes."""

    success: bool
    pushed: list[ChangeNumber] = field(default_factory=list)
    remaining: list[ChangeNumber] = field(default_factory=list)
    message: str = ""


class _CherryPickConflict(Exception):
    """A step's cherry-pick stopped on a conflict."""

    def __init__(self, old_head: CommitHash) -> None:
        self.old_head = old_head
        super().__init__(f"Cherry-pick of {old_head} stopped on a conflict")


@dataclass
class _RunContext:
    fetched: bool = False
    restacked: list[ChangeNumber] = field(default_factory=list)


def _refs_label(gerrit: Gerrit, refs: dict[ChangeNumber, RefUpdate]):
    def label(change: ChangeNumber) -> list[str]:
        lines = [gerrit.pretty(change)]
        if change in refs:
            lines.append(str(refs[change]))
        return lines

    return label


def _head_change(graph_metadata: dict, head_change_id: Optional[str]) -> Optional[ChangeNumber]:
    if head_change_id is None:
        return None
    for change, metadata in sorted(graph_metadata.items()):
        if metadata.id == head_change_id:
            return change
    return None


def create_todo(git_dir: Path, gerrit: Gerrit, branch: str = "HEAD") -> RestackTodo:
    """Plan a restack of the stack containing `branch`'s tip.

    Steps are queued breadth-first from each root through reverse
    dependencies, so every change is queued after the change it depends on.

    Args:
        git_dir: Absolute path of the repository's git directory.
        gerrit: Gerrit client.
        branch: Ref whose tip commit identifies the change.

    Returns:
        The planned RestackTodo (not yet persisted).

    Raises:
        TodoAlreadyExistsError: If a restack is already in progress.
        ChangeIdNotFoundError: If the tip commit has no Change-Id.
        AmbiguousRootError: If the stack has no root.
    """
    if stack_manager.has_restack_todo(git_dir):
        raise TodoAlreadyExistsError(stack_manager.get_restack_todo_path(git_dir))

    change = gerrit.get_change(git_ops.change_id(branch))
    graph = gerrit.dependency_graph(change.number)

    roots = graph.depends_on_roots()
    if not roots:
        raise AmbiguousRootError(roots)

    steps = []
    for root in sorted(roots):
        for number in graph.walk_from(root):
            if number == root:
                root_change = gerrit.get_change(number)
                onto = BranchTarget(remote=gerrit.remote, branch=root_change.branch)
            else:
                onto = ParentTarget(parent=graph.depends_on(number))
            step = Step(change=number, onto=onto)
            logger.debug("Discovered restack step", step=str(step))
            steps.append(step)

    try:
        head_change_id = git_ops.change_id("HEAD")
    except ChangeIdNotFoundError:
        head_change_id = None

    before = RestackBefore(
        change=_head_change(graph.metadata, head_change_id),
        commit=git_ops.get_head(),
    )
    return RestackTodo(before=before, graph=graph, steps=steps)


def _perform_step(todo: RestackTodo, step: Step, gerrit: Gerrit, context: _RunContext) -> None:
    if isinstance(step.onto, BranchTarget):
        # Root change, cherry-pick on the target branch.
        if not context.fetched:
            git_ops.fetch(step.onto.remote)
            context.fetched = True
        git_ops.checkout(f"{step.onto.remote}/{step.onto.branch}")
        git_ops.detach_head()
        target = step.onto.branch
    else:
        # Cherry-pick on the parent, restacked earlier in this run if it was.
        parent = step.onto.parent
        update = todo.refs.get(parent)
        if update is not None:
            logger.debug("Using updated ref for parent", parent=parent, update=str(update))
            parent_ref = update.new
        else:
            parent_ref = gerrit.fetch_current(parent)
            logger.debug("Using fetched ref for parent", parent=parent, commit=parent_ref[:8])
        git_ops.checkout(parent_ref)
        target = gerrit.pretty(parent)

    old_head = gerrit.fetch_current(step.change)
    logger.info("Restacking change", change=gerrit.pretty(step.change), onto=target)

    result = git_ops.cherry_pick(old_head)
    if result.returncode != 0:
        if git_ops.is_cherry_pick_in_progress():
            raise _CherryPickConflict(old_head)
        raise GitError(
            result.stderr.strip() or f"Failed to cherry-pick {old_head}",
            returncode=result.returncode,
            stderr=result.stderr,
        )

    todo.refs[step.change] = RefUpdate(old=old_head, new=git_ops.get_head())


def _execute(git_dir: Path, gerrit: Gerrit, todo: RestackTodo) -> RestackResult:
    """Run the queued steps of a persisted todo until done or a conflict."""
    context = _RunContext()

    tree = todo.graph.format_tree(_refs_label(gerrit, todo.refs))
    if todo.refs:
        logger.info(f"Continuing to restack changes:\n{tree}")
    else:
        logger.info(f"Restacking changes:\n{tree}")

    while not todo.is_complete:
        step = todo.steps.pop(0)
        try:
            _perform_step(todo, step, gerrit, context)
        except _CherryPickConflict as conflict:
            todo.in_progress = InProgress(step=step, old_head=conflict.old_head)
            stack_manager.save_restack_todo(todo, git_dir)
            return RestackResult(
                success=False,
                restacked=context.restacked,
                conflict_change=step.change,
                refs=dict(todo.refs),
                message=f"Conflict while restacking {step}. {CONTINUE_MESSAGE}",
            )
        except Exception:
            todo.steps.insert(0, step)
            stack_manager.save_restack_todo(todo, git_dir)
            raise

        context.restacked.append(step.change)
        stack_manager.save_restack_todo(todo, git_dir)

    return _finish(git_dir, gerrit, todo, context.restacked)


def _finish(
    git_dir: Path,
    gerrit: Gerrit,
    todo: RestackTodo,
    restacked: list[ChangeNumber],
) -> RestackResult:
    stack_manager.clear_restack_todo(git_dir)

    before = todo.before
    if before.change is not None and before.change in todo.refs:
        git_ops.checkout(todo.refs[before.change].new)
    else:
        git_ops.checkout(before.commit)

    push_todo = PushTodo.from_restack_todo(todo)
    if push_todo.is_empty:
        logger.info("Restack completed; no changes")
        return RestackResult(
            success=True,
            restacked=restacked,
            refs=dict(todo.refs),
            message="Restack completed; no changes, so no push is necessary.",
        )

    stack_manager.save_push_todo(push_todo, git_dir)
    summary = push_todo.graph.format_tree(_refs_label(gerrit, push_todo.refs))
    return RestackResult(
        success=True,
        restacked=restacked,
        refs=dict(todo.refs),
        push_needed=True,
        message=(
            "Restack completed but changes have not been pushed; "
            "run 'grstack restack push' to sync changes with the remote."
        ),
        summary=summary,
    )


def run_restack(git_dir: Path, gerrit: Gerrit, branch: str = "HEAD") -> RestackResult:
    """Restack the stack containing `branch`'s tip.

    Algorithm:
    1. Validate: workdir clean, no restack in progress
    2. Plan one step per change, parents first
    3. Save the todo
    4. For each step:
       a. Check out the target (remote branch or restacked parent)
       b. Cherry-pick the change's current patchset
       c. On conflict: save the in-progress step, return
       d. On success: record the ref update, save
    5. Cleanup: delete the todo, return to the original commit, write the push todo

    Raises:
        DirtyWorkdirError: If the working directory has uncommitted changes.
        TodoAlreadyExistsError: If a restack is already in progress.
    """
    # A stopped restack leaves conflicts behind; report it rather than the dirty tree.
    if stack_manager.has_restack_todo(git_dir):
        raise TodoAlreadyExistsError(stack_manager.get_restack_todo_path(git_dir))
    git_ops.require_clean_workdir()
    todo = create_todo(git_dir, gerrit, branch)
    stack_manager.save_restack_todo(todo, git_dir)
    return _execute(git_dir, gerrit, todo)


def run_continue(
    git_dir: Path,
    gerrit: Gerrit,
    in_progress_commit: Optional[str] = None,
    restart_in_progress: bool = False,
) -> RestackResult:
    """Continue a restack after resolving conflicts.

    Args:
        git_dir: Absolute path of the repository's git directory.
        gerrit: Gerrit client.
        in_progress_commit: Commit to record as the result of the conflicted
            step, when it was resolved outside of `git cherry-pick --continue`.
        restart_in_progress: Throw away the conflicted step's progress and
            perform it again.

    Raises:
        NoPendingOperationError: If no restack is in progress.
    """
    todo = stack_manager.load_restack_todo(git_dir)
    if todo is None:
        raise NoPendingOperationError()

    in_progress = todo.in_progress
    if in_progress is not None:
        step = in_progress.step
        if restart_in_progress:
            logger.info("Restarting restack step", step=str(step))
            if git_ops.is_cherry_pick_in_progress():
                git_ops.cherry_pick_abort()
            todo.steps.insert(0, step)
        else:
            if in_progress_commit is not None:
                new_head = git_ops.rev_parse(in_progress_commit)
            elif git_ops.is_cherry_pick_in_progress():
                logger.info("Continuing to restack", step=str(step))
                result = git_ops.cherry_pick_continue()
                if result.returncode != 0:
                    return RestackResult(
                        success=False,
                        conflict_change=step.change,
                        refs=dict(todo.refs),
                        message=f"Conflicts remain while restacking {step}. {CONTINUE_MESSAGE}",
                    )
                new_head = git_ops.get_head()
            else:
                logger.warning("No cherry-pick in progress; using HEAD", step=str(step))
                new_head = git_ops.get_head()
            todo.refs[step.change] = RefUpdate(old=in_progress.old_head, new=new_head)

        todo.in_progress = None
        stack_manager.save_restack_todo(todo, git_dir)

    result = _execute(git_dir, gerrit, todo)
    if in_progress is not None and not restart_in_progress:
        result.restacked.insert(0, in_progress.step.change)
    return result


def run_abort(git_dir: Path) -> None:
    """Abort the current restack.

    Raises:
        NoPendingOperationError: If no restack is in progress.
    """
    if not stack_manager.has_restack_todo(git_dir):
        raise NoPendingOperationError()

    try:
        todo = stack_manager.load_restack_todo(git_dir)
    except TodoCorruptError as e:
        logger.warning("Discarding unreadable restack todo", error=str(e))
        todo = None

    if git_ops.is_cherry_pick_in_progress():
        git_ops.cherry_pick_abort()

    stack_manager.clear_restack_todo(git_dir)

    if todo is not None:
        git_ops.checkout(todo.before.commit)


def run_restack_push(git_dir: Path, gerrit: Gerrit) -> PushResult:
    """Push restacked changes, parents before children.

    Each pushed change is removed from the push todo right away, so an
    interrupted push picks up where it left off.

    Raises:
        NoPushTodoError: If no restack is waiting to be pushed.
    """
    todo = stack_manager.load_push_todo(git_dir)
    if todo is None:
        raise NoPushTodoError(stack_manager.get_push_todo_path(git_dir))

    root = todo.graph.dependency_root()
    logger.info("Pushing stack", changes=sorted(todo.refs))

    pushed = []
    for change in todo.graph.walk_from(root):
        update = todo.refs.get(change)
        if update is None:
            continue

        logger.info("Pushing change", change=change, update=str(update))
        branch = gerrit.get_change(change).branch
        gerrit.push(update.new, branch)
        del todo.refs[change]
        stack_manager.save_push_todo(todo, git_dir)
        pushed.append(change)

        metadata = todo.graph.metadata.get(change)
        gerrit.invalidate_change(change, metadata.id if metadata is not None else None)

    if todo.refs:
        remaining = sorted(todo.refs)
        return PushResult(
            success=False,
            pushed=pushed,
            remaining=remaining,
            message=f"Changes not reachable from {root} were not pushed: {remaining}",
        )

    stack_manager.clear_push_todo(git_dir)
    return PushResult(
        success=True,
        pushed=pushed,
        message=f"Pushed {len(pushed)} change(s).",
    )


def run_push(
    git_dir: Path,
    gerrit: Gerrit,
    branch: Optional[str] = None,
    target: Optional[str] = None,
    restack: bool = False,
) -> Optional[RestackResult]:
    """Push a commit for review, optionally restacking its dependents after.

    Args:
        git_dir: Absolute path of the repository's git directory.
        gerrit: Gerrit client.
        branch: Commit to push. Defaults to HEAD.
        target: Branch to push for review to. Defaults to the remote's default branch.
        restack: Plan a restack before pushing and run it afterwards.

    Returns:
        The restack result if `restack` is set, otherwise None.
    """
    ref = branch or "HEAD"
    if target is None:
        target = git_ops.default_branch(gerrit.remote)

    todo = None
    if restack:
        git_ops.require_clean_workdir()
        todo = create_todo(git_dir, gerrit, ref)
        stack_manager.save_restack_todo(todo, git_dir)

    gerrit.push(git_ops.rev_parse(ref), target)

    if todo is None:
        return None
    change = gerrit.get_change(git_ops.change_id(ref))
    gerrit.invalidate_change(change.number, change.id)
    return _execute(git_dir, gerrit, todo)


def run_restack_this(gerrit: Gerrit) -> RestackResult:
    """Rebase HEAD's change onto its parent's current patchset.

    Uses an interactive rebase whose todo is rewritten by
    `grstack restack write-todo`, which drops every commit that does not
    belong to the change. The child process uses the cache, so it is
    detached for the duration of the rebase.
    """
    git_ops.require_clean_workdir()

    change = gerrit.get_change(git_ops.change_id("HEAD"))
    graph = gerrit.dependency_graph(change.number)
    parent = graph.depends_on(change.number)

    if parent is None:
        git_ops.fetch(gerrit.remote)
        upstream = f"{gerrit.remote}/{change.branch}"
    else:
        upstream = gerrit.fetch_current(parent)

    editor = (
        f"{shlex.quote(sys.executable)} -m grstack.main "
        f"restack write-todo --change {change.number}"
    )
    logger.info("Restacking change", change=change.pretty(), onto=upstream)

    gerrit.cache.detach()
    try:
        result = git_ops.rebase_interactive(upstream, editor)
    finally:
        gerrit.cache.attach()

    if result.returncode != 0:
        if git_ops.is_rebase_in_progress():
            return RestackResult(
                success=False,
                conflict_change=change.number,
                message=(
                    f"Conflict while rebasing {change.pretty()}. "
                    "Resolve conflicts, then run 'git rebase --continue'."
                ),
            )
        raise GitError(
            result.stderr.strip() or f"Failed to rebase onto {upstream}",
            returncode=result.returncode,
            stderr=result.stderr,
        )

    return RestackResult(
        success=True,
        restacked=[change.number],
        message=f"Restacked {change.pretty()}.",
    )


def write_rebase_todo(gerrit: Gerrit, path: Path, change: ChangeNumber) -> int:
    """Rewrite a `git-rebase-todo` to pick only the commits of `change`.

    Comments and blank lines are kept.

    Returns:
        The number of commits kept.

    Raises:
        ChangeNotFoundError: If no commit in the todo belongs to `change`.
    """
    kept = []
    picks = 0
    for line in path.read_text().splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            kept.append(line)
            continue

        words = stripped.split()
        if words[0] not in ("pick", "p") or len(words) < 2:
            logger.debug("Dropping rebase todo line", line=line)
            continue

        commit = words[1]
        try:
            number = gerrit.get_change(git_ops.change_id(commit)).number
        except (ChangeIdNotFoundError, ChangeNotFoundError):
            number = None

        if number == change:
            kept.append(line)
            picks += 1
        else:
            logger.debug("Dropping commit from rebase todo", commit=commit, change=number)

    if picks == 0:
        raise ChangeNotFoundError(f"{change} in rebase todo '{path}'")

    path.write_text("\n".join(kept) + "\n")
    return picks
