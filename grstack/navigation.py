"""Moving around a stack and displaying it."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

import structlog

from grstack import git_ops
from grstack.dependency_graph import DependencyGraph
from grstack.exceptions import StackNavigationError, format_bulleted_list
from grstack.models import ChangeMetadata, ChangeNumber, ChangeStatus

if TYPE_CHECKING:
    from grstack.gerrit_ops import Gerrit

logger = structlog.get_logger(__name__)


def _head_graph(gerrit: Gerrit) -> tuple[ChangeNumber, DependencyGraph]:
    change = gerrit.get_change(git_ops.change_id("HEAD"))
    return change.number, gerrit.dependency_graph(change.number)


def _only_child(
    gerrit: Gerrit,
    graph: DependencyGraph,
    change: ChangeNumber,
) -> Optional[ChangeNumber]:
    children = sorted(graph.needed_by(change))
    if not children:
        return None
    if len(children) > 1:
        raise StackNavigationError(
            f"Change {gerrit.pretty(change)} is needed by multiple changes:\n"
            + format_bulleted_list(gerrit.pretty(child) for child in children)
        )
    return children[0]


def _checkout(gerrit: Gerrit, change: ChangeNumber) -> ChangeNumber:
    logger.info("Checking out change", change=gerrit.pretty(change))
    gerrit.checkout_cl(gerrit.get_change(change).patchset())
    return change


def up(gerrit: Gerrit) -> ChangeNumber:
    """Check out the change that depends on HEAD's change.

    Raises:
        StackNavigationError: If no change, or more than one, depends on it.
    """
    change, graph = _head_graph(gerrit)
    child = _only_child(gerrit, graph, change)
    if child is None:
        raise StackNavigationError(f"Change {gerrit.pretty(change)} is the top of its stack.")
    return _checkout(gerrit, child)


def down(gerrit: Gerrit) -> ChangeNumber:
    """Check out the change HEAD's change depends on.

    Raises:
        StackNavigationError: If HEAD's change is a root.
    """
    change, graph = _head_graph(gerrit)
    parent = graph.depends_on(change)
    if parent is None:
        raise StackNavigationError(
            f"Change {gerrit.pretty(change)} is the bottom of its stack."
        )
    return _checkout(gerrit, parent)


def top(gerrit: Gerrit) -> ChangeNumber:
    """Check out the last change of the stack above HEAD's change.

    Raises:
        StackNavigationError: If the stack branches on the way up.
    """
    change, graph = _head_graph(gerrit)
    seen = {change}
    while True:
        child = _only_child(gerrit, graph, change)
        if child is None or child in seen:
            break
        seen.add(child)
        change = child
    return _checkout(gerrit, change)


def metadata_label(metadata: Optional[ChangeMetadata]) -> str:
    """A one-line summary of a change's status and owner."""
    if metadata is None:
        return ""
    if metadata.status != ChangeStatus.NEW:
        status = str(metadata.status)
    else:
        status = "wip" if metadata.wip else "open"
    return f"{status}, owned by {metadata.owner}"


def show_chain(gerrit: Gerrit, query: Optional[str] = None) -> str:
    """Render the dependency graph of a change (default: HEAD's change)."""
    if query is None:
        query = git_ops.change_id("HEAD")
    current = gerrit.get_change(query).number
    graph = gerrit.dependency_graph(current)

    def label(change: ChangeNumber) -> list[str]:
        marker = "* " if change == current else ""
        lines = [f"{marker}{gerrit.pretty(change)}"]
        summary = metadata_label(graph.metadata.get(change))
        if summary:
            lines.append(summary)
        return lines

    return graph.format_tree(label)
