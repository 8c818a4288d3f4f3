"""Breadth-first discovery of a change's dependency graph from Gerrit."""

from __future__ import annotations

from collections import deque
from typing import TYPE_CHECKING

import structlog

from grstack.dependency_graph import DependencyGraph
from grstack.models import Change, ChangeMetadata, ChangeNumber, ChangeStatus, RelatedChangesInfo

if TYPE_CHECKING:
    from grstack.gerrit_ops import Gerrit

logger = structlog.get_logger(__name__)


class DependencyGraphBuilder:
    """Builds a `DependencyGraph` by querying Gerrit.

    Two signals are combined: the `--dependencies` query (depends-on and
    needed-by) and the REST related-changes list. Each is fetched at most once
    per change.
    """

    def __init__(self, gerrit: Gerrit, root: ChangeNumber) -> None:
        self.gerrit = gerrit
        self.graph = DependencyGraph(root=root)
        self._dependencies: dict[ChangeNumber, Change] = {}
        self._related: dict[ChangeNumber, RelatedChangesInfo] = {}

    def dependencies(self, change: ChangeNumber) -> Change:
        """The change with its depends-on and needed-by lists limited to open changes."""
        if change not in self._dependencies:
            result = self.gerrit.dependencies(change)
            result = result.model_copy(
                update={
                    "depends_on": [r for r in result.depends_on if self._is_open(r.number)],
                    "needed_by": [r for r in result.needed_by if self._is_open(r.number)],
                }
            )
            self._dependencies[change] = result
        return self._dependencies[change]

    def related(self, change: ChangeNumber) -> RelatedChangesInfo:
        if change not in self._related:
            self._related[change] = self.gerrit.related_changes(change)
        return self._related[change]

    def _is_open(self, change: ChangeNumber) -> bool:
        return self.gerrit.get_change(change).status == ChangeStatus.NEW

    def indirect_reverse_dependencies(self, change: ChangeNumber) -> set[ChangeNumber]:
        """Changes that depend on an outdated patchset of `change`.

        When B depends on an older patchset of A, `--dependencies` for A does
        not list B, but the related changes of A include B and
        `--dependencies` for B still names A as its parent. So: if related(A)
        includes B and B depends on A, B is a child of A.
        """
        indirect = set()
        for related in sorted(self.related(change).change_numbers()):
            if related == change:
                continue
            dependencies = self.dependencies(related)
            if dependencies.status != ChangeStatus.NEW:
                continue
            if change in dependencies.depends_on_numbers():
                indirect.add(related)
        return indirect

    def traverse(self) -> DependencyGraph:
        """Discover every change reachable from the root.

        Raises:
            ConflictingParentError: If a change is reported with two parents.
        """
        root = self.graph.root
        seen = {root}
        queue = deque([root])

        while queue:
            change = queue.popleft()
            needed_by_indirect = self.indirect_reverse_dependencies(change)
            dependencies = self.dependencies(change)
            self.graph.metadata[change] = ChangeMetadata.from_change(dependencies)

            depends_on = dependencies.depends_on_numbers()
            needed_by = dependencies.needed_by_numbers() | needed_by_indirect
            logger.debug(
                "Found change dependencies",
                change=change,
                depends_on=sorted(depends_on),
                needed_by=sorted(needed_by),
                indirect=sorted(needed_by_indirect),
            )

            for parent in sorted(depends_on):
                self.graph.insert(change, parent)
                if parent not in seen:
                    seen.add(parent)
                    queue.append(parent)

            for child in sorted(needed_by):
                self.graph.insert(child, change)
                if child not in seen:
                    seen.add(child)
                    queue.append(child)

        return self.graph


def build_dependency_graph(gerrit: Gerrit, root: ChangeNumber) -> DependencyGraph:
    """Discover the dependency graph around `root`."""
    return DependencyGraphBuilder(gerrit, root).traverse()
