"""The dependency graph between changes in a stack."""

from __future__ import annotations

from collections import deque
from collections.abc import Callable
from typing import Optional

from pydantic import BaseModel, Field

from grstack.exceptions import AmbiguousRootError, ConflictingParentError
from grstack.models import ChangeMetadata, ChangeNumber
from grstack.tree import Tree


class DependencyGraph(BaseModel):
    """A graph of change dependencies.

    Each change depends on at most one other change (its parent). The reverse
    edges (`reverse_dependencies`) are kept in sync by `insert`.

    Attributes:
        root: The change the graph was discovered from.
        metadata: Author, status, WIP flag and Change-Id of visited changes.
        dependencies: Map of change to the change it depends on.
        reverse_dependencies: Map of change to the changes that depend on it.
    """

    root: ChangeNumber
    metadata: dict[ChangeNumber, ChangeMetadata] = Field(default_factory=dict)
    dependencies: dict[ChangeNumber, ChangeNumber] = Field(default_factory=dict)
    reverse_dependencies: dict[ChangeNumber, set[ChangeNumber]] = Field(default_factory=dict)

    def insert(self, change: ChangeNumber, depends_on: ChangeNumber) -> None:
        """Record that `change` depends on `depends_on`.

        Raises:
            ConflictingParentError: If `change` already depends on a different
                change. The graph is left unchanged.
        """
        existing = self.dependencies.get(change)
        if existing is not None and existing != depends_on:
            raise ConflictingParentError(change, existing, depends_on)

        self.dependencies[change] = depends_on
        self.reverse_dependencies.setdefault(depends_on, set()).add(change)

    def depends_on(self, change: ChangeNumber) -> Optional[ChangeNumber]:
        return self.dependencies.get(change)

    def needed_by(self, change: ChangeNumber) -> set[ChangeNumber]:
        return self.reverse_dependencies.setdefault(change, set())

    def depends_on_roots(self, start: Optional[ChangeNumber] = None) -> set[ChangeNumber]:
        """Get the root changes above `start` (default: the graph's root).

        Roots are changes that do not depend on any other change. Parent links
        are followed until none is recorded; a cycle yields no roots.
        """
        start = self.root if start is None else start
        roots: set[ChangeNumber] = set()
        seen = {start}
        queue = deque([start])

        while queue:
            change = queue.popleft()
            parent = self.depends_on(change)
            if parent is None:
                roots.add(change)
            elif parent not in seen:
                seen.add(parent)
                queue.append(parent)

        return roots

    def dependency_root(self) -> ChangeNumber:
        """Get the single root change of the graph.

        Raises:
            AmbiguousRootError: If there is not exactly one root.
        """
        roots = self.depends_on_roots()
        if len(roots) != 1:
            raise AmbiguousRootError(roots)
        return next(iter(roots))

    def walk_from(self, start: ChangeNumber) -> list[ChangeNumber]:
        """Breadth-first order of `start` and its descendants.

        A change always comes after the change it depends on.
        """
        order = [start]
        seen = {start}
        queue = deque([start])

        while queue:
            change = queue.popleft()
            for child in sorted(self.needed_by(change)):
                if child not in seen:
                    seen.add(child)
                    order.append(child)
                    queue.append(child)

        return order

    def format_tree(self, label: Callable[[ChangeNumber], list[str]]) -> str:
        """Render the graph from its root down through reverse dependencies.

        Args:
            label: Produces the label lines of a change. Called once per change;
                exceptions it raises propagate.

        Raises:
            AmbiguousRootError: If the graph does not have a single root.
        """
        root = self.dependency_root()
        trees: dict[ChangeNumber, Tree] = {}

        def tree_for(change: ChangeNumber) -> Tree:
            if change not in trees:
                trees[change] = Tree(label=label(change))
            return trees[change]

        tree_for(root)
        seen = {root}
        queue = deque([root])

        while queue:
            change = queue.popleft()
            tree = tree_for(change)
            for child in sorted(self.needed_by(change)):
                tree.children.append(tree_for(child))
                if child not in seen:
                    seen.add(child)
                    queue.append(child)

        return trees[root].render()
