"""Persisted state for in-progress restacks and pushes.

Both todos are stored as JSON in the repository's git directory and survive
interruptions (conflicts, crashes) between invocations.
"""

from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

from grstack.dependency_graph import DependencyGraph
from grstack.models import ChangeNumber, CommitHash, abbrev


class BranchTarget(BaseModel):
    """Restack onto the tip of a remote branch (root changes)."""

    kind: Literal["branch"] = "branch"
    remote: str
    branch: str

    def __str__(self) -> str:
        return self.branch


class ParentTarget(BaseModel):
    """Restack onto the change this one depends on."""

    kind: Literal["change"] = "change"
    parent: ChangeNumber

    def __str__(self) -> str:
        return str(self.parent)


RestackOnto = Annotated[Union[BranchTarget, ParentTarget], Field(discriminator="kind")]


class Step(BaseModel):
    """A single change to cherry-pick onto its target."""

    change: ChangeNumber
    onto: RestackOnto

    def __str__(self) -> str:
        return f"{self.change} onto {self.onto}"


class RefUpdate(BaseModel):
    """The commit a change had before and after restacking."""

    old: CommitHash
    new: CommitHash

    @property
    def has_change(self) -> bool:
        return self.old != self.new

    def __str__(self) -> str:
        return f"{abbrev(self.old)}..{abbrev(self.new)}"


class InProgress(BaseModel):
    """A step that stopped on a cherry-pick conflict."""

    step: Step
    old_head: CommitHash


class RestackBefore(BaseModel):
    """Where the working tree was when the restack started."""

    change: Optional[ChangeNumber] = None
    commit: CommitHash


class RestackTodo(BaseModel):
    """State for an in-progress restack.

    This is persisted to .git/grstack-restack-todo.json after every step.

    Attributes:
        before: The working-tree position to return to when done.
        graph: Snapshot of the dependency graph being restacked.
        steps: Steps left to perform, parents before children.
        refs: Completed steps, by change number.
        in_progress: The step that stopped on a conflict, if any.
    """

    before: RestackBefore
    graph: DependencyGraph
    steps: list[Step] = Field(default_factory=list)
    refs: dict[ChangeNumber, RefUpdate] = Field(default_factory=dict)
    in_progress: Optional[InProgress] = None

    @property
    def is_complete(self) -> bool:
        return not self.steps and self.in_progress is None


class PushTodo(BaseModel):
    """Restacked changes waiting to be pushed.

    This is persisted to .git/grstack-push-todo.json; entries are removed as
    they are pushed.
    """

    graph: DependencyGraph
    refs: dict[ChangeNumber, RefUpdate] = Field(default_factory=dict)

    @classmethod
    def from_restack_todo(cls, todo: RestackTodo) -> PushTodo:
        """Keep only the refs that actually changed."""
        refs = {change: update for change, update in todo.refs.items() if update.has_change}
        return cls(graph=todo.graph.model_copy(deep=True), refs=refs)

    @property
    def is_empty(self) -> bool:
        return not self.refs
