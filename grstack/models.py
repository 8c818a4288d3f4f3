"""Data models for Gerrit changes.

Changes are parsed from `gerrit query --format json` rows and from REST API
responses, and stored in the cache as JSON.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ChangeNumber = int
ChangeId = str
Patchset = int
CommitHash = str


def abbrev(commit: CommitHash) -> str:
    """Get an abbreviated 8-character commit hash."""
    return commit[:8]


class GerritModel(BaseModel):
    """Base for models read from Gerrit, which uses camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ChangeStatus(str, Enum):
    """Review status of a change."""

    NEW = "NEW"
    MERGED = "MERGED"
    ABANDONED = "ABANDONED"

    def __str__(self) -> str:
        return self.value.lower()


class Author(GerritModel):
    """A Gerrit account."""

    name: Optional[str] = None
    email: Optional[str] = None
    username: Optional[str] = None

    def __str__(self) -> str:
        return self.username or self.name or self.email or "unknown"


class ChangePatchset(BaseModel):
    """A change number and a patchset, addressing an exact tree state."""

    model_config = ConfigDict(frozen=True)

    change: ChangeNumber
    patchset: Patchset

    @property
    def git_ref(self) -> str:
        return f"refs/changes/{self.change % 100:02d}/{self.change}/{self.patchset}"

    def __str__(self) -> str:
        return f"{self.change}/{self.patchset}"


class CurrentPatchSet(GerritModel):
    """The current patch set of a change."""

    number: Patchset
    revision: CommitHash
    ref_name: str = Field(alias="ref")
    parents: list[CommitHash] = Field(default_factory=list)


class ChangeRelation(GerritModel):
    """An entry in a change's `dependsOn` or `neededBy` list."""

    id: ChangeId
    number: ChangeNumber
    revision: CommitHash
    is_current_patch_set: bool = False


class Change(GerritModel):
    """A change, as returned by `gerrit query`.

    `current_patch_set` is filled when queried with `--current-patch-set` and
    `depends_on` / `needed_by` when queried with `--dependencies`.
    """

    project: str
    branch: str
    id: ChangeId
    number: ChangeNumber
    subject: Optional[str] = None
    owner: Author = Field(default_factory=Author)
    url: str = ""
    hashtags: list[str] = Field(default_factory=list)
    open: bool = True
    status: ChangeStatus = ChangeStatus.NEW
    wip: bool = False
    current_patch_set: Optional[CurrentPatchSet] = None
    depends_on: list[ChangeRelation] = Field(default_factory=list)
    needed_by: list[ChangeRelation] = Field(default_factory=list)

    def patchset(self) -> ChangePatchset:
        """Get the change's current patchset.

        Raises:
            ValueError: If the change was queried without its current patch set.
        """
        if self.current_patch_set is None:
            raise ValueError(f"Change {self.number} was fetched without its current patch set")
        return ChangePatchset(change=self.number, patchset=self.current_patch_set.number)

    def depends_on_numbers(self) -> set[ChangeNumber]:
        return {relation.number for relation in self.depends_on}

    def needed_by_numbers(self) -> set[ChangeNumber]:
        return {relation.number for relation in self.needed_by}

    def pretty(self) -> str:
        if self.subject:
            return f"{self.number} ({self.subject})"
        return str(self.number)

    def status_label(self) -> str:
        """Short status for tables: open, wip, merged or closed."""
        if self.status == ChangeStatus.MERGED:
            return "merged"
        if self.status == ChangeStatus.ABANDONED:
            return "closed"
        return "wip" if self.wip else "open"


class QueryStatistics(GerritModel):
    """Trailing `type: stats` row of a query."""

    row_count: int = 0
    more_changes: bool = False


class QueryResult(BaseModel):
    """Parsed output of `gerrit query --format json`."""

    changes: list[Change] = Field(default_factory=list)
    stats: Optional[QueryStatistics] = None


class RelatedChangeAndCommitInfo(GerritModel):
    """An entry of the REST `related` endpoint."""

    project: str = ""
    change_id: Optional[ChangeId] = None
    change_number: Optional[ChangeNumber] = Field(default=None, alias="_change_number")
    revision_number: Optional[Patchset] = Field(default=None, alias="_revision_number")
    current_revision_number: Optional[Patchset] = Field(
        default=None, alias="_current_revision_number"
    )
    status: Optional[ChangeStatus] = None


class RelatedChangesInfo(GerritModel):
    """Response of `/changes/{id}/revisions/{rev}/related`."""

    changes: list[RelatedChangeAndCommitInfo] = Field(default_factory=list)

    def change_numbers(self) -> set[ChangeNumber]:
        return {
            change.change_number for change in self.changes if change.change_number is not None
        }


class ChangeMetadata(BaseModel):
    """Information about a change in a dependency graph."""

    wip: bool = False
    status: ChangeStatus = ChangeStatus.NEW
    owner: Author = Field(default_factory=Author)
    id: ChangeId

    @classmethod
    def from_change(cls, change: Change) -> ChangeMetadata:
        return cls(wip=change.wip, status=change.status, owner=change.owner, id=change.id)
