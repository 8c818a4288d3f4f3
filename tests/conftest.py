"""Shared pytest fixtures for grstack tests."""

from __future__ import annotations

import hashlib
import os
import subprocess
from collections.abc import Generator
from pathlib import Path
from typing import TYPE_CHECKING, Optional
from unittest.mock import MagicMock

import pytest

from grstack import git_ops
from grstack.cache import Cache
from grstack.exceptions import ChangeNotFoundError
from grstack.gerrit_ops import Gerrit, GerritProject
from grstack.models import (
    Author,
    Change,
    ChangeRelation,
    ChangeStatus,
    CurrentPatchSet,
    RelatedChangeAndCommitInfo,
    RelatedChangesInfo,
)

if TYPE_CHECKING:
    from pytest_mock import MockerFixture


@pytest.fixture
def temp_git_repo(tmp_path: Path) -> Generator[Path, None, None]:
    """Create a temporary git repository with an initial commit.

    The repository is initialized with:
    - 'main' as the default branch
    - An initial commit with a README file
    - Working directory changed to the repo root

    Yields:
        Path to the temporary repository root.
    """
    original_cwd = os.getcwd()
    repo_path = tmp_path / "repo"
    repo_path.mkdir()
    os.chdir(repo_path)

    # Initialize git repo with 'main' as default branch
    subprocess.run(["git", "init", "-b", "main"], check=True, capture_output=True)
    subprocess.run(
        ["git", "config", "user.email", "test@example.com"],
        check=True,
        capture_output=True,
    )
    subprocess.run(
        ["git", "config", "user.name", "Test User"],
        check=True,
        capture_output=True,
    )

    # Create initial commit
    readme = repo_path / "README.md"
    readme.write_text("# Test Repository\n")
    subprocess.run(["git", "add", "README.md"], check=True, capture_output=True)
    subprocess.run(
        ["git", "commit", "-m", "Initial commit"],
        check=True,
        capture_output=True,
    )

    yield repo_path

    # Restore original working directory
    os.chdir(original_cwd)


@pytest.fixture
def temp_git_repo_with_remote(temp_git_repo: Path, tmp_path: Path) -> Generator[Path, None, None]:
    """Create a temporary git repository with a bare remote.

    Extends temp_git_repo with:
    - A bare remote repository at tmp_path/remote.git
    - Remote 'origin' configured pointing to the bare repo
    - Initial push to origin/main

    Yields:
        Path to the temporary repository root (same as temp_git_repo).
    """
    remote_path = tmp_path / "remote.git"
    subprocess.run(["git", "init", "--bare", str(remote_path)], check=True, capture_output=True)

    subprocess.run(
        ["git", "remote", "add", "origin", str(remote_path)],
        check=True,
        capture_output=True,
    )
    subprocess.run(
        ["git", "push", "-u", "origin", "main"],
        check=True,
        capture_output=True,
    )

    yield temp_git_repo


@pytest.fixture
def cache(tmp_path: Path) -> Generator[Cache, None, None]:
    """A disk cache in a temporary directory."""
    with Cache(tmp_path / "cache") as c:
        yield c


@pytest.fixture
def fake_gerrit(cache: Cache) -> FakeGerrit:
    """A Gerrit client serving changes from memory, with 'origin' as its remote."""
    return FakeGerrit("origin", cache)


@pytest.fixture
def mock_subprocess(mocker: MockerFixture) -> MagicMock:
    """Mock subprocess.run for testing git/ssh commands without side effects."""
    mock = mocker.patch("subprocess.run")
    mock.return_value = subprocess.CompletedProcess(
        args=[],
        returncode=0,
        stdout="",
        stderr="",
    )
    return mock


class FakeGerrit(Gerrit):
    """A Gerrit server in memory.

    Change data is served from memory; patchsets are real commits pushed to
    `refs/changes/...` of the git remote, so fetching and checking out
    changes goes through git like it does against a real server.
    """

    def __init__(self, remote: str, cache: Cache) -> None:
        project = GerritProject(
            username="test", host="gerrit.example.com", port=29418, project="project"
        )
        super().__init__(remote, project, cache)
        self.changes: dict[int, Change] = {}
        self.parents: dict[int, int] = {}
        self.related: dict[int, list[int]] = {}
        self.pushed: list[tuple[int, str, str]] = []

    def add_change(
        self,
        number: int,
        parent: Optional[int] = None,
        status: ChangeStatus = ChangeStatus.NEW,
        branch: str = "main",
        revision: Optional[str] = None,
        change_id: Optional[str] = None,
        subject: Optional[str] = None,
        patchset: int = 1,
    ) -> Change:
        change = Change(
            project="project",
            branch=branch,
            id=change_id or fake_change_id(number),
            number=number,
            subject=subject or f"Change {number}",
            owner=Author(username="alice"),
            url=f"https://gerrit.example.com/c/project/+/{number}",
            status=status,
            open=status == ChangeStatus.NEW,
            current_patch_set=CurrentPatchSet(
                number=patchset,
                revision=revision or hashlib.sha1(str(number).encode()).hexdigest(),
                ref=f"refs/changes/{number % 100:02d}/{number}/{patchset}",
            ),
        )
        self.changes[number] = change
        if parent is not None:
            self.parents[number] = parent
        return change

    def upload(self, number: int, commit: str, parent: Optional[int] = None) -> Change:
        """Push `commit` as the first patchset of change `number`."""
        existing = self.changes.get(number)
        patchset = 1 if existing is None else existing.patchset().patchset + 1
        ref = f"refs/changes/{number % 100:02d}/{number}/{patchset}"
        git_ops.run_git("push", self.remote, f"{commit}:{ref}")
        if existing is not None and parent is None:
            parent = self.parents.get(number)
        return self.add_change(
            number,
            parent=parent,
            revision=commit,
            change_id=git_ops.change_id(commit),
            patchset=patchset,
        )

    def _find(self, query) -> Change:
        if isinstance(query, int) and query in self.changes:
            return self.changes[query]
        for change in self.changes.values():
            if change.id == query or str(change.number) == str(query):
                return change
        raise ChangeNotFoundError(query)

    def get_change(self, query) -> Change:
        return self._find(query)

    def _relation(self, number: int) -> ChangeRelation:
        change = self.changes[number]
        return ChangeRelation(
            id=change.id,
            number=number,
            revision=change.current_patch_set.revision,
            is_current_patch_set=True,
        )

    def dependencies(self, query) -> Change:
        change = self._find(query)
        depends_on = []
        if change.number in self.parents:
            depends_on.append(self._relation(self.parents[change.number]))
        needed_by = [
            self._relation(child)
            for child, parent in sorted(self.parents.items())
            if parent == change.number
        ]
        return change.model_copy(update={"depends_on": depends_on, "needed_by": needed_by})

    def related_changes(self, change: int) -> RelatedChangesInfo:
        return RelatedChangesInfo(
            changes=[
                RelatedChangeAndCommitInfo(change_number=number)
                for number in self.related.get(change, [])
            ]
        )

    def push(self, commit: str, branch: str) -> None:
        number = self._find(git_ops.change_id(commit)).number
        self.pushed.append((number, commit, branch))
        self.upload(number, commit)


def fake_change_id(number: int) -> str:
    return "I" + hashlib.sha1(f"change-{number}".encode()).hexdigest()


# Helper functions for tests


def make_commit(message: str = "Test commit", filename: Optional[str] = None) -> str:
    """Create a commit with an optional specific filename.

    Returns the commit SHA.
    """
    if filename is None:
        import time

        filename = f"file_{time.time_ns()}.txt"

    Path(filename).write_text(f"Content for {message}\n")
    subprocess.run(["git", "add", filename], check=True, capture_output=True)
    subprocess.run(["git", "commit", "-m", message], check=True, capture_output=True)

    result = subprocess.run(
        ["git", "rev-parse", "HEAD"],
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


def make_change_commit(number: int, filename: Optional[str] = None) -> str:
    """Create a commit for change `number`, with a Change-Id trailer."""
    message = f"Change {number}\n\nChange-Id: {fake_change_id(number)}"
    return make_commit(message, filename or f"change_{number}.txt")


def git(*args: str) -> str:
    result = subprocess.run(["git", *args], check=True, capture_output=True, text=True)
    return result.stdout.strip()
