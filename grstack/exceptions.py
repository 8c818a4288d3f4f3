"""Custom exceptions for grstack."""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path


def format_bulleted_list(items: Iterable[object]) -> str:
    """Format items as a `- item` list, one per line."""
    return "\n".join(f"- {item}" for item in items)


class GrstackError(Exception):
    """Base exception for all grstack errors."""

    pass


class GitError(GrstackError):
    """Error executing a git command."""

    def __init__(self, message: str, returncode: int = 1, stderr: str = "") -> None:
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message)


class NotAGitRepoError(GrstackError):
    """Current directory is not a git repository."""

    def __init__(self) -> None:
        super().__init__("Not a git repository. Please run this command inside a git repo.")


class DirtyWorkdirError(GrstackError):
    """Working directory has uncommitted changes."""

    def __init__(self) -> None:
        super().__init__(
            "Working directory is not clean. Please commit or stash your changes first."
        )


class ChangeIdNotFoundError(GrstackError):
    """A commit message has no `Change-Id:` trailer."""

    def __init__(self, ref: str) -> None:
        self.ref = ref
        super().__init__(f"No Change-Id trailer found in the commit message of '{ref}'.")


class GerritError(GrstackError):
    """Error executing a `gerrit` command over ssh."""

    def __init__(self, message: str, returncode: int = 1, stderr: str = "") -> None:
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message)


class GerritHttpError(GrstackError):
    """The Gerrit REST API returned a non-2xx response."""

    def __init__(self, url: str, status_code: int, body: str = "") -> None:
        self.url = url
        self.status_code = status_code
        self.body = body
        detail = f": {body.strip()}" if body.strip() else ""
        super().__init__(f"Request to {url} failed with HTTP {status_code}{detail}")


class RemoteNotFoundError(GrstackError):
    """No git remote could be parsed as a Gerrit remote."""

    def __init__(self, tried: list[str]) -> None:
        self.tried = tried
        if tried:
            message = (
                "Failed to parse Gerrit configuration from git remotes. "
                f"Tried to parse these remotes:\n{format_bulleted_list(tried)}"
            )
        else:
            message = "No git remotes found. Add a remote pointing at your Gerrit server."
        super().__init__(message)


class ChangeNotFoundError(GrstackError):
    """A query matched no change."""

    def __init__(self, query: object) -> None:
        self.query = query
        super().__init__(f"Didn't find change {query}")


class ConflictingParentError(GrstackError):
    """A change was reported as depending on two different changes."""

    def __init__(self, change: int, existing: int, new: int) -> None:
        self.change = change
        self.existing = existing
        self.new = new
        super().__init__(
            "Changes cannot depend on multiple changes: "
            f"{change} already depends on {existing} and cannot also depend on {new}"
        )


class AmbiguousRootError(GrstackError):
    """A graph did not have exactly one root change."""

    def __init__(self, candidates: Iterable[int]) -> None:
        self.candidates = sorted(candidates)
        message = (
            "Expected to find exactly one root change, "
            f"but found {len(self.candidates)}"
        )
        if self.candidates:
            message += f":\n{format_bulleted_list(self.candidates)}"
        super().__init__(message)


class TodoAlreadyExistsError(GrstackError):
    """A restack is already in progress."""

    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(
            f"Restack todo already exists at '{path}'. "
            "Run 'grstack restack continue' to resume or 'grstack restack abort' to cancel."
        )


class TodoCorruptError(GrstackError):
    """A persisted todo file could not be read."""

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(
            f"Failed to read todo from '{path}': {reason}\n"
            "Remove the file to abandon the attempt."
        )


class NoPendingOperationError(GrstackError):
    """No pending restack to continue or abort."""

    def __init__(self) -> None:
        super().__init__("No restack in progress to continue or abort.")


class NoPushTodoError(GrstackError):
    """No completed restack is waiting to be pushed."""

    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(
            f"Push todo '{path}' does not exist; did you run 'grstack restack'?"
        )


class StackNavigationError(GrstackError):
    """Cannot move up or down the stack from the current change."""

    pass


class CacheError(GrstackError):
    """The cache could not be used for an operation."""

    pass


class ConfigError(GrstackError):
    """Invalid configuration in the environment."""

    pass
