"""Gerrit client for grstack.

Queries go through `ssh ... gerrit query --format json`, REST calls through
httpx with credentials from `git credential fill`. Results are memoized in
the disk cache; see `grstack.cache`.
"""

from __future__ import annotations

import json
import re
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

import httpx
import structlog
from pydantic import ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from grstack import git_ops
from grstack.cache import Cache, CacheKey
from grstack.config import Settings
from grstack.dependency_graph import DependencyGraph
from grstack.exceptions import (
    CacheError,
    ChangeNotFoundError,
    GerritError,
    GerritHttpError,
    RemoteNotFoundError,
)
from grstack.graph_builder import build_dependency_graph
from grstack.models import (
    Change,
    ChangeId,
    ChangeNumber,
    ChangePatchset,
    CommitHash,
    QueryResult,
    QueryStatistics,
    RelatedChangesInfo,
)

logger = structlog.get_logger(__name__)

# ssh://USER@HOST:PORT/PROJECT
_REMOTE_URL_RE = re.compile(
    r"^ssh://(?P<user>\w+)@(?P<host>\w[\w.]*):(?P<port>[0-9]+)/(?P<project>[\w.]+)$"
)
_CHANGE_ID_RE = re.compile(r"^I[0-9a-f]{40}$")

# Prefix Gerrit puts in front of JSON responses to defeat XSSI.
_XSSI_PREFIX = ")]}'"

# Unix socket paths are limited to about a hundred bytes.
_SSH_CONTROL_PATH_LIMIT = 87

Query = Union[ChangeNumber, str]


@dataclass
class GerritResult:
    """Result of a `gerrit` command execution."""

    stdout: str
    stderr: str
    returncode: int


@dataclass(frozen=True)
class GerritProject:
    """A Gerrit server and project, parsed from a git remote URL."""

    username: str
    host: str
    port: int
    project: str

    @property
    def connect_to(self) -> str:
        """The `ssh` destination to connect to."""
        return f"ssh://{self.username}@{self.host}:{self.port}"

    @property
    def url(self) -> str:
        return f"{self.connect_to}/{self.project}"


def parse_remote_url(url: str) -> Optional[GerritProject]:
    """Parse `ssh://USER@HOST:PORT/PROJECT`, or return None."""
    match = _REMOTE_URL_RE.match(url.strip())
    if match is None:
        return None
    return GerritProject(
        username=match["user"],
        host=match["host"],
        port=int(match["port"]),
        project=match["project"],
    )


def ssh_control_path(project: GerritProject) -> str:
    """A persistent `ssh` `ControlPath`, truncated to fit a socket path."""
    name = f"grstack-ssh-{project.username}-{project.host}-{project.port}"
    max_name = _SSH_CONTROL_PATH_LIMIT - len("/tmp/")
    return f"/tmp/{name[:max_name]}"


def query_args(
    query: str,
    current_patch_set: bool = False,
    dependencies: bool = False,
) -> list[str]:
    """Arguments for `gerrit query`."""
    args = ["query", "--format", "json"]
    if current_patch_set:
        args.append("--current-patch-set")
    if dependencies:
        args.append("--dependencies")
    args.extend(["--", query])
    return args


def parse_query_output(stdout: str) -> QueryResult:
    """Parse the line-wise JSON output of `gerrit query --format json`.

    Raises:
        GerritError: If a line is not valid JSON, or Gerrit reported an error.
    """
    result = QueryResult()
    for line in stdout.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            row = json.loads(line)
            row_type = row.get("type")
            if row_type == "stats":
                result.stats = QueryStatistics.model_validate(row)
            elif row_type == "error":
                raise GerritError(f"Query failed: {row.get('message', line)}")
            else:
                result.changes.append(Change.model_validate(row))
        except (json.JSONDecodeError, AttributeError, ValidationError) as e:
            raise GerritError(f"Failed to parse query output: {e}\n{line}") from e
    return result


def format_query_results(changes: list[Change]) -> str:
    """Format changes as an aligned table: number, status, owner, subject."""
    rows = [
        (str(change.number), change.status_label(), str(change.owner), change.subject or "")
        for change in changes
    ]
    if not rows:
        return ""
    widths = [max(len(row[i]) for row in rows) for i in range(3)]
    return "\n".join(
        "  ".join(cell.ljust(width) for cell, width in zip(row[:3], widths)) + "  " + row[3]
        for row in rows
    )


def build_query(query: Optional[str], mine: bool = False, needs_review: bool = False) -> str:
    """Expand the `query` command's shortcuts into a Gerrit search query."""
    if query is None:
        query = "" if mine or needs_review else "status:open -is:wip"
    if mine:
        query += " is:open owner:self"
    if needs_review:
        if not mine:
            query += " is:open -owner:self"
        query += " -is:wip -is:reviewed"
    return query.strip()


def strip_xssi_prefix(body: str) -> str:
    if body.startswith(_XSSI_PREFIX):
        return body[len(_XSSI_PREFIX):].lstrip()
    return body


def find_gerrit_remote(remote_name: Optional[str] = None) -> tuple[str, GerritProject]:
    """Find the git remote that points at a Gerrit server.

    Remotes whose name or URL mention "gerrit" are tried first.

    Args:
        remote_name: Only consider this remote.

    Returns:
        (remote name, parsed project)

    Raises:
        RemoteNotFoundError: If no remote URL parses as a Gerrit remote.
    """
    candidates = []
    for remote in git_ops.remotes():
        if remote_name is not None and remote != remote_name:
            logger.debug("Skipping remote", remote=remote)
            continue
        candidates.append((remote, git_ops.remote_url(remote)))

    candidates.sort(key=lambda item: "gerrit" not in item[0] and "gerrit" not in item[1])

    tried = []
    for remote, url in candidates:
        tried.append(url)
        project = parse_remote_url(url)
        if project is not None:
            logger.debug("Found Gerrit remote", remote=remote, url=url)
            return remote, project
        logger.debug("Failed to parse remote URL", remote=remote, url=url)

    raise RemoteNotFoundError(tried)


def cache_directory(root: Path, project: GerritProject) -> Path:
    """One cache partition per Gerrit host, port and project."""
    safe_project = re.sub(r"[^\w.-]", "_", project.project)
    return root / f"{project.host}_{project.port}" / safe_project


class Gerrit:
    """Gerrit client tied to a git remote."""

    def __init__(
        self,
        remote: str,
        project: GerritProject,
        cache: Cache,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.remote = remote
        self.project = project
        self.cache = cache
        self._transport = transport
        self._http: Optional[httpx.Client] = None

    def ssh_command(self, args: list[str]) -> list[str]:
        """An `ssh` command running `gerrit ARGS...` on the server."""
        return [
            "ssh",
            # Persist sessions in the background to speed up subsequent calls.
            "-o",
            "ControlMaster=auto",
            "-o",
            f"ControlPath={ssh_control_path(self.project)}",
            "-o",
            "ControlPersist=120",
            self.project.connect_to,
            "gerrit",
            *(shlex.quote(arg) for arg in args),
        ]

    def run_gerrit(self, *args: str, check: bool = True, capture: bool = True) -> GerritResult:
        """Run a `gerrit` command over ssh.

        Args:
            *args: `gerrit` command arguments (e.g., "query", "--format", "json").
            check: If True, raise GerritError on non-zero exit code.
            capture: If False, the command inherits stdout and stderr.

        Raises:
            GerritError: If check=True and the command fails.
        """
        cmd = self.ssh_command(list(args))
        logger.debug("Running gerrit", args=list(args))
        result = subprocess.run(cmd, capture_output=capture, text=True)

        gerrit_result = GerritResult(
            stdout=result.stdout or "",
            stderr=result.stderr or "",
            returncode=result.returncode,
        )

        if check and result.returncode != 0:
            error_msg = (
                gerrit_result.stderr.strip()
                or gerrit_result.stdout.strip()
                or f"gerrit command failed: {' '.join(args)}"
            )
            raise GerritError(error_msg, returncode=result.returncode, stderr=gerrit_result.stderr)

        return gerrit_result

    def query(
        self,
        query: str,
        current_patch_set: bool = False,
        dependencies: bool = False,
    ) -> QueryResult:
        """Run `gerrit query`, uncached."""
        result = self.run_gerrit(*query_args(query, current_patch_set, dependencies))
        return parse_query_output(result.stdout)

    def _cache_set(self, key: CacheKey, value: Any, persistent: bool = False) -> None:
        try:
            self.cache.set(key, value, persistent=persistent)
        except CacheError as e:
            logger.warning("Failed to write cache entry", key=str(key), error=str(e))

    def _cached_change(self, key: CacheKey) -> Optional[Change]:
        cached = self.cache.get(key)
        if cached is None:
            return None
        try:
            return Change.model_validate(cached)
        except ValidationError:
            logger.debug("Ignoring invalid cache entry", key=str(key))
            return None

    def get_change(self, query: Query) -> Change:
        """Get a change, with its current patch set, by number, Change-Id or query.

        Raises:
            ChangeNotFoundError: If nothing matches.
        """
        if isinstance(query, int):
            key = CacheKey.change(query)
        elif _CHANGE_ID_RE.match(query):
            key = CacheKey.change_id(query)
        else:
            key = CacheKey.change_query(query)

        change = self._cached_change(key)
        if change is not None:
            return change

        result = self.query(str(query), current_patch_set=True)
        if not result.changes:
            raise ChangeNotFoundError(query)
        change = result.changes[-1]

        value = change.model_dump(mode="json", by_alias=True)
        self._cache_set(key, value)
        self._cache_set(CacheKey.change(change.number), value)
        self._cache_set(CacheKey.change_id(change.id), value)
        return change

    def dependencies(self, query: Query) -> Change:
        """Get a change with its depends-on and needed-by lists.

        Raises:
            ChangeNotFoundError: If nothing matches.
        """
        args = query_args(str(query), current_patch_set=True, dependencies=True)
        key = CacheKey.query(" ".join(args))

        change = self._cached_change(key)
        if change is not None:
            return change

        result = parse_query_output(self.run_gerrit(*args).stdout)
        if not result.changes:
            raise ChangeNotFoundError(query)
        change = result.changes[-1]
        self._cache_set(key, change.model_dump(mode="json", by_alias=True))
        return change

    def _http_client(self) -> httpx.Client:
        if self._http is None:
            username, password = git_ops.credential_fill(self.project.host)
            self._http = httpx.Client(
                base_url=f"https://{self.project.host}/a/",
                auth=httpx.BasicAuth(username, password),
                timeout=30.0,
                transport=self._transport,
            )
        return self._http

    @retry(
        retry=retry_if_exception_type((httpx.NetworkError, httpx.TimeoutException)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    def _send(self, method: str, endpoint: str) -> httpx.Response:
        return self._http_client().request(method, endpoint)

    def http_request(self, method: str, endpoint: str) -> str:
        """Make a REST API request and return the response body.

        GET responses are cached.

        Raises:
            GerritHttpError: On a non-2xx response.
        """
        endpoint = endpoint.lstrip("/")
        method = method.upper()
        key = CacheKey.api(endpoint)

        if method == "GET":
            cached = self.cache.get(key)
            if isinstance(cached, str):
                return cached

        response = self._send(method, endpoint)
        body = strip_xssi_prefix(response.text)
        if not response.is_success:
            raise GerritHttpError(str(response.url), response.status_code, body)

        if method == "GET":
            self._cache_set(key, body)
        return body

    def related_changes(self, change: ChangeNumber) -> RelatedChangesInfo:
        """Get the related changes of a change's current revision."""
        endpoint = f"changes/{self.project.project}~{change}/revisions/current/related"
        body = self.http_request("GET", endpoint)
        try:
            return RelatedChangesInfo.model_validate_json(body)
        except ValidationError as e:
            raise GerritError(f"Unexpected related changes response for {change}: {e}") from e

    def fetch_cl(self, patchset: ChangePatchset) -> CommitHash:
        """Fetch a patchset and return its commit hash.

        Patchsets are immutable, so fetches are cached without expiry. A cached
        commit that is no longer in the local repository is fetched again.
        """
        key = CacheKey.fetch(patchset)
        cached = self.cache.get(key)
        if isinstance(cached, str) and git_ops.commit_exists(cached):
            return cached

        git_ops.fetch(self.remote, patchset.git_ref)
        commit = git_ops.rev_parse("FETCH_HEAD")
        self._cache_set(key, commit, persistent=True)
        logger.debug("Fetched patchset", patchset=str(patchset), commit=commit)
        return commit

    def fetch_current(self, change: ChangeNumber) -> CommitHash:
        """Fetch the current patchset of a change."""
        return self.fetch_cl(self.get_change(change).patchset())

    def checkout_cl(self, patchset: ChangePatchset) -> CommitHash:
        commit = self.fetch_cl(patchset)
        git_ops.checkout(commit)
        return commit

    def dependency_graph(self, query: Query) -> DependencyGraph:
        """Build the dependency graph of the change matching `query`."""
        change = self.get_change(query)
        return build_dependency_graph(self, change.number)

    def pretty(self, change: ChangeNumber) -> str:
        return self.get_change(change).pretty()

    def push(self, commit: str, branch: str) -> None:
        """Push a commit to `refs/for/{branch}`."""
        git_ops.gerrit_push(self.remote, commit, branch)

    def invalidate_change(self, change: ChangeNumber, change_id: Optional[ChangeId] = None) -> None:
        """Forget cached data about a change after it was pushed.

        Best-effort: failures are logged and ignored.
        """
        keys = [
            CacheKey.change(change),
            CacheKey.query(" ".join(query_args(str(change), True, True))),
        ]
        if change_id is not None:
            keys.append(CacheKey.change_id(change_id))
        for key in keys:
            try:
                self.cache.remove(key)
            except CacheError as e:
                logger.warning("Failed to invalidate cache entry", key=str(key), error=str(e))

    def clear_cache(self) -> int:
        return self.cache.clear()

    def close(self) -> None:
        if self._http is not None:
            self._http.close()
            self._http = None
        self.cache.close()

    def __enter__(self) -> Gerrit:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()


def open_gerrit(settings: Settings) -> Gerrit:
    """Open a client for the repository's Gerrit remote.

    Raises:
        RemoteNotFoundError: If no remote points at a Gerrit server.
    """
    remote, project = find_gerrit_remote(settings.remote)
    cache = Cache(cache_directory(settings.cache_dir, project), ttl_seconds=settings.cache_ttl)
    return Gerrit(remote, project, cache)
