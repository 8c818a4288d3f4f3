"""Persistence for the restack and push todo files.

Both files live in the repository's git directory:
- grstack-restack-todo.json: steps left in an in-progress restack
- grstack-push-todo.json: restacked changes waiting to be pushed
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Optional, TypeVar

from pydantic import BaseModel, ValidationError

from grstack.exceptions import TodoCorruptError
from grstack.state import PushTodo, RestackTodo

RESTACK_TODO_FILENAME = "grstack-restack-todo.json"
PUSH_TODO_FILENAME = "grstack-push-todo.json"

TodoT = TypeVar("TodoT", bound=BaseModel)


def get_restack_todo_path(git_dir: Path) -> Path:
    """Get the path to the restack todo file.

    Args:
        git_dir: Absolute path of the repository's git directory.

    Returns:
        Path to grstack-restack-todo.json.
    """
    return git_dir / RESTACK_TODO_FILENAME


def get_push_todo_path(git_dir: Path) -> Path:
    """Get the path to the push todo file.

    Args:
        git_dir: Absolute path of the repository's git directory.

    Returns:
        Path to grstack-push-todo.json.
    """
    return git_dir / PUSH_TODO_FILENAME


def _load(path: Path, model: type[TodoT]) -> Optional[TodoT]:
    if not path.exists():
        return None

    try:
        content = path.read_bytes()
        return model.model_validate_json(content)
    except OSError as e:
        raise TodoCorruptError(path, str(e)) from e
    except (ValidationError, UnicodeDecodeError) as e:
        raise TodoCorruptError(path, f"invalid format: {e}") from e


def _save(path: Path, todo: BaseModel) -> None:
    # Write next to the target and rename so readers never see a partial file.
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w") as f:
            f.write(todo.model_dump_json(indent=2))
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _clear(path: Path) -> None:
    path.unlink(missing_ok=True)


def load_restack_todo(git_dir: Path) -> Optional[RestackTodo]:
    """Load the restack todo from disk.

    Args:
        git_dir: Absolute path of the repository's git directory.

    Returns:
        RestackTodo if the file exists, None otherwise.

    Raises:
        TodoCorruptError: If the file exists but cannot be read.
    """
    return _load(get_restack_todo_path(git_dir), RestackTodo)


def save_restack_todo(todo: RestackTodo, git_dir: Path) -> None:
    """Atomically save the restack todo to disk."""
    _save(get_restack_todo_path(git_dir), todo)


def clear_restack_todo(git_dir: Path) -> None:
    """Delete the restack todo file if it exists."""
    _clear(get_restack_todo_path(git_dir))


def has_restack_todo(git_dir: Path) -> bool:
    return get_restack_todo_path(git_dir).exists()


def load_push_todo(git_dir: Path) -> Optional[PushTodo]:
    """Load the push todo from disk.

    Args:
        git_dir: Absolute path of the repository's git directory.

    Returns:
        PushTodo if the file exists, None otherwise.

    Raises:
        TodoCorruptError: If the file exists but cannot be read.
    """
    return _load(get_push_todo_path(git_dir), PushTodo)


def save_push_todo(todo: PushTodo, git_dir: Path) -> None:
    """Atomically save the push todo to disk."""
    _save(get_push_todo_path(git_dir), todo)


def clear_push_todo(git_dir: Path) -> None:
    """Delete the push todo file if it exists."""
    _clear(get_push_todo_path(git_dir))


def has_push_todo(git_dir: Path) -> bool:
    return get_push_todo_path(git_dir).exists()
