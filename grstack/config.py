"""Settings read from the environment."""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from grstack.cache import DEFAULT_TTL_SECONDS
from grstack.exceptions import ConfigError


def default_cache_dir(environ: Mapping[str, str]) -> Path:
    """`$XDG_CACHE_HOME/grstack`, or `~/.cache/grstack`."""
    xdg = environ.get("XDG_CACHE_HOME")
    if xdg:
        return Path(xdg) / "grstack"
    return Path.home() / ".cache" / "grstack"


class Settings(BaseModel):
    """grstack settings.

    Attributes:
        log: Log level name.
        remote: Name of the Gerrit git remote, or None to auto-detect.
        cache_dir: Root directory of the query cache.
        cache_ttl: Seconds before cached query results expire.
    """

    log: str = "info"
    remote: Optional[str] = None
    cache_dir: Path
    cache_ttl: float = Field(default=DEFAULT_TTL_SECONDS, ge=0)

    @field_validator("remote")
    @classmethod
    def _empty_remote_is_auto(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Load settings from `GRSTACK_*` environment variables.

    Raises:
        ConfigError: If a variable has an invalid value.
    """
    if environ is None:
        environ = os.environ

    values: dict[str, object] = {
        "cache_dir": environ.get("GRSTACK_CACHE_DIR") or default_cache_dir(environ),
    }
    if environ.get("GRSTACK_LOG"):
        values["log"] = environ["GRSTACK_LOG"]
    if "GRSTACK_REMOTE" in environ:
        values["remote"] = environ["GRSTACK_REMOTE"]
    if environ.get("GRSTACK_CACHE_TTL"):
        values["cache_ttl"] = environ["GRSTACK_CACHE_TTL"]

    try:
        return Settings.model_validate(values)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
