"""Build configuration.

Values come from, in increasing priority:

- defaults on :class:`BuildConfig`
- a ``stagecraft.yaml`` file (next to the manifest, or given explicitly)
- ``STAGECRAFT_*`` environment variables
- command line flags (applied by the caller via :meth:`BuildConfig.update`)
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

from stagecraft.exceptions import ManifestError
from stagecraft.log import logger

logger = logger.getChild(__name__)

CONFIG_FILENAME = "stagecraft.yaml"
ENV_PREFIX = "STAGECRAFT_"


@dataclass
class BuildConfig:
    """Configuration for a build run."""

    images_dir: Path = Path("images")
    output_dir: Path = Path("out")
    cache_dir: Path = Path(".stagecraft/cache")
    context_dir: Path | None = None
    repositories: list[Path] = field(default_factory=list)
    max_workers: int | None = None
    command_timeout: float = 3600.0
    fetch_timeout: float = 60.0
    fetch_retries: int = 3
    fetch_backoff: float = 0.5
    hook_timeout: float = 600.0
    allow_unpinned: bool = False
    use_cache: bool = True
    register: bool = False
    dry_run: bool = False
    verbose: bool = False

    def update(self, **kwargs) -> "BuildConfig":
        """Apply overrides, ignoring ``None`` values."""
        for key, value in kwargs.items():
            if value is None:
                continue
            if not hasattr(self, key):
                raise ManifestError(f"unknown config option '{key}'")
            setattr(self, key, _coerce(key, value))
        return self

    @classmethod
    def load(cls, path: Path | None = None, environ=None) -> "BuildConfig":
        config = cls()
        if path is not None and path.exists():
            logger.debug("loading config from %s", path)
            with open(path) as f:
                data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise ManifestError(f"{path}: config must be a mapping")
            base = path.parent
            config.update(**data)
            config._rebase(base)
        config.update(**_from_env(os.environ if environ is None else environ))
        return config

    def _rebase(self, base: Path):
        """Make relative paths from a config file relative to that file."""
        for name in ("images_dir", "output_dir", "cache_dir", "context_dir"):
            value = getattr(self, name)
            if value is not None and not value.is_absolute():
                setattr(self, name, base / value)
        self.repositories = [r if r.is_absolute() else base / r for r in self.repositories]


_PATH_FIELDS = {"images_dir", "output_dir", "cache_dir", "context_dir"}
_BOOL_FIELDS = {"allow_unpinned", "use_cache", "register", "dry_run", "verbose"}
_FLOAT_FIELDS = {"command_timeout", "fetch_timeout", "fetch_backoff", "hook_timeout"}
_INT_FIELDS = {"max_workers", "fetch_retries"}


def _coerce(key: str, value):
    try:
        if key in _PATH_FIELDS:
            return Path(value)
        if key == "repositories":
            if isinstance(value, str):
                value = [v for v in value.split(os.pathsep) if v]
            return [Path(v) for v in value]
        if key in _BOOL_FIELDS:
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        if key in _FLOAT_FIELDS:
            return float(value)
        if key in _INT_FIELDS:
            return int(value)
    except (TypeError, ValueError) as e:
        raise ManifestError(f"invalid value for '{key}': {value!r}") from e
    return value


def _from_env(environ) -> dict:
    names = {f.name for f in fields(BuildConfig)}
    values = {}
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        name = key[len(ENV_PREFIX):].lower()
        if name in names:
            values[name] = value
    return values
