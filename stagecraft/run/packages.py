"""Package sets, repository indexes and the package installer.

A repository index is a YAML file::

    packages:
      libfoo:
        "1.2.0":
          url: pool/libfoo-1.2.0.tar.gz   # relative to the index file
          sha256: 3b5d...
          depends: [libbar]

A package is a tar archive unpacked at the stage root. What was installed
is recorded in ``/var/lib/stagecraft/packages.yaml`` inside the stage.
"""

from __future__ import annotations

import re
import shutil
import tarfile
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator
from urllib.parse import unquote, urlparse

import requests
import yaml
from tqdm import tqdm

from stagecraft.cache import PackageCache, is_sha256
from stagecraft.exceptions import (
    DownloadError,
    PackageError,
    PackageInstallErrors,
    UnresolvedPackage,
)
from stagecraft.log import logger
from stagecraft.run.hash import sha256_file

logger = logger.getChild(__name__)

PACKAGE_MANIFEST = "/var/lib/stagecraft/packages.yaml"
ARCHIVE_SUFFIXES = (".tar.gz", ".tgz", ".tar.xz", ".tar.bz2", ".tar")


def _version_key(version: str) -> tuple:
    """Natural sort key: ``1.10`` sorts after ``1.9``."""
    parts = re.split(r"(\d+)", version)
    return tuple((0, int(p)) if p.isdigit() else (1, p) for p in parts if p)


@dataclass(frozen=True, order=True)
class PackageSpec:
    """One requested package: ``name``, ``name=version`` or a direct URL."""

    name: str
    version: str | None = None
    url: str | None = None
    sha256: str | None = None

    @classmethod
    def parse(cls, entry: Any) -> PackageSpec:
        if isinstance(entry, str):
            name, sep, version = entry.strip().partition("=")
            if not name or (sep and not version):
                raise ValueError(f"invalid package entry {entry!r}")
            return cls(name=name, version=version or None)

        if isinstance(entry, dict):
            unknown = set(entry) - {"name", "version", "url", "sha256"}
            if unknown:
                raise ValueError(f"unknown package keys: {', '.join(sorted(unknown))}")
            url = entry.get("url")
            sha256 = entry.get("sha256")
            if sha256 is not None and not is_sha256(str(sha256)):
                raise ValueError(f"invalid sha256 {sha256!r}")
            name = entry.get("name") or (url and _name_from_url(url))
            if not name:
                raise ValueError(f"package entry needs 'name' or 'url': {entry!r}")
            version = entry.get("version")
            return cls(
                name=str(name),
                version=str(version) if version is not None else None,
                url=str(url) if url else None,
                sha256=str(sha256).lower() if sha256 else None,
            )

        raise ValueError(f"invalid package entry {entry!r}")

    @property
    def pinned(self) -> bool:
        return bool(self.version or self.sha256)

    def __str__(self):
        if self.url:
            return f"{self.name} ({self.url})"
        return f"{self.name}={self.version}" if self.version else self.name


def _name_from_url(url: str) -> str:
    base = Path(unquote(urlparse(url).path)).name
    for suffix in ARCHIVE_SUFFIXES:
        if base.endswith(suffix):
            return base[: -len(suffix)]
    return base


class PackageSet:
    """An order-insensitive, deduplicated set of package requests.

    Identical entries collapse; a pinned entry wins over an unpinned one of
    the same name; two different pins for the same name are an error.
    Iteration is sorted by name, so equal sets always behave identically.
    """

    def __init__(self, specs: list[PackageSpec]):
        self._specs = tuple(sorted(specs))

    @classmethod
    def from_entries(cls, entries: list[Any]) -> PackageSet:
        by_name: dict[str, set[PackageSpec]] = {}
        for entry in entries:
            spec = PackageSpec.parse(entry)
            by_name.setdefault(spec.name, set()).add(spec)

        specs = []
        for name, candidates in by_name.items():
            pinned = {c for c in candidates if c.pinned}
            chosen = pinned or candidates
            if len(chosen) > 1:
                listed = ", ".join(sorted(str(c) for c in chosen))
                raise ValueError(f"conflicting entries for package '{name}': {listed}")
            specs.append(next(iter(chosen)))
        return cls(specs)

    def __iter__(self) -> Iterator[PackageSpec]:
        return iter(self._specs)

    def __len__(self):
        return len(self._specs)

    def __eq__(self, other):
        return isinstance(other, PackageSet) and self._specs == other._specs

    def __hash__(self):
        return hash(self._specs)

    def __repr__(self):
        return f"PackageSet({[str(s) for s in self._specs]})"

    def __str__(self):
        return " ".join(str(s) for s in self._specs)


@dataclass(frozen=True)
class ResolvedPackage:
    """A concrete installable unit."""

    name: str
    version: str | None
    url: str
    sha256: str | None
    source: str
    depends: tuple[str, ...] = field(default=(), compare=False)

    def manifest_entry(self, sha256: str) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "sha256": sha256,
            "source": self.source,
        }


class PackageIndex:
    """Name -> versions lookup over one or more repository index files.

    Earlier repositories take precedence: the first one that knows a name
    answers for it.
    """

    def __init__(self, repositories: list[Path] | None = None, allow_unpinned: bool = False):
        self.allow_unpinned = allow_unpinned
        self.repositories: list[tuple[Path, dict[str, dict[str, dict]]]] = []
        for repo in repositories or []:
            self.add_repository(Path(repo))

    def add_repository(self, path: Path):
        if not path.exists():
            raise PackageError(f"repository index not found: {path}")
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        packages = data.get("packages") if isinstance(data, dict) else None
        if not isinstance(packages, dict):
            raise PackageError(f"{path}: index must contain a 'packages' mapping")

        normalized: dict[str, dict[str, dict]] = {}
        for name, versions in packages.items():
            if not isinstance(versions or {}, dict):
                raise PackageError(f"{path}: {name}: versions must be a mapping")
            normalized[str(name)] = {}
            for version, info in (versions or {}).items():
                if not isinstance(info, dict) or not info.get("url"):
                    raise PackageError(f"{path}: {name} {version}: entry needs 'url'")
                if not info.get("sha256") and not self.allow_unpinned:
                    raise PackageError(f"{path}: {name} {version}: entry needs 'sha256'")
                normalized[str(name)][str(version)] = info
        self.repositories.append((path, normalized))

    def lookup(self, name: str, version: str | None = None) -> ResolvedPackage:
        """Resolve a name to its pinned version, or the highest one available.

        Raises:
            UnresolvedPackage: If no repository has the name (or that version)
        """
        for path, packages in self.repositories:
            versions = packages.get(name)
            if not versions:
                continue
            if version is None:
                version = max(versions, key=_version_key)
            info = versions.get(version)
            if info is None:
                raise UnresolvedPackage(name, version)
            return ResolvedPackage(
                name=name,
                version=version,
                url=_resolve_url(info["url"], path.parent),
                sha256=str(info["sha256"]).lower() if info.get("sha256") else None,
                source=f"index:{path.name}",
                depends=tuple(str(d) for d in info.get("depends") or ()),
            )
        raise UnresolvedPackage(name, version)


def _resolve_url(url: str, base: Path) -> str:
    if urlparse(url).scheme:
        return url
    path = Path(url)
    if not path.is_absolute():
        path = base / path
    return path.resolve().as_uri()


class Fetcher:
    """Download URLs to local files, retrying transient network errors.

    Only connection errors, timeouts and HTTP 5xx responses are retried,
    with exponential backoff. Everything else fails on the first attempt.
    """

    def __init__(
        self,
        timeout: float = 60.0,
        retries: int = 3,
        backoff: float = 0.5,
        session: requests.Session | None = None,
    ):
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff
        self.session = session or requests.Session()

    def fetch(self, url: str, dest: Path):
        parsed = urlparse(url)
        if parsed.scheme in ("", "file"):
            self._copy_local(url, Path(unquote(parsed.path)), dest)
            return
        if parsed.scheme not in ("http", "https"):
            raise DownloadError(url, f"unsupported scheme '{parsed.scheme}'")

        attempt = 0
        while True:
            try:
                self._download(url, dest)
                return
            except DownloadError as e:
                if not e.transient or attempt >= self.retries:
                    raise
                delay = self.backoff * (2 ** attempt)
                attempt += 1
                logger.warning(
                    "%s (attempt %d/%d), retrying in %.1fs",
                    e, attempt, self.retries + 1, delay,
                )
                time.sleep(delay)

    def _copy_local(self, url: str, src: Path, dest: Path):
        if not src.is_file():
            raise DownloadError(url, "no such file")
        shutil.copyfile(src, dest)

    def _download(self, url: str, dest: Path):
        try:
            with self.session.get(url, stream=True, timeout=self.timeout) as response:
                if response.status_code >= 500:
                    raise DownloadError(url, f"HTTP {response.status_code}", transient=True)
                if response.status_code >= 400:
                    raise DownloadError(url, f"HTTP {response.status_code}")
                with open(dest, "wb") as f:
                    for chunk in response.iter_content(chunk_size=65536):
                        f.write(chunk)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise DownloadError(url, str(e) or type(e).__name__, transient=True) from e
        except requests.RequestException as e:
            raise DownloadError(url, str(e)) from e


def _extract_filter():
    # tarfile filters exist on 3.12+ and on security releases of older versions
    return getattr(tarfile, "tar_filter", None)


def _safe_members(tar: tarfile.TarFile, url: str):
    for member in tar.getmembers():
        name = member.name.lstrip("/")
        if name.startswith("..") or "/../" in f"/{name}/":
            raise DownloadError(url, f"archive member escapes root: {member.name}")
        if member.isdev():
            continue
        member.name = name
        yield member


class PackageInstaller:
    """Resolve package sets and apply them to a stage filesystem."""

    def __init__(
        self,
        index: PackageIndex,
        cache: PackageCache,
        fetcher: Fetcher | None = None,
        max_workers: int | None = None,
        progress: bool = False,
    ):
        self.index = index
        self.cache = cache
        self.fetcher = fetcher or Fetcher()
        self.max_workers = max_workers
        self.progress = progress

    def resolve(self, packages: PackageSet) -> list[ResolvedPackage]:
        """Resolve requests (and index dependencies) to concrete packages.

        Returns:
            Packages sorted by name

        Raises:
            UnresolvedPackage: For the first name that can't be found
            PackageInstallErrors: If several names can't be found
        """
        resolved: dict[str, ResolvedPackage] = {}
        errors: list[PackageError] = []
        pending = list(packages)

        while pending:
            spec = pending.pop(0)
            if spec.name in resolved:
                continue
            if spec.url:
                resolved[spec.name] = ResolvedPackage(
                    name=spec.name,
                    version=spec.version,
                    url=spec.url,
                    sha256=spec.sha256,
                    source="url",
                )
                continue
            try:
                package = self.index.lookup(spec.name, spec.version)
            except UnresolvedPackage as e:
                errors.append(e)
                continue
            resolved[spec.name] = package
            for dep in package.depends:
                pending.append(PackageSpec.parse(dep))

        if len(errors) == 1:
            raise errors[0]
        if errors:
            raise PackageInstallErrors(errors)
        return [resolved[name] for name in sorted(resolved)]

    def install(self, packages: PackageSet, root: Path, scratch_dir: Path | None = None) -> list[dict]:
        """Install a package set into the filesystem at ``root``.

        All archives are downloaded (concurrently) before anything is
        unpacked, so a failed download leaves the filesystem untouched.

        Returns:
            Manifest entries for the installed packages, sorted by name
        """
        resolved = self.resolve(packages)
        archives = self._fetch_all(resolved, scratch_dir)

        entries = []
        for package in resolved:
            archive = archives[package.name]
            sha256 = sha256_file(archive)
            logger.debug("unpacking %s %s", package.name, package.version or "")
            self._unpack(package, archive, root)
            entries.append(package.manifest_entry(sha256))

        write_package_manifest(root, entries)
        return entries

    def _fetch_all(self, resolved: list[ResolvedPackage], scratch_dir: Path | None) -> dict[str, Path]:
        archives: dict[str, Path] = {}
        errors: list[PackageError] = []

        if len(resolved) <= 1:
            for package in resolved:
                archives[package.name] = self._fetch(package, scratch_dir)
            return archives

        # disable=None turns the bar off when stderr isn't a tty
        pbar = tqdm(
            total=len(resolved),
            desc="Fetching",
            unit="pkg",
            leave=False,
            disable=None if self.progress else True,
        )
        with pbar, ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {
                executor.submit(self._fetch, package, scratch_dir): package
                for package in resolved
            }
            for future in as_completed(futures):
                package = futures[future]
                try:
                    archives[package.name] = future.result()
                except PackageError as e:
                    errors.append(e)
                pbar.update(1)

        if len(errors) == 1:
            raise errors[0]
        if errors:
            errors.sort(key=str)
            raise PackageInstallErrors(errors)
        return archives

    def _fetch(self, package: ResolvedPackage, scratch_dir: Path | None) -> Path:
        if package.sha256:
            return self.cache.put(package.sha256, package.url, self.fetcher.fetch)

        # Unpinned downloads are never cached: there is no key to trust
        scratch = scratch_dir or self.cache.root / "unpinned"
        scratch.mkdir(parents=True, exist_ok=True)
        dest = scratch / f"{package.name}.archive"
        self.fetcher.fetch(package.url, dest)
        return dest

    def _unpack(self, package: ResolvedPackage, archive: Path, root: Path):
        try:
            with tarfile.open(archive) as tar:
                members = list(_safe_members(tar, package.url))
                tar_filter = _extract_filter()
                if tar_filter is not None:
                    tar.extractall(root, members=members, filter=tar_filter)
                else:
                    tar.extractall(root, members=members)
        except (tarfile.TarError, EOFError) as e:
            raise DownloadError(package.url, f"corrupt archive: {e}") from e


def read_package_manifest(root: Path) -> list[dict]:
    path = root / PACKAGE_MANIFEST.lstrip("/")
    if not path.exists():
        return []
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return list(data.get("packages") or [])


def write_package_manifest(root: Path, entries: list[dict]):
    """Merge ``entries`` into the stage's package manifest.

    Entries are keyed by name and written sorted, so the file only depends
    on what is installed, not on the order it was installed in.
    """
    merged = {e["name"]: e for e in read_package_manifest(root)}
    for entry in entries:
        merged[entry["name"]] = entry
    path = root / PACKAGE_MANIFEST.lstrip("/")
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.safe_dump(
            {"packages": [merged[name] for name in sorted(merged)]},
            f,
            sort_keys=True,
            default_flow_style=False,
        )
