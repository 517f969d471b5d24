"""Shared fixtures: image stores, package archives and repository indexes."""

import hashlib
import io
import tarfile
from pathlib import Path

import pytest
import yaml

from stagecraft.config import BuildConfig
from stagecraft.run.images import ImageStore


def _write_tree(root: Path, files: dict):
    root.mkdir(parents=True, exist_ok=True)
    for rel, content in files.items():
        path = root / rel.lstrip("/")
        if rel.endswith("/"):
            path.mkdir(parents=True, exist_ok=True)
            continue
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, str):
            content = content.encode()
        path.write_bytes(content)


@pytest.fixture
def image_store(tmp_path) -> ImageStore:
    return ImageStore(tmp_path / "images")


@pytest.fixture
def make_image(image_store, tmp_path):
    """Create an image in the store from a {path: content} mapping.

    Returns the pinned reference ``name@sha256:...``.
    """

    def make(name: str, files: dict) -> str:
        src = tmp_path / "image-src" / name
        _write_tree(src, files)
        ref = image_store.store_image(name, src)
        return f"{ref.name}@{ref.digest}"

    return make


@pytest.fixture
def make_package(tmp_path):
    """Write a tar.gz package and return (path, sha256)."""

    def make(name: str, files: dict, version: str = "1.0") -> tuple[Path, str]:
        pool = tmp_path / "pool"
        pool.mkdir(exist_ok=True)
        path = pool / f"{name}-{version}.tar.gz"
        with tarfile.open(path, "w:gz") as tar:
            for rel, content in sorted(files.items()):
                data = content.encode() if isinstance(content, str) else content
                info = tarfile.TarInfo(rel.lstrip("/"))
                info.size = len(data)
                info.mode = 0o755 if rel.startswith(("usr/bin", "/usr/bin")) else 0o644
                info.mtime = 0
                tar.addfile(info, io.BytesIO(data))
        return path, hashlib.sha256(path.read_bytes()).hexdigest()

    return make


@pytest.fixture
def make_index(tmp_path, make_package):
    """Write a repository index for {name: {version: files}} (+ optional depends)."""

    def make(packages: dict, depends: dict | None = None, filename: str = "index.yaml") -> Path:
        index = {"packages": {}}
        for name, versions in packages.items():
            for version, files in versions.items():
                path, sha = make_package(name, files, version)
                entry = {"url": f"pool/{path.name}", "sha256": sha}
                if depends and name in depends:
                    entry["depends"] = depends[name]
                index["packages"].setdefault(name, {})[version] = entry
        index_path = tmp_path / filename
        index_path.write_text(yaml.safe_dump(index))
        return index_path

    return make


@pytest.fixture
def context_dir(tmp_path) -> Path:
    ctx = tmp_path / "context"
    ctx.mkdir()
    return ctx


@pytest.fixture
def config(tmp_path, context_dir) -> BuildConfig:
    return BuildConfig(
        images_dir=tmp_path / "images",
        output_dir=tmp_path / "out",
        cache_dir=tmp_path / "cache",
        context_dir=context_dir,
        fetch_backoff=0.0,
        command_timeout=60.0,
    )


@pytest.fixture
def write_tree():
    return _write_tree
