"""Local image store: named root filesystem trees with content digests.

Layout::

    <images_dir>/
      <name>/
        image.yaml      # name, digest, size, created_from
        rootfs/         # the filesystem tree
"""

import os
import re
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path

import yaml

from stagecraft.exceptions import ImageResolveError
from stagecraft.log import logger
from stagecraft.run.hash import EMPTY_TREE_DIGEST, compute_digest, compute_file_size
from stagecraft.run.stage import SCRATCH

logger = logger.getChild(__name__)

DIGEST_RE = re.compile(r"^sha256:[0-9a-f]{64}$")
IMAGE_METADATA = "image.yaml"


def parse_image_ref(ref: str) -> tuple[str, str | None]:
    """Split ``name@sha256:<hex>`` into (name, digest).

    Raises:
        ImageResolveError: If the digest part is malformed
    """
    if "@" not in ref:
        return ref, None
    name, digest = ref.split("@", 1)
    if not name or not DIGEST_RE.match(digest):
        raise ImageResolveError(ref, "malformed reference, expected name@sha256:<64 hex>")
    return name, digest


@dataclass(frozen=True)
class ImageRef:
    """A resolved base image."""

    name: str
    digest: str
    rootfs: Path | None

    @property
    def is_scratch(self) -> bool:
        return self.rootfs is None


class ImageStore:
    """Resolve and register base images in a local directory."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def image_dir(self, name: str) -> Path:
        return self.root / name

    def resolve(self, ref: str) -> ImageRef:
        """Resolve a reference to an image, verifying any pinned digest.

        The digest is always recomputed from the tree rather than trusted
        from ``image.yaml``, so a modified rootfs can't pass as pinned.
        """
        if ref == SCRATCH:
            return ImageRef(name=SCRATCH, digest=EMPTY_TREE_DIGEST, rootfs=None)

        name, pinned = parse_image_ref(ref)
        rootfs = self.image_dir(name) / "rootfs"
        if not rootfs.is_dir():
            raise ImageResolveError(ref, f"no image '{name}' in {self.root}")

        try:
            digest = compute_digest(rootfs)
        except OSError as e:
            raise ImageResolveError(ref, f"cannot read rootfs: {e}") from e

        if pinned is not None and pinned != digest:
            raise ImageResolveError(ref, f"digest mismatch, image has {digest}")

        logger.debug("resolved %s -> %s", ref, digest)
        return ImageRef(name=name, digest=digest, rootfs=rootfs)

    def list(self) -> list[dict]:
        """Return metadata for every image in the store, sorted by name."""
        if not self.root.is_dir():
            return []
        images = []
        for sub in sorted(self.root.iterdir()):
            meta_path = sub / IMAGE_METADATA
            if sub.name.startswith(".") or not (sub / "rootfs").is_dir():
                continue
            meta = {"name": sub.name}
            if meta_path.exists():
                with open(meta_path) as f:
                    meta.update(yaml.safe_load(f) or {})
            images.append(meta)
        return images

    def store_image(
        self,
        name: str,
        rootfs: Path,
        created_from: str | None = None,
        metadata: dict | None = None,
    ) -> ImageRef:
        """Copy a tree into the store under ``name``, replacing any previous image.

        The new image is assembled next to its destination and swapped in
        with a rename, so readers never see a half-copied tree.
        """
        self.root.mkdir(parents=True, exist_ok=True)
        tmp = Path(tempfile.mkdtemp(prefix=f".{name}.", dir=self.root))
        try:
            shutil.copytree(rootfs, tmp / "rootfs", symlinks=True)
            digest = compute_digest(tmp / "rootfs")
            meta = dict(metadata or {})
            meta.update(name=name, digest=digest, size=compute_file_size(tmp / "rootfs"))
            if created_from:
                meta["created_from"] = created_from
            with open(tmp / IMAGE_METADATA, "w") as f:
                yaml.safe_dump(meta, f, sort_keys=True)

            dest = self.image_dir(name)
            old = None
            if dest.exists():
                old = self.root / f".{name}.old"
                if old.exists():
                    shutil.rmtree(old)
                os.rename(dest, old)
            os.rename(tmp, dest)
            if old is not None:
                shutil.rmtree(old)
        except BaseException:
            shutil.rmtree(tmp, ignore_errors=True)
            raise

        logger.info("stored image %s (%s)", name, digest)
        return ImageRef(name=name, digest=digest, rootfs=dest / "rootfs")
