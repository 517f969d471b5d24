"""Isolated stage filesystems and the snapshots they leave behind."""

import os
import shutil
import stat
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from stagecraft.log import logger
from stagecraft.run.hash import compute_digest
from stagecraft.run.images import ImageRef

logger = logger.getChild(__name__)

MAX_SYMLINK_HOPS = 40


@dataclass(frozen=True)
class Snapshot:
    """Finished state of a stage. Later stages only ever read from it."""

    stage: str
    root: Path
    digest: str

    def path(self, path: str) -> Path:
        """Resolve an in-image path against this snapshot."""
        return resolve_in_root(self.root, path)


def resolve_in_root(root: Path, path: str, follow_final: bool = False) -> Path:
    """Resolve ``path`` as if ``root`` were ``/``.

    Symlinks in intermediate components are followed relative to ``root``,
    absolute targets included, and ``..`` never climbs above ``root``, so
    the result always lies inside it.
    """
    pending = [p for p in PurePosixPath("/" + path).parts[1:]]
    resolved: list[str] = []
    hops = 0
    while pending:
        part = pending.pop(0)
        if part in ("", "."):
            continue
        if part == "..":
            if resolved:
                resolved.pop()
            continue
        candidate = root.joinpath(*resolved, part)
        if candidate.is_symlink() and (pending or follow_final):
            hops += 1
            if hops > MAX_SYMLINK_HOPS:
                raise OSError(f"too many levels of symbolic links resolving {path}")
            target = PurePosixPath(os.readlink(candidate))
            if target.is_absolute():
                resolved = []
                pending = list(target.parts[1:]) + pending
            else:
                pending = list(target.parts) + pending
            continue
        resolved.append(part)
    return root.joinpath(*resolved)


def _make_writable_and_retry(func, path, _exc):
    parent = os.path.dirname(path)
    for p in (parent, path):
        try:
            os.chmod(p, os.stat(p).st_mode | stat.S_IWUSR | stat.S_IXUSR | stat.S_IRUSR)
        except OSError:
            pass
    func(path)


def remove_tree(path: Path):
    """Remove a tree, fixing up read-only directories along the way."""
    if os.path.lexists(path):
        if sys.version_info >= (3, 12):
            shutil.rmtree(path, onexc=_make_writable_and_retry)
        else:
            shutil.rmtree(path, onerror=_make_writable_and_retry)


def copy_path(src: Path, dest: Path):
    """Copy a single file or symlink, preserving its mode or link target.

    An existing symlink at ``dest`` is replaced, never written through.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    if os.path.lexists(dest) and (dest.is_symlink() or not dest.is_dir()):
        dest.unlink()
    if src.is_symlink():
        os.symlink(os.readlink(src), dest)
    else:
        shutil.copy2(src, dest)


class StageFilesystem:
    """A private, writable root filesystem for one stage run."""

    def __init__(self, stage: str, work_dir: Path | None = None):
        self.stage = stage
        if work_dir is not None:
            work_dir.mkdir(parents=True, exist_ok=True)
        self.root = Path(tempfile.mkdtemp(prefix=f"stage-{stage}-", dir=work_dir))
        self.discarded = False

    @classmethod
    def from_image(cls, stage: str, image: ImageRef, work_dir: Path | None = None) -> "StageFilesystem":
        fs = cls(stage, work_dir)
        if image.rootfs is not None:
            fs.populate(image.rootfs)
        return fs

    @classmethod
    def from_snapshot(cls, stage: str, snapshot: Snapshot, work_dir: Path | None = None) -> "StageFilesystem":
        fs = cls(stage, work_dir)
        fs.populate(snapshot.root)
        return fs

    def populate(self, source: Path):
        logger.debug("populating %s from %s", self.root, source)
        shutil.copytree(source, self.root, symlinks=True, dirs_exist_ok=True)

    def resolve(self, path: str, follow_final: bool = False) -> Path:
        return resolve_in_root(self.root, path, follow_final=follow_final)

    def copy_in(self, src: Path, dest: str):
        """Copy ``src`` from outside the stage to ``dest`` inside it.

        A ``dest`` ending in ``/``, or naming an existing directory when
        ``src`` is a file, means "into that directory".
        """
        target = self.resolve(dest, follow_final=True)
        if dest.endswith("/") or (target.is_dir() and not src.is_dir()):
            target = target / src.name
        if src.is_dir() and not src.is_symlink():
            return self.copy_tree_in(src, self._in_root(target))
        copy_path(src, target)
        return target

    def copy_tree_in(self, src: Path, dest: str) -> Path:
        """Merge directory ``src`` into in-image directory ``dest``.

        Every entry is resolved against the stage root on its own, so a
        symlink already in the tree redirects within the root and a file
        landing on a symlink replaces the link.
        """
        target = self.resolve(dest, follow_final=True)
        if os.path.lexists(target) and not target.is_dir():
            target.unlink()
        target.mkdir(parents=True, exist_ok=True)
        base = self._in_root(target)
        for child in sorted(src.iterdir()):
            child_dest = str(PurePosixPath(base, child.name))
            if child.is_dir() and not child.is_symlink():
                self.copy_tree_in(child, child_dest)
            else:
                copy_path(child, self.resolve(child_dest))
        shutil.copystat(src, target)
        return target

    def _in_root(self, path: Path) -> str:
        return "/" + path.relative_to(self.root).as_posix()

    def snapshot(self) -> Snapshot:
        return Snapshot(stage=self.stage, root=self.root, digest=compute_digest(self.root))

    def discard(self):
        if not self.discarded:
            logger.debug("discarding %s", self.root)
            remove_tree(self.root)
            self.discarded = True
