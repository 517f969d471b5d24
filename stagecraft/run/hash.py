"""Content digests for files and filesystem trees."""

import hashlib
import json
import os
import stat
from pathlib import Path

EMPTY_TREE_DIGEST = "sha256:" + hashlib.sha256(b"{}").hexdigest()


def compute_digest(path: Path) -> str:
    """Compute the sha256 digest of a file or directory tree.

    For files: sha256 of contents
    For directories: sha256 of the sorted JSON of {relpath: entry}, where an
    entry records the file mode and either the content hash or the symlink
    target. Empty directories are included so that layout changes alter
    the digest.

    Args:
        path: Path to file or directory to hash

    Returns:
        Digest string of the form ``sha256:<hex>``

    Raises:
        FileNotFoundError: If path doesn't exist
        ValueError: If path is neither file nor directory
    """
    if not os.path.lexists(path):
        raise FileNotFoundError(f"{path} not found")

    if path.is_symlink() or path.is_file():
        return "sha256:" + _hash_file(path)
    elif path.is_dir():
        return "sha256:" + _hash_directory(path)
    else:
        raise ValueError(f"{path} is neither file nor directory")


def _hash_file(file_path: Path) -> str:
    if file_path.is_symlink():
        return hashlib.sha256(os.readlink(file_path).encode()).hexdigest()
    sha = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            sha.update(chunk)
    return sha.hexdigest()


def tree_entries(dir_path: Path) -> dict[str, dict]:
    """Describe every entry under a directory, keyed by relative path."""
    entries = {}
    for root, dirs, files in os.walk(dir_path):
        dirs.sort()
        root_path = Path(root)
        for name in dirs + sorted(files):
            sub = root_path / name
            rel = sub.relative_to(dir_path).as_posix()
            st = sub.lstat()
            mode = stat.S_IMODE(st.st_mode)
            if stat.S_ISLNK(st.st_mode):
                entries[rel] = {"type": "link", "target": os.readlink(sub)}
            elif stat.S_ISDIR(st.st_mode):
                entries[rel] = {"type": "dir", "mode": mode}
            else:
                entries[rel] = {"type": "file", "mode": mode, "sha256": _hash_file(sub)}
    return entries


def _hash_directory(dir_path: Path) -> str:
    entries = tree_entries(dir_path)
    json_str = json.dumps(entries, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(json_str.encode()).hexdigest()


def compute_file_size(path: Path) -> int:
    """Get size of file or directory (sum of regular file sizes)."""
    if not path.exists():
        raise FileNotFoundError(f"{path} not found")

    if path.is_file():
        return path.stat().st_size
    total = 0
    for sub in path.rglob("*"):
        if sub.is_file() and not sub.is_symlink():
            total += sub.stat().st_size
    return total


def sha256_file(path: Path) -> str:
    """Plain hex sha256 of a file's bytes."""
    return _hash_file(path)
