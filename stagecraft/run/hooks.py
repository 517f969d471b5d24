"""Post-build hook: an external executable that gates the commit."""

import os
import subprocess
from pathlib import Path

from stagecraft.exceptions import HookError
from stagecraft.log import logger

logger = logger.getChild(__name__)


def prepare_scratch(run_dir: Path) -> dict[str, Path]:
    """Create the per-run cache, log and tmp directories handed to the hook."""
    dirs = {name: run_dir / "hook" / name for name in ("cache", "log", "tmp")}
    for path in dirs.values():
        path.mkdir(parents=True, exist_ok=True)
    return dirs


def run_hook(
    hook: Path,
    rootfs: Path,
    run_dir: Path,
    image: str,
    timeout: float | None = None,
) -> subprocess.CompletedProcess:
    """Run ``hook`` against the assembled filesystem.

    The hook gets the final tree read-write in ``STAGECRAFT_ROOTFS`` and
    scratch directories in ``STAGECRAFT_CACHE_DIR``, ``STAGECRAFT_LOG_DIR``
    and ``TMPDIR``; all of them are discarded with the build run.

    Raises:
        HookError: If the hook can't be started, times out or exits non-zero
    """
    scratch = prepare_scratch(run_dir)
    env = {
        **os.environ,
        "STAGECRAFT_ROOTFS": str(rootfs),
        "STAGECRAFT_CACHE_DIR": str(scratch["cache"]),
        "STAGECRAFT_LOG_DIR": str(scratch["log"]),
        "STAGECRAFT_IMAGE": image,
        "TMPDIR": str(scratch["tmp"]),
    }
    logger.debug("running hook %s on %s", hook, rootfs)

    try:
        result = subprocess.run(
            [str(hook)],
            cwd=rootfs,
            env=env,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise HookError(f"post-build hook {hook} timed out after {timeout:g}s") from e
    except OSError as e:
        raise HookError(f"cannot run post-build hook {hook}: {e}") from e

    if result.returncode != 0:
        output = (result.stdout + result.stderr).strip()
        msg = f"post-build hook {hook} exited with status {result.returncode}"
        if output:
            msg += f"\n{output}"
        raise HookError(msg)
    return result
