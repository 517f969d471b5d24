"""Stage executor: runs a stage's instructions against its own filesystem.

Instructions run strictly in declared order. The first failure aborts the
stage, its filesystem is discarded, and the error propagates to the build.
"""

import os
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import TextIO

from stagecraft.config import BuildConfig
from stagecraft.exceptions import BuildCancelled, InstructionError, StagecraftError
from stagecraft.log import logger
from stagecraft.run.artifact import ArtifactResolver
from stagecraft.run.images import ImageStore
from stagecraft.run.packages import PackageInstaller
from stagecraft.run.stage import Instruction, Stage
from stagecraft.run.validate import parse_unit
from stagecraft.run.workspace import Snapshot, StageFilesystem

logger = logger.getChild(__name__)

SYSTEMD_SYSTEM_DIR = "/etc/systemd/system"
OUTPUT_TAIL = 4000


class CancelToken:
    """Cooperative cancellation, checked at every instruction boundary."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self, stage: str | None = None, index: int | None = None):
        if self._event.is_set():
            raise BuildCancelled(stage, index)


def _tail(output: str) -> str:
    if len(output) <= OUTPUT_TAIL:
        return output
    return "...\n" + output[-OUTPUT_TAIL:]


class StageExecutor:
    """Execute stages one at a time."""

    def __init__(
        self,
        images: ImageStore,
        artifacts: ArtifactResolver,
        installer: PackageInstaller,
        config: BuildConfig | None = None,
        work_dir: Path | None = None,
        context_dir: Path | None = None,
        cancel: CancelToken | None = None,
        output: TextIO | None = None,
    ):
        """Initialize stage executor.

        Args:
            images: Store that base image references resolve against
            artifacts: Completed stages, for ``from: stage:`` and ``copy_from``
            installer: Package installer used by ``install``
            config: Build configuration
            work_dir: Scratch directory for stage filesystems (default: system tmp)
            context_dir: Directory ``copy``, ``overlay`` and ``service`` read from
            cancel: Token checked before every instruction
            output: Stream for progress output (default: stderr)
        """
        self.images = images
        self.artifacts = artifacts
        self.installer = installer
        self.config = config or BuildConfig()
        self.work_dir = work_dir
        self.context_dir = Path(context_dir or ".").resolve()
        self.cancel = cancel or CancelToken()
        self.output = output or sys.stderr

    def execute(self, stage: Stage) -> Snapshot:
        """Run all instructions of ``stage`` and return its snapshot.

        Raises:
            ImageResolveError: If the base image can't be resolved
            InstructionError: If an instruction fails
            BuildCancelled: If the cancel token fires
        """
        self.cancel.check(stage.name, 0)
        fs = self._open(stage)
        env: dict[str, str] = {}

        try:
            for ins in stage.instructions:
                self.cancel.check(stage.name, ins.index)
                self._execute_instruction(stage, ins, fs, env)
            self.cancel.check(stage.name, len(stage.instructions))
            snapshot = fs.snapshot()
        except BaseException:
            fs.discard()
            raise

        logger.debug("stage %s finished: %s", stage.name, snapshot.digest)
        return snapshot

    def _open(self, stage: Stage) -> StageFilesystem:
        if stage.base_stage:
            base = self.artifacts.snapshot(stage.base_stage)
            self._log(f"{stage.name}: from stage {base.stage} ({base.digest[:19]})")
            return StageFilesystem.from_snapshot(stage.name, base, self.work_dir)

        image = self.images.resolve(stage.base)
        self._log(f"{stage.name}: from {image.name} ({image.digest[:19]})")
        return StageFilesystem.from_image(stage.name, image, self.work_dir)

    def _execute_instruction(self, stage: Stage, ins: Instruction, fs: StageFilesystem, env: dict[str, str]):
        label = f"{stage.name}[{ins.index}] {ins.kind}"
        if not ins.enabled:
            self._log(f"  ○ {label}: disabled")
            return

        self._log(f"  ⟳ {label}: {ins.describe()}")
        start_time = time.time()
        try:
            getattr(self, f"_do_{ins.kind}")(stage, ins, fs, env)
        except StagecraftError:
            self._log(f"  ✗ {label}: failed")
            raise
        except OSError as e:
            self._log(f"  ✗ {label}: failed")
            raise InstructionError(stage.name, ins.index, ins.kind, reason=str(e)) from e

        duration = time.time() - start_time
        self._log(f"  ✓ {label}: completed ({duration:.1f}s)")

    def _command_env(self, stage: Stage, fs: StageFilesystem, env: dict[str, str]) -> dict[str, str]:
        return {
            **os.environ,
            **env,
            "STAGECRAFT_ROOT": str(fs.root),
            "STAGECRAFT_STAGE": stage.name,
        }

    def _check_call(self, stage: Stage, ins: Instruction, args, cwd: Path, env: dict[str, str], shell: bool = False):
        try:
            result = subprocess.run(
                args,
                shell=shell,
                cwd=cwd,
                env=env,
                capture_output=True,
                text=True,
                timeout=self.config.command_timeout,
            )
        except subprocess.TimeoutExpired as e:
            output = "".join(
                s.decode(errors="replace") if isinstance(s, bytes) else s
                for s in (e.stdout, e.stderr)
                if s
            )
            raise InstructionError(
                stage.name, ins.index, ins.kind,
                output=_tail(output),
                reason=f"timed out after {self.config.command_timeout:g}s",
            ) from e

        if self.config.verbose and result.stdout:
            self._log(result.stdout.rstrip())
        if result.returncode != 0:
            raise InstructionError(
                stage.name, ins.index, ins.kind,
                output=_tail(result.stdout + result.stderr),
                reason=f"exit status {result.returncode}",
            )
        return result

    def _do_run(self, stage: Stage, ins: Instruction, fs: StageFilesystem, env: dict[str, str]):
        self._check_call(stage, ins, ins.args["cmd"], fs.root, self._command_env(stage, fs, env), shell=True)

    def _do_env(self, stage: Stage, ins: Instruction, fs: StageFilesystem, env: dict[str, str]):
        env.update(ins.args["vars"])

    def _do_git(self, stage: Stage, ins: Instruction, fs: StageFilesystem, env: dict[str, str]):
        dest = fs.resolve(ins.args["dest"])
        dest.parent.mkdir(parents=True, exist_ok=True)
        cmd_env = self._command_env(stage, fs, env)
        cmd_env["GIT_TERMINAL_PROMPT"] = "0"
        self._check_call(stage, ins, ["git", "clone", "--quiet", ins.args["url"], str(dest)], fs.root, cmd_env)
        self._check_call(
            stage, ins,
            ["git", "-c", "advice.detachedHead=false", "checkout", "--quiet", ins.args["ref"]],
            dest, cmd_env,
        )

    def _context_path(self, stage: Stage, ins: Instruction, src: str) -> Path:
        path = (self.context_dir / src).resolve()
        if path != self.context_dir and self.context_dir not in path.parents:
            raise InstructionError(stage.name, ins.index, ins.kind, reason=f"'{src}' is outside the build context")
        if not path.exists():
            raise InstructionError(stage.name, ins.index, ins.kind, reason=f"'{src}' not found in build context")
        return path

    def _do_copy(self, stage: Stage, ins: Instruction, fs: StageFilesystem, env: dict[str, str]):
        src = self._context_path(stage, ins, ins.args["src"])
        fs.copy_in(src, ins.args["dest"])

    def _do_overlay(self, stage: Stage, ins: Instruction, fs: StageFilesystem, env: dict[str, str]):
        src = self._context_path(stage, ins, ins.args["src"])
        if not src.is_dir():
            raise InstructionError(stage.name, ins.index, ins.kind, reason=f"'{ins.args['src']}' is not a directory")
        fs.copy_tree_in(src, ins.args["dest"])

    def _do_copy_from(self, stage: Stage, ins: Instruction, fs: StageFilesystem, env: dict[str, str]):
        a = ins.args
        self.artifacts.copy(a["stage"], fs, a["dest"], src=a["src"], artifact=a["artifact"])

    def _do_install(self, stage: Stage, ins: Instruction, fs: StageFilesystem, env: dict[str, str]):
        scratch = None
        if self.work_dir is not None:
            scratch = self.work_dir / "downloads" / f"{stage.name}-{ins.index}"
        entries = self.installer.install(ins.args["packages"], fs.root, scratch_dir=scratch)
        for entry in entries:
            logger.debug("installed %s %s", entry["name"], entry["version"] or "")

    def _do_service(self, stage: Stage, ins: Instruction, fs: StageFilesystem, env: dict[str, str]):
        src = self._context_path(stage, ins, ins.args["unit"])
        try:
            unit = parse_unit(src)
        except ValueError as e:
            raise InstructionError(stage.name, ins.index, ins.kind, reason=str(e)) from e

        unit_dest = f"{SYSTEMD_SYSTEM_DIR}/{src.name}"
        fs.copy_in(src, unit_dest)
        if not ins.args["enable"]:
            return

        wanted_by = [t for v in unit.get("Install", {}).get("WantedBy", []) for t in v.split()]
        if not wanted_by:
            raise InstructionError(
                stage.name, ins.index, ins.kind,
                reason=f"cannot enable {src.name}: no WantedBy= in [Install]",
            )
        for target in wanted_by:
            link = fs.resolve(f"{SYSTEMD_SYSTEM_DIR}/{target}.wants/{src.name}")
            link.parent.mkdir(parents=True, exist_ok=True)
            if os.path.lexists(link):
                link.unlink()
            os.symlink(unit_dest, link)

    def _log(self, message: str):
        """Write progress output to the output stream."""
        print(message, file=self.output)
