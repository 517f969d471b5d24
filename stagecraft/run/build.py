"""Build orchestration: run stages in order, validate, commit.

A build run moves through::

    Pending -> (<Stage>Running -> <Stage>Done)* -> [Hooking] -> Validating
            -> Committed | Rejected

Any error moves it to ``Rejected``, which is terminal: a failed run is never
resumed, a new :class:`Build` has to be started.
"""

import enum
import sys
import tempfile
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import TextIO

from stagecraft.cache import PackageCache
from stagecraft.config import BuildConfig
from stagecraft.exceptions import StagecraftError
from stagecraft.log import log_to_file, logger
from stagecraft.run.artifact import ArtifactResolver
from stagecraft.run.dag import DAG
from stagecraft.run.executor import CancelToken, StageExecutor
from stagecraft.run.hash import compute_digest
from stagecraft.run.hooks import run_hook
from stagecraft.run.images import ImageStore
from stagecraft.run.packages import (
    Fetcher,
    PackageIndex,
    PackageInstaller,
    read_package_manifest,
)
from stagecraft.run.stage import Manifest
from stagecraft.run.validate import ImageValidator
from stagecraft.run.workspace import Snapshot, remove_tree

logger = logger.getChild(__name__)


class BuildState(enum.Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    DONE = "Done"
    HOOKING = "Hooking"
    VALIDATING = "Validating"
    COMMITTED = "Committed"
    REJECTED = "Rejected"


TRANSITIONS = {
    BuildState.PENDING: {BuildState.RUNNING, BuildState.REJECTED},
    BuildState.RUNNING: {BuildState.DONE, BuildState.REJECTED},
    BuildState.DONE: {BuildState.RUNNING, BuildState.HOOKING, BuildState.VALIDATING, BuildState.REJECTED},
    BuildState.HOOKING: {BuildState.VALIDATING, BuildState.REJECTED},
    BuildState.VALIDATING: {BuildState.COMMITTED, BuildState.REJECTED},
    BuildState.COMMITTED: set(),
    BuildState.REJECTED: set(),
}


def _camel(name: str) -> str:
    return "".join(part[:1].upper() + part[1:] for part in name.replace("_", "-").split("-"))


@dataclass(frozen=True)
class Transition:
    state: BuildState
    stage: str | None = None

    @property
    def label(self) -> str:
        if self.stage is None:
            return self.state.value
        return f"{_camel(self.stage)}{self.state.value}"


@dataclass
class BuildResult:
    """Outcome of a build run."""

    image: str
    history: list[Transition] = field(default_factory=list)
    stage_digests: dict[str, str] = field(default_factory=dict)
    image_dir: Path | None = None
    digest: str | None = None
    pre_hook_digest: str | None = None
    packages: list[dict] = field(default_factory=list)
    error: BaseException | None = None

    @property
    def state(self) -> BuildState:
        return self.history[-1].state

    @property
    def committed(self) -> bool:
        return self.state is BuildState.COMMITTED

    @property
    def labels(self) -> list[str]:
        return [t.label for t in self.history]


class Build:
    """One build run of a manifest."""

    def __init__(
        self,
        manifest: Manifest,
        config: BuildConfig | None = None,
        target: str | None = None,
        cancel: CancelToken | None = None,
        output: TextIO | None = None,
        image_name: str | None = None,
    ):
        """Initialize a build run.

        Args:
            manifest: Parsed manifest
            config: Build configuration
            target: Stage to build up to (default: the last declared stage)
            cancel: Token to cancel the run from another thread
            output: Stream for progress output (default: stderr)
            image_name: Name of the committed image
        """
        self.manifest = manifest
        self.config = config or BuildConfig()
        self.cancel = cancel or CancelToken()
        self.output = output or sys.stderr

        self.target = target or manifest.final_stage.name
        self.dag = DAG(manifest.stages).filter_to_targets([self.target])
        self.stages = self.dag.execution_order()
        self.validator = ImageValidator.from_config(manifest.validate)

        if image_name is None:
            image_name = manifest.output or self.target
        self.result = BuildResult(image=image_name, history=[Transition(BuildState.PENDING)])

    @property
    def state(self) -> BuildState:
        return self.result.state

    def _transition(self, state: BuildState, stage: str | None = None):
        current = self.state
        if state not in TRANSITIONS[current]:
            raise RuntimeError(f"illegal build transition {current.value} -> {state.value}")
        self.result.history.append(Transition(state, stage))
        logger.debug("build %s: %s", self.result.image, self.result.history[-1].label)

    @property
    def base_dir(self) -> Path:
        if self.manifest.path is not None:
            return Path(self.manifest.path).resolve().parent
        return Path.cwd()

    @property
    def context_dir(self) -> Path:
        return self.config.context_dir or self.base_dir

    @property
    def hook(self) -> Path | None:
        if not self.manifest.hook:
            return None
        hook = Path(self.manifest.hook)
        return hook if hook.is_absolute() else self.base_dir / hook

    @property
    def log_path(self) -> Path:
        """Build log, kept next to the committed image whatever the outcome."""
        return self.config.output_dir / f"{self.result.image}.build.log"

    def plan(self) -> list[str]:
        """Describe what would run, one line per stage and instruction."""
        lines = []
        for stage in self.stages:
            lines.append(f"{stage.name}: from {stage.base}")
            for ins in stage.instructions:
                status = "" if ins.enabled else " (disabled)"
                lines.append(f"  [{ins.index}] {ins.kind}: {ins.describe()}{status}")
        return lines

    def run(self) -> BuildResult:
        """Execute the build.

        Returns:
            BuildResult in state Committed

        Raises:
            StagecraftError: Any failure; the result is left in state Rejected
        """
        run_dir = Path(tempfile.mkdtemp(prefix="stagecraft-run-"))
        try:
            with ExitStack() as stack:
                self.config.output_dir.mkdir(parents=True, exist_ok=True)
                stack.enter_context(log_to_file(self.log_path))

                if self.config.use_cache:
                    cache = PackageCache(self.config.cache_dir)
                else:
                    cache = stack.enter_context(PackageCache.ephemeral())
                return self._run(run_dir, cache)
        except BaseException as e:
            if self.state is not BuildState.REJECTED:
                self._transition(BuildState.REJECTED)
            self.result.error = e
            if isinstance(e, StagecraftError):
                logger.debug("build rejected: %s", e)
            raise
        finally:
            remove_tree(run_dir)

    def _run(self, run_dir: Path, cache: PackageCache) -> BuildResult:
        installer = PackageInstaller(
            index=PackageIndex(self.config.repositories, allow_unpinned=self.config.allow_unpinned),
            cache=cache,
            fetcher=Fetcher(
                timeout=self.config.fetch_timeout,
                retries=self.config.fetch_retries,
                backoff=self.config.fetch_backoff,
            ),
            max_workers=self.config.max_workers,
            progress=True,
        )
        artifacts = ArtifactResolver(self.stages)
        executor = StageExecutor(
            images=ImageStore(self.config.images_dir),
            artifacts=artifacts,
            installer=installer,
            config=self.config,
            work_dir=run_dir / "stages",
            context_dir=self.context_dir,
            cancel=self.cancel,
            output=self.output,
        )

        try:
            final = self._run_stages(executor, artifacts)
            return self._finish(final, run_dir)
        finally:
            artifacts.release()

    def _run_stages(self, executor: StageExecutor, artifacts: ArtifactResolver) -> Snapshot:
        for stage in self.stages:
            self._transition(BuildState.RUNNING, stage.name)
            snapshot = executor.execute(stage)
            artifacts.register(snapshot)
            self.result.stage_digests[stage.name] = snapshot.digest
            self._transition(BuildState.DONE, stage.name)
        return artifacts.snapshot(self.target)

    def _finish(self, final: Snapshot, run_dir: Path) -> BuildResult:
        if self.hook is not None:
            self.cancel.check()
            self._transition(BuildState.HOOKING)
            self._log(f"hook: {self.hook}")
            run_hook(self.hook, final.root, run_dir, self.result.image, timeout=self.config.hook_timeout)
            self.result.pre_hook_digest = final.digest
            self.result.stage_digests[self.target] = compute_digest(final.root)

        self.cancel.check()
        self._transition(BuildState.VALIDATING)
        self._log(f"validating {self.target}")
        self.validator.validate(final.root)

        self.result.packages = read_package_manifest(final.root)
        metadata = {
            "stages": dict(self.result.stage_digests),
            "packages": self.result.packages,
        }
        if self.result.pre_hook_digest is not None:
            metadata["pre_hook_digest"] = self.result.pre_hook_digest
        created_from = str(self.manifest.path) if self.manifest.path is not None else None
        committed = ImageStore(self.config.output_dir).store_image(
            self.result.image, final.root, created_from=created_from, metadata=metadata,
        )
        if self.config.register:
            ImageStore(self.config.images_dir).store_image(
                self.result.image, final.root, created_from=created_from, metadata=metadata,
            )

        self.result.image_dir = committed.rootfs.parent
        self.result.digest = committed.digest
        self._transition(BuildState.COMMITTED)
        self._log(f"committed {self.result.image} ({committed.digest})")
        return self.result

    def _log(self, message: str):
        print(message, file=self.output)
