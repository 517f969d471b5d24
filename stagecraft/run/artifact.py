"""Artifact resolution between stages.

A stage publishes named paths (its ``artifacts``); later stages copy them,
or any other path, out of its finished snapshot::

    stages:
      builder:
        from: debian@sha256:...
        artifacts:
          app: /out/app
      final:
        from: base@sha256:...
        instructions:
          - copy_from: {stage: builder, artifact: app, dest: /usr/local/bin/app}

Only completed stages are registered, so a copy can never observe a stage
that is still running, failed, or was cancelled.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from stagecraft.exceptions import MissingArtifact, UnknownStage
from stagecraft.log import logger
from stagecraft.run.hash import compute_digest
from stagecraft.run.stage import Stage
from stagecraft.run.workspace import Snapshot, StageFilesystem

logger = logger.getChild(__name__)


@dataclass(frozen=True)
class Artifact:
    """A named path published by a stage, with its content digest."""

    stage: str
    name: str
    path: str
    digest: str


class ArtifactResolver:
    """Registry of completed stage snapshots and the artifacts they publish."""

    def __init__(self, declared: list[Stage]):
        self.declared = {stage.name: stage for stage in declared}
        self.snapshots: dict[str, Snapshot] = {}
        self.artifacts: dict[tuple[str, str], Artifact] = {}

    def register(self, snapshot: Snapshot) -> list[Artifact]:
        """Record a completed stage and check its declared artifacts exist.

        Raises:
            MissingArtifact: If a declared artifact path is absent
        """
        stage = self.declared.get(snapshot.stage)
        if stage is None:
            raise UnknownStage(snapshot.stage)

        published = []
        for name, path in sorted(stage.artifacts.items()):
            source = snapshot.path(path)
            if not os.path.lexists(source):
                raise MissingArtifact(snapshot.stage, path)
            artifact = Artifact(stage=stage.name, name=name, path=path, digest=compute_digest(source))
            published.append(artifact)

        self.snapshots[snapshot.stage] = snapshot
        for artifact in published:
            self.artifacts[(artifact.stage, artifact.name)] = artifact
            logger.debug("artifact %s:%s -> %s", artifact.stage, artifact.name, artifact.digest)
        return published

    def snapshot(self, stage: str) -> Snapshot:
        if stage not in self.declared:
            raise UnknownStage(stage)
        snapshot = self.snapshots.get(stage)
        if snapshot is None:
            raise UnknownStage(stage, "has not completed")
        return snapshot

    def resolve(self, stage: str, src: str | None = None, artifact: str | None = None) -> tuple[str, Path]:
        """Locate a path in a completed stage.

        Returns:
            Tuple of (in-image path, host path in the snapshot)

        Raises:
            UnknownStage: If the stage was never declared or hasn't completed
            MissingArtifact: If the path (or named artifact) doesn't exist
        """
        snapshot = self.snapshot(stage)
        if artifact is not None:
            declared = self.declared[stage].artifacts
            if artifact not in declared:
                raise MissingArtifact(stage, f"artifact:{artifact}")
            src = declared[artifact]
        if src is None:
            raise ValueError("either src or artifact is required")

        source = snapshot.path(src)
        if not os.path.lexists(source):
            raise MissingArtifact(stage, src)
        return src, source

    def copy(
        self,
        stage: str,
        fs: StageFilesystem,
        dest: str,
        src: str | None = None,
        artifact: str | None = None,
    ) -> Path:
        """Copy a path from a completed stage into ``fs`` at ``dest``."""
        src, source = self.resolve(stage, src=src, artifact=artifact)
        target = fs.copy_in(source, dest)
        logger.debug("copied %s:%s -> %s", stage, src, target)
        return target

    def release(self):
        """Drop all snapshots. Their trees are owned by the build run."""
        self.snapshots.clear()
        self.artifacts.clear()
