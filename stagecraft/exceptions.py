"""Exceptions raised by stagecraft."""


class StagecraftError(Exception):
    """Base class for all stagecraft errors."""

    exit_code = 1

    def __init__(self, msg: str, *args):
        assert msg
        self.msg = msg
        super().__init__(msg, *args)

    def __str__(self):
        return self.msg


class ManifestError(StagecraftError):
    exit_code = 2


class ImageResolveError(StagecraftError):
    """Base image is unknown, unreadable, or its digest doesn't match."""

    exit_code = 3

    def __init__(self, ref: str, reason: str):
        self.ref = ref
        self.reason = reason
        super().__init__(f"cannot resolve image '{ref}': {reason}")


class InstructionError(StagecraftError):
    """A single instruction failed. Carries enough context to reproduce it."""

    exit_code = 4

    def __init__(self, stage: str, index: int, kind: str, output: str = "", reason: str = ""):
        self.stage = stage
        self.index = index
        self.kind = kind
        self.output = output
        self.reason = reason
        msg = f"{stage}[{index}] {kind} failed"
        if reason:
            msg += f": {reason}"
        if output:
            msg += f"\n{output.rstrip()}"
        super().__init__(msg)


class ArtifactError(StagecraftError):
    exit_code = 5


class UnknownStage(ArtifactError):
    def __init__(self, stage: str, reason: str = "was never declared"):
        self.stage = stage
        super().__init__(f"stage '{stage}' {reason}")


class MissingArtifact(ArtifactError):
    def __init__(self, stage: str, path: str):
        self.stage = stage
        self.path = path
        super().__init__(f"'{path}' does not exist in stage '{stage}'")


class PackageError(StagecraftError):
    exit_code = 6


class UnresolvedPackage(PackageError):
    def __init__(self, name: str, version: str | None = None):
        self.name = name
        self.version = version
        spec = f"{name}={version}" if version else name
        super().__init__(f"package '{spec}' not found in any configured repository")


class DownloadError(PackageError):
    def __init__(self, url: str, reason: str, transient: bool = False):
        self.url = url
        self.reason = reason
        self.transient = transient
        super().__init__(f"failed to download '{url}': {reason}")


class PackageInstallErrors(PackageError):
    """Several packages in one install step failed."""

    def __init__(self, errors: list[PackageError]):
        self.errors = errors
        lines = "\n".join(f"  - {e}" for e in errors)
        super().__init__(f"{len(errors)} package(s) failed to install:\n{lines}")


class ValidationError(StagecraftError):
    exit_code = 7

    def __init__(self, violations: list):
        self.violations = violations
        lines = "\n".join(f"  - {v}" for v in violations)
        super().__init__(f"image validation failed ({len(violations)} violation(s)):\n{lines}")


class HookError(StagecraftError):
    exit_code = 8


class BuildCancelled(StagecraftError):
    exit_code = 130

    def __init__(self, stage: str | None = None, index: int | None = None):
        self.stage = stage
        self.index = index
        where = f" before {stage}[{index}]" if stage is not None else ""
        super().__init__(f"build cancelled{where}")
