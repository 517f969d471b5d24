"""Stage and instruction model for a build manifest."""

from dataclasses import dataclass, field
from typing import Any

STAGE_PREFIX = "stage:"
SCRATCH = "scratch"

INSTRUCTION_KINDS = (
    "run",
    "env",
    "install",
    "copy",
    "copy_from",
    "overlay",
    "git",
    "service",
)


@dataclass
class Instruction:
    """One step of a stage.

    Attributes:
        kind: One of INSTRUCTION_KINDS
        args: Kind-specific arguments, already normalized by the parser
        index: Position within the stage (zero-based)
        enabled: Disabled instructions are kept in the plan but skipped
    """

    kind: str
    args: dict[str, Any]
    index: int = 0
    enabled: bool = True

    def describe(self) -> str:
        a = self.args
        if self.kind == "run":
            return a["cmd"]
        if self.kind == "env":
            return " ".join(f"{k}={v}" for k, v in a["vars"].items())
        if self.kind == "install":
            return " ".join(str(p) for p in a["packages"])
        if self.kind == "copy_from":
            src = f"artifact:{a['artifact']}" if a.get("artifact") else a["src"]
            return f"{a['stage']}:{src} -> {a['dest']}"
        if self.kind in ("copy", "overlay"):
            return f"{a['src']} -> {a['dest']}"
        if self.kind == "git":
            return f"{a['url']}@{a['ref'][:12]} -> {a['dest']}"
        if self.kind == "service":
            return a["unit"]
        return repr(a)


@dataclass
class Stage:
    """Represents a single build stage."""

    name: str
    base: str
    instructions: list[Instruction] = field(default_factory=list)
    artifacts: dict[str, str] = field(default_factory=dict)
    desc: str | None = None

    def __hash__(self):
        return hash(self.name)

    def __eq__(self, other):
        if not isinstance(other, Stage):
            return False
        return self.name == other.name

    @property
    def base_stage(self) -> str | None:
        """Name of the stage this one starts from, if any."""
        if self.base.startswith(STAGE_PREFIX):
            return self.base[len(STAGE_PREFIX):]
        return None

    def get_stage_dependencies(self) -> set[str]:
        """Names of all stages this stage reads from."""
        deps = set()
        if self.base_stage:
            deps.add(self.base_stage)
        for ins in self.instructions:
            if ins.kind == "copy_from" and ins.enabled:
                deps.add(ins.args["stage"])
        return deps

    def enabled_instructions(self) -> list[Instruction]:
        return [i for i in self.instructions if i.enabled]


@dataclass
class Manifest:
    """A parsed build manifest."""

    stages: list[Stage]
    version: int = 1
    output: str | None = None
    validate: dict[str, Any] = field(default_factory=dict)
    hook: str | None = None
    path: Any = None

    def get_stage(self, name: str) -> Stage | None:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None

    @property
    def final_stage(self) -> Stage:
        return self.stages[-1]
