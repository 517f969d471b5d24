"""Parser for stagecraft build manifests."""

import re
from pathlib import Path
from typing import Any

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from stagecraft.exceptions import ManifestError, UnknownStage
from stagecraft.run.dag import DAG
from stagecraft.run.images import parse_image_ref
from stagecraft.run.packages import PackageSet
from stagecraft.run.stage import (
    INSTRUCTION_KINDS,
    SCRATCH,
    STAGE_PREFIX,
    Instruction,
    Manifest,
    Stage,
)

SUPPORTED_VERSIONS = (1,)
COMMIT_RE = re.compile(r"^[0-9a-f]{40}$")
NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class ManifestParser:
    """Parse a manifest file and extract stage definitions."""

    def __init__(self, manifest_path: Path = Path("stagecraft.build.yaml"), allow_unpinned: bool = False):
        self.manifest_path = manifest_path
        self.allow_unpinned = allow_unpinned

    def parse(self) -> Manifest:
        """Parse the manifest file.

        Returns:
            Manifest with stages in declaration order

        Raises:
            FileNotFoundError: If the manifest doesn't exist
            ManifestError: If the manifest is malformed
            UnknownStage: If a stage references an undeclared stage
        """
        if not self.manifest_path.exists():
            raise FileNotFoundError(f"manifest not found at {self.manifest_path}")

        yaml = YAML(typ="safe")
        try:
            with open(self.manifest_path) as f:
                data = yaml.load(f)
        except YAMLError as e:
            raise ManifestError(f"{self.manifest_path}: invalid YAML: {e}") from e

        manifest = self.parse_data(data)
        manifest.path = self.manifest_path
        return manifest

    def parse_data(self, data: Any) -> Manifest:
        if not isinstance(data, dict):
            raise ManifestError("manifest must be a mapping")

        version = data.get("version")
        if version not in SUPPORTED_VERSIONS:
            raise ManifestError(
                f"unsupported manifest version {version!r} "
                f"(supported: {', '.join(map(str, SUPPORTED_VERSIONS))})"
            )

        stages_data = data.get("stages")
        if not stages_data or not isinstance(stages_data, dict):
            raise ManifestError("manifest must contain a non-empty 'stages' mapping")

        stages = [self._parse_stage(str(name), config) for name, config in stages_data.items()]
        self._check_references(stages)

        validate = data.get("validate") or {}
        if not isinstance(validate, dict):
            raise ManifestError("'validate' must be a mapping")

        hook = data.get("hook")
        if hook is not None and not isinstance(hook, str):
            raise ManifestError("'hook' must be a path string")

        output = data.get("output")
        if output is not None and not NAME_RE.match(str(output)):
            raise ManifestError(f"invalid output image name {output!r}")

        return Manifest(
            stages=stages,
            version=version,
            output=str(output) if output is not None else None,
            validate=validate,
            hook=hook,
        )

    def _parse_stage(self, name: str, config: dict[str, Any]) -> Stage:
        if not NAME_RE.match(name):
            raise ManifestError(f"invalid stage name {name!r}")
        if not isinstance(config, dict):
            raise ManifestError(f"stage '{name}' must be a mapping")
        if "from" not in config:
            raise ManifestError(f"stage '{name}' missing required 'from' field")

        base = str(config["from"])
        if base != SCRATCH and not base.startswith(STAGE_PREFIX):
            _, digest = parse_image_ref(base)
            if digest is None and not self.allow_unpinned:
                raise ManifestError(
                    f"stage '{name}': base image '{base}' must be pinned with @sha256:<digest>"
                )

        raw_instructions = config.get("instructions") or []
        if not isinstance(raw_instructions, list):
            raise ManifestError(f"stage '{name}': 'instructions' must be a list")
        instructions = [
            self._parse_instruction(name, i, entry)
            for i, entry in enumerate(raw_instructions)
        ]

        artifacts = config.get("artifacts") or {}
        if not isinstance(artifacts, dict):
            raise ManifestError(f"stage '{name}': 'artifacts' must be a mapping")
        for art_name, art_path in artifacts.items():
            if not str(art_path).startswith("/"):
                raise ManifestError(
                    f"stage '{name}': artifact '{art_name}' path must be absolute, got {art_path!r}"
                )

        return Stage(
            name=name,
            base=base,
            instructions=instructions,
            artifacts={str(k): str(v) for k, v in artifacts.items()},
            desc=config.get("desc"),
        )

    def _parse_instruction(self, stage: str, index: int, entry: Any) -> Instruction:
        where = f"stage '{stage}' instruction {index}"
        if not isinstance(entry, dict):
            raise ManifestError(f"{where}: must be a mapping")

        enabled = entry.get("enabled", True)
        if not isinstance(enabled, bool):
            raise ManifestError(f"{where}: 'enabled' must be true or false")

        kinds = [k for k in entry if k != "enabled"]
        unknown = [k for k in kinds if k not in INSTRUCTION_KINDS]
        if unknown:
            raise ManifestError(f"{where}: unknown instruction '{unknown[0]}'")
        if len(kinds) != 1:
            raise ManifestError(f"{where}: expected exactly one instruction kind, got {kinds}")

        kind = kinds[0]
        args = getattr(self, f"_args_{kind}")(where, entry[kind])
        return Instruction(kind=kind, args=args, index=index, enabled=enabled)

    def _args_run(self, where: str, value: Any) -> dict[str, Any]:
        if isinstance(value, list):
            value = " && ".join(str(v) for v in value)
        if not isinstance(value, str) or not value.strip():
            raise ManifestError(f"{where}: 'run' must be a command string or list")
        return {"cmd": value}

    def _args_env(self, where: str, value: Any) -> dict[str, Any]:
        if not isinstance(value, dict):
            raise ManifestError(f"{where}: 'env' must be a mapping")
        return {"vars": {str(k): str(v) for k, v in value.items()}}

    def _args_install(self, where: str, value: Any) -> dict[str, Any]:
        if isinstance(value, (str, dict)):
            value = [value]
        if not isinstance(value, list) or not value:
            raise ManifestError(f"{where}: 'install' must be a non-empty package list")
        try:
            packages = PackageSet.from_entries(value)
        except ValueError as e:
            raise ManifestError(f"{where}: {e}") from e
        if not self.allow_unpinned:
            for spec in packages:
                if spec.url and not spec.sha256:
                    raise ManifestError(f"{where}: URL package '{spec.url}' must declare sha256")
        return {"packages": packages}

    def _paths(self, where: str, value: Any, kind: str, dest_default: str | None = None) -> dict[str, Any]:
        if not isinstance(value, dict) or "src" not in value:
            raise ManifestError(f"{where}: '{kind}' requires 'src'")
        dest = value.get("dest", dest_default)
        if dest is None:
            raise ManifestError(f"{where}: '{kind}' requires 'dest'")
        return {"src": str(value["src"]), "dest": str(dest)}

    def _args_copy(self, where: str, value: Any) -> dict[str, Any]:
        return self._paths(where, value, "copy")

    def _args_overlay(self, where: str, value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            value = {"src": value}
        return self._paths(where, value, "overlay", dest_default="/")

    def _args_copy_from(self, where: str, value: Any) -> dict[str, Any]:
        if not isinstance(value, dict) or "stage" not in value or "dest" not in value:
            raise ManifestError(f"{where}: 'copy_from' requires 'stage' and 'dest'")
        has_src = "src" in value
        has_artifact = "artifact" in value
        if has_src == has_artifact:
            raise ManifestError(f"{where}: 'copy_from' requires exactly one of 'src' or 'artifact'")
        return {
            "stage": str(value["stage"]),
            "src": str(value["src"]) if has_src else None,
            "artifact": str(value["artifact"]) if has_artifact else None,
            "dest": str(value["dest"]),
        }

    def _args_git(self, where: str, value: Any) -> dict[str, Any]:
        if not isinstance(value, dict) or not {"url", "ref", "dest"} <= set(value):
            raise ManifestError(f"{where}: 'git' requires 'url', 'ref' and 'dest'")
        ref = str(value["ref"])
        if not COMMIT_RE.match(ref):
            raise ManifestError(f"{where}: git ref must be a full 40-character commit id, got {ref!r}")
        return {"url": str(value["url"]), "ref": ref, "dest": str(value["dest"])}

    def _args_service(self, where: str, value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            value = {"unit": value}
        if not isinstance(value, dict) or "unit" not in value:
            raise ManifestError(f"{where}: 'service' requires 'unit'")
        enable = value.get("enable", True)
        if not isinstance(enable, bool):
            raise ManifestError(f"{where}: 'enable' must be true or false")
        return {"unit": str(value["unit"]), "enable": enable}

    def _check_references(self, stages: list[Stage]):
        names = [s.name for s in stages]
        seen = set()
        for name in names:
            if name in seen:
                raise ManifestError(f"duplicate stage name '{name}'")
            seen.add(name)

        for stage in stages:
            for dep in stage.get_stage_dependencies():
                if dep not in seen:
                    raise UnknownStage(dep, f"was never declared (referenced by '{stage.name}')")
                if dep == stage.name:
                    raise ManifestError(f"stage '{stage.name}' cannot reference itself")
            for ins in stage.enabled_instructions():
                if ins.kind != "copy_from" or not ins.args["artifact"]:
                    continue
                producer = next(s for s in stages if s.name == ins.args["stage"])
                if ins.args["artifact"] not in producer.artifacts:
                    raise ManifestError(
                        f"stage '{stage.name}' instruction {ins.index}: stage "
                        f"'{producer.name}' declares no artifact '{ins.args['artifact']}'"
                    )

        # whole manifest, not just what the target needs
        DAG(stages).topological_sort()


def load_manifest(path: Path, allow_unpinned: bool = False) -> Manifest:
    return ManifestParser(path, allow_unpinned=allow_unpinned).parse()
