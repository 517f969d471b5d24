"""Structural checks on a finished image.

Validation never modifies the image. Every rule runs, and all violations
are reported together.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from stagecraft.exceptions import ManifestError, ValidationError
from stagecraft.log import logger
from stagecraft.run.workspace import resolve_in_root

logger = logger.getChild(__name__)

DEFAULT_EMPTY_PATHS = ("/tmp", "/run")
UNIT_DIRS = ("/etc/systemd/system", "/usr/lib/systemd/system")
UNIT_SUFFIXES = (".service", ".socket", ".timer", ".target", ".mount", ".path")


def parse_unit(path: Path) -> dict[str, dict[str, list[str]]]:
    """Parse a service-manager unit file.

    Returns ``{section: {key: [values...]}}``; keys may repeat, so values
    are lists in file order. Backslash continuations are joined.

    Raises:
        ValueError: On a line that is neither a section, an assignment,
            a comment nor blank, or an assignment before any section
    """
    sections: dict[str, dict[str, list[str]]] = {}
    current: dict[str, list[str]] | None = None
    pending = ""

    with open(path, encoding="utf-8") as f:
        lines = f.read().splitlines()

    for lineno, raw in enumerate(lines, 1):
        line = pending + raw.strip()
        if line.endswith("\\"):
            pending = line[:-1].rstrip() + " "
            continue
        pending = ""

        if not line or line[0] in "#;":
            continue
        if line.startswith("["):
            if not line.endswith("]") or len(line) < 3:
                raise ValueError(f"{path.name}:{lineno}: malformed section header {line!r}")
            current = sections.setdefault(line[1:-1], {})
            continue
        if "=" not in line:
            raise ValueError(f"{path.name}:{lineno}: expected key=value, got {line!r}")
        if current is None:
            raise ValueError(f"{path.name}:{lineno}: assignment outside of any section")
        key, value = line.split("=", 1)
        current.setdefault(key.strip(), []).append(value.strip())

    return sections


@dataclass(frozen=True)
class Violation:
    rule: str
    path: str
    message: str

    def __str__(self):
        return f"{self.rule}: {self.path}: {self.message}"


class ImageValidator:
    """Run a fixed battery of checks against a root filesystem."""

    KNOWN_KEYS = {"required_paths", "empty_paths", "unit_dirs"}

    def __init__(
        self,
        required_paths: tuple[str, ...] = (),
        empty_paths: tuple[str, ...] = DEFAULT_EMPTY_PATHS,
        unit_dirs: tuple[str, ...] = UNIT_DIRS,
    ):
        self.required_paths = tuple(required_paths)
        self.empty_paths = tuple(empty_paths)
        self.unit_dirs = tuple(unit_dirs)

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "ImageValidator":
        unknown = set(config) - cls.KNOWN_KEYS
        if unknown:
            raise ManifestError(f"unknown validate option(s): {', '.join(sorted(unknown))}")
        kwargs = {}
        for key in cls.KNOWN_KEYS & set(config):
            value = config[key]
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise ManifestError(f"validate.{key} must be a list of paths")
            kwargs[key] = tuple(value)
        return cls(**kwargs)

    def check(self, root: Path) -> list[Violation]:
        violations: list[Violation] = []
        violations += self._check_required(root)
        violations += self._check_empty(root)
        violations += self._check_units(root)
        return violations

    def validate(self, root: Path):
        """Raise ValidationError listing every violation, if any."""
        violations = self.check(root)
        for v in violations:
            logger.debug("violation: %s", v)
        if violations:
            raise ValidationError(violations)

    def _check_required(self, root: Path) -> list[Violation]:
        return [
            Violation("required-paths", path, "missing")
            for path in self.required_paths
            if not os.path.lexists(resolve_in_root(root, path))
        ]

    def _check_empty(self, root: Path) -> list[Violation]:
        violations = []
        for path in self.empty_paths:
            target = resolve_in_root(root, path, follow_final=True)
            if not target.is_dir():
                continue
            entries = sorted(p.name for p in target.iterdir())
            if entries:
                shown = ", ".join(entries[:5]) + (", ..." if len(entries) > 5 else "")
                violations.append(Violation("empty-paths", path, f"must be empty, contains {shown}"))
        return violations

    def _unit_files(self, root: Path):
        for unit_dir in self.unit_dirs:
            base = resolve_in_root(root, unit_dir, follow_final=True)
            if not base.is_dir():
                continue
            for path in sorted(base.rglob("*")):
                rel = "/" + path.relative_to(root).as_posix()
                yield unit_dir, path, rel

    def _check_units(self, root: Path) -> list[Violation]:
        violations = []
        for unit_dir, path, rel in self._unit_files(root):
            if path.is_symlink() and path.parent.name.endswith((".wants", ".requires")):
                target = os.readlink(path)
                resolved = (
                    resolve_in_root(root, target, follow_final=True)
                    if target.startswith("/")
                    else resolve_in_root(root, f"{os.path.dirname(rel)}/{target}", follow_final=True)
                )
                if not resolved.is_file():
                    violations.append(Violation("enabled-links", rel, f"dangling link to {target}"))
                continue

            if not path.name.endswith(UNIT_SUFFIXES) or path.is_symlink() or not path.is_file():
                continue
            try:
                unit = parse_unit(path)
            except (ValueError, UnicodeDecodeError) as e:
                violations.append(Violation("unit-files", rel, str(e)))
                continue
            if "Unit" not in unit:
                violations.append(Violation("unit-files", rel, "missing [Unit] section"))
            if path.name.endswith(".service"):
                if not unit.get("Service", {}).get("ExecStart"):
                    violations.append(Violation("unit-files", rel, "missing ExecStart= in [Service]"))
        return violations
