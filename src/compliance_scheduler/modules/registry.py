"""
modules/registry.py — Check Module Registry

Discovers check modules on disk and resolves them to command lines.

Layout:
    <modules_dir>/
        test-module/
            module.yaml        # ModuleManifest
            run.sh             # program, relative to the module directory

Rules:
  - Every sub-directory holding a module.yaml is one module.
  - `name` in the manifest defaults to the directory name.
  - A manifest that fails to load is recorded with its error string and does
    not count as an existing module. Other modules still load.
  - Disabled modules are listed by load() but do not exist for scheduling.

Usage:
    registry = ModuleRegistry(Path("./modules"))
    statuses = registry.load()
    registry.exists("test-module")
    invocation = registry.build_invocation("test-module", {"iter": "1"})
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

import yaml
from pydantic import ValidationError

from compliance_scheduler.exceptions import CheckModuleNotFoundError, ModuleManifestError
from compliance_scheduler.modules.types import ModuleInvocation, ModuleManifest, ModuleStatus
from compliance_scheduler.observability.logger import get_logger

log = get_logger(__name__)

MANIFEST_FILENAME = "module.yaml"


@dataclass
class _Entry:
    directory: Path
    manifest: Optional[ModuleManifest] = None
    error: Optional[str] = None


class ModuleRegistry:
    """
    Name -> manifest map for the check modules under one directory.

    Written by load() / register(), read by the runner and the calendar.
    """

    def __init__(self, modules_dir: Optional[Path] = None) -> None:
        self._modules_dir = Path(modules_dir) if modules_dir is not None else None
        self._entries: dict[str, _Entry] = {}

    # ── Write ─────────────────────────────────────────────────────────────────

    def load(self) -> list[ModuleStatus]:
        """Rescan modules_dir. Returns one status per discovered module."""
        self._entries = {}
        if self._modules_dir is None:
            return []
        if not self._modules_dir.is_dir():
            log.warning("modules.dir_missing", path=str(self._modules_dir))
            return []

        for directory in sorted(p for p in self._modules_dir.iterdir() if p.is_dir()):
            if not (directory / MANIFEST_FILENAME).exists():
                continue
            try:
                manifest = load_manifest(directory)
            except ModuleManifestError as e:
                log.warning("modules.manifest_invalid", module=directory.name, error=str(e))
                self._entries[directory.name] = _Entry(directory, error=str(e))
                continue
            self._add(manifest, directory)

        statuses = self.statuses()
        log.info(
            "modules.loaded",
            path=str(self._modules_dir),
            ok=sum(1 for s in statuses if s.running),
            failed=sum(1 for s in statuses if s.errstr),
        )
        return statuses

    def register(self, manifest: ModuleManifest, directory: Path) -> None:
        """Add a module programmatically. Raises ValueError on duplicate name."""
        if manifest.name in self._entries:
            raise ValueError(f"Module '{manifest.name}' is already registered.")
        self._add(manifest, Path(directory))

    def _add(self, manifest: ModuleManifest, directory: Path) -> None:
        if manifest.name in self._entries:
            log.warning("modules.duplicate_name", module=manifest.name, path=str(directory))
            return
        self._entries[manifest.name] = _Entry(directory, manifest=manifest)

    # ── Read ──────────────────────────────────────────────────────────────────

    def exists(self, name: str) -> bool:
        entry = self._entries.get(name)
        return bool(entry and entry.manifest and entry.manifest.enabled)

    def get(self, name: str) -> ModuleManifest:
        """Return the manifest. Raises CheckModuleNotFoundError if unusable."""
        if not self.exists(name):
            raise CheckModuleNotFoundError(name)
        return self._entries[name].manifest  # type: ignore[return-value]

    def directory(self, name: str) -> Path:
        self.get(name)
        return self._entries[name].directory

    def statuses(self) -> list[ModuleStatus]:
        return [
            ModuleStatus(
                name=name,
                running=entry.error is None and bool(entry.manifest and entry.manifest.enabled),
                errstr=entry.error,
                directory=str(entry.directory),
            )
            for name, entry in sorted(self._entries.items())
        ]

    def names(self) -> list[str]:
        return [n for n in sorted(self._entries) if self.exists(n)]

    def build_invocation(self, name: str, parameters: Mapping[str, str]) -> ModuleInvocation:
        """Resolve a module + task parameters into a concrete command line."""
        manifest = self.get(name)
        base_env = {"PATH": os.environ.get("PATH", os.defpath)}
        return manifest.build_invocation(self._entries[name].directory, parameters, base_env)

    def __len__(self) -> int:
        return len(self.names())

    def __repr__(self) -> str:
        return f"<ModuleRegistry modules={self.names()}>"


def load_manifest(directory: Path) -> ModuleManifest:
    """Read and validate <directory>/module.yaml. Raises ModuleManifestError."""
    path = directory / MANIFEST_FILENAME
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ModuleManifestError(f"Could not read {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ModuleManifestError(f"{path}: expected a mapping, got {type(raw).__name__}")
    raw.setdefault("name", directory.name)

    try:
        return ModuleManifest.model_validate(raw)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ModuleManifestError(f"{path}: {problems}") from e
