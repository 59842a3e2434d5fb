"""
VTM - Manifest Store
====================
Owns vtm.json. Loads and validates it, and writes it atomically
(temp file in the same directory, fsync, rename) so readers only ever
see the old or the new document.

Derived fields (stats, blocks) are rebuilt on every save regardless of
what the caller passed in.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, Union

from pydantic import ValidationError

from .errors import CorruptManifest, ManifestNotFound, UsageError
from .schema import Manifest, ManifestStats, ProjectInfo

logger = logging.getLogger(__name__)


def atomic_write_text(path: Path, text: str) -> None:
    """Write text atomically using temp file + rename."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(suffix=".tmp", prefix=path.name + ".", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except Exception:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


def refresh_derived(manifest: Manifest) -> Manifest:
    """Recompute stats and the blocks inverse view in place"""
    dependents = {task.id: [] for task in manifest.tasks}
    for task in manifest.tasks:
        for dep_id in task.dependencies:
            if dep_id in dependents and task.id not in dependents[dep_id]:
                dependents[dep_id].append(task.id)
    for task in manifest.tasks:
        task.blocks = dependents[task.id]
    manifest.stats = ManifestStats.from_tasks(manifest.tasks)
    return manifest


def serialize(manifest: Manifest) -> str:
    return json.dumps(manifest.model_dump(mode="json"), indent=2, ensure_ascii=False) + "\n"


def parse(text: str, origin: str = "manifest") -> Manifest:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise CorruptManifest(f"{origin} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise CorruptManifest(f"{origin} must be a JSON object")
    try:
        return Manifest.model_validate(data)
    except ValidationError as e:
        raise CorruptManifest(f"{origin} failed schema validation: {e}") from e


class ManifestStore:
    """
    Base store: load() -> Manifest, save(Manifest).

    Subclasses supply _read/_write; validation and derived-field
    recomputation live here so every backend behaves the same.
    """

    def load(self) -> Manifest:
        return parse(self._read(), origin=self.describe())

    def save(self, manifest: Manifest) -> Manifest:
        refresh_derived(manifest)
        self._write(serialize(manifest))
        logger.debug(
            f"💾 Saved manifest: {manifest.stats.total_tasks} tasks "
            f"({manifest.stats.completed} completed)"
        )
        return manifest

    def describe(self) -> str:
        return "manifest"

    def _read(self) -> str:
        raise NotImplementedError

    def _write(self, text: str) -> None:
        raise NotImplementedError


class FileManifestStore(ManifestStore):
    """vtm.json on the local filesystem"""

    def __init__(self, path: Union[str, Path] = "vtm.json"):
        self.path = Path(path)

    def describe(self) -> str:
        return str(self.path)

    def exists(self) -> bool:
        return self.path.exists()

    def init(
        self,
        project_name: str,
        description: str = "",
        overwrite: bool = False
    ) -> Manifest:
        """Create an empty manifest"""
        if self.exists() and not overwrite:
            raise UsageError(f"Manifest already exists at {self.path} (use --force to overwrite)")
        manifest = Manifest(project=ProjectInfo(name=project_name, description=description))
        self.save(manifest)
        logger.info(f"🚀 Initialized manifest: {self.path}")
        return manifest

    def _read(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise ManifestNotFound(self.path) from None
        except UnicodeDecodeError as e:
            raise CorruptManifest(f"{self.path} is not valid UTF-8: {e}") from e

    def _write(self, text: str) -> None:
        atomic_write_text(self.path, text)


class MemoryManifestStore(ManifestStore):
    """In-memory store; keeps serialized text so load() hands out fresh copies"""

    def __init__(self, manifest: Optional[Manifest] = None):
        self.text: Optional[str] = None
        self.writes = 0
        if manifest is not None:
            self.save(manifest)
            self.writes = 0

    def describe(self) -> str:
        return "<memory>"

    def _read(self) -> str:
        if self.text is None:
            raise ManifestNotFound(self.describe())
        return self.text

    def _write(self, text: str) -> None:
        self.text = text
        self.writes += 1
