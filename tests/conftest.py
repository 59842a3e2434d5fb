"""Shared fixtures for vtm tests."""

import pytest

from vtm.schema import Manifest, ProjectInfo, Task, TaskStatus
from vtm.store import FileManifestStore, MemoryManifestStore


def make_task(task_id, deps=(), status=TaskStatus.PENDING, **kwargs):
    kwargs.setdefault("title", f"Task {task_id}")
    kwargs.setdefault("acceptance_criteria", ["works"])
    return Task(id=task_id, dependencies=list(deps), status=status, **kwargs)


def make_manifest(*tasks):
    return Manifest(project=ProjectInfo(name="demo"), tasks=list(tasks))


@pytest.fixture
def chain_tasks():
    """A <- B <- C, plus an independent D."""
    return [
        make_task("A", adr_source="adr/ADR-001.md"),
        make_task("B", ["A"], adr_source="adr/ADR-001.md"),
        make_task("C", ["B"], spec_source="specs/SPEC-002.md"),
        make_task("D", spec_source="specs/SPEC-002.md"),
    ]


@pytest.fixture
def memory_store(chain_tasks):
    return MemoryManifestStore(make_manifest(*chain_tasks))


@pytest.fixture
def file_store(tmp_path, chain_tasks):
    store = FileManifestStore(tmp_path / "vtm.json")
    store.save(make_manifest(*chain_tasks))
    return store
