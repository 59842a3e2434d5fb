"""
VTM - Virtual Task Manifest
===========================

JSON-backed task manifest for incremental, dependency-ordered development.
Tasks derived from ADRs/specs carry dependencies and acceptance criteria;
the manifest surfaces which are ready, records progress atomically, and
keeps an auditable, reversible history of every ingestion batch.

Usage:
    from vtm import FileManifestStore, TaskManager

    manager = TaskManager(FileManifestStore("vtm.json"))
    for task in manager.get_ready_tasks(limit=3):
        print(task.id, task.title)

    manager.start_task("TASK-001")
    result = manager.complete_task(
        "TASK-001",
        CompletionEvidence(tests_pass=True, ac_verified=[True, True]),
    )
    print([t.id for t in result.newly_ready])
"""

from .schema import (
    Manifest,
    ManifestStats,
    Task,
    TaskStatus,
    TaskFiles,
    TaskValidation,
    CompletionEvidence,
    Transaction,
    CacheEntry,
)

from .errors import VTMError
from .store import FileManifestStore, MemoryManifestStore
from .manager import TaskManager
from .context import ContextBuilder
from .history import TransactionLedger
from .ingest import ingest_tasks
from .cache import ResearchCache

__version__ = "1.0.0"
__all__ = [
    "TaskManager",
    "FileManifestStore",
    "MemoryManifestStore",
    "ContextBuilder",
    "TransactionLedger",
    "ResearchCache",
    "ingest_tasks",
    "Manifest",
    "ManifestStats",
    "Task",
    "TaskStatus",
    "TaskFiles",
    "TaskValidation",
    "CompletionEvidence",
    "Transaction",
    "CacheEntry",
    "VTMError",
]
