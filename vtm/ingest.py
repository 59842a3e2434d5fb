"""
VTM - Batch Ingestion
=====================
Turns draft tasks produced by spec/ADR generation into manifest tasks and
records the batch in the ledger.

Drafts without an id get TASK-NNN ids continuing from the highest number
already in the manifest. Integer dependencies point at earlier drafts in
the same batch by index:

    [{"title": "Auth"}, {"title": "Profiles", "dependencies": [0]}]
    -> TASK-007 (Auth), TASK-008 (Profiles, depends on TASK-007)

preview_ingest() reports what a batch would add, and the state of every
dependency, without touching the manifest or the ledger.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError

from .errors import DataIntegrityError, UsageError
from .history import TransactionLedger
from .resolver import check_integrity
from .schema import Task, TaskStatus, Transaction
from .store import ManifestStore

logger = logging.getLogger(__name__)

TASK_ID_PATTERN = re.compile(r"^TASK-(\d+)$")


def _format_id(number: int) -> str:
    return f"TASK-{number:03d}"


def highest_task_number(task_ids: List[str]) -> int:
    numbers = [int(m.group(1)) for m in map(TASK_ID_PATTERN.match, task_ids) if m]
    return max(numbers, default=0)


def build_tasks(drafts: List[Dict[str, Any]], existing_ids: List[str]) -> List[Task]:
    """
    Assign ids, resolve index dependencies and validate each draft.

    Every problem in the batch is collected and reported in a single
    UsageError, one line per problem.
    """
    next_number = highest_task_number(existing_ids) + 1
    taken = set(existing_ids)
    assigned: List[str] = []
    built: List[Task] = []
    errors: List[str] = []

    for index, draft in enumerate(drafts):
        if not isinstance(draft, dict):
            errors.append(f"Draft #{index} is not an object")
            assigned.append(f"#{index}")
            continue
        data = dict(draft)

        if not data.get("id"):
            while _format_id(next_number) in taken:
                next_number += 1
            data["id"] = _format_id(next_number)
            next_number += 1
        task_id = str(data["id"])
        assigned.append(task_id)
        if task_id in taken:
            errors.append(f"Draft #{index}: task id {task_id} already exists")
        taken.add(task_id)

        raw_dependencies = data.get("dependencies") or []
        if not isinstance(raw_dependencies, list):
            errors.append(f"Draft #{index} ({task_id}): dependencies must be a list")
            raw_dependencies = []
        dependencies = []
        for dep in raw_dependencies:
            if isinstance(dep, int) and not isinstance(dep, bool):
                if dep < 0 or dep >= index:
                    errors.append(
                        f"Draft #{index} ({task_id}): dependency index {dep} is out of bounds"
                    )
                    continue
                dep = assigned[dep]
            dependencies.append(dep)
        data["dependencies"] = dependencies
        data.setdefault("status", TaskStatus.PENDING.value)
        data.pop("blocks", None)

        try:
            built.append(Task.model_validate(data))
        except ValidationError as e:
            errors.append(f"Draft #{index} ({task_id}) is invalid: {e}")

    if errors:
        raise UsageError(
            f"{len(errors)} problem(s) in batch:\n" + "\n".join(f"  - {err}" for err in errors)
        )
    return built


def load_drafts(path: Union[str, Path]) -> Tuple[List[Dict[str, Any]], List[str]]:
    """Read a batch file: a JSON list of drafts, or {"tasks": [...], "sources": [...]}"""
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise UsageError(f"Batch file not found: {path}") from None
    except json.JSONDecodeError as e:
        raise UsageError(f"Batch file {path} is not valid JSON: {e}") from e
    except UnicodeDecodeError as e:
        raise UsageError(f"Batch file {path} is not valid UTF-8: {e}") from e

    if isinstance(data, list):
        return data, []
    if isinstance(data, dict) and isinstance(data.get("tasks"), list):
        sources = data.get("sources") or ([data["source"]] if data.get("source") else [])
        return data["tasks"], [str(s) for s in sources]
    raise UsageError(f"Batch file {path} must be a list of tasks or an object with 'tasks'")


def ingest_tasks(
    store: ManifestStore,
    ledger: TransactionLedger,
    drafts: List[Dict[str, Any]],
    sources: Optional[List[str]] = None,
    description: Optional[str] = None
) -> Tuple[List[Task], Transaction]:
    """Append drafts to the manifest and record the batch as one transaction"""
    if not drafts:
        raise UsageError("Nothing to ingest")

    manifest = store.load()
    new_tasks = build_tasks(drafts, [t.id for t in manifest.tasks])
    combined = manifest.tasks + new_tasks
    check_integrity(combined)

    if not sources:
        sources = sorted({t.source for t in new_tasks if t.adr_source or t.spec_source})

    manifest.tasks = combined
    store.save(manifest)
    tx = ledger.record(sources, [t.id for t in new_tasks], description=description)

    logger.info(f"📥 Ingested {len(new_tasks)} task(s) as {tx.id}")
    return new_tasks, tx


# ========================================
# PREVIEW
# ========================================

@dataclass
class DependencyState:
    id: str
    state: str              # new | completed | in_progress | pending | blocked | missing


@dataclass
class TaskPreview:
    task: Task
    dependencies: List[DependencyState] = field(default_factory=list)
    waiting_on: List[str] = field(default_factory=list)


@dataclass
class IngestPreview:
    tasks: List[TaskPreview] = field(default_factory=list)
    error: Optional[DataIntegrityError] = None


def preview_ingest(store: ManifestStore, drafts: List[Dict[str, Any]]) -> IngestPreview:
    """What ingest_tasks would add, without writing anything"""
    if not drafts:
        raise UsageError("Nothing to ingest")

    manifest = store.load()
    existing = manifest.task_map()
    new_tasks = build_tasks(drafts, list(existing))
    new_ids = {t.id for t in new_tasks}

    preview = IngestPreview()
    for task in new_tasks:
        entry = TaskPreview(task=task)
        for dep_id in task.dependencies:
            if dep_id in new_ids:
                state = "new"
            elif dep_id in existing:
                state = existing[dep_id].status.value
            else:
                state = "missing"
            entry.dependencies.append(DependencyState(id=dep_id, state=state))
            if state != TaskStatus.COMPLETED.value:
                entry.waiting_on.append(dep_id)
        preview.tasks.append(entry)

    try:
        check_integrity(manifest.tasks + new_tasks)
    except DataIntegrityError as e:
        preview.error = e
    return preview
