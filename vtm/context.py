"""
VTM - Context Builder
=====================
Read-only projections of the manifest for downstream consumers:
a single task plus its resolved dependency chain (extract/render), and a
token-light summary of outstanding work (summarize).
"""

import math
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field

from .errors import TaskNotFound, UsageError
from .schema import Manifest, Task, TaskStatus
from .store import ManifestStore

MODES = ("minimal", "compact", "full")

DESCRIPTION_LIMITS = {
    "compact": 160,
    "minimal": 800,
    "full": None,
}


class DependencySummary(BaseModel):
    id: str
    title: str
    files_created: List[str] = Field(default_factory=list)
    commits: Optional[List[str]] = None


class TaskRef(BaseModel):
    id: str
    title: str


class ContextPayload(BaseModel):
    mode: str
    task: Dict[str, Any]
    dependencies: List[DependencySummary] = Field(default_factory=list)
    unmet_dependencies: List[str] = Field(default_factory=list)
    blocked_tasks: Optional[List[TaskRef]] = None


def truncate(text: str, limit: Optional[int]) -> str:
    if limit is None or len(text) <= limit:
        return text
    return text[: max(limit - 1, 0)].rstrip() + "…"


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def _project_task(task: Task, mode: str) -> Dict[str, Any]:
    data = {
        "id": task.id,
        "title": task.title,
        "status": task.status.value,
        "description": truncate(task.description, DESCRIPTION_LIMITS[mode]),
        "acceptance_criteria": list(task.acceptance_criteria),
        "test_strategy": task.test_strategy.value,
    }
    if mode == "compact":
        data["files"] = {"create": list(task.files.create)}
        return data

    data.update({
        "risk": task.risk.value,
        "estimated_hours": task.estimated_hours,
        "files": task.files.model_dump(),
        "adr_source": task.adr_source,
        "spec_source": task.spec_source,
        "test_strategy_rationale": task.test_strategy_rationale,
    })
    if mode == "full":
        data.update({
            "dependencies": list(task.dependencies),
            "blocks": list(task.blocks),
            "started_at": task.started_at.isoformat() if task.started_at else None,
            "completed_at": task.completed_at.isoformat() if task.completed_at else None,
            "commits": list(task.commits),
            "validation": task.validation.model_dump(),
            "blocked_reason": task.blocked_reason,
        })
    return data


class ContextBuilder:
    """Context Extractor - never writes to the store"""

    def __init__(self, store: ManifestStore):
        self.store = store

    def extract(self, task_id: str, mode: str = "minimal") -> ContextPayload:
        if mode not in MODES:
            raise UsageError(f"Unknown context mode '{mode}'. Valid modes: {', '.join(MODES)}")

        manifest = self.store.load()
        by_id = manifest.task_map()
        task = by_id.get(task_id)
        if task is None:
            raise TaskNotFound(task_id)

        completed = []
        unmet = []
        for dep_id in task.dependencies:
            dep = by_id.get(dep_id)
            if dep is None or dep.status != TaskStatus.COMPLETED:
                unmet.append(dep_id)
                continue
            completed.append(DependencySummary(
                id=dep.id,
                title=dep.title,
                files_created=list(dep.files.create),
                commits=list(dep.commits) if mode == "full" else None,
            ))

        blocked_tasks = None
        if mode != "compact":
            blocked_tasks = [
                TaskRef(id=t.id, title=t.title)
                for t in manifest.tasks
                if task_id in t.dependencies and t.status == TaskStatus.PENDING
            ]

        return ContextPayload(
            mode=mode,
            task=_project_task(task, mode),
            dependencies=completed,
            unmet_dependencies=unmet,
            blocked_tasks=blocked_tasks,
        )

    def build(self, task_id: str, mode: str = "minimal") -> str:
        return render(self.extract(task_id, mode))


def render(payload: ContextPayload) -> str:
    """Human/LLM-readable text for a context payload"""
    task = payload.task
    if payload.mode == "compact":
        lines = [
            f"Task {task['id']}: {task['title']}",
            f"Test: {task['test_strategy']}",
            f"ACs: {' | '.join(task['acceptance_criteria'])}",
            f"Files: {', '.join(task['files']['create'])}",
        ]
        if payload.dependencies:
            lines.append("Deps: " + ", ".join(f"{d.id} ({d.title})" for d in payload.dependencies))
        if payload.unmet_dependencies:
            lines.append("Waiting on: " + ", ".join(payload.unmet_dependencies))
        return "\n".join(lines)

    lines = [
        f"# Task Context: {task['id']}",
        "",
        "## Task Details",
        f"**Title**: {task['title']}",
        f"**Status**: {task['status']}",
        f"**Test Strategy**: {task['test_strategy']}",
        f"**Risk**: {task['risk']}",
        f"**Estimated**: {task['estimated_hours']}h",
        "",
        "**Description**:",
        task["description"],
        "",
        "## Acceptance Criteria",
    ]
    for i, ac in enumerate(task["acceptance_criteria"], 1):
        lines.append(f"- AC{i}: {ac}")

    if payload.dependencies:
        lines.extend(["", f"## Dependencies ({len(payload.dependencies)} completed)"])
        for dep in payload.dependencies:
            lines.append(f"✅ {dep.id}: {dep.title}")
            if dep.files_created:
                lines.append(f"   Files created: {', '.join(dep.files_created)}")
            if dep.commits:
                lines.append(f"   Commits: {', '.join(dep.commits)}")
    if payload.unmet_dependencies:
        lines.extend(["", "## Waiting On"])
        lines.extend(f"- {dep_id}" for dep_id in payload.unmet_dependencies)

    files = task["files"]
    lines.extend(["", "## Files to Create"])
    if files["create"]:
        lines.extend(f"- {f}" for f in files["create"])
    else:
        lines.append("- (none)")
    if files["modify"]:
        lines.extend(["", "## Files to Modify"])
        lines.extend(f"- {f}" for f in files["modify"])
    if files["delete"]:
        lines.extend(["", "## Files to Delete"])
        lines.extend(f"- {f}" for f in files["delete"])

    lines.extend([
        "",
        "## Source Documents",
        f"- ADR: {task['adr_source'] or '(none)'}",
        f"- Spec: {task['spec_source'] or '(none)'}",
    ])
    if task["test_strategy_rationale"]:
        lines.extend(["", "## Test Strategy Rationale", task["test_strategy_rationale"]])

    if payload.mode == "full":
        validation = task["validation"]
        lines.extend([
            "",
            "## Progress",
            f"- Started: {task['started_at'] or '-'}",
            f"- Completed: {task['completed_at'] or '-'}",
            f"- Tests pass: {'yes' if validation['tests_pass'] else 'no'}",
            f"- ACs verified: {sum(1 for v in validation['ac_verified'] if v)}"
            f"/{len(task['acceptance_criteria'])}",
        ])
        if task["commits"]:
            lines.append(f"- Commits: {', '.join(task['commits'])}")
        if task["blocked_reason"]:
            lines.append(f"- Blocked: {task['blocked_reason']}")

    if payload.blocked_tasks:
        lines.extend(["", "## Tasks Blocked by This"])
        lines.extend(f"- {t.id}: {t.title}" for t in payload.blocked_tasks)

    return "\n".join(lines)


def summarize(manifest: Manifest) -> Dict[str, Any]:
    """Outstanding tasks in full, completed work reduced to titles"""
    incomplete = []
    capabilities = []
    for task in manifest.tasks:
        if task.status == TaskStatus.COMPLETED:
            capabilities.append(task.title)
            continue
        entry = {
            "id": task.id,
            "title": task.title,
            "description": task.description,
            "status": task.status.value,
            "estimated_hours": task.estimated_hours,
            "risk": task.risk.value,
            "test_strategy": task.test_strategy.value,
        }
        if task.dependencies:
            entry["dependencies"] = list(task.dependencies)
        incomplete.append(entry)
    return {"incomplete_tasks": incomplete, "completed_capabilities": capabilities}
