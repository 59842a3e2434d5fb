"""
VTM - Task Manager
==================
Status transitions and reporting on top of a ManifestStore.

State machine:
    pending -> in_progress -> completed
    pending -> blocked                      (validation failed)
    in_progress | blocked -> pending        (explicit reset)
    completed -> pending                    (administrative reopen only)

Every mutation is one load -> mutate -> atomic save cycle. Integrity
(cycles, dangling dependencies) is checked before anything is written.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any

from .errors import (
    InvalidFilter,
    InvalidTransition,
    NotReady,
    TaskNotFound,
    ValidationIncomplete,
)
from .resolver import (
    check_integrity,
    dependents_of,
    newly_ready,
    rank_by_unblocking,
    resolve,
    unmet_dependencies,
)
from .schema import (
    CompletionEvidence,
    Manifest,
    ManifestStats,
    Task,
    TaskStatus,
    TaskValidation,
    utcnow,
)
from .store import ManifestStore

logger = logging.getLogger(__name__)

FILTER_FIELDS = (
    "id", "status", "title", "adr_source", "spec_source", "source", "risk", "test_strategy",
)
SUBSTRING_FILTERS = ("title", "adr_source", "spec_source", "source")
SORT_FIELDS = ("id", "status", "title", "risk", "estimated_hours", "source")

RISK_ORDER = {"low": 0, "medium": 1, "high": 2}


@dataclass
class CompletionResult:
    task: Task
    newly_ready: List[Task] = field(default_factory=list)
    stats: Optional[ManifestStats] = None


def _value(task: Task, name: str) -> Any:
    value = getattr(task, name)
    return getattr(value, "value", value)


def parse_filters(expressions: Optional[List[str]]) -> Dict[str, str]:
    """Turn ["status=pending", ...] into a dict, rejecting unknown keys"""
    filters: Dict[str, str] = {}
    for expr in expressions or []:
        key, sep, value = expr.partition("=")
        key = key.strip()
        if not sep or not key:
            raise InvalidFilter(f"Invalid filter '{expr}' (expected field=value)")
        if key not in FILTER_FIELDS:
            raise InvalidFilter(
                f"Unknown filter field '{key}'. Valid fields: {', '.join(FILTER_FIELDS)}"
            )
        filters[key] = value.strip()
    return filters


class TaskManager:
    """
    Task Mutator

    Holds no manifest state between calls: every method loads from the
    store it was given, so an in-memory store works the same as vtm.json.
    """

    def __init__(self, store: ManifestStore):
        self.store = store

    # ========================================
    # TASK OPERATIONS
    # ========================================

    def start_task(self, task_id: str, force: bool = False) -> Task:
        """Start a task (sets status to in_progress)"""
        manifest = self._load_checked()
        task = self._require(manifest, task_id)

        if task.status == TaskStatus.IN_PROGRESS:
            raise NotReady(f"Task {task_id} is already in progress")
        if task.status == TaskStatus.COMPLETED:
            raise NotReady(f"Task {task_id} is already completed")
        if task.status == TaskStatus.BLOCKED and not force:
            raise NotReady(
                f"Task {task_id} is blocked ({task.blocked_reason or 'no reason given'}). "
                "Reset it or use --force."
            )

        if not force:
            blocking = unmet_dependencies(task, manifest.task_map())
            if blocking:
                raise NotReady(
                    f"Task {task_id} is waiting on: {', '.join(blocking)}. Use --force to override."
                )
        elif unmet_dependencies(task, manifest.task_map()):
            logger.warning(f"⚠️ Force-starting {task_id} with incomplete dependencies")

        task.status = TaskStatus.IN_PROGRESS
        task.started_at = utcnow()
        task.blocked_reason = None
        self.store.save(manifest)

        logger.info(f"▶️ Started task: {task.title} ({task_id})")
        return task

    def complete_task(
        self,
        task_id: str,
        evidence: Optional[CompletionEvidence] = None,
        force: bool = False
    ) -> CompletionResult:
        """Mark task as completed and report the tasks it unblocked"""
        evidence = evidence or CompletionEvidence()
        manifest = self._load_checked()
        task = self._require(manifest, task_id)

        if task.status == TaskStatus.COMPLETED:
            raise InvalidTransition(
                f"Task {task_id} is already completed (use 'vtm reopen' to re-open it)"
            )
        if task.status != TaskStatus.IN_PROGRESS and not force:
            raise InvalidTransition(
                f"Task {task_id} is {task.status.value}, not in_progress. "
                f"Run 'vtm start {task_id}' first or use --force."
            )

        if not force:
            problems = self._evidence_problems(task, evidence)
            if problems:
                raise ValidationIncomplete(task_id, problems)

        task.status = TaskStatus.COMPLETED
        task.completed_at = utcnow()
        task.validation = TaskValidation(
            tests_pass=evidence.tests_pass,
            ac_verified=list(evidence.ac_verified),
        )
        for sha in evidence.commits:
            if sha not in task.commits:
                task.commits.append(sha)
        for path in evidence.files_created:
            if path not in task.files.create:
                task.files.create.append(path)

        self.store.save(manifest)
        unblocked = newly_ready(task_id, manifest.tasks)

        logger.info(f"✅ Completed task: {task.title} ({task_id})")
        for t in unblocked:
            logger.info(f"🔓 Unblocked task: {t.title} ({t.id})")
        return CompletionResult(task=task, newly_ready=unblocked, stats=manifest.stats)

    def block_task(self, task_id: str, reason: str) -> Task:
        """Park a pending task whose validation failed"""
        manifest = self._load_checked()
        task = self._require(manifest, task_id)
        if task.status != TaskStatus.PENDING:
            raise InvalidTransition(
                f"Only pending tasks can be blocked ({task_id} is {task.status.value})"
            )
        task.status = TaskStatus.BLOCKED
        task.blocked_reason = reason
        self.store.save(manifest)
        logger.info(f"⛔ Blocked task: {task_id} ({reason})")
        return task

    def reset_task(self, task_id: str) -> Task:
        """Return an in-progress or blocked task to pending"""
        manifest = self._load_checked()
        task = self._require(manifest, task_id)
        if task.status == TaskStatus.COMPLETED:
            raise InvalidTransition(
                f"Task {task_id} is completed; use 'vtm reopen' to re-open it"
            )
        if task.status == TaskStatus.PENDING:
            raise InvalidTransition(f"Task {task_id} is already pending")
        task.status = TaskStatus.PENDING
        task.started_at = None
        task.blocked_reason = None
        self.store.save(manifest)
        logger.info(f"↩️ Reset task: {task_id}")
        return task

    def reopen_task(self, task_id: str) -> Task:
        """Administrative override: completed -> pending"""
        manifest = self._load_checked()
        task = self._require(manifest, task_id)
        if task.status != TaskStatus.COMPLETED:
            raise InvalidTransition(f"Task {task_id} is not completed")

        started = [
            t.id for t in dependents_of([task_id], manifest.tasks, transitive=True)
            if t.status in (TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED)
        ]
        if started:
            logger.warning(
                f"⚠️ Reopening {task_id} while dependents already progressed: {', '.join(started)}"
            )

        task.status = TaskStatus.PENDING
        task.started_at = None
        task.completed_at = None
        task.validation = TaskValidation()
        self.store.save(manifest)
        logger.warning(f"🔁 Reopened task: {task_id}")
        return task

    # ========================================
    # QUERIES
    # ========================================

    def get_task(self, task_id: str) -> Task:
        return self._require(self.store.load(), task_id)

    def get_ready_tasks(
        self,
        limit: Optional[int] = None,
        order: str = "declared"
    ) -> List[Task]:
        """Tasks that are ready to start (no incomplete dependencies)"""
        manifest = self.store.load()
        ready = resolve(manifest.tasks).ready
        if order == "unblocking":
            ready = rank_by_unblocking(ready, manifest.tasks)
        elif order != "declared":
            raise InvalidFilter(f"Unknown order '{order}' (expected declared or unblocking)")
        return ready[:limit] if limit is not None else ready

    def list_tasks(
        self,
        filters: Optional[Dict[str, str]] = None,
        sort: Optional[str] = None
    ) -> List[Task]:
        tasks = self.store.load().tasks
        for key, expected in (filters or {}).items():
            if key not in FILTER_FIELDS:
                raise InvalidFilter(f"Unknown filter field '{key}'")
            if key in SUBSTRING_FILTERS:
                tasks = [t for t in tasks if expected.lower() in str(_value(t, key)).lower()]
            else:
                tasks = [t for t in tasks if str(_value(t, key)) == expected]

        if sort:
            descending = sort.startswith("-")
            key = sort.lstrip("-")
            if key not in SORT_FIELDS:
                raise InvalidFilter(
                    f"Unknown sort field '{key}'. Valid fields: {', '.join(SORT_FIELDS)}"
                )
            if key == "risk":
                sort_key = lambda t: RISK_ORDER[t.risk.value]
            else:
                sort_key = lambda t: _value(t, key)
            tasks = sorted(tasks, key=sort_key, reverse=descending)
        return tasks

    def stats(self) -> ManifestStats:
        return self.store.load().stats

    def stats_by_source(self) -> Dict[str, Dict[str, int]]:
        """Progress grouped by originating design document"""
        by_source: Dict[str, Dict[str, int]] = {}
        for task in self.store.load().tasks:
            entry = by_source.setdefault(task.source, {"total": 0, "completed": 0})
            entry["total"] += 1
            if task.status == TaskStatus.COMPLETED:
                entry["completed"] += 1
        return by_source

    # ========================================
    # HELPER METHODS
    # ========================================

    def _load_checked(self) -> Manifest:
        manifest = self.store.load()
        check_integrity(manifest.tasks)
        return manifest

    @staticmethod
    def _require(manifest: Manifest, task_id: str) -> Task:
        task = manifest.get_task(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    @staticmethod
    def _evidence_problems(task: Task, evidence: CompletionEvidence) -> List[str]:
        problems = []
        if not evidence.tests_pass:
            problems.append("tests not reported passing")
        total = len(task.acceptance_criteria)
        verified = evidence.ac_verified[:total]
        unverified = [
            str(i + 1) for i in range(total)
            if i >= len(verified) or not verified[i]
        ]
        if unverified:
            problems.append(f"acceptance criteria not verified: AC{', AC'.join(unverified)}")
        return problems
