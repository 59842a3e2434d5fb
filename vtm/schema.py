"""
VTM - Manifest Schema Definition
================================
Task, manifest, ledger and cache documents for the VTM manifest engine.
Every persisted document is a pydantic model dumped with mode='json'.
"""

from enum import Enum
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    """Task lifecycle states"""
    PENDING = "pending"           # Not started
    IN_PROGRESS = "in_progress"   # Currently executing
    COMPLETED = "completed"       # Terminal
    BLOCKED = "blocked"           # Failed validation, parked


class TestStrategy(str, Enum):
    __test__ = False

    TDD = "TDD"
    UNIT = "Unit"
    INTEGRATION = "Integration"
    DIRECT = "Direct"


class TaskRisk(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TaskFiles(BaseModel):
    """Advisory file effects declared by a task (not enforced)"""
    create: List[str] = Field(default_factory=list)
    modify: List[str] = Field(default_factory=list)
    delete: List[str] = Field(default_factory=list)


class TaskValidation(BaseModel):
    """Completion evidence stored on the task"""
    tests_pass: bool = False
    ac_verified: List[bool] = Field(default_factory=list)


class Task(BaseModel):
    """Individual task definition"""
    model_config = ConfigDict(extra="allow")

    id: str
    title: str = ""
    description: str = ""

    # Provenance
    adr_source: str = ""
    spec_source: str = ""

    acceptance_criteria: List[str] = Field(default_factory=list)

    # Dependencies
    dependencies: List[str] = Field(default_factory=list)  # Task IDs
    blocks: List[str] = Field(default_factory=list)        # Derived on save

    test_strategy: TestStrategy = TestStrategy.TDD
    test_strategy_rationale: str = ""
    estimated_hours: float = 0
    risk: TaskRisk = TaskRisk.MEDIUM
    files: TaskFiles = Field(default_factory=TaskFiles)

    # Execution tracking
    status: TaskStatus = TaskStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    commits: List[str] = Field(default_factory=list)
    validation: TaskValidation = Field(default_factory=TaskValidation)
    blocked_reason: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def _legacy_status(cls, value: Any) -> Any:
        # Older manifests spell it "in-progress"
        if value == "in-progress":
            return TaskStatus.IN_PROGRESS.value
        return value

    @field_validator("dependencies", mode="before")
    @classmethod
    def _normalize_dependencies(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        seen: List[str] = []
        for dep in value:
            dep = str(dep)
            if dep not in seen:
                seen.append(dep)
        return seen

    @property
    def source(self) -> str:
        """Originating design document"""
        return self.adr_source or self.spec_source or "(unknown)"


class ProjectInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str = ""
    description: str = ""


class ManifestStats(BaseModel):
    """Counts by status - derived from tasks, never hand-edited"""
    total_tasks: int = 0
    completed: int = 0
    in_progress: int = 0
    pending: int = 0
    blocked: int = 0

    @classmethod
    def from_tasks(cls, tasks: List[Task]) -> "ManifestStats":
        counts = {status: 0 for status in TaskStatus}
        for task in tasks:
            counts[task.status] += 1
        return cls(
            total_tasks=len(tasks),
            completed=counts[TaskStatus.COMPLETED],
            in_progress=counts[TaskStatus.IN_PROGRESS],
            pending=counts[TaskStatus.PENDING],
            blocked=counts[TaskStatus.BLOCKED],
        )

    @property
    def progress_pct(self) -> float:
        if not self.total_tasks:
            return 0.0
        return self.completed / self.total_tasks * 100


class Manifest(BaseModel):
    """The whole vtm.json document"""
    model_config = ConfigDict(extra="allow")

    version: str = "1.0"
    project: ProjectInfo = Field(default_factory=ProjectInfo)
    stats: ManifestStats = Field(default_factory=ManifestStats)
    tasks: List[Task] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_ids(self) -> "Manifest":
        seen = set()
        duplicates = []
        for task in self.tasks:
            if task.id in seen and task.id not in duplicates:
                duplicates.append(task.id)
            seen.add(task.id)
        if duplicates:
            raise ValueError(f"duplicate task ids: {', '.join(duplicates)}")
        return self

    def get_task(self, task_id: str) -> Optional[Task]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def task_map(self) -> Dict[str, Task]:
        return {task.id: task for task in self.tasks}


class CompletionEvidence(BaseModel):
    """What the caller proves when completing a task"""
    tests_pass: bool = False
    ac_verified: List[bool] = Field(default_factory=list)
    commits: List[str] = Field(default_factory=list)
    files_created: List[str] = Field(default_factory=list)

    @classmethod
    def all_verified(cls, task: Task, **kwargs: Any) -> "CompletionEvidence":
        return cls(ac_verified=[True] * len(task.acceptance_criteria), **kwargs)


# ============================================================
# LEDGER
# ============================================================

class Transaction(BaseModel):
    """One ingestion batch in the history file"""
    id: str                          # YYYY-MM-DD-NNN
    action: str = "ingest"
    timestamp: datetime = Field(default_factory=utcnow)
    sources: List[str] = Field(default_factory=list)
    tasks_added: List[str] = Field(default_factory=list)
    description: Optional[str] = None

    # Set once, by rollback
    reverted: bool = False
    reverted_at: Optional[datetime] = None
    tasks_removed: List[str] = Field(default_factory=list)


# ============================================================
# RESEARCH CACHE
# ============================================================

class CacheEntry(BaseModel):
    """A cached external lookup, keyed by the hash of its normalized query"""
    key: str
    query: str
    result: Any = None
    tags: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    ttl_seconds: int = 0

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or utcnow()
        created = self.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return (now - created).total_seconds()

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.age_seconds(now) >= self.ttl_seconds
