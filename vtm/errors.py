"""
VTM - Error Taxonomy
====================
Every error carries the process exit code the CLI reports for it:
usage and precondition errors exit 1, data-integrity errors exit 2.
"""

from typing import Dict, List, Sequence


class VTMError(Exception):
    """Base class for all manifest engine errors"""
    exit_code = 1


# ========================================
# USAGE
# ========================================

class UsageError(VTMError):
    """Bad arguments, unknown ids, invalid filters"""
    exit_code = 1


class TaskNotFound(UsageError):
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class TransactionNotFound(UsageError):
    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction not found: {transaction_id}")


class InvalidFilter(UsageError):
    pass


class ManifestNotFound(UsageError):
    def __init__(self, path):
        self.path = path
        super().__init__(f"Manifest not found at {path}. Run 'vtm init' to create one.")


# ========================================
# DATA INTEGRITY
# ========================================

class DataIntegrityError(VTMError):
    """Inconsistent persisted data - the command aborts without writing"""
    exit_code = 2


class CorruptManifest(DataIntegrityError):
    pass


class CorruptHistory(DataIntegrityError):
    pass


class CycleDetected(DataIntegrityError):
    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


class DanglingDependency(DataIntegrityError):
    def __init__(self, task_id: str, missing: Sequence[str]):
        self.task_id = task_id
        self.missing = list(missing)
        super().__init__(
            f"Task {task_id} depends on unknown task(s): {', '.join(self.missing)}"
        )


# ========================================
# PRECONDITIONS
# ========================================

class PreconditionError(VTMError):
    """Recoverable with --force/--cascade or by fixing the condition"""
    exit_code = 1


class NotReady(PreconditionError):
    pass


class InvalidTransition(PreconditionError):
    pass


class ValidationIncomplete(PreconditionError):
    def __init__(self, task_id: str, problems: List[str]):
        self.task_id = task_id
        self.problems = problems
        super().__init__(
            f"Cannot complete {task_id}: {'; '.join(problems)}. Use --force to override."
        )


class BlockedByDependents(PreconditionError):
    def __init__(self, transaction_id: str, dependents: List[Dict[str, str]]):
        self.transaction_id = transaction_id
        self.dependents = dependents
        pairs = ", ".join(f"{d['task_id']} -> {d['depends_on']}" for d in dependents)
        super().__init__(
            f"Cannot rollback {transaction_id}: {len(dependents)} task(s) depend on "
            f"removed tasks ({pairs}). Use --cascade to remove them too or --force to override."
        )


# ========================================
# CACHE
# ========================================

class CacheError(VTMError):
    """Cache read/write failure - always degraded to a miss"""
