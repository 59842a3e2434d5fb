"""
VTM - Dependency Resolver
=========================
Pure functions over the task list. Nothing here touches the store.

A task is ready iff it is pending and every dependency is completed.
Dangling references and cycles are data-integrity errors, checked in
full on every resolve().
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List

from .errors import CycleDetected, DanglingDependency
from .schema import Task, TaskStatus


@dataclass
class Resolution:
    """Ready and blocked tasks, both in declared order"""
    ready: List[Task] = field(default_factory=list)
    blocked: List[Task] = field(default_factory=list)


def check_integrity(tasks: List[Task]) -> None:
    """Raise DanglingDependency or CycleDetected if the graph is unusable."""
    ids = {task.id for task in tasks}
    for task in tasks:
        missing = [dep for dep in task.dependencies if dep not in ids]
        if missing:
            raise DanglingDependency(task.id, missing)

    cycle = find_cycle(tasks)
    if cycle:
        raise CycleDetected(cycle)


def find_cycle(tasks: List[Task]) -> List[str]:
    """
    Depth-first search with an explicit stack.

    Returns the id path of the first cycle found (first id repeated at the
    end, e.g. ["A", "B", "A"]), or an empty list.
    """
    adj: Dict[str, List[str]] = {task.id: list(task.dependencies) for task in tasks}
    visited = set()
    in_stack = set()

    for root in adj:
        if root in visited:
            continue
        path = [root]
        iterators = [iter(adj[root])]
        visited.add(root)
        in_stack.add(root)

        while iterators:
            node = path[-1]
            for neighbor in iterators[-1]:
                if neighbor not in adj:
                    continue
                if neighbor in in_stack:
                    return path[path.index(neighbor):] + [neighbor]
                if neighbor not in visited:
                    visited.add(neighbor)
                    in_stack.add(neighbor)
                    path.append(neighbor)
                    iterators.append(iter(adj[neighbor]))
                    break
            else:
                in_stack.discard(node)
                path.pop()
                iterators.pop()

    return []


def is_ready(task: Task, by_id: Dict[str, Task]) -> bool:
    if task.status != TaskStatus.PENDING:
        return False
    return all(
        dep in by_id and by_id[dep].status == TaskStatus.COMPLETED
        for dep in task.dependencies
    )


def unmet_dependencies(task: Task, by_id: Dict[str, Task]) -> List[str]:
    return [
        dep for dep in task.dependencies
        if dep not in by_id or by_id[dep].status != TaskStatus.COMPLETED
    ]


def resolve(tasks: List[Task]) -> Resolution:
    """Split tasks into ready and blocked after an integrity check."""
    check_integrity(tasks)
    by_id = {task.id: task for task in tasks}

    result = Resolution()
    for task in tasks:
        if task.status == TaskStatus.BLOCKED:
            result.blocked.append(task)
        elif task.status == TaskStatus.PENDING:
            if is_ready(task, by_id):
                result.ready.append(task)
            else:
                result.blocked.append(task)
    return result


def ready(tasks: List[Task]) -> List[Task]:
    return resolve(tasks).ready


def dependents_of(
    ids: Iterable[str],
    tasks: List[Task],
    transitive: bool = False
) -> List[Task]:
    """Tasks (outside `ids`) that depend on any of `ids`, in declared order."""
    targets = set(ids)
    found = set()
    frontier = set(targets)

    while frontier:
        new = set()
        for task in tasks:
            if task.id in targets or task.id in found:
                continue
            if any(dep in frontier for dep in task.dependencies):
                new.add(task.id)
        found |= new
        if not transitive:
            break
        frontier = new

    return [task for task in tasks if task.id in found]


def rank_by_unblocking(candidates: List[Task], tasks: List[Task]) -> List[Task]:
    """Order candidates by how many tasks (transitively) wait on them."""
    weight = {
        task.id: len(dependents_of([task.id], tasks, transitive=True))
        for task in candidates
    }
    # sorted() is stable, so ties keep declared order
    return sorted(candidates, key=lambda t: -weight[t.id])


def newly_ready(completed_id: str, tasks: List[Task]) -> List[Task]:
    """Direct dependents of a just-completed task that are now ready."""
    by_id = {task.id: task for task in tasks}
    return [
        task for task in tasks
        if completed_id in task.dependencies and is_ready(task, by_id)
    ]
