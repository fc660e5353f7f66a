"""Dependency resolution over a board's task collection.

Everything here is a pure function of the tasks passed in. Readiness is
recomputed on demand after every mutation; nothing is cached or stored.
"""

from collections.abc import Iterable, Mapping

from agentboard.db.models import DependencyStats, Task, TaskStatus


class DependencyCycleError(ValueError):
    """Raised when a dependency edit would introduce a cycle."""

    def __init__(self, cycle: list[int]):
        self.cycle = cycle
        super().__init__("Dependency cycle: " + " -> ".join(str(t) for t in cycle))


def find_cycle(graph: Mapping[int, Iterable[int]]) -> list[int] | None:
    """Return one cycle in `graph` as a path (first node repeated last), or None.

    Edges to nodes that are not keys of `graph` are ignored.
    """
    WHITE, GREY, BLACK = 0, 1, 2
    color = {node: WHITE for node in graph}
    stack: list[int] = []

    def visit(node: int) -> list[int] | None:
        color[node] = GREY
        stack.append(node)
        for dep in sorted(set(graph[node])):
            if dep not in color:
                continue
            if color[dep] == GREY:
                return stack[stack.index(dep):] + [dep]
            if color[dep] == WHITE:
                found = visit(dep)
                if found:
                    return found
        stack.pop()
        color[node] = BLACK
        return None

    for node in sorted(graph):
        if color[node] == WHITE:
            found = visit(node)
            if found:
                return found
    return None


def cyclic_task_ids(tasks: Iterable[Task]) -> set[int]:
    """IDs of every task that sits on a dependency cycle, self-loops included."""
    graph = {t.id: set(t.dependencies) for t in tasks}
    index: dict[int, int] = {}
    lowlink: dict[int, int] = {}
    stack: list[int] = []
    on_stack: set[int] = set()
    on_cycle: set[int] = set()

    # Tarjan's strongly connected components.
    def strongconnect(node: int):
        index[node] = lowlink[node] = len(index)
        stack.append(node)
        on_stack.add(node)
        for dep in graph[node]:
            if dep not in graph:
                continue
            if dep not in index:
                strongconnect(dep)
                lowlink[node] = min(lowlink[node], lowlink[dep])
            elif dep in on_stack:
                lowlink[node] = min(lowlink[node], index[dep])
        if lowlink[node] == index[node]:
            component = []
            while True:
                member = stack.pop()
                on_stack.discard(member)
                component.append(member)
                if member == node:
                    break
            if len(component) > 1 or node in graph[node]:
                on_cycle.update(component)

    for node in graph:
        if node not in index:
            strongconnect(node)
    return on_cycle


def check_acyclic(tasks: Iterable[Task], task_id: int, dependencies: Iterable[int]) -> None:
    """Raise DependencyCycleError if giving `task_id` these dependencies forms a cycle."""
    graph = {t.id: set(t.dependencies) for t in tasks}
    graph[task_id] = set(dependencies)
    if task_id in graph[task_id]:
        raise DependencyCycleError([task_id, task_id])
    cycle = find_cycle(graph)
    if cycle:
        raise DependencyCycleError(cycle)


def is_ready(task: Task, tasks: Iterable[Task]) -> bool:
    """A task is ready when every dependency exists and is done.

    Dangling dependency IDs can never complete, so they block forever.
    Tasks on a dependency cycle are never ready.
    """
    if not task.dependencies:
        return True
    tasks = list(tasks)
    if task.id in task.dependencies or task.id in cyclic_task_ids(tasks):
        return False
    by_id = {t.id: t for t in tasks}
    done = sum(
        1
        for dep_id in set(task.dependencies)
        if (dep := by_id.get(dep_id)) is not None and dep.status == TaskStatus.DONE
    )
    return done == len(set(task.dependencies))


def is_blocked(task: Task, tasks: Iterable[Task]) -> bool:
    return not is_ready(task, tasks)


def blocking_dependencies(task: Task, tasks: Iterable[Task]) -> list[int]:
    """Dependency IDs that are missing or not yet done."""
    by_id = {t.id: t for t in tasks}
    return sorted(
        dep_id
        for dep_id in set(task.dependencies)
        if dep_id not in by_id or by_id[dep_id].status != TaskStatus.DONE
    )


def get_ready_tasks(tasks: Iterable[Task]) -> list[Task]:
    """Not-done tasks whose dependencies are all met."""
    tasks = list(tasks)
    return [t for t in tasks if t.status != TaskStatus.DONE and is_ready(t, tasks)]


def get_blocked_tasks(tasks: Iterable[Task]) -> list[Task]:
    tasks = list(tasks)
    return [t for t in tasks if is_blocked(t, tasks)]


def dependency_stats(tasks: Iterable[Task]) -> DependencyStats:
    tasks = list(tasks)
    ready = sum(1 for t in tasks if is_ready(t, tasks))
    return DependencyStats(
        total=len(tasks),
        ready=ready,
        blocked=len(tasks) - ready,
        with_dependencies=sum(1 for t in tasks if t.dependencies),
    )
