"""Dependency graph of named units of work.

A task is ready once every declared dependency is completed. Dependencies on
ids that are never added stay unsatisfied forever; the scheduler reports that
as a blocked run rather than failing at definition time, so graphs may be
declared in any order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Mapping, Union

from errors import ConflictError, NotFoundError
from executor.state_machine import TaskState, next_task_state

# Work receives the results of its dependencies keyed by task id and may be
# a coroutine function or a plain function.
TaskWork = Callable[[Mapping[str, Any]], Union[Awaitable[Any], Any]]


@dataclass
class Task:
    id: str
    work: TaskWork
    dependencies: frozenset[str] = field(default_factory=frozenset)
    state: TaskState = TaskState.PENDING
    result: Any = None
    error: BaseException | None = None

    def transition(self, new: TaskState) -> None:
        self.state = next_task_state(self.state, new)


class TaskGraph:
    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}

    def add_task(self, task_id: str, work: TaskWork, deps: Iterable[str] = ()) -> Task:
        if task_id in self._tasks:
            raise ConflictError(f"Task already defined: {task_id}")
        task = Task(id=task_id, work=work, dependencies=frozenset(deps))
        self._tasks[task_id] = task
        return task

    def get(self, task_id: str) -> Task:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise NotFoundError("Task", task_id) from None

    def __len__(self) -> int:
        return len(self._tasks)

    def __iter__(self):
        return iter(self._tasks.values())

    def ids_in(self, state: TaskState) -> list[str]:
        return [t.id for t in self._tasks.values() if t.state == state]

    def _dep_done(self, dep: str) -> bool:
        t = self._tasks.get(dep)
        return t is not None and t.state == TaskState.COMPLETED

    def ready(self) -> list[str]:
        """Pending tasks whose dependencies are all completed, in definition order."""
        return [
            t.id
            for t in self._tasks.values()
            if t.state == TaskState.PENDING and all(self._dep_done(d) for d in t.dependencies)
        ]

    def inputs_for(self, task_id: str) -> dict[str, Any]:
        task = self.get(task_id)
        return {d: self._tasks[d].result for d in sorted(task.dependencies)}

    def is_complete(self) -> bool:
        return all(t.state == TaskState.COMPLETED for t in self._tasks.values())
