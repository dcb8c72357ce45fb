"""Dependency-aware task runner.

Tasks form a directed acyclic graph: each task may name the tasks it must
wait for, and while running it may spawn subtasks that join the same graph.
Execution is sequential and deterministic. The next task to run is always
the first one, in registration order, whose predecessors have all
completed. Subtasks are queued directly behind their parent.

The runner never skips a task on its own: a task runs once its
predecessors have completed, whatever their outcome. Task functions decide
for themselves whether an upstream failure means they should Skip or Fail,
usually by consulting the shared run context.

Example:
    runner = Runner("release", context=run)
    first = runner.add("check", check_fn)
    runner.add_with_dependency(first, "tag", tag_fn)
    report = runner.run()
"""

from __future__ import annotations

from collections.abc import Callable
from enum import Enum
from typing import Any

import click
from pydantic import BaseModel, ConfigDict, Field

TaskID = int
TaskFn = Callable[..., Any]


class TaskGraphError(RuntimeError):
    """At least one task failed; ``report`` holds every result."""

    def __init__(self, report: RunReport) -> None:
        self.report = report
        failures = report.failures()
        first = failures[0] if failures else None
        msg = f"{report.name}: {len(failures)} task(s) failed"
        if first is not None:
            msg += f" (first: {first.name}: {first.result.message})"
        super().__init__(msg)


class Status(str, Enum):
    SUCCESS = "success"
    INFO = "info"
    NOTICE = "notice"
    WARN = "warn"
    SKIP = "skip"
    FAILURE = "failure"


_STATUS_COLORS = {
    Status.SUCCESS: "green",
    Status.INFO: "blue",
    Status.NOTICE: "cyan",
    Status.WARN: "yellow",
    Status.SKIP: "bright_black",
    Status.FAILURE: "red",
}


class Result(BaseModel):
    """Outcome of a single task.

    Attributes:
        status: Outcome tier.
        message: Short human-readable outcome.
        desc: Optional detail (unit identity, underlying error, ...).
    """

    status: Status
    message: str
    desc: str = ""

    def with_desc(self, desc: str) -> Result:
        return self.model_copy(update={"desc": desc})

    @property
    def failed(self) -> bool:
        return self.status is Status.FAILURE

    @classmethod
    def success(cls, message: str) -> Result:
        return cls(status=Status.SUCCESS, message=message)

    @classmethod
    def info(cls, message: str) -> Result:
        return cls(status=Status.INFO, message=message)

    @classmethod
    def notice(cls, message: str) -> Result:
        return cls(status=Status.NOTICE, message=message)

    @classmethod
    def warn(cls, message: str) -> Result:
        return cls(status=Status.WARN, message=message)

    @classmethod
    def skip(cls, message: str) -> Result:
        return cls(status=Status.SKIP, message=message)

    @classmethod
    def failure(cls, message: str) -> Result:
        return cls(status=Status.FAILURE, message=message)


class Task(BaseModel):
    """A named unit of work in the graph.

    Attributes:
        id: Assigned on registration; 0 until then.
        name: Display name.
        fn: Function producing the task's Result.
        depends_on: Tasks that must complete before this one runs.
        parent: Task that spawned this one, for subtasks.
        subtasks: Tasks spawned while this one ran.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: TaskID = 0
    name: str
    fn: TaskFn = Field(exclude=True, repr=False)
    depends_on: list[TaskID] = Field(default_factory=list)
    parent: TaskID | None = None
    subtasks: list[TaskID] = Field(default_factory=list)

    def depends(self, *ids: TaskID | None) -> Task:
        """Add predecessors (None entries are ignored) and return self."""
        self.depends_on.extend(i for i in ids if i is not None)
        return self


class TaskRecord(BaseModel):
    """A completed task as it appears in the report."""

    id: TaskID
    name: str
    depth: int = 0
    parent: TaskID | None = None
    result: Result


class RunReport(BaseModel):
    """Results of every task of a run, in execution order."""

    name: str
    records: list[TaskRecord] = Field(default_factory=list)

    @property
    def failed(self) -> bool:
        return any(r.result.failed for r in self.records)

    def failures(self) -> list[TaskRecord]:
        return [r for r in self.records if r.result.failed]

    def get(self, name: str) -> TaskRecord | None:
        """First record with the given task name."""
        return next((r for r in self.records if r.name == name), None)

    def summary(self) -> dict[str, int]:
        counts = {s.value: 0 for s in Status}
        for r in self.records:
            counts[r.result.status.value] += 1
        return counts

    def render(self, color: bool = False) -> str:
        lines = [format_record(r, color=color) for r in self.records]
        totals = ", ".join(f"{n} {s}" for s, n in self.summary().items() if n)
        lines.append(f"{self.name}: {totals or 'no tasks'}")
        return "\n".join(lines)


def format_record(record: TaskRecord, color: bool = False) -> str:
    res = record.result
    tier = f"[ {res.status.value.upper():<7} ]"
    if color:
        tier = click.style(tier, fg=_STATUS_COLORS[res.status])
    line = f"{'  ' * record.depth}{tier} {record.name}: {res.message}"
    if res.desc:
        line += f" ({res.desc})"
    return line


class Executor:
    """Handle given to a running task.

    Gives the task access to the run context and lets it spawn subtasks
    that the runner queues directly after it.
    """

    def __init__(self, runner: Runner, task: Task) -> None:
        self._runner = runner
        self.task = task

    @property
    def context(self) -> Any:
        return self._runner.context

    def subtask(
        self, name: str, fn: TaskFn, depends_on: TaskID | None = None
    ) -> TaskID:
        """Spawn a subtask of the running task.

        The subtask always runs after its parent; ``depends_on`` adds a
        further predecessor, usually an earlier subtask.
        """
        return self._runner._add_subtask(self.task, name, fn, depends_on)

    def result_of(self, task_id: TaskID) -> Result | None:
        return self._runner.results.get(task_id)

    def echo(self, text: str) -> None:
        self._runner.echo(text)


class Runner:
    """Sequential runner for a graph of tasks."""

    def __init__(
        self,
        name: str,
        context: Any = None,
        *,
        echo: Callable[[str], None] | None = None,
        color: bool = False,
    ) -> None:
        self.name = name
        self.context = context
        self.tasks: dict[TaskID, Task] = {}
        self.results: dict[TaskID, Result] = {}
        self._order: list[TaskID] = []
        self._next_id = 1
        self._echo = echo
        self._color = color

    def echo(self, text: str) -> None:
        if self._echo is not None:
            self._echo(text)

    def add_task(self, task: Task) -> TaskID:
        """Register a prebuilt task and return its id."""
        return self._register(task, position=len(self._order))

    def add(self, name: str, fn: TaskFn) -> TaskID:
        return self.add_task(Task(name=name, fn=fn))

    def add_with_dependency(
        self, dep: TaskID | None, name: str, fn: TaskFn
    ) -> TaskID:
        """Register a task that waits for ``dep`` (None means no dependency)."""
        return self.add_task(Task(name=name, fn=fn).depends(dep))

    def _register(self, task: Task, position: int) -> TaskID:
        for dep in task.depends_on:
            if dep not in self.tasks:
                raise ValueError(f"task {task.name!r} depends on unknown task {dep}")
        task.id = self._next_id
        self._next_id += 1
        self.tasks[task.id] = task
        self._order.insert(position, task.id)
        return task.id

    def _add_subtask(
        self, parent: Task, name: str, fn: TaskFn, depends_on: TaskID | None
    ) -> TaskID:
        task = Task(name=name, fn=fn, parent=parent.id).depends(parent.id, depends_on)
        # Queue behind the parent and any subtasks it already spawned.
        anchor = parent.subtasks[-1] if parent.subtasks else parent.id
        position = self._order.index(anchor) + 1
        while position < len(self._order) and self._is_descendant(
            self._order[position], parent.id
        ):
            position += 1
        task_id = self._register(task, position)
        parent.subtasks.append(task_id)
        return task_id

    def _is_descendant(self, task_id: TaskID, ancestor: TaskID) -> bool:
        parent = self.tasks[task_id].parent
        while parent is not None:
            if parent == ancestor:
                return True
            parent = self.tasks[parent].parent
        return False

    def _depth(self, task: Task) -> int:
        depth = 0
        parent = task.parent
        while parent is not None:
            depth += 1
            parent = self.tasks[parent].parent
        return depth

    def _next_ready(self) -> Task | None:
        for task_id in self._order:
            if task_id in self.results:
                continue
            task = self.tasks[task_id]
            if all(dep in self.results for dep in task.depends_on):
                return task
        return None

    def execute(self) -> RunReport:
        """Run every task and return the report, failed or not."""
        report = RunReport(name=self.name)
        while True:
            task = self._next_ready()
            if task is None:
                break
            result = self._call(task)
            self.results[task.id] = result
            record = TaskRecord(
                id=task.id,
                name=task.name,
                depth=self._depth(task),
                parent=task.parent,
                result=result,
            )
            report.records.append(record)
            self.echo(format_record(record, color=self._color))

        stuck = [self.tasks[i].name for i in self._order if i not in self.results]
        if stuck:
            # Only reachable if a dependency was never registered.
            raise RuntimeError(f"tasks never became ready: {', '.join(stuck)}")
        return report

    def run(self) -> RunReport:
        """Run every task; raise TaskGraphError if any of them failed."""
        report = self.execute()
        if report.failed:
            raise TaskGraphError(report)
        return report

    def _call(self, task: Task) -> Result:
        try:
            result = task.fn(Executor(self, task))
        except Exception as exc:  # noqa: BLE001
            return Result.failure(f"{type(exc).__name__}: {exc}")
        if not isinstance(result, Result):
            return Result.failure(f"task returned {type(result).__name__}, not a Result")
        return result
