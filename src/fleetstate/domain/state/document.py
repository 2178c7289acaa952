"""Serialized form of the state document.

The document is what checkpoints write and what ``State.load`` reads back. Only
the structure of the change/task graph is validated here; manager sections are
carried as opaque JSON and decoded lazily by their owners.
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003
from typing import Any, Final

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from .status import Status  # noqa: TC001

FORMAT_VERSION: Final[int] = 1

_JSON_ADAPTER: Final[TypeAdapter[Any]] = TypeAdapter(Any)


def to_json_value(value: object) -> Any:
    """Return a JSON-compatible copy of ``value`` (models, dataclasses, datetimes...)."""

    return _JSON_ADAPTER.dump_python(value, mode="json")


class _Record(BaseModel):
    model_config = ConfigDict(extra="ignore")


class TaskRecord(_Record):
    id: str
    kind: str
    summary: str = ""
    status: Status = Status.DO
    change: str | None = None
    wait_tasks: list[str] = Field(default_factory=list)
    lanes: list[int] = Field(default_factory=list)
    retries: int = 0
    at: datetime | None = None
    done_seq: int | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    log: list[str] = Field(default_factory=list)
    spawn_time: datetime
    ready_time: datetime | None = None


class ChangeRecord(_Record):
    id: str
    kind: str
    summary: str = ""
    tasks: list[str] = Field(default_factory=list)
    data: dict[str, Any] = Field(default_factory=dict)
    spawn_time: datetime
    ready_time: datetime | None = None


class StateDocument(_Record):
    """Root of the persisted state."""

    format_version: int = FORMAT_VERSION
    data: dict[str, Any] = Field(default_factory=dict)
    changes: list[ChangeRecord] = Field(default_factory=list)
    tasks: list[TaskRecord] = Field(default_factory=list)
    last_id: int = 0
    last_lane_id: int = 0
    last_done_seq: int = 0

    @model_validator(mode="after")
    def _check_graph(self) -> StateDocument:
        task_ids = {task.id for task in self.tasks}
        change_ids = {change.id for change in self.changes}
        if len(task_ids) != len(self.tasks):
            raise ValueError("duplicate task id in state document")
        if len(change_ids) != len(self.changes):
            raise ValueError("duplicate change id in state document")

        for change in self.changes:
            for task_id in change.tasks:
                if task_id not in task_ids:
                    raise ValueError(f"change {change.id} references missing task {task_id}")
        owners = {task_id: change.id for change in self.changes for task_id in change.tasks}
        for task in self.tasks:
            if task.change is not None:
                if task.change not in change_ids:
                    raise ValueError(f"task {task.id} references missing change {task.change}")
                if owners.get(task.id) != task.change:
                    raise ValueError(f"task {task.id} is not listed by change {task.change}")
            for prerequisite in task.wait_tasks:
                if prerequisite not in task_ids:
                    raise ValueError(
                        f"task {task.id} waits for missing task {prerequisite}"
                    )

        _check_acyclic({task.id: task.wait_tasks for task in self.tasks})

        highest = max((_numeric_id(i) for i in task_ids | change_ids), default=0)
        if highest > self.last_id:
            raise ValueError(f"id counter {self.last_id} behind highest id {highest}")
        return self


def _numeric_id(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        return 0


def _check_acyclic(edges: dict[str, list[str]]) -> None:
    visiting: set[str] = set()
    visited: set[str] = set()
    for root in edges:
        if root in visited:
            continue
        stack: list[tuple[str, int]] = [(root, 0)]
        visiting.add(root)
        while stack:
            node, index = stack[-1]
            prerequisites = edges[node]
            if index == len(prerequisites):
                stack.pop()
                visiting.discard(node)
                visited.add(node)
                continue
            stack[-1] = (node, index + 1)
            nxt = prerequisites[index]
            if nxt in visiting:
                raise ValueError(f"task graph has a cycle through task {nxt}")
            if nxt not in visited:
                visiting.add(nxt)
                stack.append((nxt, 0))
