"""Todo list owned by the Planner."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from .protocol import utc_now

DEFAULT_MAX_RETRIES = 3


class TodoStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class TodoItem(BaseModel):
    id: str
    description: str
    task_type: str = "general"
    status: TodoStatus = TodoStatus.PENDING
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    error: Optional[str] = None
    notes: List[str] = Field(default_factory=list)

    def _transition(self, allowed_from: tuple[TodoStatus, ...], target: TodoStatus) -> None:
        if self.status not in allowed_from:
            raise ValueError(
                f"Todo {self.id}: cannot move from {self.status.value} to {target.value}"
            )
        self.status = target
        self.updated_at = utc_now()

    def start(self) -> None:
        self._transition((TodoStatus.PENDING,), TodoStatus.RUNNING)

    def complete(self) -> None:
        self._transition((TodoStatus.RUNNING,), TodoStatus.DONE)

    def fail(self, error: str) -> None:
        self._transition((TodoStatus.PENDING, TodoStatus.RUNNING), TodoStatus.FAILED)
        self.error = error

    def retry(self) -> None:
        """Explicit retry: back to pending with the retry counter bumped."""
        if not self.can_retry():
            raise ValueError(
                f"Todo {self.id}: retry limit reached ({self.retry_count}/{self.max_retries})"
            )
        self._transition((TodoStatus.RUNNING, TodoStatus.FAILED), TodoStatus.PENDING)
        self.retry_count += 1
        self.error = None

    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries

    def add_note(self, note: str) -> None:
        self.notes.append(note)
        self.updated_at = utc_now()

    @property
    def is_terminal(self) -> bool:
        return self.status in (TodoStatus.DONE, TodoStatus.FAILED)


@dataclass
class TodoStats:
    total: int = 0
    pending: int = 0
    running: int = 0
    done: int = 0
    failed: int = 0

    def completion_percentage(self) -> float:
        if self.total == 0:
            return 100.0
        return self.done / self.total * 100.0


class TodoList:
    def __init__(self, max_retries: int = DEFAULT_MAX_RETRIES) -> None:
        self._items: List[TodoItem] = []
        self._next_id = 1
        self.max_retries = max_retries

    def add(self, description: str, task_type: str = "general") -> TodoItem:
        item = TodoItem(
            id=f"task_{self._next_id}",
            description=description,
            task_type=task_type or "general",
            max_retries=self.max_retries,
        )
        self._next_id += 1
        self._items.append(item)
        return item

    def get(self, task_id: str) -> Optional[TodoItem]:
        return next((item for item in self._items if item.id == task_id), None)

    @property
    def items(self) -> List[TodoItem]:
        return list(self._items)

    def next_pending(self) -> Optional[TodoItem]:
        return next((item for item in self._items if item.status is TodoStatus.PENDING), None)

    def stats(self) -> TodoStats:
        stats = TodoStats()
        for item in self._items:
            stats.total += 1
            if item.status is TodoStatus.PENDING:
                stats.pending += 1
            elif item.status is TodoStatus.RUNNING:
                stats.running += 1
            elif item.status is TodoStatus.DONE:
                stats.done += 1
            elif item.status is TodoStatus.FAILED:
                stats.failed += 1
        return stats

    def is_all_done(self) -> bool:
        return all(item.is_terminal for item in self._items)

    def render(self) -> str:
        stats = self.stats()
        lines = [
            f"total={stats.total} pending={stats.pending} running={stats.running} "
            f"done={stats.done} failed={stats.failed}"
        ]
        for item in self._items:
            lines.append(f"- [{item.status.value}] {item.id}: {item.description} (type: {item.task_type})")
        return "\n".join(lines)

    def __len__(self) -> int:
        return len(self._items)
