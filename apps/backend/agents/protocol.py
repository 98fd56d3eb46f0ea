"""
Command/Feedback Protocol
=========================

The shared vocabulary spoken between the Planner (outer loop) and the
Executor (inner loop). Nothing else crosses the loop boundary: the Planner
enqueues commands and reads feedback, the Executor applies commands and
emits feedback.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ExecutorState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STUCK = "stuck"
    COMPLETED = "completed"
    FAILED = "failed"


class ExecutorStatus(BaseModel):
    """Executor status. Only ``FAILED`` carries a reason."""

    model_config = ConfigDict(frozen=True)

    state: ExecutorState = ExecutorState.IDLE
    reason: Optional[str] = None

    @classmethod
    def idle(cls) -> "ExecutorStatus":
        return cls(state=ExecutorState.IDLE)

    @classmethod
    def running(cls) -> "ExecutorStatus":
        return cls(state=ExecutorState.RUNNING)

    @classmethod
    def paused(cls) -> "ExecutorStatus":
        return cls(state=ExecutorState.PAUSED)

    @classmethod
    def stuck(cls) -> "ExecutorStatus":
        return cls(state=ExecutorState.STUCK)

    @classmethod
    def completed(cls) -> "ExecutorStatus":
        return cls(state=ExecutorState.COMPLETED)

    @classmethod
    def failed(cls, reason: str) -> "ExecutorStatus":
        return cls(state=ExecutorState.FAILED, reason=reason)

    @property
    def is_terminal(self) -> bool:
        return self.state in (ExecutorState.COMPLETED, ExecutorState.FAILED)

    def __str__(self) -> str:
        if self.state is ExecutorState.FAILED:
            return f"failed({self.reason})"
        return self.state.value


# Commands (Planner -> Executor)


class StartTask(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["start_task"] = "start_task"
    task_id: str
    description: str
    system_prompt: Optional[str] = None


class Pause(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["pause"] = "pause"


class Resume(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["resume"] = "resume"


class InjectPrompt(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["inject_prompt"] = "inject_prompt"
    content: str


class ResetContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["reset_context"] = "reset_context"


class Stop(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["stop"] = "stop"


ExecutorCommand = Annotated[
    Union[StartTask, Pause, Resume, InjectPrompt, ResetContext, Stop],
    Field(discriminator="kind"),
]


# Feedback (Executor -> Planner)


class StepSummary(BaseModel):
    """Summarized step result, without screenshots or raw model output."""

    model_config = ConfigDict(frozen=True)

    success: bool
    finished: bool
    thinking: str = ""
    message: Optional[str] = None
    action_type: Optional[str] = None


class ExecutorFeedback(BaseModel):
    model_config = ConfigDict(frozen=True)

    task_id: Optional[str] = None
    step_count: int = 0
    status: ExecutorStatus = Field(default_factory=ExecutorStatus.idle)
    last_result: Optional[StepSummary] = None
    screen_changed: bool = True
    timestamp: datetime = Field(default_factory=utc_now)
    # Sequence number of the last command applied before this feedback was produced.
    commands_applied: int = 0
    consecutive_parse_errors: int = 0
    context_overflow_detected: bool = False

    def render(self) -> str:
        line = (
            f"step={self.step_count}, status={self.status}, "
            f"changed={str(self.screen_changed).lower()}"
        )
        if self.last_result and self.last_result.message:
            line += f", message={self.last_result.message}"
        return line


class ExecutorLink(Protocol):
    """The only surface of the Executor visible to the Planner."""

    def enqueue(self, command: ExecutorCommand) -> int:
        ...

    def latest_feedback(self) -> Optional[ExecutorFeedback]:
        ...


class FeedbackMailbox:
    """Holds the most recent feedback; each feedback is handed out at most once."""

    def __init__(self) -> None:
        self._latest: Optional[ExecutorFeedback] = None
        self._posted = 0
        self._taken = 0

    def post(self, feedback: ExecutorFeedback) -> None:
        self._latest = feedback
        self._posted += 1

    def take(self) -> Optional[ExecutorFeedback]:
        if self._taken == self._posted:
            return None
        self._taken = self._posted
        return self._latest

    def peek(self) -> Optional[ExecutorFeedback]:
        return self._latest


class ExecutorChannel:
    """
    Command/feedback channel owned by the coordinator.

    Commands go straight into the Executor's FIFO (a non-blocking append);
    feedback comes back through a mailbox filled by the Executor loop.
    """

    def __init__(self, executor: "CommandSink", mailbox: FeedbackMailbox | None = None) -> None:
        self._executor = executor
        self.mailbox = mailbox or FeedbackMailbox()

    def enqueue(self, command: ExecutorCommand) -> int:
        return self._executor.enqueue(command)

    def latest_feedback(self) -> Optional[ExecutorFeedback]:
        return self.mailbox.take()


class CommandSink(Protocol):
    def enqueue(self, command: ExecutorCommand) -> int:
        ...
