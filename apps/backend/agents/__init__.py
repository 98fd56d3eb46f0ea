"""
Agents Module
=============

Dual-loop device agent: a fast Executor loop supervised by a slower Planner.
"""

from .collaborators import (
    ActionResult,
    Decision,
    ExecutionModel,
    PerceptionBackend,
    PlanningModel,
    Snapshot,
    fingerprint,
)
from .dual_loop import DualLoopConfig, DualLoopHandle, DualLoopRunner, SessionResult
from .executor import Executor
from .planner import Planner, PlannerConfig
from .prompt_memory import PromptEntry, PromptMemory, PromptMemoryError
from .protocol import (
    ExecutorChannel,
    ExecutorFeedback,
    ExecutorLink,
    ExecutorState,
    ExecutorStatus,
    InjectPrompt,
    Pause,
    ResetContext,
    Resume,
    StartTask,
    StepSummary,
    Stop,
)
from .todo import TodoItem, TodoList, TodoStatus

__all__ = [
    "ActionResult",
    "Decision",
    "DualLoopConfig",
    "DualLoopHandle",
    "DualLoopRunner",
    "ExecutionModel",
    "Executor",
    "ExecutorChannel",
    "ExecutorFeedback",
    "ExecutorLink",
    "ExecutorState",
    "ExecutorStatus",
    "InjectPrompt",
    "Pause",
    "PerceptionBackend",
    "Planner",
    "PlannerConfig",
    "PlanningModel",
    "PromptEntry",
    "PromptMemory",
    "PromptMemoryError",
    "ResetContext",
    "Resume",
    "SessionResult",
    "Snapshot",
    "StartTask",
    "StepSummary",
    "Stop",
    "TodoItem",
    "TodoList",
    "TodoStatus",
    "fingerprint",
]
