"""
Executor
========

Inner loop of the dual-loop agent. Each tick applies at most one queued
command and, while running, performs a single perceive -> decide -> act cycle.

Stagnation is detected from screen fingerprints only: when the same
fingerprint is seen ``stuck_threshold`` times in a row after the baseline,
the Executor reports itself stuck and stops acting until the Planner injects
a prompt or resets the context.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Optional

from .collaborators import Decision, ExecutionModel, PerceptionBackend, fingerprint
from .protocol import (
    ExecutorCommand,
    ExecutorFeedback,
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

logger = logging.getLogger(__name__)

DEFAULT_STUCK_THRESHOLD = 3
DEFAULT_PARSE_ERROR_THRESHOLD = 3
DEFAULT_MAX_STEPS = 100

DEFAULT_EXECUTOR_SYSTEM_PROMPT = (
    "You are a phone operation assistant. Look at the current screen and "
    "perform exactly one action that moves the task forward. When the task "
    "is complete, finish with a short message."
)

CONTINUE_PROMPT = "Continue the task based on the current screen."


class Executor:
    """Wraps one perceive/decide/act step behind a command interface."""

    def __init__(
        self,
        perception: PerceptionBackend,
        model: ExecutionModel,
        stuck_threshold: int = DEFAULT_STUCK_THRESHOLD,
        max_steps: int = DEFAULT_MAX_STEPS,
        parse_error_threshold: int = DEFAULT_PARSE_ERROR_THRESHOLD,
        default_system_prompt: str = DEFAULT_EXECUTOR_SYSTEM_PROMPT,
    ):
        if stuck_threshold < 1:
            raise ValueError("stuck_threshold must be at least 1")
        self._perception = perception
        self._model = model
        self.stuck_threshold = stuck_threshold
        self.max_steps = max_steps
        self.parse_error_threshold = parse_error_threshold
        self.default_system_prompt = default_system_prompt

        self._status = ExecutorStatus.idle()
        self._commands: deque[tuple[int, ExecutorCommand]] = deque()
        self._next_seq = 1
        self._commands_applied = 0

        self._task_id: Optional[str] = None
        self._task_description: Optional[str] = None
        self._system_prompt: Optional[str] = None
        self._context: list[dict[str, Any]] = []
        self._step_count = 0
        self._pending_prompt: Optional[str] = None
        self._last_result: Optional[StepSummary] = None

        self._last_fingerprint: Optional[str] = None
        self._unchanged_count = 0
        self._consecutive_parse_errors = 0

    @property
    def status(self) -> ExecutorStatus:
        return self._status

    @property
    def task_id(self) -> Optional[str]:
        return self._task_id

    @property
    def step_count(self) -> int:
        return self._step_count

    @property
    def unchanged_count(self) -> int:
        return self._unchanged_count

    @property
    def context(self) -> list[dict[str, Any]]:
        return list(self._context)

    def has_pending_commands(self) -> bool:
        return bool(self._commands)

    def enqueue(self, command: ExecutorCommand) -> int:
        seq = self._next_seq
        self._next_seq += 1
        self._commands.append((seq, command))
        logger.debug("Enqueued executor command #%d: %s", seq, command.kind)
        return seq

    def apply_pending(self) -> ExecutorFeedback:
        """Apply every queued command without stepping. Used at shutdown."""
        while self._commands:
            self._apply_next()
        last = self._last_result if self._status.is_terminal else None
        return self._feedback(last, screen_changed=True)

    async def tick(self) -> ExecutorFeedback:
        if self._commands:
            self._apply_next()

        if self._status.state is not ExecutorState.RUNNING:
            # A terminal status keeps reporting the step that ended the task.
            last = self._last_result if self._status.is_terminal else None
            return self._feedback(last, screen_changed=True)

        if self._step_count >= self.max_steps:
            self._fail(f"max steps reached ({self.max_steps})")
            return self._feedback(None, screen_changed=True)

        try:
            snapshot = await self._perception.capture_state()
            screen_changed = self._observe(fingerprint(snapshot))
        except Exception as e:
            self._fail(f"perception failed: {e}")
            return self._feedback(None, screen_changed=True)

        if self._status.state is ExecutorState.STUCK:
            return self._feedback(None, screen_changed=screen_changed)

        try:
            decision = await self._model.decide(self._next_messages(), snapshot)
        except Exception as e:
            self._fail(f"model failed: {e}")
            return self._feedback(None, screen_changed=screen_changed)

        self._step_count += 1
        self._record_decision(decision)

        if decision.parse_failed:
            self._consecutive_parse_errors += 1
            logger.warning(
                "Executor parse error (consecutive: %d)", self._consecutive_parse_errors
            )
            summary = StepSummary(
                success=False,
                finished=False,
                thinking=decision.thinking,
                message=decision.message,
                action_type=None,
            )
            return self._feedback(summary, screen_changed=screen_changed)
        self._consecutive_parse_errors = 0

        success = True
        message = decision.message
        if not decision.finished and decision.action is not None:
            try:
                result = await self._perception.perform(decision.action)
            except Exception as e:
                self._fail(f"action failed: {e}")
                return self._feedback(None, screen_changed=screen_changed)
            success = result.success
            if result.message:
                message = result.message

        if decision.finished:
            self._status = ExecutorStatus.completed()
            logger.info("Executor completed task %s in %d steps", self._task_id, self._step_count)

        summary = StepSummary(
            success=success,
            finished=decision.finished,
            thinking=decision.thinking,
            message=message,
            action_type=decision.action_type,
        )
        return self._feedback(summary, screen_changed=screen_changed)

    def _apply_next(self) -> None:
        seq, command = self._commands.popleft()
        self._apply(command)
        self._commands_applied = seq

    def _apply(self, command: ExecutorCommand) -> None:
        state = self._status.state

        if isinstance(command, StartTask):
            self._start_task(command)
        elif isinstance(command, Stop):
            if state is not ExecutorState.IDLE or self._task_id is not None:
                logger.info("Executor stopped (task %s)", self._task_id)
            self._status = ExecutorStatus.idle()
            self._task_id = None
            self._task_description = None
            self._reset_step_state()
        elif self._status.is_terminal:
            logger.debug("Ignoring %s while executor is %s", command.kind, self._status)
        elif isinstance(command, Pause):
            if state is ExecutorState.RUNNING:
                self._status = ExecutorStatus.paused()
                logger.info("Executor paused")
        elif isinstance(command, Resume):
            if state is ExecutorState.PAUSED:
                self._status = ExecutorStatus.running()
                logger.info("Executor resumed")
        elif isinstance(command, InjectPrompt):
            if self._task_id is None:
                logger.warning("Prompt injection received but no task context exists")
                return
            self._pending_prompt = command.content
            self._clear_stagnation()
            if state is ExecutorState.STUCK:
                self._status = ExecutorStatus.running()
                logger.info("Executor resumed from stuck state via prompt injection")
            else:
                logger.info("Prompt injection queued")
        elif isinstance(command, ResetContext):
            self._reset_step_state()
            if state is ExecutorState.STUCK:
                self._status = ExecutorStatus.running()
            logger.info("Executor context reset")
        else:
            raise TypeError(f"Unknown executor command: {command!r}")

    def _start_task(self, command: StartTask) -> None:
        self._reset_step_state()
        self._task_id = command.task_id
        self._task_description = command.description
        self._system_prompt = command.system_prompt or self.default_system_prompt
        self._status = ExecutorStatus.running()
        logger.info("Executor started task: %s", command.task_id)

    def _reset_step_state(self) -> None:
        self._context = []
        self._last_result = None
        self._step_count = 0
        self._pending_prompt = None
        self._consecutive_parse_errors = 0
        self._clear_stagnation()

    def _clear_stagnation(self) -> None:
        self._last_fingerprint = None
        self._unchanged_count = 0

    def _observe(self, current: str) -> bool:
        """Compare with the previous fingerprint and update the stagnation counter."""
        changed = self._last_fingerprint is None or self._last_fingerprint != current
        self._last_fingerprint = current
        if changed:
            self._unchanged_count = 0
            return True

        self._unchanged_count += 1
        if self._unchanged_count >= self.stuck_threshold and self._status.state is ExecutorState.RUNNING:
            self._status = ExecutorStatus.stuck()
            logger.warning(
                "Executor stuck: %d consecutive unchanged screens", self._unchanged_count
            )
        return False

    def _next_messages(self) -> list[dict[str, Any]]:
        if not self._context:
            self._context.append(
                {"role": "system", "content": self._system_prompt or self.default_system_prompt}
            )

        if self._step_count == 0:
            text = self._task_description or ""
            if self._pending_prompt:
                text = f"{text}\n\n{self._pending_prompt}" if text else self._pending_prompt
                self._pending_prompt = None
        elif self._pending_prompt:
            text = self._pending_prompt
            self._pending_prompt = None
        else:
            text = CONTINUE_PROMPT

        self._context.append({"role": "user", "content": text})
        return list(self._context)

    def _record_decision(self, decision: Decision) -> None:
        content = decision.thinking or ""
        if decision.action is not None:
            content = f"{content}\n{decision.action}".strip()
        self._context.append({"role": "assistant", "content": content})

    def _fail(self, reason: str) -> None:
        self._status = ExecutorStatus.failed(reason)
        self._last_result = None
        logger.error("Executor failed: %s", reason)

    def _feedback(self, result: Optional[StepSummary], screen_changed: bool) -> ExecutorFeedback:
        if result is not None:
            self._last_result = result
        overflow = self._consecutive_parse_errors >= self.parse_error_threshold
        return ExecutorFeedback(
            task_id=self._task_id,
            step_count=self._step_count,
            status=self._status,
            last_result=result,
            screen_changed=screen_changed,
            commands_applied=self._commands_applied,
            consecutive_parse_errors=self._consecutive_parse_errors,
            context_overflow_detected=overflow,
        )
