"""
Dual-Loop Coordinator
=====================

Runs the Executor and the Planner as two cooperative asyncio tasks at their
own cadences, plus a small pump that moves user input from a bounded queue
into the Planner between its ticks.

The Planner is built against an ``ExecutorChannel`` and never sees the
Executor object itself.

Usage:
    runner = DualLoopRunner(executor, planning_model=model)
    result = await runner.run_session("open settings and enable wifi", timeout=300)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterable, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

from .collaborators import ExecutionModel, PerceptionBackend, PlanningModel
from .executor import Executor
from .planner import Planner, PlannerConfig
from .prompt_memory import PromptMemory
from .protocol import ExecutorChannel, ExecutorFeedback, ExecutorLink, ExecutorState, Pause, Resume
from .todo import TodoItem, TodoStatus

logger = logging.getLogger(__name__)

FeedbackCallback = Callable[[ExecutorFeedback], None]
PlannerFactory = Callable[[ExecutorLink], Planner]


class DualLoopConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    planner_interval: float = Field(2.0, gt=0)
    executor_interval: float = Field(0.5, gt=0)
    input_queue_capacity: int = Field(100, ge=1)
    # Stop the session once every todo item is terminal and no input is pending.
    auto_stop_when_idle: bool = True


@dataclass
class SessionResult:
    result: str
    todos: list[TodoItem] = field(default_factory=list)
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return bool(self.todos) and all(item.status is TodoStatus.DONE for item in self.todos)


class DualLoopHandle:
    """Control surface handed to callers while the loops are running."""

    def __init__(self, runner: "DualLoopRunner", task: asyncio.Task | None = None):
        self._runner = runner
        self.task = task

    async def send_user_input(self, text: str) -> None:
        await self._runner.inputs.put(text)

    def send_user_input_nowait(self, text: str) -> bool:
        try:
            self._runner.inputs.put_nowait(text)
        except asyncio.QueueFull:
            logger.warning("User input queue is full, dropping input: %s", text)
            return False
        return True

    def pause(self) -> None:
        self._runner.pause()

    def resume(self) -> None:
        self._runner.resume()

    def stop(self) -> None:
        self._runner.stop()

    def is_running(self) -> bool:
        return self._runner.is_running

    async def wait(self) -> None:
        if self.task is not None:
            await self.task


class DualLoopRunner:
    def __init__(
        self,
        executor: Executor,
        planner_factory: PlannerFactory | None = None,
        *,
        planning_model: PlanningModel | None = None,
        planner_config: PlannerConfig | None = None,
        prompt_memory: PromptMemory | None = None,
        config: DualLoopConfig | None = None,
        on_feedback: FeedbackCallback | None = None,
    ):
        self.config = config or DualLoopConfig()
        self.executor = executor
        self.channel = ExecutorChannel(executor)
        if planner_factory is None:
            self.planner = Planner(self.channel, planning_model, planner_config, prompt_memory)
        else:
            self.planner = planner_factory(self.channel)
        self.inputs: asyncio.Queue[str] = asyncio.Queue(maxsize=self.config.input_queue_capacity)
        self._on_feedback = on_feedback

        self._stop_event = asyncio.Event()
        self._paused = False
        self._running = False
        self._open_input_streams = 0
        self._last_state: Optional[ExecutorState] = None

    @classmethod
    def from_backends(
        cls,
        perception: PerceptionBackend,
        execution_model: ExecutionModel,
        planning_model: PlanningModel | None = None,
        planner_config: PlannerConfig | None = None,
        config: DualLoopConfig | None = None,
        on_feedback: FeedbackCallback | None = None,
    ) -> "DualLoopRunner":
        """Build the Executor with the planner's stuck threshold and wire both loops."""
        planner_config = planner_config or PlannerConfig()
        executor = Executor(
            perception,
            execution_model,
            stuck_threshold=planner_config.stuck_threshold,
        )
        return cls(
            executor,
            planning_model=planning_model,
            planner_config=planner_config,
            config=config,
            on_feedback=on_feedback,
        )

    @property
    def is_running(self) -> bool:
        return self._running and not self._stop_event.is_set()

    @property
    def is_paused(self) -> bool:
        return self._paused

    def pause(self) -> None:
        if self._paused:
            return
        self._paused = True
        self.channel.enqueue(Pause())
        logger.info("Dual loop paused")

    def resume(self) -> None:
        if not self._paused:
            return
        self._paused = False
        self.channel.enqueue(Resume())
        logger.info("Dual loop resumed")

    def stop(self) -> None:
        """Request a cooperative stop. Safe to call more than once."""
        if not self._stop_event.is_set():
            logger.info("Dual loop stop requested")
        self._stop_event.set()
        self.planner.stop()

    def start(self) -> DualLoopHandle:
        task = asyncio.create_task(self.run(), name="dual-loop")
        return DualLoopHandle(self, task)

    def handle(self) -> DualLoopHandle:
        return DualLoopHandle(self)

    async def run(self) -> None:
        """Run both loops until stopped. Re-raises the first loop failure."""
        self._running = True
        logger.info(
            "Dual loop started (planner every %.2fs, executor every %.2fs)",
            self.config.planner_interval,
            self.config.executor_interval,
        )
        loops = [
            asyncio.create_task(self._executor_loop(), name="dual-loop-executor"),
            asyncio.create_task(self._planner_loop(), name="dual-loop-planner"),
        ]
        # The pump has no exit condition of its own; it is cancelled with the loops.
        pump = asyncio.create_task(self._input_pump(), name="dual-loop-input")
        tasks = loops + [pump]
        try:
            done, _ = await asyncio.wait(loops, return_when=asyncio.FIRST_EXCEPTION)
        finally:
            self.stop()
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            # Loops are gone; apply the queued Stop so the Executor ends Idle.
            self.channel.mailbox.post(self.executor.apply_pending())
            self._running = False
            logger.info("Dual loop stopped")

        for task in done:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()

    async def run_session(
        self,
        initial_task: str,
        user_inputs: AsyncIterable[str] | None = None,
        timeout: float | None = None,
    ) -> SessionResult:
        self.planner.queue_user_input(initial_task)

        forwarder: asyncio.Task | None = None
        if user_inputs is not None:
            self._open_input_streams += 1
            forwarder = asyncio.create_task(self._forward_inputs(user_inputs), name="dual-loop-forward")

        timed_out = False
        try:
            if timeout is None:
                await self.run()
            else:
                await asyncio.wait_for(self.run(), timeout=timeout)
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning("Session timed out after %.1fs", timeout)
        finally:
            self.stop()
            if forwarder is not None:
                forwarder.cancel()
                await asyncio.gather(forwarder, return_exceptions=True)

        return SessionResult(
            result=self.planner.result_summary(),
            todos=self.planner.todo_list.items,
            timed_out=timed_out,
        )

    async def _executor_loop(self) -> None:
        while not self._stop_event.is_set():
            feedback = await self.executor.tick()
            self.channel.mailbox.post(feedback)
            self._report(feedback)
            if await self._wait(self.config.executor_interval):
                break

    async def _planner_loop(self) -> None:
        while not self._stop_event.is_set():
            if not self._paused:
                has_work = await self.planner.tick()
                if not has_work and self._idle():
                    logger.info("All tasks finished, stopping dual loop")
                    self.stop()
                    break
            if await self._wait(self.config.planner_interval):
                break

    async def _input_pump(self) -> None:
        while True:
            text = await self.inputs.get()
            self.planner.queue_user_input(text)

    async def _forward_inputs(self, user_inputs: AsyncIterable[str]) -> None:
        try:
            async for text in user_inputs:
                if self._stop_event.is_set():
                    break
                await self.inputs.put(text)
        finally:
            self._open_input_streams -= 1

    def _idle(self) -> bool:
        return (
            self.config.auto_stop_when_idle
            and self.inputs.empty()
            and self._open_input_streams == 0
            and not self.planner.has_pending_input()
        )

    async def _wait(self, interval: float) -> bool:
        """Sleep for one interval; True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            return False
        return True

    def _report(self, feedback: ExecutorFeedback) -> None:
        state = feedback.status.state
        if state is not self._last_state:
            if state is ExecutorState.STUCK:
                logger.warning("Executor stuck on %s at step %d", feedback.task_id, feedback.step_count)
            elif state is ExecutorState.FAILED:
                logger.error("Executor failed on %s: %s", feedback.task_id, feedback.status.reason)
            elif state is ExecutorState.COMPLETED:
                logger.info("Executor completed %s", feedback.task_id)
            else:
                logger.debug("Executor status: %s", feedback.status)
            self._last_state = state

        if self._on_feedback is not None:
            try:
                self._on_feedback(feedback)
            except Exception as e:
                logger.warning("Feedback callback raised: %s", e)
