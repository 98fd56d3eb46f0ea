"""
Planner
=======

Outer loop of the dual-loop agent.

The Planner owns the todo list, a user-input queue, a bounded window of recent
Executor feedback and the supervision policy. It talks to the Executor only
through an ``ExecutorLink`` (enqueue a command, read the latest feedback), so
every effect it has on the inner loop is visible as a protocol message.

Supervision escalates in three stages:
1. Inject a corrective prompt (up to ``max_interventions`` times in a row).
2. Reset the Executor context and restart the same todo item as a retry.
3. Once the item's retries are exhausted, mark it failed and move on.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .collaborators import PlanningModel
from .planner_prompts import (
    CORRECTION_INSTRUCTIONS,
    DECOMPOSE_INSTRUCTIONS,
    OPTIMIZE_INSTRUCTIONS,
    OPTIMIZER_SYSTEM_PROMPT,
    fallback_correction,
    planner_system_prompt,
)
from .prompt_memory import PromptMemory, PromptMemoryError
from .protocol import (
    ExecutorFeedback,
    ExecutorLink,
    ExecutorState,
    InjectPrompt,
    ResetContext,
    StartTask,
    Stop,
)
from .todo import TodoItem, TodoList

logger = logging.getLogger(__name__)

DEFAULT_TASK_TYPE = "general"


class PlannerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_feedback_history: int = Field(2, ge=1)
    stuck_threshold: int = Field(3, ge=1)
    prompt_memory_path: Optional[Path] = Path("prompt_memory.json")
    # Consecutive InjectPrompt attempts before escalating to a context reset.
    max_interventions: int = Field(2, ge=0)
    max_retries: int = Field(3, ge=0)
    auto_optimize_prompts: bool = True
    request_timeout_seconds: Optional[float] = 60.0
    optimize_timeout_seconds: Optional[float] = 60.0
    running_context_limit: int = Field(20, ge=1)
    execution_log_limit: int = Field(50, ge=1)
    system_prompt: Optional[str] = None
    lang: Literal["en", "cn"] = "en"


class TodoDraft(BaseModel):
    description: str
    task_type: str = DEFAULT_TASK_TYPE


class PlanningReply(BaseModel):
    kind: Literal["tasks", "correction"] = "tasks"
    tasks: list[TodoDraft] = Field(default_factory=list)
    content: Optional[str] = None


def _strip_code_fences(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.strip("`")
        # Remove optional language tag line
        lines = stripped.splitlines()
        if lines and lines[0].strip().startswith(("json", "JSON")):
            lines = lines[1:]
        stripped = "\n".join(lines)
    return stripped.strip()


def _parse_json_response(text: str) -> dict:
    cleaned = _strip_code_fences(text)
    try:
        data = json.loads(cleaned)
        if isinstance(data, dict):
            return data
    except json.JSONDecodeError:
        pass

    # Fallback: extract first JSON object
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end != -1 and end > start:
        try:
            data = json.loads(cleaned[start:end + 1])
            if isinstance(data, dict):
                return data
        except json.JSONDecodeError:
            pass

    raise ValueError("Planner response is not valid JSON")


async def _await_with_timeout(coro: Any, timeout_seconds: float | None) -> Any:
    if timeout_seconds is None:
        return await coro
    return await asyncio.wait_for(coro, timeout=timeout_seconds)


class Planner:
    def __init__(
        self,
        link: ExecutorLink,
        model: PlanningModel | None = None,
        config: PlannerConfig | None = None,
        prompt_memory: PromptMemory | None = None,
    ):
        self.config = config or PlannerConfig()
        self._link = link
        self._model = model
        if prompt_memory is None:
            prompt_memory = PromptMemory.load_or_empty(self.config.prompt_memory_path)
        self.prompt_memory = prompt_memory
        self.todo_list = TodoList(max_retries=self.config.max_retries)

        self._feedback_history: deque[ExecutorFeedback] = deque()
        self._user_inputs: deque[str] = deque()
        self._running_context: deque[str] = deque(maxlen=self.config.running_context_limit)
        self._execution_log: deque[str] = deque(maxlen=self.config.execution_log_limit)
        self._results: dict[str, str] = {}

        self._dispatched: Optional[str] = None
        self._dispatch_seq = 0
        self._awaiting_seq = 0
        self._interventions = 0
        self._stopped = False

    # -- public surface -----------------------------------------------------

    def queue_user_input(self, text: str) -> None:
        text = text.strip()
        if text:
            self._user_inputs.append(text)

    def has_pending_input(self) -> bool:
        return bool(self._user_inputs)

    def has_work(self) -> bool:
        return self.has_pending_input() or not self.todo_list.is_all_done()

    @property
    def dispatched_task_id(self) -> Optional[str]:
        return self._dispatched

    @property
    def feedback_history(self) -> list[ExecutorFeedback]:
        return list(self._feedback_history)

    @property
    def interventions(self) -> int:
        return self._interventions

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    def stop(self) -> None:
        if self._stopped:
            return
        logger.info("Planner stopping")
        self._stopped = True
        self._link.enqueue(Stop())

    def collect_feedback(self, feedback: ExecutorFeedback) -> None:
        """Append to the bounded history, evicting the oldest entries."""
        self._feedback_history.append(feedback)
        while len(self._feedback_history) > self.config.max_feedback_history:
            self._feedback_history.popleft()

    async def tick(self) -> bool:
        """Run one planner cycle. Returns True while there is work left."""
        if self._stopped:
            return False

        await self._process_user_input()

        if self._dispatched is None:
            self._dispatch_next()
        if self._dispatched is not None:
            await self._supervise()

        return self.has_work()

    def result_summary(self) -> str:
        stats = self.todo_list.stats()
        lines = [f"Completed {stats.done}/{stats.total} tasks ({stats.failed} failed)"]
        for item in self.todo_list.items:
            line = f"- {item.id} [{item.status.value}] {item.description}"
            if item.id in self._results:
                line += f": {self._results[item.id]}"
            elif item.error:
                line += f": {item.error}"
            lines.append(line)
        return "\n".join(lines)

    # -- (a) user input -----------------------------------------------------

    async def _process_user_input(self) -> None:
        if not self._user_inputs:
            return
        text = self._user_inputs.popleft()
        logger.info("Processing user input: %s", text)
        self._note(f"user: {text}")

        current = self.todo_list.get(self._dispatched) if self._dispatched else None
        reply = await self._plan(text, current)

        if reply.kind == "correction" and reply.content and current is not None:
            self._link.enqueue(InjectPrompt(content=reply.content))
            current.add_note(f"user correction: {reply.content}")
            self._log(f"[USER] {reply.content}")
            self.prompt_memory.add_correction(current.task_type, reply.content, context=current.description)
            await self._persist_memory()
            logger.info("Forwarded user correction to executor for %s", current.id)
            return

        drafts = reply.tasks or [self._fallback_draft(text)]
        for draft in drafts:
            item = self.todo_list.add(draft.description, draft.task_type)
            self._note(f"added {item.id}: {item.description} (type: {item.task_type})")
            logger.info("Added todo: %s (id: %s, type: %s)", item.description, item.id, item.task_type)

    async def _plan(self, text: str, current: TodoItem | None) -> PlanningReply:
        if self._model is None:
            return PlanningReply(tasks=[self._fallback_draft(text)])

        instruction = DECOMPOSE_INSTRUCTIONS.format(
            task_types=self.prompt_memory.task_types_summary(),
            current_task=f"{current.id}: {current.description}" if current else "none",
            request=text,
        )
        try:
            response = await self._request(self._build_messages(instruction))
            reply = PlanningReply.model_validate(_parse_json_response(response))
        except (ValueError, ValidationError) as e:
            logger.warning("Could not parse task decomposition, using the request as one task: %s", e)
            return PlanningReply(tasks=[self._fallback_draft(text)])
        except Exception as e:
            logger.warning("Planning model failed during decomposition: %s", e)
            return PlanningReply(tasks=[self._fallback_draft(text)])

        reply.tasks = [d for d in reply.tasks if d.description.strip()]
        return reply

    def _fallback_draft(self, text: str) -> TodoDraft:
        task_type = self.prompt_memory.find_matching_task_type(text) or DEFAULT_TASK_TYPE
        return TodoDraft(description=text, task_type=task_type)

    # -- (b) dispatch -------------------------------------------------------

    def _dispatch_next(self) -> None:
        item = self.todo_list.next_pending()
        if item is None:
            return
        self._execution_log.clear()
        self._start(item)

    def _start(self, item: TodoItem) -> None:
        item.start()
        system_prompt = self.prompt_memory.get(item.task_type)
        self._dispatch_seq = self._link.enqueue(
            StartTask(task_id=item.id, description=item.description, system_prompt=system_prompt)
        )
        self._dispatched = item.id
        self._awaiting_seq = 0
        self._interventions = 0
        self._feedback_history.clear()
        self._note(f"started {item.id} (attempt {item.retry_count + 1})")
        logger.info("Started task: %s - %s", item.id, item.description)

    # -- (c) supervision ----------------------------------------------------

    async def _supervise(self) -> None:
        feedback = self._link.latest_feedback()
        if feedback is None:
            return
        if feedback.task_id != self._dispatched or feedback.commands_applied < self._dispatch_seq:
            logger.debug("Ignoring stale executor feedback for %s", feedback.task_id)
            return

        self.collect_feedback(feedback)
        item = self.todo_list.get(self._dispatched)
        if item is None:
            self._dispatched = None
            return

        state = feedback.status.state
        if state is ExecutorState.COMPLETED:
            await self._on_completed(item, feedback)
        elif state is ExecutorState.FAILED:
            await self._on_failed(item, feedback.status.reason or "unknown error")
        elif state in (ExecutorState.RUNNING, ExecutorState.STUCK):
            await self._check_stagnation(item, feedback)

    async def _check_stagnation(self, item: TodoItem, feedback: ExecutorFeedback) -> None:
        if self._awaiting_seq:
            if feedback.commands_applied < self._awaiting_seq:
                return
            self._awaiting_seq = 0

        if feedback.context_overflow_detected:
            await self._escalate(item, "executor context overflow")
            return

        history = self._feedback_history
        stagnant = feedback.status.state is ExecutorState.STUCK or (
            len(history) >= 2 and not history[-1].screen_changed and not history[-2].screen_changed
        )
        if not stagnant:
            if len(history) == self.config.max_feedback_history and all(f.screen_changed for f in history):
                self._interventions = 0
            return

        if self._interventions < self.config.max_interventions:
            await self._intervene(item)
        else:
            await self._escalate(item, f"stagnation persisted after {self._interventions} interventions")

    async def _intervene(self, item: TodoItem) -> None:
        content = await self._correction_for(item)
        self._awaiting_seq = self._link.enqueue(InjectPrompt(content=content))
        self._interventions += 1
        self._log(f"[STUCK] intervention {self._interventions}: {content}")
        self._note(f"intervened on {item.id} ({self._interventions})")
        logger.warning("Executor stuck on %s, injected correction (%d)", item.id, self._interventions)

    async def _escalate(self, item: TodoItem, reason: str) -> None:
        self._interventions = 0
        if not item.can_retry():
            item.fail(f"{reason}; retries exhausted")
            self._link.enqueue(Stop())
            self._log(f"[FAILED] {reason}")
            self._note(f"abandoned {item.id}")
            logger.error("Task %s failed after %d retries: %s", item.id, item.retry_count, reason)
            await self._finish(item, success=False)
            return

        self._log(f"[RESET] {reason}")
        logger.warning("Resetting executor for %s: %s", item.id, reason)
        self._link.enqueue(ResetContext())
        item.retry()
        self._start(item)

    async def _on_completed(self, item: TodoItem, feedback: ExecutorFeedback) -> None:
        item.complete()
        if feedback.last_result and feedback.last_result.message:
            self._results[item.id] = feedback.last_result.message
        self._note(f"completed {item.id}")
        logger.info("Task %s completed", item.id)
        await self._finish(item, success=True)

    async def _on_failed(self, item: TodoItem, reason: str) -> None:
        self._log(f"[FAILED] {reason}")
        if item.can_retry():
            logger.warning("Task %s failed (%s), retrying", item.id, reason)
            item.retry()
            self._start(item)
            return
        item.fail(reason)
        self._note(f"failed {item.id}: {reason}")
        logger.error("Task %s failed: %s", item.id, reason)
        await self._finish(item, success=False)

    async def _finish(self, item: TodoItem, success: bool) -> None:
        self._dispatched = None
        self._awaiting_seq = 0
        self.prompt_memory.record_usage(item.task_type, success)
        if self.config.auto_optimize_prompts and self._model is not None and self._execution_log:
            await self._optimize_prompt(item.task_type)
        self._execution_log.clear()
        await self._persist_memory()

    # -- planning model helpers ---------------------------------------------

    async def _correction_for(self, item: TodoItem) -> str:
        feedback_text = self._render_feedback()
        if self._model is not None:
            instruction = CORRECTION_INSTRUCTIONS.format(
                task_id=item.id, description=item.description, feedback=feedback_text
            )
            try:
                content = (await self._request(self._build_messages(instruction))).strip()
                if content:
                    return content
            except Exception as e:
                logger.warning("Planning model failed to produce a correction: %s", e)
        return fallback_correction(self.config.lang, feedback_text)

    async def _optimize_prompt(self, task_type: str) -> None:
        entry = self.prompt_memory.entry(task_type)
        corrections = entry.corrections_summary() if entry else ""
        request = OPTIMIZE_INSTRUCTIONS.format(
            task_type=task_type,
            current_prompt=self.prompt_memory.get(task_type) or "(none)",
            corrections=corrections or "(none)",
            log="\n".join(self._execution_log),
        )
        messages = [
            {"role": "system", "content": OPTIMIZER_SYSTEM_PROMPT},
            {"role": "user", "content": request},
        ]
        try:
            optimized = await self._request(messages, self.config.optimize_timeout_seconds)
        except Exception as e:
            logger.warning("Prompt optimization for %s failed: %s", task_type, e)
            return

        optimized = optimized.strip()
        if optimized:
            self.prompt_memory.update(task_type, optimized)
            self.prompt_memory.clear_corrections(task_type)
            logger.info("Optimized prompt for task type: %s", task_type)

    async def _request(self, messages: list[dict[str, Any]], timeout: float | None = None) -> str:
        if self._model is None:
            raise RuntimeError("No planning model configured")
        if timeout is None:
            timeout = self.config.request_timeout_seconds
        return await _await_with_timeout(self._model.request(messages), timeout)

    def _build_messages(self, instruction: str) -> list[dict[str, Any]]:
        system = self.config.system_prompt or planner_system_prompt(self.config.lang)
        context = "\n".join(self._running_context) or "(empty)"
        user = (
            f"[Planner context]\n{context}\n\n"
            f"[Recent executor feedback]\n{self._render_feedback()}\n\n"
            f"{instruction}"
        )
        return [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ]

    def _render_feedback(self) -> str:
        if not self._feedback_history:
            return "(none)"
        return "\n".join(
            f"{i}. {feedback.render()}" for i, feedback in enumerate(self._feedback_history, start=1)
        )

    async def _persist_memory(self) -> None:
        path = self.config.prompt_memory_path
        if path is None:
            return
        try:
            await asyncio.to_thread(self.prompt_memory.save, path)
        except PromptMemoryError as e:
            logger.warning("Failed to persist prompt memory to %s: %s", path, e)

    def _note(self, text: str) -> None:
        self._running_context.append(text)

    def _log(self, text: str) -> None:
        self._execution_log.append(text)
