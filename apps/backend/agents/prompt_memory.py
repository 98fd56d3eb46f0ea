"""
Prompt Memory
=============

Durable mapping from task type to an optimized system prompt. Plain
key-value storage with last-write-wins semantics per key; no retrieval or
similarity search. User corrections are accumulated per task type so they
can be folded into the next optimized prompt.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from .protocol import utc_now

logger = logging.getLogger(__name__)

PROMPT_MEMORY_VERSION = "1.0"


class PromptMemoryError(RuntimeError):
    """Raised when prompt memory cannot be read from or written to disk."""


class CorrectionRecord(BaseModel):
    content: str
    context: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class PromptEntry(BaseModel):
    system_prompt: str
    last_updated: datetime = Field(default_factory=utc_now)
    success_rate: Optional[float] = None
    usage_count: int = 0
    notes: Optional[str] = None
    corrections: List[CorrectionRecord] = Field(default_factory=list)

    def record_usage(self, success: bool) -> None:
        successes = (self.success_rate or 0.0) * self.usage_count
        self.usage_count += 1
        if success:
            successes += 1.0
        self.success_rate = successes / self.usage_count

    def corrections_summary(self) -> str:
        return "\n".join(f"{i}. {c.content}" for i, c in enumerate(self.corrections, start=1))


class PromptMemory(BaseModel):
    prompts: Dict[str, PromptEntry] = Field(default_factory=dict)
    version: str = PROMPT_MEMORY_VERSION

    @classmethod
    def load(cls, path: Path | str) -> "PromptMemory":
        """Load from a JSON file. A missing file yields an empty memory."""
        path = Path(path)
        if not path.exists():
            return cls()
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as e:
            raise PromptMemoryError(f"IO error: {e}") from e
        try:
            return cls.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as e:
            raise PromptMemoryError(f"Parse error: {e}") from e

    @classmethod
    def load_or_empty(cls, path: Path | str | None) -> "PromptMemory":
        if path is None:
            return cls()
        try:
            return cls.load(path)
        except PromptMemoryError as e:
            logger.warning("Could not load prompt memory from %s, starting empty: %s", path, e)
            return cls()

    def save(self, path: Path | str) -> None:
        """Write the whole document atomically (temp file + rename)."""
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            text = json.dumps(self.model_dump(mode="json"), ensure_ascii=False, indent=2) + "\n"
            fd, tmp = tempfile.mkstemp(prefix=path.name + ".", dir=str(path.parent))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(text)
                os.replace(tmp, path)
            finally:
                if os.path.exists(tmp):
                    os.unlink(tmp)
        except OSError as e:
            raise PromptMemoryError(f"IO error: {e}") from e

    def get(self, task_type: str) -> Optional[str]:
        entry = self.prompts.get(task_type)
        if entry is None or not entry.system_prompt:
            return None
        return entry.system_prompt

    def entry(self, task_type: str) -> Optional[PromptEntry]:
        return self.prompts.get(task_type)

    def update(self, task_type: str, prompt: str) -> None:
        """Overwrite the prompt for ``task_type``; statistics are kept."""
        entry = self.prompts.get(task_type)
        if entry is None:
            self.prompts[task_type] = PromptEntry(system_prompt=prompt)
            return
        entry.system_prompt = prompt
        entry.last_updated = utc_now()

    def record_usage(self, task_type: str, success: bool) -> None:
        entry = self.prompts.get(task_type)
        if entry is not None:
            entry.record_usage(success)

    def add_correction(self, task_type: str, content: str, context: Optional[str] = None) -> None:
        entry = self.prompts.get(task_type)
        if entry is None:
            entry = PromptEntry(system_prompt="")
            self.prompts[task_type] = entry
        entry.corrections.append(CorrectionRecord(content=content, context=context))
        entry.last_updated = utc_now()

    def clear_corrections(self, task_type: str) -> None:
        entry = self.prompts.get(task_type)
        if entry is not None:
            entry.corrections.clear()

    def __contains__(self, task_type: object) -> bool:
        return task_type in self.prompts

    def __len__(self) -> int:
        return len(self.prompts)

    def find_matching_task_type(self, description: str) -> Optional[str]:
        """Keyword match of a description against known task types."""
        desc = description.lower().strip()
        if not desc:
            return None
        for task_type in sorted(self.prompts):
            name = task_type.lower()
            if name and (name in desc or desc in name):
                return task_type
            for word in re.split(r"[\W_]+", name):
                if len(word) > 2 and word in desc:
                    return task_type
        return None

    def task_types_summary(self) -> str:
        if not self.prompts:
            return "(no saved task types yet)"
        lines = []
        for task_type in sorted(self.prompts):
            entry = self.prompts[task_type]
            if not entry.system_prompt:
                preview = "(no prompt, corrections only)"
            elif len(entry.system_prompt) > 50:
                preview = entry.system_prompt[:50] + "..."
            else:
                preview = entry.system_prompt
            stats = f"used {entry.usage_count}x"
            if entry.success_rate is not None:
                stats += f", success {entry.success_rate * 100:.0f}%"
            lines.append(f"- {task_type}: {preview} [{stats}]")
        return "\n".join(lines)
