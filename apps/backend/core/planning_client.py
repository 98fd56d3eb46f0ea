"""
Planning Model over iFlow
=========================

Implements the ``PlanningModel`` interface used by the Planner on top of the
iFlow SDK. Each request opens a short single-turn session: the system message
becomes the session system prompt and the remaining messages are flattened
into one query.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable

from .iflow_client import create_iflow_client, iter_agent_messages, send_agent_message

logger = logging.getLogger(__name__)

ClientFactory = Callable[..., Any]

_FINISH_MESSAGE_TYPES = ("TaskFinishMessage", "ResultMessage")


def _extract_text(msg: Any) -> str:
    msg_type = type(msg).__name__
    if msg_type != "AssistantMessage" or not hasattr(msg, "content"):
        return ""
    content = msg.content
    if isinstance(content, str):
        return content
    text = ""
    for block in content or []:
        if type(block).__name__ == "TextBlock" and getattr(block, "text", None):
            text += block.text
    if not text and getattr(msg, "chunk", None) is not None:
        chunk = msg.chunk
        text = chunk.text if hasattr(chunk, "text") else str(chunk)
    return text


def flatten_messages(messages: list[dict[str, Any]]) -> tuple[str | None, str]:
    """Split chat messages into (system prompt, single user query)."""
    system_parts = []
    parts = []
    for message in messages:
        role = message.get("role", "user")
        content = str(message.get("content", ""))
        if role == "system":
            system_parts.append(content)
        elif role == "assistant":
            parts.append(f"[assistant]\n{content}")
        else:
            parts.append(content)
    system_prompt = "\n\n".join(system_parts) or None
    return system_prompt, "\n\n".join(parts)


class IFlowPlanningModel:
    def __init__(
        self,
        model: str = "glm-4.7",
        cwd: Path | None = None,
        client_factory: ClientFactory | None = None,
    ):
        self.model = model
        self.cwd = cwd
        self._client_factory = client_factory or create_iflow_client

    async def request(self, messages: list[dict[str, Any]]) -> str:
        system_prompt, query = flatten_messages(messages)
        client = self._client_factory(model=self.model, system_prompt=system_prompt, cwd=self.cwd)

        response_text = ""
        async with client:
            await send_agent_message(client, query)
            async for msg in iter_agent_messages(client):
                response_text += _extract_text(msg)
                if type(msg).__name__ in _FINISH_MESSAGE_TYPES:
                    break

        if not response_text.strip():
            raise RuntimeError("Planning model returned an empty response")
        logger.debug(f"Planning response ({len(response_text)} chars) from {self.model}")
        return response_text
