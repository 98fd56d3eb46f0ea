"""
iFlow client utilities for the planning model.
"""

from __future__ import annotations

import inspect
import json
import logging
import os
from pathlib import Path
from typing import Any, AsyncIterator

logger = logging.getLogger(__name__)


def _load_iflow() -> tuple[Any, Any]:
    try:
        from iflow_sdk import IFlowClient, IFlowOptions
    except ImportError as exc:
        raise RuntimeError(
            "iflow-sdk is required. Install with: pip install iflow-cli-sdk"
        ) from exc
    return IFlowClient, IFlowOptions


def _build_iflow_options(options_cls: Any, options_kwargs: dict[str, Any]) -> Any:
    # SDK releases differ in which options they accept; pass only the known ones.
    sig = inspect.signature(options_cls)
    allowed = set(sig.parameters.keys())
    filtered = {k: v for k, v in options_kwargs.items() if k in allowed and v is not None}
    return options_cls(**filtered)


def _load_iflow_cli_settings() -> dict[str, Any]:
    env_dir = os.environ.get("IFLOW_HOME") or os.environ.get("IFLOW_DIR")
    candidates = []
    if env_dir:
        candidates.append(Path(env_dir).expanduser() / "settings.json")
    candidates.append(Path.home() / ".iflow" / "settings.json")

    for settings_path in candidates:
        try:
            if settings_path.exists():
                with settings_path.open("r", encoding="utf-8") as fh:
                    data = json.load(fh)
                if isinstance(data, dict):
                    return data
        except (OSError, json.JSONDecodeError) as exc:
            logger.debug(f"Skipping unreadable iFlow settings {settings_path}: {exc}")
    return {}


def _resolve_iflow_auth(model_name: str | None = None) -> tuple[str | None, dict[str, Any] | None]:
    auth_method_id = os.environ.get("IFLOW_AUTH_METHOD_ID")
    api_key = os.environ.get("IFLOW_API_KEY")
    base_url = os.environ.get("IFLOW_BASE_URL")

    if not auth_method_id or not api_key:
        settings = _load_iflow_cli_settings()
        auth_method_id = auth_method_id or settings.get("selectedAuthType")
        api_key = api_key or settings.get("apiKey")
        base_url = base_url or settings.get("baseUrl")

    if not auth_method_id and api_key:
        auth_method_id = "iflow"

    if auth_method_id == "iflow" and api_key:
        auth_info: dict[str, Any] = {"apiKey": api_key}
        if base_url:
            auth_info["baseUrl"] = base_url
        if model_name:
            auth_info["modelName"] = model_name
        return auth_method_id, auth_info

    return auth_method_id, None


def create_iflow_client(
    model: str,
    system_prompt: str | None = None,
    cwd: Path | None = None,
    timeout: float | None = None,
    max_turns: int | None = 1,
) -> Any:
    """
    Create a text-only iFlow client for single-turn planning requests.

    Args:
        model: iFlow model ID.
        system_prompt: Optional session system prompt.
        cwd: Working directory for the iFlow process (defaults to the current one).
        timeout: Optional timeout in seconds.
        max_turns: Max turns per session (default: 1).

    Returns:
        Configured IFlowClient instance.
    """
    IFlowClient, IFlowOptions = _load_iflow()

    options_kwargs: dict[str, Any] = {
        "cwd": str((cwd or Path.cwd()).resolve()),
        "timeout": timeout,
        "max_turns": max_turns,
        "session_settings": {"system_prompt": system_prompt} if system_prompt else None,
        "file_access": False,
    }

    auth_method_id, auth_method_info = _resolve_iflow_auth(model_name=model)
    if auth_method_id:
        options_kwargs["auth_method_id"] = auth_method_id
    if auth_method_info:
        options_kwargs["auth_method_info"] = auth_method_info

    options = _build_iflow_options(IFlowOptions, options_kwargs)
    return IFlowClient(options)


async def send_agent_message(client: Any, message: str) -> None:
    if hasattr(client, "query"):
        await client.query(message)
        return
    if hasattr(client, "send_message"):
        await client.send_message(message)
        return
    raise RuntimeError("Client does not support query/send_message")


async def iter_agent_messages(client: Any) -> AsyncIterator[Any]:
    if hasattr(client, "receive_response"):
        async for msg in client.receive_response():
            yield msg
        return
    if hasattr(client, "receive_messages"):
        async for msg in client.receive_messages():
            yield msg
        return
    raise RuntimeError("Client does not support receive_response/receive_messages")
