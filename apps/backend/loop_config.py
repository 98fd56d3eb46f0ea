"""
Dual-Loop Configuration Module
==============================

Resolves coordinator and planner settings from environment variables.
Unset or malformed values fall back to the defaults below; they never raise.
"""

import logging
import os
from pathlib import Path

from agents.dual_loop import DualLoopConfig
from agents.planner import PlannerConfig
from core.planning_client import IFlowPlanningModel

logger = logging.getLogger(__name__)

DEFAULT_PLANNER_INTERVAL_SEC = 2.0
DEFAULT_EXECUTOR_INTERVAL_SEC = 0.5
DEFAULT_INPUT_QUEUE_CAPACITY = 100
DEFAULT_PROMPT_MEMORY_PATH = "prompt_memory.json"
DEFAULT_STUCK_THRESHOLD = 3
DEFAULT_MAX_FEEDBACK_HISTORY = 2
DEFAULT_MAX_INTERVENTIONS = 2
DEFAULT_MAX_RETRIES = 3
DEFAULT_PLANNER_TIMEOUT_SEC = 60.0
DEFAULT_PLANNER_MODEL = "glm-4.7"

SUPPORTED_LANGS = ("en", "cn")


def _get_timeout_seconds(env_key: str, default_seconds: float) -> float | None:
    raw = os.environ.get(env_key)
    if raw is None:
        return default_seconds
    try:
        value = float(raw)
    except ValueError:
        return default_seconds
    if value <= 0:
        return None
    return value


def _get_interval_seconds(env_key: str, default_seconds: float) -> float:
    raw = os.environ.get(env_key)
    if raw is None:
        return default_seconds
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", env_key, raw)
        return default_seconds
    if value <= 0:
        logger.warning("Ignoring non-positive %s=%r", env_key, raw)
        return default_seconds
    return value


def _get_positive_int(env_key: str, default: int, minimum: int = 1) -> int:
    raw = os.environ.get(env_key)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", env_key, raw)
        return default
    if value < minimum:
        logger.warning("Ignoring %s=%r (must be >= %d)", env_key, raw, minimum)
        return default
    return value


def _get_bool(env_key: str, default: bool) -> bool:
    raw = os.environ.get(env_key)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def get_prompt_memory_path() -> Path | None:
    """An empty DUAL_LOOP_PROMPT_MEMORY_PATH disables persistence."""
    raw = os.environ.get("DUAL_LOOP_PROMPT_MEMORY_PATH", DEFAULT_PROMPT_MEMORY_PATH)
    if not raw.strip():
        return None
    return Path(raw).expanduser()


def get_lang() -> str:
    lang = os.environ.get("DUAL_LOOP_LANG", "en").strip().lower()
    if lang not in SUPPORTED_LANGS:
        logger.warning("Unsupported DUAL_LOOP_LANG=%r, using 'en'", lang)
        return "en"
    return lang


def get_planner_model() -> str:
    return os.environ.get("DUAL_LOOP_PLANNER_MODEL") or DEFAULT_PLANNER_MODEL


def load_planning_model(cwd: Path | None = None) -> IFlowPlanningModel:
    """iFlow-backed planning model using DUAL_LOOP_PLANNER_MODEL."""
    return IFlowPlanningModel(model=get_planner_model(), cwd=cwd)


def load_dual_loop_config() -> DualLoopConfig:
    return DualLoopConfig(
        planner_interval=_get_interval_seconds(
            "DUAL_LOOP_PLANNER_INTERVAL_SEC", DEFAULT_PLANNER_INTERVAL_SEC
        ),
        executor_interval=_get_interval_seconds(
            "DUAL_LOOP_EXECUTOR_INTERVAL_SEC", DEFAULT_EXECUTOR_INTERVAL_SEC
        ),
        input_queue_capacity=_get_positive_int(
            "DUAL_LOOP_INPUT_QUEUE_CAPACITY", DEFAULT_INPUT_QUEUE_CAPACITY
        ),
        auto_stop_when_idle=_get_bool("DUAL_LOOP_AUTO_STOP", True),
    )


def load_planner_config() -> PlannerConfig:
    timeout = _get_timeout_seconds("DUAL_LOOP_PLANNER_TIMEOUT_SEC", DEFAULT_PLANNER_TIMEOUT_SEC)
    return PlannerConfig(
        max_feedback_history=_get_positive_int(
            "DUAL_LOOP_MAX_FEEDBACK_HISTORY", DEFAULT_MAX_FEEDBACK_HISTORY
        ),
        stuck_threshold=_get_positive_int("DUAL_LOOP_STUCK_THRESHOLD", DEFAULT_STUCK_THRESHOLD),
        prompt_memory_path=get_prompt_memory_path(),
        max_interventions=_get_positive_int(
            "DUAL_LOOP_MAX_INTERVENTIONS", DEFAULT_MAX_INTERVENTIONS, minimum=0
        ),
        max_retries=_get_positive_int("DUAL_LOOP_MAX_RETRIES", DEFAULT_MAX_RETRIES, minimum=0),
        auto_optimize_prompts=_get_bool("DUAL_LOOP_AUTO_OPTIMIZE_PROMPTS", True),
        request_timeout_seconds=timeout,
        optimize_timeout_seconds=timeout,
        lang=get_lang(),
    )
