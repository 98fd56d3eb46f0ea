from pathlib import Path

import loop_config


def _clear(monkeypatch):
    for key in (
        "DUAL_LOOP_PLANNER_INTERVAL_SEC",
        "DUAL_LOOP_EXECUTOR_INTERVAL_SEC",
        "DUAL_LOOP_INPUT_QUEUE_CAPACITY",
        "DUAL_LOOP_PROMPT_MEMORY_PATH",
        "DUAL_LOOP_STUCK_THRESHOLD",
        "DUAL_LOOP_MAX_FEEDBACK_HISTORY",
        "DUAL_LOOP_LANG",
        "DUAL_LOOP_PLANNER_TIMEOUT_SEC",
        "DUAL_LOOP_PLANNER_MODEL",
    ):
        monkeypatch.delenv(key, raising=False)


def test_defaults(monkeypatch):
    _clear(monkeypatch)

    loop = loop_config.load_dual_loop_config()
    planner = loop_config.load_planner_config()

    assert loop.planner_interval == 2.0
    assert loop.executor_interval == 0.5
    assert loop.input_queue_capacity == 100
    assert planner.max_feedback_history == 2
    assert planner.stuck_threshold == 3
    assert planner.prompt_memory_path == Path("prompt_memory.json")
    assert planner.lang == "en"


def test_env_overrides(monkeypatch, tmp_path):
    _clear(monkeypatch)
    monkeypatch.setenv("DUAL_LOOP_PLANNER_INTERVAL_SEC", "1.5")
    monkeypatch.setenv("DUAL_LOOP_EXECUTOR_INTERVAL_SEC", "0.25")
    monkeypatch.setenv("DUAL_LOOP_INPUT_QUEUE_CAPACITY", "8")
    monkeypatch.setenv("DUAL_LOOP_PROMPT_MEMORY_PATH", str(tmp_path / "memory.json"))
    monkeypatch.setenv("DUAL_LOOP_STUCK_THRESHOLD", "5")
    monkeypatch.setenv("DUAL_LOOP_MAX_FEEDBACK_HISTORY", "4")
    monkeypatch.setenv("DUAL_LOOP_LANG", "CN")
    monkeypatch.setenv("DUAL_LOOP_PLANNER_TIMEOUT_SEC", "0")

    loop = loop_config.load_dual_loop_config()
    planner = loop_config.load_planner_config()

    assert loop.planner_interval == 1.5
    assert loop.executor_interval == 0.25
    assert loop.input_queue_capacity == 8
    assert planner.prompt_memory_path == tmp_path / "memory.json"
    assert planner.stuck_threshold == 5
    assert planner.max_feedback_history == 4
    assert planner.lang == "cn"
    assert planner.request_timeout_seconds is None


def test_invalid_values_fall_back(monkeypatch):
    _clear(monkeypatch)
    monkeypatch.setenv("DUAL_LOOP_PLANNER_INTERVAL_SEC", "soon")
    monkeypatch.setenv("DUAL_LOOP_EXECUTOR_INTERVAL_SEC", "-1")
    monkeypatch.setenv("DUAL_LOOP_STUCK_THRESHOLD", "0")
    monkeypatch.setenv("DUAL_LOOP_LANG", "fr")

    loop = loop_config.load_dual_loop_config()
    planner = loop_config.load_planner_config()

    assert loop.planner_interval == 2.0
    assert loop.executor_interval == 0.5
    assert planner.stuck_threshold == 3
    assert planner.lang == "en"


def test_empty_memory_path_disables_persistence(monkeypatch):
    _clear(monkeypatch)
    monkeypatch.setenv("DUAL_LOOP_PROMPT_MEMORY_PATH", "")

    assert loop_config.load_planner_config().prompt_memory_path is None


def test_planning_model_uses_configured_model(monkeypatch, tmp_path):
    _clear(monkeypatch)
    assert loop_config.load_planning_model().model == "glm-4.7"

    monkeypatch.setenv("DUAL_LOOP_PLANNER_MODEL", "qwen3-coder")
    model = loop_config.load_planning_model(cwd=tmp_path)

    assert model.model == "qwen3-coder"
    assert model.cwd == tmp_path
