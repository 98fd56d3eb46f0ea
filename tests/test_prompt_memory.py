import json

import pytest

from agents.prompt_memory import PromptMemory, PromptMemoryError


def test_missing_file_loads_empty(tmp_path):
    memory = PromptMemory.load(tmp_path / "missing.json")
    assert len(memory) == 0


def test_save_and_load_preserves_prompts(tmp_path):
    path = tmp_path / "nested" / "prompt_memory.json"
    memory = PromptMemory()
    memory.update("wifi", "Use quick settings to toggle wifi.")
    memory.record_usage("wifi", True)
    memory.add_correction("wifi", "swipe down twice", context="enable wifi")

    memory.save(path)
    loaded = PromptMemory.load(path)

    assert loaded.get("wifi") == "Use quick settings to toggle wifi."
    entry = loaded.entry("wifi")
    assert entry.usage_count == 1
    assert entry.success_rate == 1.0
    assert entry.corrections[0].context == "enable wifi"
    assert json.loads(path.read_text(encoding="utf-8"))["version"] == "1.0"


def test_corrupt_file_raises_and_load_or_empty_recovers(tmp_path):
    path = tmp_path / "prompt_memory.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(PromptMemoryError):
        PromptMemory.load(path)
    assert len(PromptMemory.load_or_empty(path)) == 0


def test_update_is_last_write_wins_and_keeps_stats():
    memory = PromptMemory()
    memory.update("wifi", "first")
    memory.record_usage("wifi", False)
    memory.update("wifi", "second")

    assert memory.get("wifi") == "second"
    assert memory.entry("wifi").usage_count == 1
    assert memory.entry("wifi").success_rate == 0.0


def test_success_rate_is_running_average():
    memory = PromptMemory()
    memory.update("wifi", "prompt")
    for success in (True, False, True, True):
        memory.record_usage("wifi", success)

    assert memory.entry("wifi").success_rate == pytest.approx(0.75)


def test_corrections_only_entry_has_no_prompt():
    memory = PromptMemory()
    memory.add_correction("camera", "open the camera from the lock screen")

    assert "camera" in memory
    assert memory.get("camera") is None
    assert "corrections only" in memory.task_types_summary()
    memory.clear_corrections("camera")
    assert memory.entry("camera").corrections == []


def test_find_matching_task_type():
    memory = PromptMemory()
    memory.update("wifi_settings", "prompt")
    memory.update("camera", "prompt")

    assert memory.find_matching_task_type("please open the camera") == "camera"
    assert memory.find_matching_task_type("turn wifi on") == "wifi_settings"
    assert memory.find_matching_task_type("send a message") is None
    assert memory.find_matching_task_type("   ") is None


def test_save_failure_raises_prompt_memory_error(tmp_path):
    memory = PromptMemory()
    memory.update("wifi", "prompt")

    with pytest.raises(PromptMemoryError):
        memory.save(tmp_path)
    assert memory.get("wifi") == "prompt"
