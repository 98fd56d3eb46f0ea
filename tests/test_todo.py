import pytest

from agents.todo import TodoList, TodoStatus


def test_ids_are_sequential_and_order_preserved():
    todos = TodoList()
    first = todos.add("open settings", "settings")
    second = todos.add("enable wifi")

    assert [first.id, second.id] == ["task_1", "task_2"]
    assert second.task_type == "general"
    assert todos.next_pending() is first


def test_lifecycle_transitions():
    item = TodoList().add("open settings")

    item.start()
    assert item.status is TodoStatus.RUNNING
    item.complete()
    assert item.status is TodoStatus.DONE
    assert item.is_terminal


def test_illegal_transitions_raise():
    item = TodoList().add("open settings")

    with pytest.raises(ValueError):
        item.complete()

    item.start()
    with pytest.raises(ValueError):
        item.start()

    item.complete()
    with pytest.raises(ValueError):
        item.fail("too late")


def test_retry_is_bounded():
    item = TodoList(max_retries=1).add("open settings")
    item.start()
    item.fail("stuck")

    item.retry()
    assert item.status is TodoStatus.PENDING
    assert item.retry_count == 1
    assert item.error is None
    assert not item.can_retry()

    item.start()
    with pytest.raises(ValueError):
        item.retry()


def test_stats_and_render():
    todos = TodoList()
    done = todos.add("a")
    failed = todos.add("b")
    todos.add("c")
    done.start()
    done.complete()
    failed.fail("boom")

    stats = todos.stats()
    assert (stats.total, stats.done, stats.failed, stats.pending) == (3, 1, 1, 1)
    assert round(stats.completion_percentage(), 1) == 33.3
    assert not todos.is_all_done()
    assert "[failed] task_2: b" in todos.render()


def test_empty_list_counts_as_done():
    todos = TodoList()
    assert todos.is_all_done()
    assert todos.stats().completion_percentage() == 100.0
