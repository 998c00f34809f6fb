from collections import deque
from unittest.mock import MagicMock

from botdock.core.process_registry import ActiveProcess, ProcessRegistry
from botdock.core.types import ProcessStatus


def _entry(bot_id="b1", pid=100, buffer=100):
    return ActiveProcess(bot_id=bot_id, bot_name="echo", process=MagicMock(), pid=pid,
                         logs=deque(maxlen=buffer))


def test_register_and_lookup():
    registry = ProcessRegistry()
    entry = _entry()

    registry.register(entry)

    assert registry.get("b1") is entry
    assert registry.is_running("b1")
    assert registry.ids() == ["b1"]
    assert len(registry) == 1


def test_remove_ignores_stale_entry():
    registry = ProcessRegistry()
    old, new = _entry(pid=100), _entry(pid=200)
    registry.register(old)
    registry.register(new)

    assert registry.remove("b1", old) is False
    assert registry.get("b1") is new
    assert registry.remove("b1", new) is True
    assert registry.remove("b1") is False


def test_stopping_process_is_not_running():
    registry = ProcessRegistry()
    entry = _entry()
    registry.register(entry)

    entry.status = ProcessStatus.STOPPING

    assert registry.get("b1") is entry
    assert not registry.is_running("b1")


def test_log_buffer_drops_oldest():
    entry = _entry(buffer=3)

    for i in range(5):
        count = entry.append_log(f"line {i}")

    assert count == 5
    assert [log["message"] for log in entry.logs] == ["line 2", "line 3", "line 4"]
    assert [log["message"] for log in entry.log_tail(2)] == ["line 3", "line 4"]
    assert entry.log_tail(0) == []


def test_info_and_summary():
    entry = _entry()
    entry.append_log("ready")

    info = entry.info()
    assert info["pid"] == 100
    assert info["running"] is True
    assert info["status"] == "running"
    assert info["logs"][0]["message"] == "ready"
    assert entry.summary()["bot_name"] == "echo"
    assert entry.uptime >= 0
