import threading

import pytest

from cpc.errors import FatalError
from cpc.modules.taskgroup import run_task_group


def test_tasks_run_and_monitor_is_cancelled():
    seen = []

    def monitor(cancelled: threading.Event):
        cancelled.wait(5)
        seen.append(cancelled.is_set())

    results = run_task_group({"a": lambda: 1, "b": lambda: 2}, monitor)
    assert results == {"a": 1, "b": 2}
    assert seen == [True]


def test_failure_is_raised_after_all_tasks_finish():
    finished = []

    def fail():
        raise FatalError("control_plane install failed")

    def ok():
        finished.append("workers")
        return "ok"

    with pytest.raises(FatalError):
        run_task_group({"control_plane": fail, "workers": ok})
    assert finished == ["workers"]
