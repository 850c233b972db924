import pytest

from pipegraph import RunSummary, TaskStatus
from pipegraph.exceptions import InvalidTransitionError
from pipegraph.status import StatusRecord


def test_forward_transitions():
    record = StatusRecord()
    record.admit("a")

    for status in (TaskStatus.READY, TaskStatus.RUNNING, TaskStatus.SUCCEEDED):
        record.transition("a", status)

    assert record["a"] is TaskStatus.SUCCEEDED
    assert record["a"].terminal
    assert dict(record) == {"a": TaskStatus.SUCCEEDED}


def test_retry_release():
    record = StatusRecord()
    record.admit("a")
    record.transition("a", TaskStatus.READY)
    record.transition("a", TaskStatus.RUNNING)

    record.transition("a", TaskStatus.READY)
    record.transition("a", TaskStatus.RUNNING)
    record.transition("a", TaskStatus.FAILED)

    assert record["a"] is TaskStatus.FAILED


@pytest.mark.parametrize(
    "path",
    (
        (TaskStatus.RUNNING,),
        (TaskStatus.READY, TaskStatus.PENDING),
        (TaskStatus.BLOCKED, TaskStatus.READY),
        (TaskStatus.READY, TaskStatus.RUNNING, TaskStatus.SUCCEEDED, TaskStatus.FAILED),
    ),
    ids=("skip", "backward", "from-blocked", "from-succeeded"),
)
def test_invalid_transitions(path):
    record = StatusRecord()
    record.admit("a")

    with pytest.raises(InvalidTransitionError):
        for status in path:
            record.transition("a", status)


def test_admit_twice():
    record = StatusRecord()
    record.admit("a")

    with pytest.raises(InvalidTransitionError):
        record.admit("a", TaskStatus.FAILED)

    assert len(record) == 1
    assert list(record) == ["a"]


def test_summary():
    summary = RunSummary(succeeded={"a", "b"}, failed={"c": "boom"}, blocked={"d"})

    assert not summary.ok
    assert str(summary) == "2 succeeded, 1 failed, 1 blocked"
    assert RunSummary(succeeded={"a"}).ok
