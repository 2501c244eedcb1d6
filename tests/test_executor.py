# tests/test_executor.py
from __future__ import annotations

import asyncio

import pytest

from conftest import SessionRecorder, make_task
from playfleet.executor import (
    FailureCause,
    RetryingExecutor,
    TaskExecutor,
    TaskOutcome,
    TaskStatus,
)
from playfleet.session import SessionState


def test_success_captures_exact_output() -> None:
    recorder = SessionRecorder(echo={"output": "hello from remote"})
    executor = TaskExecutor(session_factory=recorder)

    outcome = asyncio.run(executor.execute(make_task("echo", "echo 'hello from remote'")))

    assert outcome.status is TaskStatus.SUCCEEDED
    assert outcome.succeeded
    assert outcome.output == "hello from remote"
    assert outcome.exit_status == 0
    assert outcome.error == ""
    session = recorder.sessions["echo"]
    assert session.commands == ["echo 'hello from remote'"]
    assert session.state is SessionState.CLOSED
    assert session.releases == 1


def test_connect_failure_becomes_failed_outcome() -> None:
    recorder = SessionRecorder(down={"connect_error": "No route to host"})
    executor = TaskExecutor(session_factory=recorder)

    outcome = asyncio.run(executor.execute(make_task("down")))

    assert outcome.status is TaskStatus.FAILED
    assert outcome.cause is FailureCause.CONNECT
    assert "No route to host" in outcome.error
    session = recorder.sessions["down"]
    assert "run" not in session.calls
    assert session.calls[-1] == "close"
    assert session.state is SessionState.CLOSED


def test_run_failure_becomes_failed_outcome() -> None:
    recorder = SessionRecorder(broken={"run_error": "channel refused"})
    executor = TaskExecutor(session_factory=recorder)

    outcome = asyncio.run(executor.execute(make_task("broken")))

    assert outcome.cause is FailureCause.RUN
    assert outcome.error == "channel refused"
    assert recorder.sessions["broken"].releases == 1


def test_non_zero_exit_fails_but_keeps_output() -> None:
    recorder = SessionRecorder(bad={"output": "missing file\n", "exit_status": 2})
    executor = TaskExecutor(session_factory=recorder)

    outcome = asyncio.run(executor.execute(make_task("bad")))

    assert outcome.status is TaskStatus.FAILED
    assert outcome.cause is FailureCause.EXIT
    assert outcome.exit_status == 2
    assert outcome.output == "missing file\n"
    assert "status 2" in outcome.error


def test_timeout_fails_task_and_releases_session() -> None:
    recorder = SessionRecorder(hung={"delay": 5})
    executor = TaskExecutor(session_factory=recorder)

    outcome = asyncio.run(executor.execute(make_task("hung", timeout=0.05)))

    assert outcome.cause is FailureCause.TIMEOUT
    assert "Timed out" in outcome.error
    session = recorder.sessions["hung"]
    assert session.state is SessionState.CLOSED
    assert session.releases == 1


def test_default_timeout_applies_when_task_has_none() -> None:
    recorder = SessionRecorder(hung={"delay": 5})
    executor = TaskExecutor(session_factory=recorder, default_timeout=0.05)

    outcome = asyncio.run(executor.execute(make_task("hung")))

    assert outcome.cause is FailureCause.TIMEOUT


def test_caller_cancellation_still_releases_session() -> None:
    recorder = SessionRecorder(slow={"delay": 5})
    executor = TaskExecutor(session_factory=recorder)

    async def scenario():
        unit = asyncio.ensure_future(executor.execute(make_task("slow")))
        await asyncio.sleep(0.05)
        unit.cancel()
        with pytest.raises(asyncio.CancelledError):
            await unit

    asyncio.run(scenario())

    assert recorder.sessions["slow"].state is SessionState.CLOSED
    assert recorder.sessions["slow"].releases == 1


def test_status_and_output_callbacks() -> None:
    statuses: list[tuple[str, TaskStatus]] = []
    lines: list[tuple[str, str]] = []
    recorder = SessionRecorder(t={"output": "one\ntwo\n"})
    executor = TaskExecutor(
        session_factory=recorder,
        on_status=lambda name, status: statuses.append((name, status)),
        on_output=lambda name, line: lines.append((name, line)),
    )

    asyncio.run(executor.execute(make_task("t")))

    assert [s for _, s in statuses] == [
        TaskStatus.CONNECTING,
        TaskStatus.RUNNING,
        TaskStatus.SUCCEEDED,
    ]
    assert lines == [("t", "one"), ("t", "two")]


def test_progress_line_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    recorder = SessionRecorder(down={"connect_error": "refused"})
    executor = TaskExecutor(session_factory=recorder)

    with caplog.at_level("INFO", logger="playfleet.executor"):
        asyncio.run(executor.execute(make_task("down")))

    assert "Task down failed" in caplog.text
    assert "refused" in caplog.text


def test_local_task_runs_through_the_shell() -> None:
    executor = TaskExecutor()

    outcome = asyncio.run(executor.execute(make_task("local", "printf hello", target=None)))

    assert outcome.succeeded
    assert outcome.output == "hello"


class _FlakyExecutor:
    def __init__(self, outcomes: list[TaskOutcome]):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def execute(self, task):
        self.calls += 1
        return self.outcomes.pop(0)


def test_retry_recovers_from_connect_failure() -> None:
    task = make_task("flaky")
    inner = _FlakyExecutor(
        [
            TaskOutcome.failure(task, FailureCause.CONNECT, "refused"),
            TaskOutcome.failure(task, FailureCause.TIMEOUT, "slow"),
            TaskOutcome("flaky", TaskStatus.SUCCEEDED, output="ok"),
        ]
    )
    delays: list[float] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    executor = RetryingExecutor(inner, attempts=3, backoff=0.5, sleep=fake_sleep)

    outcome = asyncio.run(executor.execute(task))

    assert outcome.succeeded
    assert inner.calls == 3
    assert delays == [0.5, 1.0]


def test_retry_does_not_repeat_command_failures() -> None:
    task = make_task("bad")
    inner = _FlakyExecutor([TaskOutcome.failure(task, FailureCause.EXIT, "status 1")])

    async def fake_sleep(delay: float) -> None:
        raise AssertionError("should not sleep")

    executor = RetryingExecutor(inner, attempts=5, sleep=fake_sleep)

    outcome = asyncio.run(executor.execute(task))

    assert outcome.cause is FailureCause.EXIT
    assert inner.calls == 1


def test_retry_gives_up_after_bounded_attempts() -> None:
    task = make_task("down")
    inner = _FlakyExecutor(
        [TaskOutcome.failure(task, FailureCause.CONNECT, "refused")] * 3
    )

    async def fake_sleep(delay: float) -> None:
        return None

    executor = RetryingExecutor(inner, attempts=3, sleep=fake_sleep)

    outcome = asyncio.run(executor.execute(task))

    assert outcome.cause is FailureCause.CONNECT
    assert inner.calls == 3


def test_retry_requires_at_least_one_attempt() -> None:
    with pytest.raises(ValueError):
        RetryingExecutor(TaskExecutor(), attempts=0)
