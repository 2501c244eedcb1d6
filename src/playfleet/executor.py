"""Runs one task on its own session and turns every failure into an outcome."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Iterable

from .config import Task
from .errors import ConnectError, RunError
from .session import HostVerifier, Session, open_session

logger = logging.getLogger(__name__)


class TaskStatus(Enum):
    """Status of a task's execution."""

    PENDING = "pending"
    CONNECTING = "connecting"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class FailureCause(Enum):
    """Why a task ended up failed."""

    CONNECT = "connect"
    RUN = "run"
    EXIT = "exit"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class TaskOutcome:
    """Terminal record for one task."""

    task_name: str
    status: TaskStatus
    output: str = ""
    error: str = ""
    exit_status: int | None = None
    cause: FailureCause | None = None
    duration_s: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status is TaskStatus.SUCCEEDED

    @classmethod
    def failure(
        cls, task: Task, cause: FailureCause, error: str, duration_s: float = 0.0, **kwargs
    ) -> TaskOutcome:
        return cls(
            task.name, TaskStatus.FAILED, error=error, cause=cause, duration_s=duration_s, **kwargs
        )


# Type aliases for callbacks
SessionFactory = Callable[[Task], Session]
StatusCallback = Callable[[str, TaskStatus], None]  # (task_name, status) -> None
OutputCallback = Callable[[str, str], None]  # (task_name, line) -> None


def _truncate(text: str, limit: int = 200) -> str:
    text = text.strip().replace("\n", " | ")
    return text if len(text) <= limit else text[: limit - 3] + "..."


class TaskExecutor:
    """Executes a single task: connect, run, disconnect, report."""

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        on_status: StatusCallback | None = None,
        on_output: OutputCallback | None = None,
        default_timeout: float | None = None,
        verifier: HostVerifier | None = None,
        connect_timeout: float | None = 30,
    ):
        if session_factory is None:
            def session_factory(task: Task) -> Session:
                return open_session(task, verifier=verifier, connect_timeout=connect_timeout)

        self.session_factory = session_factory
        self.on_status = on_status
        self.on_output = on_output
        self.default_timeout = default_timeout

    def _emit_status(self, task_name: str, status: TaskStatus) -> None:
        if self.on_status:
            self.on_status(task_name, status)

    def _emit_output(self, task_name: str, text: str) -> None:
        if self.on_output:
            for line in text.splitlines():
                self.on_output(task_name, line)

    async def execute(self, task: Task) -> TaskOutcome:
        """Run ``task`` once and return its outcome. Task failures never raise."""
        start = time.monotonic()
        timeout = task.timeout if task.timeout is not None else self.default_timeout
        session = self.session_factory(task)

        try:
            outcome = await asyncio.wait_for(self._attempt(task, session, start), timeout)
        except asyncio.TimeoutError:
            outcome = TaskOutcome.failure(
                task,
                FailureCause.TIMEOUT,
                f"Timed out after {timeout:g}s",
                time.monotonic() - start,
            )
        finally:
            # Idempotent; the session is released on every exit path
            await session.close()

        self._report(outcome)
        return outcome

    async def _attempt(self, task: Task, session: Session, start: float) -> TaskOutcome:
        try:
            self._emit_status(task.name, TaskStatus.CONNECTING)
            try:
                await session.open()
            except ConnectError as e:
                return TaskOutcome.failure(
                    task, FailureCause.CONNECT, f"Failed to connect: {e}", time.monotonic() - start
                )

            self._emit_status(task.name, TaskStatus.RUNNING)
            try:
                captured = await session.run(task.command)
            except RunError as e:
                return TaskOutcome.failure(
                    task, FailureCause.RUN, str(e), time.monotonic() - start
                )
        finally:
            await session.close()

        duration = time.monotonic() - start
        self._emit_output(task.name, captured.output)
        if not captured.ok:
            return TaskOutcome.failure(
                task,
                FailureCause.EXIT,
                f"Command exited with status {captured.exit_status}",
                duration,
                output=captured.output,
                exit_status=captured.exit_status,
            )

        return TaskOutcome(
            task.name,
            TaskStatus.SUCCEEDED,
            output=captured.output,
            exit_status=captured.exit_status,
            duration_s=duration,
        )

    def _report(self, outcome: TaskOutcome) -> None:
        self._emit_status(outcome.task_name, outcome.status)
        if outcome.succeeded:
            logger.info("Task %s succeeded: %s", outcome.task_name, _truncate(outcome.output))
        else:
            logger.warning("Task %s failed: %s", outcome.task_name, _truncate(outcome.error))


class RetryingExecutor:
    """Wraps an executor with bounded retry and exponential backoff."""

    def __init__(
        self,
        inner: TaskExecutor,
        attempts: int = 3,
        backoff: float = 1.0,
        retry_on: Iterable[FailureCause] = (FailureCause.CONNECT, FailureCause.TIMEOUT),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        self.inner = inner
        self.attempts = attempts
        self.backoff = backoff
        self.retry_on = frozenset(retry_on)
        self._sleep = sleep

    async def execute(self, task: Task) -> TaskOutcome:
        outcome = await self.inner.execute(task)
        for attempt in range(1, self.attempts):
            if outcome.succeeded or outcome.cause not in self.retry_on:
                break
            delay = self.backoff * 2 ** (attempt - 1)
            logger.info(
                "Retrying task %s in %.1fs (attempt %d/%d)",
                task.name, delay, attempt + 1, self.attempts,
            )
            await self._sleep(delay)
            outcome = await self.inner.execute(task)
        return outcome
