from __future__ import annotations

import asyncio

from playfleet.config import Credential, Task
from playfleet.errors import ConnectError, RunError
from playfleet.session import CapturedOutput, SessionState


class FakeSession:
    """Session double that records its lifecycle instead of touching the network."""

    def __init__(
        self,
        task: Task,
        output: str = "",
        exit_status: int = 0,
        delay: float = 0.0,
        connect_error: str | None = None,
        run_error: str | None = None,
    ):
        self.task = task
        self.output = output
        self.exit_status = exit_status
        self.delay = delay
        self.connect_error = connect_error
        self.run_error = run_error
        self.state = SessionState.UNOPENED
        self.calls: list[str] = []
        self.commands: list[str] = []
        self.releases = 0

    async def open(self) -> None:
        self.calls.append("open")
        if self.connect_error:
            self.state = SessionState.FAILED
            raise ConnectError(self.connect_error)
        self.state = SessionState.CONNECTED

    async def run(self, command: str) -> CapturedOutput:
        self.calls.append("run")
        self.commands.append(command)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.run_error:
            raise RunError(self.run_error)
        return CapturedOutput(self.output, self.exit_status)

    async def close(self) -> None:
        self.calls.append("close")
        if self.state is SessionState.CONNECTED:
            self.releases += 1
        self.state = SessionState.CLOSED


class SessionRecorder:
    """Session factory handing out FakeSessions configured per task name."""

    def __init__(self, **behaviours: dict):
        self.behaviours = behaviours
        self.sessions: dict[str, FakeSession] = {}

    def __call__(self, task: Task) -> FakeSession:
        options = self.behaviours.get(task.name, {})
        session = FakeSession(task, **options)
        self.sessions[task.name] = session
        return session


def make_task(name: str, command: str = "true", target: str | None = "10.0.0.1", **kwargs) -> Task:
    credential = Credential("deploy", password="s3cret") if target else None
    return Task(name, command, target, credential, **kwargs)
