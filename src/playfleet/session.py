"""Single-command sessions: SSH for remote tasks, a subprocess for local ones."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

import asyncssh

from .config import Task
from .errors import ConnectError, RunError

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Lifecycle of a session."""

    UNOPENED = "unopened"
    CONNECTED = "connected"
    CLOSED = "closed"
    FAILED = "failed"


@dataclass(frozen=True)
class CapturedOutput:
    """Combined stdout/stderr of one command plus its exit status."""

    output: str
    exit_status: int

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


class HostVerifier(Protocol):
    def verify(self, host: str, key: asyncssh.SSHKey, port: int = 22) -> bool: ...


class KnownHostsVerifier:
    """Accept a host key only if it is listed for that host in known_hosts."""

    def __init__(self, path: str | Path = "~/.ssh/known_hosts"):
        self.path = Path(path).expanduser()
        self._known_hosts: asyncssh.SSHKnownHosts | None = None

    def _load(self) -> asyncssh.SSHKnownHosts | None:
        if self._known_hosts is None and self.path.exists():
            self._known_hosts = asyncssh.read_known_hosts(str(self.path))
        return self._known_hosts

    def verify(self, host: str, key: asyncssh.SSHKey, port: int = 22) -> bool:
        known_hosts = self._load()
        if known_hosts is None:
            logger.warning("No known_hosts file at %s, rejecting %s", self.path, host)
            return False
        trusted = known_hosts.match(host, "", port)[0]
        return key in trusted


class AcceptAnyHost:
    """Accept every host key. Opt-in only: this disables MITM protection."""

    def __init__(self) -> None:
        self._warned = False

    def verify(self, host: str, key: asyncssh.SSHKey, port: int = 22) -> bool:
        if not self._warned:
            logger.warning("Host key verification is disabled; accepting any host key")
            self._warned = True
        return True


class _VerifyingClient(asyncssh.SSHClient):
    """Routes asyncssh's host key check to a HostVerifier."""

    def __init__(self, verifier: HostVerifier):
        self._verifier = verifier

    def validate_host_public_key(
        self, host: str, addr: str, port: int, key: asyncssh.SSHKey
    ) -> bool:
        return self._verifier.verify(host, key, port)


class Communicator:
    """Owns one SSH connection to one host for one command."""

    def __init__(
        self,
        task: Task,
        verifier: HostVerifier | None = None,
        connect_timeout: float | None = 30,
    ):
        self.task = task
        self.verifier = verifier if verifier is not None else KnownHostsVerifier()
        self.connect_timeout = connect_timeout
        self.state = SessionState.UNOPENED
        self._conn: asyncssh.SSHClientConnection | None = None

    async def open(self) -> None:
        """Connect and authenticate. Raises ConnectError on any failure."""
        if self.state is not SessionState.UNOPENED:
            raise RuntimeError(f"Session for {self.task.name} already {self.state.value}")

        task = self.task
        credential = task.credential
        verifier = self.verifier
        options = {}
        # Without explicit keys asyncssh falls back to ~/.ssh and the agent
        if credential.client_keys:
            options["client_keys"] = [str(k) for k in credential.client_keys]
        try:
            self._conn = await asyncssh.connect(
                task.target,
                port=task.port,
                username=credential.username,
                password=credential.password,
                # Empty trust lists so every key goes through the verifier
                known_hosts=([], [], []),
                client_factory=lambda: _VerifyingClient(verifier),
                connect_timeout=self.connect_timeout,
                **options,
            )
        except asyncssh.HostKeyNotVerifiable as e:
            self.state = SessionState.FAILED
            raise ConnectError(f"Host key for {task.target} was rejected: {e}") from e
        except asyncssh.PermissionDenied as e:
            self.state = SessionState.FAILED
            raise ConnectError(f"Authentication failed for {credential.username}@{task.target}") from e
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as e:
            self.state = SessionState.FAILED
            raise ConnectError(f"Failed to connect to {task.target}:{task.port}: {e}") from e
        except ValueError as e:
            # KeyImportError and other client key parsing failures
            self.state = SessionState.FAILED
            raise ConnectError(f"Could not load client key for {task.target}: {e}") from e

        self.state = SessionState.CONNECTED

    async def run(self, command: str) -> CapturedOutput:
        """Run ``command`` on a fresh exec channel, stderr merged into stdout."""
        if self.state is not SessionState.CONNECTED or self._conn is None:
            raise RuntimeError(f"Session for {self.task.name} is not connected")

        try:
            result = await self._conn.run(
                command, stderr=asyncssh.STDOUT, check=False,
                encoding="utf-8", errors="replace",
            )
        except asyncssh.ChannelOpenError as e:
            raise RunError(f"Failed to create session: {e}") from e
        except (asyncssh.Error, OSError) as e:
            raise RunError(f"Command execution failed: {e}") from e

        if result.exit_status is None:
            signal = result.exit_signal[0] if result.exit_signal else "unknown"
            raise RunError(f"Command did not report an exit status (signal: {signal})")

        return CapturedOutput(result.stdout or "", result.exit_status)

    async def close(self) -> None:
        """Release the connection if held. Safe to call more than once."""
        conn, self._conn = self._conn, None
        self.state = SessionState.CLOSED
        if conn is None:
            return
        conn.close()
        await conn.wait_closed()

    async def __aenter__(self) -> Communicator:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


class LocalSession:
    """Runs a task's command through the local shell."""

    def __init__(self, task: Task):
        self.task = task
        self.state = SessionState.UNOPENED
        self._proc: asyncio.subprocess.Process | None = None

    async def open(self) -> None:
        if self.state is not SessionState.UNOPENED:
            raise RuntimeError(f"Session for {self.task.name} already {self.state.value}")
        self.state = SessionState.CONNECTED

    async def run(self, command: str) -> CapturedOutput:
        if self.state is not SessionState.CONNECTED:
            raise RuntimeError(f"Session for {self.task.name} is not connected")

        try:
            self._proc = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise RunError(f"Failed to start local shell: {e}") from e

        stdout, _ = await self._proc.communicate()
        return CapturedOutput(stdout.decode("utf-8", errors="replace"), self._proc.returncode)

    async def close(self) -> None:
        proc, self._proc = self._proc, None
        self.state = SessionState.CLOSED
        if proc is not None and proc.returncode is None:
            proc.kill()
            await proc.wait()

    async def __aenter__(self) -> LocalSession:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


Session = Communicator | LocalSession


def open_session(
    task: Task,
    verifier: HostVerifier | None = None,
    connect_timeout: float | None = 30,
) -> Session:
    """Build an unopened session suited to ``task``."""
    if task.is_remote:
        return Communicator(task, verifier=verifier, connect_timeout=connect_timeout)
    return LocalSession(task)
