"""playfleet: Run a playbook of commands on many SSH hosts in parallel."""

from .config import Credential, Defaults, Playbook, Task, find_playbooks, load_playbook
from .errors import AggregationFault, ConnectError, RunError
from .executor import FailureCause, RetryingExecutor, TaskExecutor, TaskOutcome, TaskStatus
from .scheduler import AggregateResult, Scheduler, run_playbook
from .session import (
    AcceptAnyHost,
    CapturedOutput,
    Communicator,
    KnownHostsVerifier,
    LocalSession,
    SessionState,
)

__all__ = [
    "Credential",
    "Defaults",
    "Playbook",
    "Task",
    "find_playbooks",
    "load_playbook",
    "AggregationFault",
    "ConnectError",
    "RunError",
    "FailureCause",
    "RetryingExecutor",
    "TaskExecutor",
    "TaskOutcome",
    "TaskStatus",
    "AggregateResult",
    "Scheduler",
    "run_playbook",
    "AcceptAnyHost",
    "CapturedOutput",
    "Communicator",
    "KnownHostsVerifier",
    "LocalSession",
    "SessionState",
]
