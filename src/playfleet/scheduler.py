"""Concurrent scheduler: one executor per task, all gathered together."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator, Protocol, Sequence

from .config import Task
from .errors import AggregationFault
from .executor import FailureCause, TaskExecutor, TaskOutcome

logger = logging.getLogger(__name__)

OutcomeCallback = Callable[[TaskOutcome], None]


class Executes(Protocol):
    async def execute(self, task: Task) -> TaskOutcome: ...


@dataclass(frozen=True)
class AggregateResult:
    """Every outcome of one run, in submission order."""

    outcomes: tuple[TaskOutcome, ...] = field(default_factory=tuple)

    def __len__(self) -> int:
        return len(self.outcomes)

    def __iter__(self) -> Iterator[TaskOutcome]:
        return iter(self.outcomes)

    @property
    def failed(self) -> list[TaskOutcome]:
        return [o for o in self.outcomes if not o.succeeded]

    @property
    def failures(self) -> int:
        return len(self.failed)

    @property
    def succeeded(self) -> bool:
        return self.failures == 0

    def by_name(self) -> dict[str, TaskOutcome]:
        # Duplicate task names collapse; the later submission wins
        return {o.task_name: o for o in self.outcomes}


def _log_name(task_name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", task_name).strip("_") or "task"


class Scheduler:
    """Runs a task list concurrently with full isolation between tasks."""

    def __init__(
        self,
        executor: Executes | None = None,
        on_outcome: OutcomeCallback | None = None,
        log_dir: Path | None = None,
    ):
        self.executor = executor if executor is not None else TaskExecutor()
        self.on_outcome = on_outcome
        self.log_dir = log_dir
        self._run_log_dir: Path | None = None
        self._units: list[asyncio.Task] = []
        self._cancelled = False

    def _setup_logging(self) -> None:
        """Set up a per-run log directory named by timestamp."""
        self._run_log_dir = None
        if self.log_dir is None:
            return
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self._run_log_dir = self.log_dir / timestamp
        self._run_log_dir.mkdir(parents=True, exist_ok=True)

    def _write_log(self, index: int, outcome: TaskOutcome) -> None:
        if self._run_log_dir is None:
            return
        log_file = self._run_log_dir / f"{index:03d}_{_log_name(outcome.task_name)}.log"
        with open(log_file, "w", encoding="utf-8") as f:
            f.write(f"task: {outcome.task_name}\n")
            f.write(f"status: {outcome.status.value}\n")
            if outcome.exit_status is not None:
                f.write(f"exit status: {outcome.exit_status}\n")
            if outcome.error:
                f.write(f"error: {outcome.error}\n")
            f.write("\n")
            f.write(outcome.output)

    async def run_all(self, tasks: Sequence[Task]) -> AggregateResult:
        """Run every task in parallel and wait for all of them to finish."""
        tasks = list(tasks)
        self._cancelled = False
        self._setup_logging()

        self._units = [
            asyncio.ensure_future(self._run_one(i, task)) for i, task in enumerate(tasks)
        ]
        try:
            results = await asyncio.gather(*self._units, return_exceptions=True)
        finally:
            self._units = []

        outcomes = []
        for index, (task, result) in enumerate(zip(tasks, results)):
            if isinstance(result, asyncio.CancelledError) and self._cancelled:
                result = TaskOutcome.failure(
                    task, FailureCause.CANCELLED, "Cancelled before completion"
                )
                logger.warning("Task %s failed: %s", task.name, result.error)
                self._finish(index, result)
            if not isinstance(result, TaskOutcome):
                raise AggregationFault(
                    f"No outcome collected for task {task.name}: {result!r}"
                ) from (result if isinstance(result, BaseException) else None)
            outcomes.append(result)

        aggregate = AggregateResult(tuple(outcomes))
        logger.info(
            "Run finished: %d task(s), %d failed", len(aggregate), aggregate.failures
        )
        return aggregate

    async def _run_one(self, index: int, task: Task) -> TaskOutcome:
        outcome = await self.executor.execute(task)
        self._finish(index, outcome)
        return outcome

    def _finish(self, index: int, outcome: TaskOutcome) -> None:
        self._write_log(index, outcome)
        if self.on_outcome:
            self.on_outcome(outcome)

    def cancel(self) -> None:
        """Abort outstanding tasks; they finish as cancelled outcomes."""
        self._cancelled = True
        for unit in self._units:
            unit.cancel()


def run_playbook(tasks: Sequence[Task], **kwargs) -> AggregateResult:
    """Blocking wrapper around ``Scheduler.run_all``."""
    return asyncio.run(Scheduler(**kwargs).run_all(tasks))
