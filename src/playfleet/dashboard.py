"""TUI Dashboard for playfleet."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from rich.markup import escape
from textual.app import App, ComposeResult
from textual.message import Message
from textual.reactive import reactive
from textual.widgets import Footer, Header, Label, RichLog, Static
from textual.worker import Worker, WorkerState

from .config import Playbook, Task
from .executor import TaskOutcome, TaskStatus
from .scheduler import AggregateResult, Scheduler

# (on_output, on_status, on_outcome) -> Scheduler
SchedulerFactory = Callable[..., Scheduler]


STATUS_ICONS = {
    TaskStatus.PENDING: ("", "dim"),
    TaskStatus.CONNECTING: ("", "yellow"),
    TaskStatus.RUNNING: ("", "yellow"),
    TaskStatus.SUCCEEDED: ("", "green"),
    TaskStatus.FAILED: ("", "red"),
}


class TaskPanel(Static):
    """A panel displaying output for a single task."""

    status: reactive[TaskStatus] = reactive(TaskStatus.PENDING)

    def __init__(self, slot: int, task: Task, **kwargs) -> None:
        super().__init__(**kwargs)
        self.slot = slot
        self.task_name = task.name
        self.where = f"{task.credential.username}@{task.target}:{task.port}" if task.is_remote else "local"

    def compose(self) -> ComposeResult:
        yield Label(self._get_header(), id=f"header-{self.slot}")
        yield RichLog(id=f"log-{self.slot}", markup=True, wrap=True)

    def _get_header(self) -> str:
        icon, color = STATUS_ICONS[self.status]
        return f"[{color}]{icon} [bold]{escape(self.task_name)}[/bold] {self.where}[/]"

    def watch_status(self, status: TaskStatus) -> None:
        """Update header when status changes."""
        if not self.is_mounted:
            return
        header = self.query_one(f"#header-{self.slot}", Label)
        header.update(self._get_header())

    def append_output(self, line: str) -> None:
        """Append a line of output to this panel."""
        log = self.query_one(f"#log-{self.slot}", RichLog)
        log.write(escape(line))

    def show_outcome(self, outcome: TaskOutcome) -> None:
        log = self.query_one(f"#log-{self.slot}", RichLog)
        if outcome.succeeded:
            log.write("[green]Task completed[/green]")
        else:
            log.write(f"[bold red]ERROR: {escape(outcome.error)}[/bold red]")


class StatusBar(Static):
    """Bottom status bar showing overall progress."""

    completed: reactive[int] = reactive(0)
    failed: reactive[int] = reactive(0)
    total: reactive[int] = reactive(0)
    running: reactive[bool] = reactive(True)

    def render(self) -> str:
        status = "Running..." if self.running else "Complete"
        return (
            f"Progress: {self.completed}/{self.total} tasks complete, "
            f"{self.failed} failed | {status} | Press 'q' to quit"
        )


@dataclass
class TaskOutput(Message):
    """Message for task output."""
    task_name: str
    line: str


@dataclass
class TaskStatusChange(Message):
    """Message for task status change."""
    task_name: str
    status: TaskStatus


@dataclass
class TaskFinished(Message):
    """Message for a task's final outcome."""
    outcome: TaskOutcome


class Dashboard(App):
    """Main TUI Dashboard application."""

    CSS = """
    Screen {
        layout: grid;
        grid-size: 2;
        grid-gutter: 1;
    }

    TaskPanel {
        border: solid $primary;
        min-height: 10;
    }

    TaskPanel RichLog {
        height: 1fr;
    }

    StatusBar {
        dock: bottom;
        height: 1;
        background: $surface;
        padding: 0 1;
    }
    """

    BINDINGS = [("q", "quit", "Cancel and quit")]

    def __init__(self, playbook: Playbook, scheduler_factory: SchedulerFactory, **kwargs) -> None:
        super().__init__(**kwargs)
        self.playbook = playbook
        self.scheduler_factory = scheduler_factory
        self.panels: dict[str, TaskPanel] = {}
        self.scheduler: Scheduler | None = None
        self.run_result: AggregateResult | None = None
        self._worker: Worker | None = None

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)

        for i, task in enumerate(self.playbook.tasks):
            panel = TaskPanel(i, task, id=f"panel-{i}")
            self.panels[task.name] = panel
            yield panel

        yield StatusBar(id="status-bar")
        yield Footer()

    def on_mount(self) -> None:
        """Start execution when the app mounts."""
        if self.playbook.name:
            self.title = self.playbook.name
        status_bar = self.query_one("#status-bar", StatusBar)
        status_bar.total = len(self.playbook.tasks)

        self.scheduler = self.scheduler_factory(
            on_output=self._on_output,
            on_status=self._on_status,
            on_outcome=self._on_outcome,
        )
        self._worker = self.run_worker(self._run_execution(), exclusive=True)

    async def _run_execution(self) -> None:
        """Run the scheduler and keep its result."""
        self.run_result = await self.scheduler.run_all(self.playbook.tasks)

    def on_worker_state_changed(self, event: Worker.StateChanged) -> None:
        """Handle worker completion."""
        if event.worker == self._worker and event.state == WorkerState.SUCCESS:
            status_bar = self.query_one("#status-bar", StatusBar)
            status_bar.running = False

    def _on_output(self, task_name: str, line: str) -> None:
        self.post_message(TaskOutput(task_name, line))

    def _on_status(self, task_name: str, status: TaskStatus) -> None:
        self.post_message(TaskStatusChange(task_name, status))

    def _on_outcome(self, outcome: TaskOutcome) -> None:
        self.post_message(TaskFinished(outcome))

    def on_task_output(self, message: TaskOutput) -> None:
        if message.task_name in self.panels:
            self.panels[message.task_name].append_output(message.line)

    def on_task_status_change(self, message: TaskStatusChange) -> None:
        if message.task_name in self.panels:
            self.panels[message.task_name].status = message.status

    def on_task_finished(self, message: TaskFinished) -> None:
        outcome = message.outcome
        if outcome.task_name in self.panels:
            panel = self.panels[outcome.task_name]
            panel.status = outcome.status
            panel.show_outcome(outcome)

        status_bar = self.query_one("#status-bar", StatusBar)
        status_bar.completed += 1
        if not outcome.succeeded:
            status_bar.failed += 1

    async def action_quit(self) -> None:
        """Cancel outstanding tasks and quit."""
        if self._worker and self._worker.is_running:
            self._worker.cancel()
        self.exit()
