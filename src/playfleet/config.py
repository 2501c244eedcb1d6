"""Playbook loader for playfleet."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml


@dataclass(frozen=True)
class Credential:
    """Login material for one remote host. Never written to disk."""

    username: str
    password: str | None = field(default=None, repr=False)
    client_keys: tuple[Path, ...] = ()


@dataclass(frozen=True)
class Task:
    """One named command bound to one target host."""

    name: str
    command: str
    target: str | None = None
    credential: Credential | None = None
    port: int = 22
    timeout: float | None = None

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ValueError("Task must have a non-empty name")
        if not self.command or not self.command.strip():
            raise ValueError(f"Task '{self.name}' has no command to execute")
        if self.target and self.credential is None:
            raise ValueError(f"Task '{self.name}' targets {self.target} without credentials")

    @property
    def is_remote(self) -> bool:
        return bool(self.target)


@dataclass
class Defaults:
    """Default values that can be overridden per task."""

    user: str = "root"
    password: str | None = field(default=None, repr=False)
    ssh_key: Path | None = None
    port: int = 22
    timeout: float = 300
    connect_timeout: float = 30
    retries: int = 0
    known_hosts: Path = field(default_factory=lambda: Path("~/.ssh/known_hosts").expanduser())
    accept_any_host_key: bool = False


@dataclass
class Playbook:
    """An ordered set of tasks plus the settings used to run them."""

    tasks: list[Task]
    name: str = ""
    version: str = ""
    hosts: list[str] = field(default_factory=list)
    defaults: Defaults = field(default_factory=Defaults)
    log_dir: Path = field(default_factory=lambda: Path("logs"))
    source_path: Path | None = None  # Path to the original playbook file

    def select_hosts(self, wanted: list[str]) -> Playbook:
        """Return a copy keeping only remote tasks aimed at ``wanted`` hosts.

        Local tasks are always kept. Raises ``ValueError`` when none of the
        requested hosts appear in the playbook.
        """
        wanted_set = {host.strip() for host in wanted if host.strip()}
        if not wanted_set:
            return self

        known = set(self.hosts) | {task.target for task in self.tasks if task.target}
        if not wanted_set & known:
            raise ValueError(
                "No matching hosts found in the playbook for the provided targets"
            )

        tasks = [
            task for task in self.tasks
            if not task.is_remote or task.target in wanted_set
        ]
        hosts = [host for host in self.hosts if host in wanted_set]
        return replace(self, tasks=tasks, hosts=hosts)


def load_playbook(playbook_path: str | Path) -> Playbook:
    """Load and validate a playbook from a YAML file."""
    playbook_path = Path(playbook_path).expanduser().resolve()

    if not playbook_path.exists():
        raise FileNotFoundError(f"Playbook not found: {playbook_path}")

    try:
        with open(playbook_path, encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"{playbook_path}: invalid YAML: {e}") from e

    playbook = parse_playbook(raw)
    playbook.source_path = playbook_path
    return playbook


def parse_playbook(raw: Any) -> Playbook:
    """Parse raw YAML data into a Playbook object."""
    # Bare list of tasks, each carrying its own target and login
    if isinstance(raw, list):
        raw = {"tasks": raw}

    if not isinstance(raw, dict):
        raise ValueError(f"Playbook must be a mapping or a list of tasks, got {type(raw).__name__}")

    defaults = _parse_defaults(raw)
    log_dir = Path(raw.get("log_dir", "logs")).expanduser()

    hosts = raw.get("hosts") or []
    if not isinstance(hosts, list) or not all(isinstance(h, str) for h in hosts):
        raise ValueError("'hosts' must be a list of host names")

    tasks_raw = raw.get("tasks")
    if not tasks_raw:
        raise ValueError("No tasks found in the playbook")
    if not isinstance(tasks_raw, list):
        raise ValueError("'tasks' must be a list")

    tasks: list[Task] = []
    for task_raw in tasks_raw:
        tasks.extend(_parse_task(task_raw, hosts, defaults))

    return Playbook(
        tasks=tasks,
        name=str(raw.get("name", "")),
        version=str(raw.get("version", "")),
        hosts=list(hosts),
        defaults=defaults,
        log_dir=log_dir,
    )


def _parse_defaults(raw: dict[str, Any]) -> Defaults:
    """Parse the defaults section."""
    defaults_raw = raw.get("defaults") or {}
    if not isinstance(defaults_raw, dict):
        raise ValueError("'defaults' must be a mapping")

    ssh_key = defaults_raw.get("ssh_key")
    known_hosts = defaults_raw.get("known_hosts", "~/.ssh/known_hosts")
    return Defaults(
        user=defaults_raw.get("user", "root"),
        password=_read_password(defaults_raw, "defaults"),
        ssh_key=Path(ssh_key).expanduser() if ssh_key else None,
        port=_number(defaults_raw, "port", 22, int, "defaults"),
        timeout=_number(defaults_raw, "timeout", 300, float, "defaults"),
        connect_timeout=_number(defaults_raw, "connect_timeout", 30, float, "defaults"),
        retries=_number(defaults_raw, "retries", 0, int, "defaults"),
        known_hosts=Path(known_hosts).expanduser(),
        accept_any_host_key=bool(defaults_raw.get("accept_any_host_key", False)),
    )


def _number(section: dict[str, Any], key: str, default, cast, where: str):
    """Convert an optional numeric field; a null value means the default."""
    value = section.get(key)
    if value is None:
        return default
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise ValueError(f"{where}: '{key}' must be a number, got {value!r}") from None


def _read_password(section: dict[str, Any], where: str) -> str | None:
    """Return an inline password or one read from ``password_env``."""
    if section.get("password") is not None:
        return str(section["password"])

    env_name = section.get("password_env")
    if env_name is None:
        return None
    if env_name not in os.environ:
        raise ValueError(f"{where}: environment variable '{env_name}' is not set")
    return os.environ[env_name]


def _parse_task(
    task_raw: Any, hosts: list[str], defaults: Defaults
) -> list[Task]:
    """Parse one task entry, expanding it across hosts when it has no target."""
    if not isinstance(task_raw, dict):
        raise ValueError(f"Task entry must be a mapping, got {type(task_raw).__name__}")

    name = task_raw.get("name")
    if name is None or not str(name).strip():
        raise ValueError("Task must have a 'name' field")
    name = str(name).strip()

    command = task_raw.get("command")
    if not isinstance(command, str) or not command.strip():
        raise ValueError(f"Task '{name}' has no command to execute")

    # All these options inherit from defaults if not specified per-task
    user = task_raw.get("username", task_raw.get("user", defaults.user))
    password = _read_password(task_raw, f"Task '{name}'")
    if password is None:
        password = defaults.password
    where = f"Task '{name}'"
    port = _number(task_raw, "port", defaults.port, int, where)
    timeout = _number(task_raw, "timeout", defaults.timeout, float, where)

    ssh_key = defaults.ssh_key
    if "ssh_key" in task_raw:
        ssh_key = Path(task_raw["ssh_key"]).expanduser()

    credential = Credential(
        username=user,
        password=password,
        client_keys=(ssh_key,) if ssh_key else (),
    )

    target = task_raw.get("target")
    if target:
        return [Task(name, command, str(target), credential, port, timeout)]

    if not hosts:
        return [Task(name, command, timeout=timeout)]

    return [
        Task(f"{name} @ {host}", command, host, credential, port, timeout)
        for host in hosts
    ]


def find_playbooks(root: str | Path, keyword: str = "") -> list[Path]:
    """List YAML files under ``root`` whose path contains ``keyword``."""
    root = Path(root)
    found = [
        path
        for path in root.rglob("*")
        if path.suffix in (".yml", ".yaml") and path.is_file()
        and keyword in str(path.relative_to(root))
    ]
    return sorted(found)
