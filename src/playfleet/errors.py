"""Exceptions raised by playfleet sessions and the scheduler."""


class PlayfleetError(Exception):
    """Base class for task-level failures."""


class ConnectError(PlayfleetError):
    """Host unreachable, port closed, host key or authentication rejected."""


class RunError(PlayfleetError):
    """Exec channel could not be created or its exit status was lost."""


class AggregationFault(RuntimeError):
    """The scheduler could not collect an outcome from one of its units."""
