"""Custom exception hierarchy for procwarden."""

from __future__ import annotations


class WardenError(Exception):
    """Base for all procwarden errors."""


class ConfigurationError(WardenError):
    """Configuration is missing or invalid. Fatal before any process starts."""

    def __init__(self, problems: list[str] | str) -> None:
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class ProcessStateError(WardenError):
    """Invalid managed-process state transition."""


class ProcessCrash(WardenError):
    """A managed process exited unexpectedly or could not be spawned."""

    def __init__(self, name: str, exit_code: int | None = None, detail: str = "") -> None:
        self.name = name
        self.exit_code = exit_code
        self.detail = detail
        if exit_code is not None:
            message = f"{name} exited with code {exit_code}"
        else:
            message = f"{name} failed to start"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class UnrecoverableFailure(WardenError):
    """A managed process exhausted its restart budget."""

    def __init__(self, name: str, restarts: int, window_s: float) -> None:
        self.name = name
        self.restarts = restarts
        self.window_s = window_s
        super().__init__(
            f"{name} restarted {restarts} times within {window_s:g}s; giving up"
        )


class ShutdownTimeout(WardenError):
    """A managed process outlived the shutdown grace period."""
