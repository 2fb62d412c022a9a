"""Process state machine — enforces valid lifecycle transitions."""

from __future__ import annotations

from typing import Callable

from procwarden.exceptions import ProcessStateError
from procwarden.processes.models import ProcessState

TransitionCallback = Callable[[str, ProcessState, ProcessState], None]

# Valid state transitions
VALID_TRANSITIONS: dict[ProcessState, set[ProcessState]] = {
    ProcessState.NOT_STARTED: {ProcessState.STARTING, ProcessState.STOPPED},
    ProcessState.STARTING: {
        ProcessState.RUNNING,
        ProcessState.FAILED,
        ProcessState.STOPPED,
    },
    ProcessState.RUNNING: {ProcessState.FAILED, ProcessState.STOPPED},
    ProcessState.FAILED: {ProcessState.RESTARTING, ProcessState.STOPPED},
    ProcessState.RESTARTING: {ProcessState.STARTING, ProcessState.STOPPED},
    ProcessState.STOPPED: set(),  # terminal
}


class ProcessStateMachine:
    """Manages the lifecycle state of a single managed process.

    Enforces that only valid transitions occur and notifies listeners
    on every state change. Callers serialize access; the supervisor
    holds its state lock around every transition.
    """

    def __init__(self, name: str):
        self.name = name
        self._state = ProcessState.NOT_STARTED
        self._listeners: list[TransitionCallback] = []

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return not VALID_TRANSITIONS[self._state]

    def transition(self, target: ProcessState) -> ProcessState:
        """Move to ``target`` and return the previous state."""
        valid = VALID_TRANSITIONS.get(self._state, set())
        if target not in valid:
            raise ProcessStateError(
                f"Cannot transition process {self.name} "
                f"from {self._state.value} to {target.value}"
            )
        old = self._state
        self._state = target
        for listener in self._listeners:
            listener(self.name, old, target)
        return old

    def on_transition(self, callback: TransitionCallback) -> None:
        self._listeners.append(callback)
