"""Tests for the process state machine."""

import pytest

from procwarden.exceptions import ProcessStateError
from procwarden.processes.models import ProcessState
from procwarden.processes.state_machine import ProcessStateMachine


def test_initial_state():
    sm = ProcessStateMachine("worker")
    assert sm.state == ProcessState.NOT_STARTED
    assert not sm.is_terminal


def test_crash_restart_cycle():
    sm = ProcessStateMachine("worker")
    sm.transition(ProcessState.STARTING)
    sm.transition(ProcessState.RUNNING)
    sm.transition(ProcessState.FAILED)
    sm.transition(ProcessState.RESTARTING)
    sm.transition(ProcessState.STARTING)
    sm.transition(ProcessState.RUNNING)
    assert sm.state == ProcessState.RUNNING


def test_spawn_failure_goes_straight_to_failed():
    sm = ProcessStateMachine("worker")
    sm.transition(ProcessState.STARTING)
    sm.transition(ProcessState.FAILED)
    assert sm.state == ProcessState.FAILED


def test_transition_returns_previous_state():
    sm = ProcessStateMachine("worker")
    assert sm.transition(ProcessState.STARTING) == ProcessState.NOT_STARTED


def test_stopped_is_terminal():
    sm = ProcessStateMachine("worker")
    sm.transition(ProcessState.STARTING)
    sm.transition(ProcessState.RUNNING)
    sm.transition(ProcessState.STOPPED)
    assert sm.is_terminal
    with pytest.raises(ProcessStateError):
        sm.transition(ProcessState.STARTING)


def test_invalid_transition_raises():
    sm = ProcessStateMachine("worker")
    with pytest.raises(ProcessStateError):
        sm.transition(ProcessState.RUNNING)  # Can't go NOT_STARTED -> RUNNING
    assert sm.state == ProcessState.NOT_STARTED


def test_running_cannot_restart_without_failing():
    sm = ProcessStateMachine("worker")
    sm.transition(ProcessState.STARTING)
    sm.transition(ProcessState.RUNNING)
    with pytest.raises(ProcessStateError):
        sm.transition(ProcessState.RESTARTING)


def test_listeners_notified():
    sm = ProcessStateMachine("primary")
    seen = []
    sm.on_transition(lambda name, old, new: seen.append((name, old, new)))

    sm.transition(ProcessState.STARTING)
    sm.transition(ProcessState.RUNNING)

    assert seen == [
        ("primary", ProcessState.NOT_STARTED, ProcessState.STARTING),
        ("primary", ProcessState.STARTING, ProcessState.RUNNING),
    ]


def test_listener_not_called_on_rejected_transition():
    sm = ProcessStateMachine("primary")
    seen = []
    sm.on_transition(lambda *args: seen.append(args))

    with pytest.raises(ProcessStateError):
        sm.transition(ProcessState.FAILED)
    assert seen == []
