"""Shared test fixtures — short-lived real child processes and fast launch plans."""

from __future__ import annotations

import asyncio
import os
import socket
import sys
from pathlib import Path

import pytest
import pytest_asyncio

from procwarden.events.bus import EventBus
from procwarden.processes.models import LaunchPlan, ProcessSpec, RestartPolicy
from procwarden.processes.supervisor import Supervisor

# Child programs, run with ``python -c``
SLEEP = "import time; time.sleep(60)"
CRASH = "import sys; sys.exit(1)"
EXIT_CLEAN = "import sys; sys.exit(0)"
# Crashes on the first run (creates argv[1]), then stays up
CRASH_ONCE = (
    "import os, sys, time\n"
    "marker = sys.argv[1]\n"
    "if not os.path.exists(marker):\n"
    "    open(marker, 'w').close()\n"
    "    sys.exit(1)\n"
    "time.sleep(60)\n"
)

FAST_POLICY = RestartPolicy(
    immediate_retries=2,
    backoff_base=0.05,
    backoff_cap=0.2,
    max_restarts=3,
    restart_window=60.0,
    healthy_reset_after=60.0,
)


def python_spec(
    name: str,
    code: str,
    *args: str,
    required: bool = True,
    ready_url: str = "",
    policy: RestartPolicy = FAST_POLICY,
) -> ProcessSpec:
    return ProcessSpec(
        name=name,
        command=(sys.executable, "-c", code, *args),
        workdir=Path.cwd(),
        env=dict(os.environ),
        ready_url=ready_url,
        required=required,
        restart_policy=policy,
    )


def fast_plan(*specs: ProcessSpec, **overrides) -> LaunchPlan:
    values = dict(
        processes=tuple(specs),
        wait_for_ready=False,
        ready_timeout=5.0,
        grace_period=2.0,
        staleness_window=5.0,
        probe_interval=0.05,
        probe_timeout=0.5,
        data_dir=Path.cwd(),
        health_host="127.0.0.1",
        health_port=3000,
    )
    values.update(overrides)
    return LaunchPlan(**values)


async def wait_until(predicate, timeout: float = 10.0, interval: float = 0.05) -> None:
    """Poll ``predicate`` until it is truthy or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail(f"condition not met within {timeout}s")
        await asyncio.sleep(interval)


def pid_alive(pid: int) -> bool:
    """True if ``pid`` exists and is not a zombie."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except OSError:
        return True
    # State is the field after the parenthesised command name
    return stat.rsplit(")", 1)[1].split()[0] != "Z"


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def event_bus():
    return EventBus()


@pytest_asyncio.fixture
async def supervisor(event_bus):
    sup = Supervisor(event_bus)
    yield sup
    await sup.shutdown()
