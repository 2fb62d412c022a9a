"""Process lifecycle records and the launch plan handed to the supervisor."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from procwarden.exceptions import WardenError
    from procwarden.processes.state_machine import ProcessStateMachine


class ProcessState(str, Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"
    RESTARTING = "restarting"
    STOPPED = "stopped"


class RestartPolicy(BaseModel):
    """How a crashed process is brought back, and when to give up."""

    immediate_retries: int = 2
    backoff_base: float = 1.0
    backoff_cap: float = 60.0
    max_restarts: int = 5
    restart_window: float = 300.0
    healthy_reset_after: float = 60.0

    model_config = {"frozen": True}

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before restart number ``attempt`` (0-based) in the window."""
        if attempt < self.immediate_retries:
            return 0.0
        exponent = attempt - self.immediate_retries
        # 2**exponent overflows float for absurd attempt counts
        if exponent > 62:
            return self.backoff_cap
        return min(self.backoff_cap, self.backoff_base * (2 ** exponent))


class ProcessSpec(BaseModel):
    """A fully-resolved definition of one managed process."""

    name: str
    command: tuple[str, ...]
    workdir: Path
    env: dict[str, str] = Field(default_factory=dict)
    ready_url: str = ""  # "" means the process counts as ready while alive
    required: bool = True
    restart_policy: RestartPolicy = Field(default_factory=RestartPolicy)

    model_config = {"frozen": True}


class LaunchPlan(BaseModel):
    """Everything the supervisor needs, resolved once at launch."""

    processes: tuple[ProcessSpec, ...]
    wait_for_ready: bool = False
    ready_timeout: float = 60.0
    grace_period: float = 10.0
    staleness_window: float = 30.0
    probe_interval: float = 5.0
    probe_timeout: float = 2.0
    data_dir: Path
    health_host: str = "0.0.0.0"
    health_port: int = 3000

    model_config = {"frozen": True}


class CompositeHealth(BaseModel):
    """Aggregated liveness of all required processes. Derived, never stored."""

    healthy: bool
    failing: list[str] = Field(default_factory=list)
    reasons: dict[str, str] = Field(default_factory=dict)


@dataclass
class ManagedProcess:
    """Mutable runtime record of a managed process. Owned by the supervisor."""

    spec: ProcessSpec
    machine: ProcessStateMachine
    os_pid: int | None = None
    exit_code: int | None = None
    started_at: float | None = None  # wall clock
    stopped_at: float | None = None  # wall clock
    last_ready_at: float | None = None  # monotonic
    healthy_since: float | None = None  # monotonic
    probe_ok: bool = False
    restart_times: deque[float] = field(default_factory=deque)
    total_restarts: int = 0
    failure: WardenError | None = None
    stdout_lines: deque[str] = field(default_factory=lambda: deque(maxlen=200))
    stderr_lines: deque[str] = field(default_factory=lambda: deque(maxlen=200))

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def state(self) -> ProcessState:
        return self.machine.state
