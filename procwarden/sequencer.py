"""Startup Sequencer — turns settings into a validated LaunchPlan.

Runs once at launch, before anything is spawned. Every problem it finds
(missing executable, missing or read-only data directory, bad start
order, bad readiness target) is collected and raised together as one
ConfigurationError, so a broken container fails at boot instead of
crash-looping.

The sequencer is pure: it only reads the filesystem and the environment
mapping it is given, and the same inputs always produce the same plan.
"""

from __future__ import annotations

import os
import shlex
import shutil
from collections.abc import Mapping
from pathlib import Path

from procwarden.config import WardenSettings
from procwarden.exceptions import ConfigurationError
from procwarden.processes.models import LaunchPlan, ProcessSpec, RestartPolicy
from procwarden.processes.probes import probe_from_url

PRIMARY = "primary"
WORKER = "worker"
KNOWN_PROCESSES = (PRIMARY, WORKER)
DEFAULT_ORDER = (WORKER, PRIMARY)


def build_plan(
    settings: WardenSettings,
    environ: Mapping[str, str] | None = None,
) -> LaunchPlan:
    """Resolve and validate the launch plan. Raises ConfigurationError."""
    env = dict(os.environ if environ is None else environ)
    problems: list[str] = []

    order = _parse_order(settings.start_order, problems)
    _check_data_dir(settings.data_dir, problems)
    workdir = _check_workdir(settings.app_dir, problems)
    if settings.backoff_cap < settings.backoff_base:
        problems.append(
            f"BACKOFF_CAP ({settings.backoff_cap:g}) is smaller than "
            f"BACKOFF_BASE ({settings.backoff_base:g})"
        )
    if settings.probe_interval >= settings.staleness_window:
        problems.append(
            f"PROBE_INTERVAL ({settings.probe_interval:g}s) must be shorter than "
            f"STALENESS_WINDOW ({settings.staleness_window:g}s), or readiness "
            "goes stale between probes"
        )

    policy = RestartPolicy(
        immediate_retries=settings.immediate_retries,
        backoff_base=settings.backoff_base,
        backoff_cap=settings.backoff_cap,
        max_restarts=settings.max_restarts,
        restart_window=settings.restart_window,
        healthy_reset_after=settings.healthy_reset_after,
    )

    shared_env = {**env, "DATA_DIR": str(settings.data_dir)}
    primary_ready = settings.primary_ready_url
    if primary_ready is None:
        primary_ready = f"tcp://127.0.0.1:{settings.primary_port}"

    definitions = {
        PRIMARY: (
            settings.primary_command,
            {**shared_env, "PORT": str(settings.primary_port)},
            primary_ready,
            True,
        ),
        WORKER: (
            settings.worker_command,
            shared_env,
            settings.worker_ready_url,
            settings.worker_required,
        ),
    }

    search_path = env.get("PATH", os.defpath)
    specs: list[ProcessSpec] = []
    for name in order:
        command_line, proc_env, ready_url, required = definitions[name]
        command = _resolve_command(name, command_line, workdir, search_path, problems)
        try:
            probe_from_url(ready_url, timeout=settings.probe_timeout)
        except ValueError as e:
            problems.append(f"{name}: {e}")
        if command is None:
            continue
        specs.append(ProcessSpec(
            name=name,
            command=command,
            workdir=workdir,
            env=proc_env,
            ready_url=ready_url,
            required=required,
            restart_policy=policy,
        ))

    if problems:
        raise ConfigurationError(problems)

    return LaunchPlan(
        processes=tuple(specs),
        wait_for_ready=settings.wait_for_ready,
        ready_timeout=settings.ready_timeout,
        grace_period=settings.grace_period,
        staleness_window=settings.staleness_window,
        probe_interval=settings.probe_interval,
        probe_timeout=settings.probe_timeout,
        data_dir=settings.data_dir,
        health_host=settings.health_host,
        health_port=settings.service_port,
    )


def _parse_order(raw: str, problems: list[str]) -> list[str]:
    names = [n.strip().lower() for n in raw.split(",") if n.strip()]
    if sorted(names) == sorted(KNOWN_PROCESSES):
        return names

    unknown = [n for n in names if n not in KNOWN_PROCESSES]
    if unknown:
        problems.append(
            f"START_ORDER names unknown process(es): {', '.join(unknown)} "
            f"(known: {', '.join(KNOWN_PROCESSES)})"
        )
    else:
        problems.append(
            f"START_ORDER must name each of {', '.join(KNOWN_PROCESSES)} exactly once, got '{raw}'"
        )
    # Fall back so the commands still get validated
    return list(DEFAULT_ORDER)


def _check_data_dir(path: Path, problems: list[str]) -> None:
    if not path.exists():
        problems.append(f"DATA_DIR '{path}' does not exist")
    elif not path.is_dir():
        problems.append(f"DATA_DIR '{path}' is not a directory")
    elif not os.access(path, os.W_OK | os.X_OK):
        problems.append(f"DATA_DIR '{path}' is not writable")


def _check_workdir(path: Path, problems: list[str]) -> Path:
    if not path.is_dir():
        problems.append(f"APP_DIR '{path}' is not a directory")
        return path
    return path.resolve()


def _resolve_command(
    name: str,
    command_line: str,
    workdir: Path,
    search_path: str,
    problems: list[str],
) -> tuple[str, ...] | None:
    """Split a command line and resolve its executable to an absolute path."""
    try:
        argv = shlex.split(command_line)
    except ValueError as e:
        problems.append(f"{name}: cannot parse command '{command_line}': {e}")
        return None
    if not argv:
        problems.append(f"{name}: command is empty")
        return None

    executable = argv[0]
    if os.sep in executable:
        candidate = Path(executable)
        if not candidate.is_absolute():
            candidate = workdir / candidate
        if not candidate.is_file() or not os.access(candidate, os.X_OK):
            problems.append(f"{name}: executable '{executable}' not found or not executable")
            return None
        resolved = str(candidate)
    else:
        found = shutil.which(executable, path=search_path)
        if found is None:
            problems.append(f"{name}: executable '{executable}' not found on PATH")
            return None
        resolved = found

    return (resolved, *argv[1:])
