"""procwarden live server — supervisor + health endpoint running together."""

from __future__ import annotations

import asyncio
import logging
import signal

import uvicorn

from procwarden.events.bus import EventBus
from procwarden.health.app import create_app
from procwarden.processes.models import LaunchPlan
from procwarden.processes.supervisor import Supervisor

_logger = logging.getLogger(__name__)

_SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


async def _wait_for_server(server: uvicorn.Server, task: asyncio.Task, timeout: float = 10.0) -> None:
    """Return once uvicorn is listening, or once its task has ended."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not server.started and not task.done() and loop.time() < deadline:
        await asyncio.sleep(0.05)


async def main(plan: LaunchPlan) -> int:
    """Run until SIGTERM/SIGINT. Returns the process exit code."""
    event_bus = EventBus()
    supervisor = Supervisor(event_bus)
    app = create_app(supervisor, event_bus)

    loop = asyncio.get_running_loop()
    received: list[int] = []

    def _on_signal(signum, frame) -> None:
        received.append(signum)
        loop.call_soon_threadsafe(supervisor.request_shutdown)

    # uvicorn may install its own handlers while serving; it restores these
    # and re-delivers the signal when it stops, so ours still fire.
    for sig in _SHUTDOWN_SIGNALS:
        signal.signal(sig, _on_signal)

    config = uvicorn.Config(
        app,
        host=plan.health_host,
        port=plan.health_port,
        log_level="warning",
    )
    server = uvicorn.Server(config)

    # Health endpoint first: if the port can't be bound, nothing gets spawned
    server_task = asyncio.create_task(server.serve(), name="health-server")
    await _wait_for_server(server, server_task)
    if server_task.done():
        _logger.critical("Health endpoint failed to start on %s:%d", plan.health_host, plan.health_port)
        return 1
    _logger.info("Health endpoint listening on %s:%d", plan.health_host, plan.health_port)

    exit_code = 1
    try:
        await supervisor.start(plan)
        watch_task = asyncio.create_task(supervisor.watch(), name="supervisor-watch")
        done, _ = await asyncio.wait(
            {server_task, watch_task}, return_when=asyncio.FIRST_COMPLETED,
        )
        if watch_task in done:
            watch_task.result()
            exit_code = 0 if received else 1
        else:
            # uvicorn consumed the termination signal and stopped serving
            watch_task.cancel()
            await asyncio.gather(watch_task, return_exceptions=True)
            if received or server.should_exit:
                exit_code = 0
            else:
                _logger.error("Health endpoint stopped unexpectedly")
    except Exception as e:
        _logger.critical("Unrecoverable supervisor error: %s", e, exc_info=True)
        exit_code = 1
    finally:
        await supervisor.shutdown(signal.SIGTERM)
        server.should_exit = True
        await asyncio.gather(server_task, return_exceptions=True)

    return exit_code
