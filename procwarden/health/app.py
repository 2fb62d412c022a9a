"""Health endpoint — FastAPI app polled by the container HEALTHCHECK.

  GET /health                         — 200 healthy / 503 unhealthy with reasons
  GET /api/processes                  — process table
  GET /api/processes/{name}           — one row of the process table
  GET /api/processes/{name}/output    — recent stdout/stderr of one process
  GET /api/events                     — recent lifecycle events

Handlers only read state the supervisor has already cached; nothing here
probes a process or waits on process I/O.
"""

from __future__ import annotations

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from procwarden import __version__
from procwarden.events.bus import EventBus
from procwarden.processes.supervisor import Supervisor

router = APIRouter()

_MAX_OUTPUT_LINES = 200
_MAX_EVENTS = 500


def create_app(supervisor: Supervisor, event_bus: EventBus | None = None) -> FastAPI:
    """Build the health app around a supervisor instance."""
    app = FastAPI(title="procwarden", version=__version__)
    app.state.supervisor = supervisor
    app.state.event_bus = event_bus or supervisor.event_bus
    app.include_router(router)
    return app


def _supervisor(request: Request) -> Supervisor:
    return request.app.state.supervisor


@router.get("/health")
async def health(request: Request) -> JSONResponse:
    status = _supervisor(request).status()
    if status.healthy:
        return JSONResponse({"status": "healthy"}, status_code=200)
    return JSONResponse(
        {
            "status": "unhealthy",
            "failing": status.failing,
            "reasons": status.reasons,
        },
        status_code=503,
    )


@router.get("/api/processes")
async def list_processes(request: Request) -> list[dict]:
    return _supervisor(request).list_processes()


@router.get("/api/processes/{name}")
async def describe_process(request: Request, name: str) -> dict:
    row = _supervisor(request).describe_process(name)
    if row is None:
        raise HTTPException(status_code=404, detail=f"Unknown process '{name}'")
    return row


@router.get("/api/processes/{name}/output")
async def process_output(request: Request, name: str, lines: int = 50) -> dict:
    output = _supervisor(request).get_output(name, lines=max(1, min(lines, _MAX_OUTPUT_LINES)))
    if output is None:
        raise HTTPException(status_code=404, detail=f"Unknown process '{name}'")
    return output


@router.get("/api/events")
async def list_events(request: Request, topic: str = "*", limit: int = 50) -> list[dict]:
    bus: EventBus | None = request.app.state.event_bus
    if bus is None:
        return []
    events = bus.history(topic_filter=topic, limit=max(1, min(limit, _MAX_EVENTS)))
    return [e.model_dump(mode="json") for e in events]
