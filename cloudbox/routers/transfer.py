"""
Device transfer endpoints - export to / import from an external drive.
"""
import asyncio
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from ..transfer import (
    PackageNotFoundError,
    PreconditionError,
    TransferBusyError,
    TransferSupervisor,
    detect_transfer_on_device,
    scan_for_packages,
    transfer_supervisor,
)

router = APIRouter()


class PrepareRequest(BaseModel):
    mountpoint: str


class ImportRequest(BaseModel):
    mountpoint: str
    password: str


def get_supervisor() -> TransferSupervisor:
    return transfer_supervisor


def _started(run) -> dict:
    return {"started": True, "kind": run.kind, "mountpoint": run.mountpoint, "started_at": run.started_at}


@router.post("/prepare", status_code=202)
async def prepare_transfer(request: PrepareRequest, supervisor: TransferSupervisor = Depends(get_supervisor)):
    """Start writing a transfer package to the drive (runs in background).

    Poll /status for progress.
    """
    try:
        run = supervisor.start_export(request.mountpoint)
    except TransferBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except PreconditionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _started(run)


@router.post("/import", status_code=202)
async def import_transfer(request: ImportRequest, supervisor: TransferSupervisor = Depends(get_supervisor)):
    """Start importing the package on the drive with a new password for this host."""
    try:
        run = supervisor.start_import(request.mountpoint, request.password)
    except TransferBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except PackageNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PreconditionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _started(run)


@router.get("/status")
async def get_transfer_status(supervisor: TransferSupervisor = Depends(get_supervisor)):
    """Current (or last finished) transfer progress."""
    progress = supervisor.get_progress()
    progress["running"] = supervisor.is_running
    return progress


@router.get("/detect")
async def detect_transfer(mountpoint: Optional[str] = None):
    """Look for a transfer package.

    With `mountpoint`, check that one path; otherwise scan every mounted
    removable drive.
    """
    if mountpoint:
        manifest = await asyncio.to_thread(detect_transfer_on_device, mountpoint)
        return {
            "found": manifest is not None,
            "mountpoint": mountpoint,
            "manifest": manifest.model_dump(by_alias=True) if manifest else None,
        }

    packages = await asyncio.to_thread(scan_for_packages)
    return {
        "found": len(packages) > 0,
        "packages": [
            {**asdict(p), "manifest": p.manifest.model_dump(by_alias=True)}
            for p in packages
        ],
    }


@router.get("/events")
async def transfer_events_stream():
    """Server-Sent Events stream for transfer lifecycle.

    Events:
    - transfer_started: a run has begun
    - transfer_completed: a run finished successfully
    - transfer_error: a run failed
    """
    from ..services.events import transfer_events

    async def event_generator():
        # Send initial connection message
        yield "data: {\"type\": \"connected\"}\n\n"
        async for event in transfer_events.subscribe():
            yield event

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no"
        }
    )
