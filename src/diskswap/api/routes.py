"""API route handlers for the ingress web UI."""

import asyncio
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from diskswap.api.models import (
    BackupsResponse,
    DevicesResponse,
    ErrorResponse,
    OkResponse,
    StartCloneRequest,
    StartCloneResponse,
)
from diskswap.errors import JobLockedError, PreflightError
from diskswap.models.job import Job
from diskswap.models.supervisor import ImageCacheInfo, SystemInfo
from diskswap.services.pipeline import PipelineOrchestrator, get_orchestrator

logger = logging.getLogger("diskswap.api")

router = APIRouter()


def _error(status_code: int, error: str, detail: str = None) -> JSONResponse:
    body = ErrorResponse(error=error, detail=detail)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


@router.get("/api/health")
async def get_health():
    return {"status": "ok"}


@router.get("/api/devices", response_model=DevicesResponse)
async def get_devices(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    """GET /api/devices - USB disks that are safe clone targets."""
    try:
        return DevicesResponse(devices=await orchestrator.list_devices())
    except Exception as e:
        logger.error(f"Error listing devices: {e}", exc_info=True)
        return _error(500, "Failed to list devices", str(e))


@router.get("/api/system-info", response_model=SystemInfo)
async def get_system_info(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    try:
        return await orchestrator.supervisor.get_system_info()
    except Exception as e:
        logger.error(f"Error fetching system info: {e}", exc_info=True)
        return _error(500, "Failed to fetch system info", str(e))


@router.get("/api/backups", response_model=BackupsResponse)
async def get_backups(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    try:
        return BackupsResponse(backups=await orchestrator.supervisor.list_backups())
    except Exception as e:
        logger.error(f"Error listing backups: {e}", exc_info=True)
        return _error(500, "Failed to list backups", str(e))


@router.get("/api/image-cache", response_model=ImageCacheInfo, response_model_exclude_none=True)
async def get_image_cache(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    """GET /api/image-cache - Whether the image for this host's board/version is cached."""
    try:
        info = await orchestrator.supervisor.get_system_info()
        return orchestrator.images.cache_info(info.board_slug, info.os_version)
    except Exception as e:
        logger.error(f"Error checking image cache: {e}", exc_info=True)
        return _error(500, "Failed to check image cache", str(e))


@router.delete("/api/image-cache", response_model=OkResponse)
async def delete_image_cache(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    try:
        info = await orchestrator.supervisor.get_system_info()
        orchestrator.images.discard(info.board_slug, info.os_version)
        return OkResponse()
    except Exception as e:
        logger.error(f"Error discarding image cache: {e}", exc_info=True)
        return _error(500, "Failed to discard image cache", str(e))


@router.post("/api/start-clone", response_model=StartCloneResponse)
async def post_start_clone(
    request: StartCloneRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """POST /api/start-clone - Validate and launch the clone pipeline.

    Returns:
        StartCloneResponse with the new job id as soon as the job exists

    Error responses:
        409 if a job is already in progress
        400 if pre-flight checks fail
    """
    selection = request.backup_selection()
    logger.info(f"Start clone requested: device={request.device}, backup={selection.type}")
    try:
        job = await orchestrator.run(
            request.device,
            backup_slug=selection.slug,
            skip_flash=request.skip_flash,
            skip_sandbox=request.skip_sandbox,
        )
    except JobLockedError as e:
        return _error(409, str(e))
    except PreflightError as e:
        logger.warning(f"Start clone rejected: {e}")
        return _error(400, str(e))
    return StartCloneResponse(job_id=job.id)


@router.post("/api/cancel-clone", response_model=OkResponse)
async def post_cancel_clone(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    orchestrator.cancel()
    return OkResponse()


@router.get("/api/jobs/current", response_model=Job)
async def get_current_job(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    job = orchestrator.job_store.get_current_job()
    if job is None:
        return _error(404, "No active job")
    return job


@router.delete("/api/jobs/current", response_model=OkResponse)
async def delete_current_job(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    """DELETE /api/jobs/current - Dismiss a finished job.

    An in-progress job cannot be dismissed; use /api/cancel-clone.
    """
    if orchestrator.job_store.is_locked():
        return _error(409, "Job is still in progress")
    orchestrator.job_store.dismiss_job()
    return OkResponse()


@router.post("/api/sandbox-done", response_model=OkResponse)
async def post_sandbox_done(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    orchestrator.signal_sandbox_done()
    return OkResponse()


@router.websocket("/ws/progress")
async def progress_socket(
    websocket: WebSocket,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Replay the current job, then stream live events until the client leaves."""
    await websocket.accept()
    store = orchestrator.job_store
    queue = store.subscribe()

    async def pump() -> None:
        for event in store.snapshot_events():
            await websocket.send_json(event.model_dump(mode="json"))
        while True:
            event = await queue.get()
            await websocket.send_json(event.model_dump(mode="json"))

    async def drain() -> None:
        # Clients never send anything; this only notices the disconnect
        while True:
            await websocket.receive_text()

    tasks = [asyncio.create_task(pump()), asyncio.create_task(drain())]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning(f"Progress socket closed: {exc}")
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        store.unsubscribe(queue)
