"""Index lifecycle routes with SSE support."""

import json

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sse_starlette.sse import EventSourceResponse

from ...core.models import FileEvent
from ...service import IndexService
from ..deps import get_service
from ..schemas import (
    FileEventRequest,
    FileEventResponse,
    InitializeRequest,
    InitializeResponse,
    OperationResponse,
    StatusResponse,
)

router = APIRouter(prefix="/index")


@router.post("/initialize", response_model=InitializeResponse)
async def initialize(request: InitializeRequest, service: IndexService = Depends(get_service)):
    """Open the index of a project and start the initial build in the background."""
    return await service.initialize(request.project_path)


@router.get("/status", response_model=StatusResponse)
async def status(service: IndexService = Depends(get_service)):
    return await service.get_status()


@router.post("/clear", response_model=OperationResponse)
async def clear(service: IndexService = Depends(get_service)):
    return await service.clear_index()


@router.post("/rebuild", response_model=OperationResponse)
async def rebuild(background_tasks: BackgroundTasks, service: IndexService = Depends(get_service)):
    """Start a full build; joins the running one if there is one."""
    if not service.ready:
        return {"success": False, "error": "Index not initialized"}
    background_tasks.add_task(service.reindex)
    return {"success": True}


@router.post("/events", response_model=FileEventResponse)
async def file_event(request: FileEventRequest, service: IndexService = Depends(get_service)):
    """Apply a file watcher notification."""
    return await service.handle_file_event(
        FileEvent(event_type=request.event_type, path=request.path, content=request.content)
    )


@router.get("/stream")
async def stream(request: Request, service: IndexService = Depends(get_service)):
    """SSE endpoint for index events (ready, progress, completion, errors)."""
    subscription = service.events.subscribe()

    async def event_generator():
        try:
            async for event in subscription:
                if await request.is_disconnected():
                    break
                yield {"event": event.type, "data": json.dumps(event.data)}
        finally:
            service.events.unsubscribe(subscription)

    return EventSourceResponse(event_generator())
