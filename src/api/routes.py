# src/api/routes.py
import asyncio
import logging

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError as PayloadError

from api.deps import get_current_user, get_manager
from api.schemas import (
    CreateScanRequest,
    CreateScanResponse,
    ErrorResponse,
    HealthOut,
    ScanLogsPage,
    ScanOut,
    StreamCommand,
)
from engine.command_router import get_tool_info, list_tool_info
from engine.errors import AuthorizationError, ScanEngineError, TransportError, UnsupportedToolError
from engine.models import STATUS_QUEUED, utcnow
from engine.scan_manager import ScanManager, UserContext
from engine.streaming import ConnectionHub, StreamEvent, notifications_topic
from utils.timeutils import isoformat_z

router = APIRouter()

ERRORS = {
    400: {"model": ErrorResponse, "description": "Invalid target, flag or tool"},
    403: {"model": ErrorResponse, "description": "Quota exceeded or permission denied"},
    404: {"model": ErrorResponse, "description": "Scan not found"},
}


@router.post(
    "/scans",
    summary="Create a scan",
    response_description="Scan id of the queued scan",
    tags=["Scans"],
    response_model=CreateScanResponse,
    responses={**ERRORS, 503: {"model": ErrorResponse, "description": "Sandbox environment unavailable"}},
)
def create_scan(
    payload: CreateScanRequest,
    user: UserContext = Depends(get_current_user),
    manager: ScanManager = Depends(get_manager),
):
    """
    Validate the request, admit it against the caller's quotas and start the
    scan in a sandbox. Progress is streamed on topic scan:<scan_id>.
    """
    scan_id = manager.create_scan(
        user,
        target=payload.target,
        prompt=payload.prompt,
        tool_hint=payload.tool,
        flags=payload.flags,
        ai_model=payload.ai_model,
    )
    return {"success": True, "scan_id": scan_id, "status": STATUS_QUEUED}


@router.get(
    "/scans",
    summary="List scans",
    tags=["Scans"],
    response_model=list[ScanOut],
)
def list_scans(
    status: str = None,
    limit: int = 20,
    offset: int = 0,
    user: UserContext = Depends(get_current_user),
    manager: ScanManager = Depends(get_manager),
):
    """
    Query the caller's scan history, newest first, optionally by status.
    """
    return manager.list_scans(user, status=status, limit=limit, offset=offset)


@router.get(
    "/scans/{scan_id}",
    summary="Get scan status",
    tags=["Scans"],
    response_model=ScanOut,
    responses=ERRORS,
)
def get_scan(scan_id: str, user: UserContext = Depends(get_current_user),
             manager: ScanManager = Depends(get_manager)):
    return manager.get_scan(user, scan_id)


@router.post(
    "/scans/{scan_id}/cancel",
    summary="Cancel a queued or running scan",
    tags=["Scans"],
    response_model=ScanOut,
    responses={**ERRORS, 409: {"model": ErrorResponse, "description": "Scan already finished"}},
)
def cancel_scan(scan_id: str, user: UserContext = Depends(get_current_user),
                manager: ScanManager = Depends(get_manager)):
    return manager.cancel_scan(user, scan_id)


@router.get(
    "/scans/{scan_id}/logs",
    summary="Get scan logs",
    response_description="One page of log entries in timestamp order",
    tags=["Scans"],
    response_model=ScanLogsPage,
    responses=ERRORS,
)
def get_scan_logs(
    scan_id: str,
    level: str = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    user: UserContext = Depends(get_current_user),
    manager: ScanManager = Depends(get_manager),
):
    return manager.get_scan_logs(user, scan_id, level=level, limit=limit, offset=offset)


@router.delete(
    "/scans/{scan_id}/logs",
    summary="Delete the logs of a finished scan",
    tags=["Scans"],
    response_model=dict,
    responses=ERRORS,
)
def delete_scan_logs(scan_id: str, user: UserContext = Depends(get_current_user),
                     manager: ScanManager = Depends(get_manager)):
    result = manager.delete_scan_logs(user, scan_id)
    return {"success": True, **result}


@router.get("/usage", summary="Quota usage for the current month", tags=["Account"], response_model=dict)
def get_usage(user: UserContext = Depends(get_current_user), manager: ScanManager = Depends(get_manager)):
    return manager.get_usage(user)


@router.get("/tools", summary="List supported tools", tags=["Tools"], response_model=list[dict])
def list_tools():
    return list_tool_info()


@router.get("/tools/{tool}", summary="Describe one tool", tags=["Tools"], response_model=dict,
            responses={400: {"model": ErrorResponse}})
def get_tool(tool: str):
    info = get_tool_info(tool)
    if info is None:
        raise UnsupportedToolError(f"Tool '{tool}' is not supported", {"tool": tool})
    return info


@router.get("/containers/preflight", summary="Check the sandbox environment", tags=["Containers"],
            response_model=HealthOut)
def preflight(manager: ScanManager = Depends(get_manager)):
    return manager.executor.health_check()


@router.get("/containers/status/{scan_id}", summary="Sandbox status for a scan", tags=["Containers"],
            response_model=dict, responses=ERRORS)
def container_status(scan_id: str, user: UserContext = Depends(get_current_user),
                     manager: ScanManager = Depends(get_manager)):
    return manager.container_status(user, scan_id)


@router.post("/containers/reconcile", summary="Remove orphaned sandboxes now", tags=["Containers"],
             response_model=dict, responses={403: {"model": ErrorResponse}})
def reconcile(user: UserContext = Depends(get_current_user), manager: ScanManager = Depends(get_manager)):
    if user.role != "admin":
        raise AuthorizationError("Only admins can reconcile sandboxes", {"role": user.role})
    return {"removed": manager.executor.reconcile_orphans()}


@router.get("/health", tags=["Health"], response_model=HealthOut)
def health_check(manager: ScanManager = Depends(get_manager)):
    return manager.health()


# --- live progress ----------------------------------------------------------

def _handle_stream_command(hub: ConnectionHub, connection, message):
    try:
        command = StreamCommand(**message) if isinstance(message, dict) else None
    except PayloadError:
        command = None
    if command is None:
        connection.reply({"type": "error", "message": "Expected {\"action\": \"subscribe\"|\"unsubscribe\", \"topic\": ...}"})
        return
    try:
        if command.action == "subscribe":
            hub.subscribe(connection.id, command.topic)
            connection.reply({"type": "subscribed", "topic": command.topic})
        else:
            hub.unsubscribe(connection.id, command.topic)
            connection.reply({"type": "unsubscribed", "topic": command.topic})
    except (AuthorizationError, TransportError) as e:
        connection.reply({"type": "error", "topic": command.topic, "message": e.message})
    except ValueError as e:
        connection.reply({"type": "error", "topic": command.topic, "message": str(e)})


@router.websocket("/ws")
async def stream_events(websocket: WebSocket):
    hub: ConnectionHub = websocket.app.state.hub
    heartbeat = websocket.app.state.heartbeat_seconds
    try:
        user = websocket.app.state.identity.get_current_user(websocket.headers, websocket.query_params)
    except ScanEngineError:
        await websocket.close(code=1008)
        return

    await websocket.accept()
    connection = hub.connect(user.id)
    hub.subscribe(connection.id, notifications_topic(user.id))
    connection.reply({"type": "connected", "connection_id": connection.id, "topics": hub.subscriptions(connection.id)})

    async def writer():
        while not connection.closed:
            item = await run_in_threadpool(connection.next_event, heartbeat)
            if item is None:
                if connection.closed:
                    return
                await websocket.send_json({"type": "ping", "timestamp": isoformat_z(utcnow())})
                continue
            await websocket.send_json(item.to_dict() if isinstance(item, StreamEvent) else item)

    async def reader():
        while True:
            message = await websocket.receive_json()
            _handle_stream_command(hub, connection, message)

    tasks = [asyncio.ensure_future(writer()), asyncio.ensure_future(reader())]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logging.warning(f"[connection_id={connection.id}] Delivery failed, disconnecting: {exc}")
    finally:
        hub.disconnect(connection.id)
