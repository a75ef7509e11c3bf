# src/api/schemas.py
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional, Literal


class CreateScanRequest(BaseModel):
    target: str = Field(..., description="Host, IP address or http(s) URL to scan")
    prompt: str = Field("", description="What the user wants to learn about the target")
    tool: Optional[str] = Field(None, description="Explicit tool choice; skips the recommendation step")
    flags: Optional[List[str]] = Field(None, description="Tool flags, each checked against the tool's allow-list")
    ai_model: Optional[str] = Field(None, description="Model id forwarded to the recommendation oracle")


class CreateScanResponse(BaseModel):
    success: bool = True
    scan_id: str
    status: str


class ScanOut(BaseModel):
    id: str
    user_id: str
    target: str
    status: str
    tool: Optional[str] = None
    command_executed: List[str] = []
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    created_at: Optional[str] = None
    metadata: Dict[str, Any] = {}
    container: Optional[Dict[str, Any]] = None


class ScanLogOut(BaseModel):
    id: int
    scan_id: str
    sequence: int
    timestamp: str
    level: Literal['info', 'warning', 'error', 'debug']
    message: str
    raw_output: Optional[str] = None


class ScanLogsPage(BaseModel):
    entries: List[ScanLogOut]
    total: int
    offset: int
    limit: int
    has_more: bool


class HealthOut(BaseModel):
    docker_available: bool
    image_available: bool
    active_containers: int
    streaming: Optional[Dict[str, int]] = None


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    code: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    trace_id: Optional[str] = None


class StreamCommand(BaseModel):
    action: Literal['subscribe', 'unsubscribe']
    topic: str
