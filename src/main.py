# src/main.py

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.deps import HeaderIdentityProvider
from api.routes import router
from engine.config import settings
from engine.errors import ScanEngineError
from engine.sandbox import SandboxExecutor
from engine.scan_manager import ScanManager
from engine.store import ScanStore
from engine.streaming import ConnectionHub
from tools.docker_runtime import DockerRuntime
from tools.process_runtime import LocalProcessRuntime
import logging
import uuid


# Configure structured logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s %(levelname)s %(name)s %(message)s'
)


def build_runtime(name: str = None):
    name = name or settings.SANDBOX_RUNTIME
    if name == "docker":
        return DockerRuntime()
    if name == "process":
        logging.warning("Using the local process runtime: scans run unisolated on this host")
        return LocalProcessRuntime()
    raise ValueError(f"Unknown SANDBOX_RUNTIME: {name}")


def create_app(manager: ScanManager = None, identity=None, heartbeat_seconds: float = None,
               background: bool = True) -> FastAPI:
    """
    Wire the engine components onto app.state. Tests pass their own manager
    (fake runtime, in-memory database) and disable background threads.
    """
    if manager is None:
        manager = ScanManager(ScanStore(), SandboxExecutor(build_runtime()), ConnectionHub())

    app = FastAPI(title="Scan Orchestration Engine")
    app.state.manager = manager
    app.state.hub = manager.hub
    app.state.identity = identity or HeaderIdentityProvider()
    app.state.heartbeat_seconds = heartbeat_seconds or settings.HEARTBEAT_SECONDS

    @app.middleware("http")
    async def add_trace_id_and_log(request: Request, call_next):
        trace_id = str(uuid.uuid4())
        request.state.trace_id = trace_id
        logging.info(f"[trace_id={trace_id}] Incoming request: {request.method} {request.url}")
        try:
            response = await call_next(request)
        except Exception as exc:
            logging.error(f"[trace_id={trace_id}] Unhandled error: {exc}")
            return JSONResponse(
                status_code=500,
                content={"success": False, "error": "Internal server error", "trace_id": trace_id}
            )
        response.headers["X-Trace-Id"] = trace_id
        return response

    @app.exception_handler(ScanEngineError)
    async def scan_engine_exception_handler(request: Request, exc: ScanEngineError):
        trace_id = getattr(request.state, "trace_id", str(uuid.uuid4()))
        log = logging.error if exc.status_code >= 500 else logging.info
        log(f"[trace_id={trace_id}] {exc.code}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "error": exc.message,
                "code": exc.code,
                "details": exc.details,
                "trace_id": trace_id,
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        trace_id = getattr(request.state, "trace_id", str(uuid.uuid4()))
        logging.error(f"[trace_id={trace_id}] Exception: {exc}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": str(exc), "trace_id": trace_id}
        )

    app.include_router(router)

    @app.on_event("startup")
    def on_startup():
        if background:
            manager.recover_interrupted()
            manager.executor.start_reconciler()
        logging.info(f"Scan engine API started. runtime={manager.executor.runtime.name}")

    @app.on_event("shutdown")
    def on_shutdown():
        manager.shutdown(timeout=settings.TIMEOUT_GRACE_SECONDS)
        manager.hub.close()
        logging.info("Scan engine API stopped.")

    return app


app = create_app()
