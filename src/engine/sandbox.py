# src/engine/sandbox.py
"""
SandboxExecutor: the single entry point that creates, watches and tears down
scan sandboxes.

- pre-flight health check before anything is allocated
- at most one sandbox per scan id, and a global ceiling across all scans
- a watchdog kills the sandbox when the wall-clock timeout expires
- captured output is capped; past the cap the run is marked truncated
- teardown runs on every exit path; a reconciler removes orphaned sandboxes
"""
import logging
import queue
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from engine.config import settings
from engine.errors import EnvironmentUnavailableError, ExecutionError, SandboxBusyError
from engine.models import utcnow
from tools.base import ResourceLimits, SandboxProcess, SandboxRuntime
from utils.timeutils import isoformat_z

_DONE = object()


@dataclass(frozen=True)
class ScanCommand:
    scan_id: str
    argv: tuple
    image: str


@dataclass(frozen=True)
class OutputChunk:
    sequence: int
    stream: str
    text: str
    timestamp: datetime


@dataclass(frozen=True)
class ExecutionResult:
    exit_code: Optional[int]
    duration_ms: int
    truncated: bool
    timed_out: bool = False
    cancelled: bool = False
    output_bytes: int = 0
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled and self.error is None

    def to_dict(self) -> dict:
        return {
            "exit_code": self.exit_code,
            "duration_ms": self.duration_ms,
            "truncated": self.truncated,
            "timed_out": self.timed_out,
            "cancelled": self.cancelled,
            "output_bytes": self.output_bytes,
            "error": self.error,
        }


@dataclass(frozen=True)
class ContainerHandle:
    scan_id: str
    container_id: str
    started_at: datetime
    resource_limits: ResourceLimits

    def to_dict(self) -> dict:
        return {
            "scan_id": self.scan_id,
            "container_id": self.container_id,
            "started_at": isoformat_z(self.started_at),
            "resource_limits": self.resource_limits.to_dict(),
        }


class SandboxRun:
    """
    Live handle for one launched sandbox. `chunks()` yields output in arrival
    order; `wait()` blocks until teardown finished and returns the result.
    """

    def __init__(self, executor: "SandboxExecutor", handle: ContainerHandle,
                 process: SandboxProcess, timeout_seconds: float):
        self.executor = executor
        self.handle = handle
        self.process = process
        self.timeout_seconds = timeout_seconds
        self.result: Optional[ExecutionResult] = None
        self._chunks = queue.Queue()
        self._done = threading.Event()
        self._accepting = True
        self._timed_out = False
        self._cancelled = False
        self._started = time.monotonic()
        self._last_ts = None
        self._watchdog = threading.Timer(timeout_seconds, self._on_timeout)
        self._watchdog.daemon = True
        self._pump = threading.Thread(target=self._run, name=f"sandbox-{handle.scan_id}", daemon=True)

    @property
    def scan_id(self) -> str:
        return self.handle.scan_id

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def _begin(self):
        self._watchdog.start()
        self._pump.start()

    def _timestamp(self) -> datetime:
        now = self.executor.clock()
        if self._last_ts is not None and now < self._last_ts:
            now = self._last_ts
        self._last_ts = now
        return now

    def _on_timeout(self):
        if self._done.is_set():
            return
        self._timed_out = True
        logging.warning(f"[scan_id={self.scan_id}] Timeout after {self.timeout_seconds}s, killing sandbox")
        self.process.kill()

    def cancel(self):
        if self._done.is_set():
            return
        self._cancelled = True
        self._accepting = False
        logging.info(f"[scan_id={self.scan_id}] Cancelling sandbox {self.handle.container_id}")
        self.process.kill()

    def _run(self):
        captured = 0
        sequence = 0
        truncated = False
        error = None
        exit_code = None
        limit = self.executor.max_output_bytes
        try:
            for stream, data in self.process.output():
                if not self._accepting:
                    continue
                remaining = limit - captured
                if remaining <= 0:
                    truncated = True
                    continue
                if len(data) > remaining:
                    data = data[:remaining]
                    truncated = True
                captured += len(data)
                sequence += 1
                self._chunks.put(OutputChunk(
                    sequence=sequence,
                    stream=stream,
                    text=data.decode("utf-8", errors="replace"),
                    timestamp=self._timestamp(),
                ))
            exit_code = self.process.wait(timeout=self.executor.grace_seconds)
            if exit_code is None:
                self.process.kill()
                exit_code = self.process.wait(timeout=self.executor.grace_seconds)
        except Exception as e:
            error = str(e)
            logging.error(f"[scan_id={self.scan_id}] Sandbox execution error: {e}")
            self.process.kill()
        finally:
            self._watchdog.cancel()
            try:
                self.process.remove()
            except Exception as e:
                logging.error(f"[scan_id={self.scan_id}] Sandbox teardown failed: {e}")
            self.executor._release(self.scan_id)
            self.result = ExecutionResult(
                exit_code=exit_code,
                duration_ms=int((time.monotonic() - self._started) * 1000),
                truncated=truncated,
                timed_out=self._timed_out,
                cancelled=self._cancelled,
                output_bytes=captured,
                error=error,
            )
            self._chunks.put(_DONE)
            self._done.set()
            logging.info(f"[scan_id={self.scan_id}] Sandbox finished. result={self.result.to_dict()}")

    def chunks(self) -> Iterator[OutputChunk]:
        while True:
            item = self._chunks.get()
            if item is _DONE:
                return
            yield item

    def wait(self, timeout: float = None) -> Optional[ExecutionResult]:
        self._done.wait(timeout)
        return self.result


class SandboxExecutor:
    def __init__(self, runtime: SandboxRuntime, max_concurrent: int = None,
                 max_output_bytes: int = None, acquire_timeout: float = None,
                 grace_seconds: float = None, limits: ResourceLimits = None,
                 image: str = None, clock=utcnow):
        self.runtime = runtime
        self.max_concurrent = max_concurrent or settings.MAX_GLOBAL_SANDBOXES
        self.max_output_bytes = max_output_bytes or settings.MAX_OUTPUT_BYTES
        self.acquire_timeout = settings.SANDBOX_ACQUIRE_TIMEOUT if acquire_timeout is None else acquire_timeout
        self.grace_seconds = settings.TIMEOUT_GRACE_SECONDS if grace_seconds is None else grace_seconds
        self.limits = limits or ResourceLimits(
            cpus=settings.SANDBOX_CPUS,
            memory_mb=settings.SANDBOX_MEMORY_MB,
            pids_limit=settings.SANDBOX_PIDS_LIMIT,
            network_mode=settings.SANDBOX_NETWORK,
        )
        self.image = image or settings.SCANNER_IMAGE
        self.clock = clock
        self._slots = threading.BoundedSemaphore(self.max_concurrent)
        self._active: Dict[str, Optional[SandboxRun]] = {}
        self._lock = threading.Lock()
        self._reconciler = None
        self._stop_reconciler = threading.Event()

    @property
    def active_count(self) -> int:
        with self._lock:
            return sum(1 for run in self._active.values() if run is not None)

    def health_check(self, image: str = None) -> dict:
        try:
            status = self.runtime.health(image or self.image)
        except Exception as e:
            logging.error(f"Sandbox health check failed: {e}")
            status = {"docker_available": False, "image_available": False}
        return {
            "docker_available": bool(status.get("docker_available")),
            "image_available": bool(status.get("image_available")),
            "active_containers": self.active_count,
        }

    def preflight(self, image: str = None):
        status = self.health_check(image)
        if not status["docker_available"]:
            raise EnvironmentUnavailableError("Container runtime is not reachable", status)
        if not status["image_available"]:
            raise EnvironmentUnavailableError(f"Scanner image {image or self.image} is not available", status)
        return status

    def launch(self, command: ScanCommand, timeout_seconds: float) -> SandboxRun:
        self.preflight(command.image)

        with self._lock:
            if command.scan_id in self._active:
                raise SandboxBusyError(f"Scan {command.scan_id} already has an active sandbox",
                                       {"scan_id": command.scan_id})
            self._active[command.scan_id] = None

        if not self._slots.acquire(timeout=self.acquire_timeout):
            with self._lock:
                self._active.pop(command.scan_id, None)
            raise EnvironmentUnavailableError(
                "Sandbox capacity exhausted on this host",
                {"max_concurrent": self.max_concurrent},
            )

        try:
            process = self.runtime.start(command.scan_id, list(command.argv), command.image, self.limits)
        except Exception as e:
            self._release(command.scan_id)
            raise ExecutionError(f"Failed to start sandbox: {e}", {"scan_id": command.scan_id}) from e

        handle = ContainerHandle(
            scan_id=command.scan_id,
            container_id=process.container_id,
            started_at=self.clock(),
            resource_limits=self.limits,
        )
        run = SandboxRun(self, handle, process, timeout_seconds)
        with self._lock:
            self._active[command.scan_id] = run
        run._begin()
        logging.info(f"[scan_id={command.scan_id}] Sandbox launched. container_id={handle.container_id} timeout={timeout_seconds}s")
        return run

    def _release(self, scan_id: str):
        with self._lock:
            if scan_id not in self._active:
                return
            del self._active[scan_id]
        self._slots.release()

    def get_run(self, scan_id: str) -> Optional[SandboxRun]:
        with self._lock:
            return self._active.get(scan_id)

    def get_handle(self, scan_id: str) -> Optional[ContainerHandle]:
        run = self.get_run(scan_id)
        return run.handle if run else None

    def cancel(self, scan_id: str) -> bool:
        run = self.get_run(scan_id)
        if run is None:
            return False
        run.cancel()
        return True

    def reconcile_orphans(self) -> List[str]:
        """Remove tagged sandboxes that no live handle owns."""
        try:
            sandboxes = self.runtime.list_sandboxes()
        except Exception as e:
            logging.error(f"Orphan reconciliation could not list sandboxes: {e}")
            return []
        with self._lock:
            owned = {run.handle.container_id for run in self._active.values() if run is not None}
            pending = {scan_id for scan_id, run in self._active.items() if run is None}
        removed = []
        for scan_id, container_id in sandboxes:
            if container_id in owned or scan_id in pending:
                continue
            try:
                self.runtime.remove_sandbox(container_id)
                removed.append(container_id)
                logging.warning(f"[scan_id={scan_id}] Removed orphaned sandbox {container_id}")
            except Exception as e:
                logging.error(f"[scan_id={scan_id}] Failed to remove orphaned sandbox {container_id}: {e}")
        return removed

    def start_reconciler(self, interval: float = None):
        interval = interval or settings.RECONCILE_INTERVAL_SECONDS
        if self._reconciler is not None:
            return
        self._stop_reconciler.clear()

        def loop():
            while not self._stop_reconciler.wait(interval):
                self.reconcile_orphans()

        self._reconciler = threading.Thread(target=loop, name="sandbox-reconciler", daemon=True)
        self._reconciler.start()

    def shutdown(self, timeout: float = None):
        self._stop_reconciler.set()
        if self._reconciler is not None:
            self._reconciler.join(timeout=1)
            self._reconciler = None
        with self._lock:
            runs = [run for run in self._active.values() if run is not None]
        for run in runs:
            run.cancel()
        for run in runs:
            run.wait(timeout if timeout is not None else self.grace_seconds)
        logging.info(f"Sandbox executor shut down. cancelled={len(runs)}")
