# src/engine/scan_manager.py
"""
ScanManager: the inbound face of the engine. Admits scan requests, runs each
accepted scan on its own worker thread and answers status/log queries.
"""

import logging
import threading
import uuid
import json
from dataclasses import dataclass
from typing import Dict, List, Optional

from engine.audit import AuditRecorder
from engine.errors import (
    AuthorizationError,
    ExecutionError,
    InvalidTransitionError,
    ScanEngineError,
    ScanNotFoundError,
    ScanTimeoutError,
    ValidationError,
)
from engine.models import (
    ACTIVE_STATUSES,
    LOG_LEVELS,
    STATUS_CANCELLED,
    STATUS_RUNNING,
    TERMINAL_STATUSES,
    Scan,
    ScanRequestRecord,
    utcnow,
)
from engine.oracle import AIOracle
from engine.quota import ACTION_SCAN, QuotaGate
from engine.sandbox import ExecutionResult, SandboxExecutor, SandboxRun, ScanCommand
from engine.scan_service import ScanPlan, ScanService
from engine.state_machine import ScanStateMachine
from engine.store import ScanStore
from engine.streaming import (
    EVENT_CONTAINER_STATUS,
    EVENT_SCAN_COMPLETE,
    EVENT_SCAN_ERROR,
    EVENT_SCAN_PROGRESS,
    ConnectionHub,
    container_topic,
    scan_topic,
)
from utils.timeutils import isoformat_z, month_start

MAX_LOG_PAGE = 1000


@dataclass(frozen=True)
class UserContext:
    id: str
    role: str
    plan: Optional[str] = None


class ScanManager:
    def __init__(self, store: ScanStore, executor: SandboxExecutor, hub: ConnectionHub,
                 gate: QuotaGate = None, oracle: AIOracle = None, clock=utcnow):
        self.store = store
        self.executor = executor
        self.hub = hub
        self.gate = gate or QuotaGate()
        self.clock = clock
        self.state_machine = ScanStateMachine(store, clock)
        self.audit = AuditRecorder(store, clock)
        self.scan_service = ScanService(self.gate, oracle)
        self.jobs: Dict[str, threading.Thread] = {}
        self.lock = threading.Lock()
        # check-then-admit for quotas must be atomic across request threads
        self._admission_lock = threading.Lock()

    # --- inbound operations -------------------------------------------------

    def create_scan(self, user: UserContext, target: str, prompt: str, tool_hint: str = None,
                    flags: Optional[List[str]] = None, ai_model: str = None) -> str:
        self.gate.require(user.role, "scan:basic")
        plan = self.scan_service.plan(user.role, target, prompt, tool_hint, flags, ai_model)
        self.executor.preflight(plan.command.image)

        scan_id = str(uuid.uuid4())
        with self._admission_lock:
            quota = self.gate.get_quota(user.role)
            used = self.store.count_scans_since(user.id, month_start(self.clock()))
            if not self.gate.can_perform_action(user.role, ACTION_SCAN, used):
                raise AuthorizationError(
                    f"Monthly scan limit reached ({quota.scans_per_month}). Upgrade your plan for more scans.",
                    {"used": used, "limit": quota.scans_per_month},
                )
            active = self.store.count_active_scans(user.id)
            if not self.gate.can_run_concurrently(user.role, active):
                raise AuthorizationError(
                    f"Concurrent scan limit reached ({quota.concurrent_scans}). Wait for a running scan to finish.",
                    {"active": active, "limit": quota.concurrent_scans},
                )
            request = ScanRequestRecord(
                id=scan_id,
                user_id=user.id,
                target=plan.command.target,
                prompt=prompt,
                ai_model=ai_model,
                tool_candidate=plan.recommendation.tool,
                flags=json.dumps(list(plan.command.flags)),
                created_at=self.clock(),
            )
            self.state_machine.create(request, plan.command.tool, plan.to_metadata())

        try:
            self.hub.register_owner(scan_topic(scan_id), user.id)
            self.audit.record(scan_id, "info", f"Scan queued: {plan.command.display}")
            thread = threading.Thread(target=self._run_scan, args=(scan_id, user, plan), name=f"scan-{scan_id}", daemon=True)
            with self.lock:
                self.jobs[scan_id] = thread
            thread.start()
        except Exception as e:
            logging.error(f"[scan_id={scan_id}] Failed to hand scan to a worker: {e}")
            with self.lock:
                self.jobs.pop(scan_id, None)
            try:
                self.state_machine.fail(scan_id, f"Internal error: {e}", {"error_code": ExecutionError.code})
            except InvalidTransitionError:
                pass
            raise
        logging.info(f"[scan_id={scan_id}] Submitted scan. user_id={user.id} tool={plan.command.tool} target={plan.command.target}")
        return scan_id

    def cancel_scan(self, user: UserContext, scan_id: str) -> dict:
        self._owned_scan(user, scan_id)
        scan = self.state_machine.cancel(scan_id, reason=f"cancelled by {user.id}")
        stopped = self.executor.cancel(scan_id)
        self.audit.record(scan_id, "warning", "Scan cancelled by user")
        with self.lock:
            worker_alive = scan_id in self.jobs
        if not worker_alive:
            # no worker left to drop the cached log position
            self.audit.release(scan_id)
        self.hub.publish(scan_topic(scan_id), EVENT_SCAN_PROGRESS, {
            "scan_id": scan_id,
            "status": STATUS_CANCELLED,
            "message": "Scan cancelled by user",
        })
        logging.info(f"[scan_id={scan_id}] Cancelled by user_id={user.id} sandbox_stopped={stopped}")
        return scan.to_dict()

    def get_scan(self, user: UserContext, scan_id: str) -> dict:
        scan = self._owned_scan(user, scan_id)
        data = scan.to_dict()
        handle = self.executor.get_handle(scan_id)
        data["container"] = handle.to_dict() if handle else None
        return data

    def list_scans(self, user: UserContext, status: str = None, limit: int = 20, offset: int = 0) -> List[dict]:
        if status and status not in ACTIVE_STATUSES + TERMINAL_STATUSES:
            raise ValidationError(f"Unknown status: {status}", {"status": status})
        user_id = None if user.role == "admin" else user.id
        scans = self.store.list_scans(user_id=user_id, status=status, limit=max(1, min(limit, 100)), offset=max(offset, 0))
        return [s.to_dict() for s in scans]

    def get_scan_logs(self, user: UserContext, scan_id: str, level: str = None,
                      limit: int = 100, offset: int = 0) -> dict:
        self.gate.require(user.role, "data:view")
        self._owned_scan(user, scan_id)
        if level and level not in LOG_LEVELS:
            raise ValidationError(f"Unknown log level: {level}", {"level": level, "levels": list(LOG_LEVELS)})
        if limit < 1 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative", {"limit": limit, "offset": offset})
        return self.audit.get_scan_logs(scan_id, level=level, limit=min(limit, MAX_LOG_PAGE), offset=offset)

    def delete_scan_logs(self, user: UserContext, scan_id: str) -> dict:
        scan = self._owned_scan(user, scan_id)
        if not scan.is_terminal:
            raise ValidationError("Cannot delete logs of a scan that is still active", {"status": scan.status})
        deleted = self.audit.delete_scan_logs(scan_id)
        return {"scan_id": scan_id, "deleted": deleted}

    def get_usage(self, user: UserContext) -> dict:
        used = self.store.count_scans_since(user.id, month_start(self.clock()))
        active = self.store.count_active_scans(user.id)
        summary = self.gate.usage_summary(user.role, used, active)
        summary["user_id"] = user.id
        return summary

    def container_status(self, user: UserContext, scan_id: str) -> dict:
        scan = self._owned_scan(user, scan_id)
        handle = self.executor.get_handle(scan_id)
        return {
            "scan_id": scan_id,
            "scan_status": scan.status,
            "running": handle is not None,
            "container": handle.to_dict() if handle else None,
        }

    def health(self) -> dict:
        status = self.executor.health_check()
        status["streaming"] = self.hub.stats()
        return status

    # --- lifecycle ----------------------------------------------------------

    def recover_interrupted(self) -> List[str]:
        """
        Fail scans left queued/running by a previous process. Their sandboxes
        are gone or will be removed by the orphan reconciler.
        """
        recovered = []
        for scan in self.store.list_active_scans():
            if self.executor.get_run(scan.id) is not None:
                continue
            with self.lock:
                if scan.id in self.jobs:
                    continue
            try:
                self.state_machine.fail(scan.id, "interrupted by engine restart")
            except InvalidTransitionError:
                continue
            self.audit.record(scan.id, "error", "Scan interrupted by engine restart")
            recovered.append(scan.id)
        if recovered:
            logging.warning(f"Recovered {len(recovered)} interrupted scans: {recovered}")
        return recovered

    def join(self, scan_id: str, timeout: float = None) -> bool:
        """Wait for a scan's worker thread. Returns True once it has finished."""
        with self.lock:
            thread = self.jobs.get(scan_id)
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def shutdown(self, timeout: float = None):
        self.executor.shutdown(timeout)
        with self.lock:
            threads = list(self.jobs.values())
        for thread in threads:
            thread.join(timeout)
        logging.info(f"Scan manager shut down. workers={len(threads)}")

    # --- worker -------------------------------------------------------------

    def _owned_scan(self, user: UserContext, scan_id: str) -> Scan:
        scan = self.state_machine.get(scan_id)
        if scan.user_id != user.id and user.role != "admin":
            # same answer as a missing scan so ids cannot be probed
            raise ScanNotFoundError(f"Scan {scan_id} not found", {"scan_id": scan_id})
        return scan

    def _run_scan(self, scan_id: str, user: UserContext, plan: ScanPlan):
        command = plan.command
        run = None
        try:
            if self.state_machine.get(scan_id).is_terminal:
                logging.info(f"[scan_id={scan_id}] Scan finalized before launch, skipping")
                return
            try:
                run = self.executor.launch(ScanCommand(scan_id, command.argv, command.image), command.timeout_seconds)
            except ScanEngineError as e:
                self._fail(scan_id, user, e)
                return
            self._stream_run(scan_id, user, plan, run)
        except Exception as e:
            logging.error(f"[scan_id={scan_id}] Scan worker crashed: {e}")
            if run is not None:
                self._teardown(scan_id, run)
            self._fail(scan_id, user, ExecutionError(f"Internal error: {e}"))
        finally:
            # pop before release: cancel_scan releases the position itself
            with self.lock:
                self.jobs.pop(scan_id, None)
            self.audit.release(scan_id)

    def _teardown(self, scan_id: str, run: SandboxRun):
        if not run.done:
            run.cancel()
            if run.wait(self.executor.grace_seconds * 2) is None:
                logging.warning(f"[scan_id={scan_id}] Sandbox still stopping after worker crash")
        self.hub.release_topic(container_topic(run.handle.container_id))

    def _stream_run(self, scan_id: str, user: UserContext, plan: ScanPlan, run: SandboxRun):
        command = plan.command
        container_id = run.handle.container_id
        topic = scan_topic(scan_id)
        self.hub.register_owner(container_topic(container_id), user.id)
        try:
            self.state_machine.start(scan_id, list(command.argv), {"container_id": container_id})
        except InvalidTransitionError:
            logging.info(f"[scan_id={scan_id}] Scan left queued before start, stopping sandbox")
            run.cancel()
            run.wait()
            self.hub.release_topic(container_topic(container_id))
            return

        self.audit.record(scan_id, "info", f"Started {command.tool} in sandbox {container_id}")
        self._publish_container(scan_id, container_id, STATUS_RUNNING)
        self.hub.publish(topic, EVENT_SCAN_PROGRESS, {
            "scan_id": scan_id,
            "status": STATUS_RUNNING,
            "container_id": container_id,
            "message": f"Executing: {command.display}",
        })

        for chunk in run.chunks():
            level = "info" if chunk.stream == "stdout" else "warning"
            self.audit.record(scan_id, level, chunk.text.rstrip("\n") or chunk.text, raw_output=chunk.text)
            self.hub.publish(topic, EVENT_SCAN_PROGRESS, {
                "scan_id": scan_id,
                "stream": chunk.stream,
                "output": chunk.text,
                "sequence": chunk.sequence,
                "timestamp": isoformat_z(chunk.timestamp),
            })

        result = run.wait()
        self._finalize(scan_id, user, container_id, result)

    def _finalize(self, scan_id: str, user: UserContext, container_id: str, result: ExecutionResult):
        metadata = {"execution": result.to_dict(), "container_id": container_id}
        if result.truncated:
            self.audit.record(scan_id, "warning", f"Output truncated after {result.output_bytes} bytes")
        self._publish_container(scan_id, container_id, "removed", exit_code=result.exit_code)
        self.hub.release_topic(container_topic(container_id))

        if result.cancelled:
            try:
                self.state_machine.cancel(scan_id, "sandbox stopped", metadata)
            except InvalidTransitionError:
                pass
            self.audit.record(scan_id, "info", "Sandbox stopped after cancellation")
            return

        if result.succeeded:
            try:
                self.state_machine.complete(scan_id, metadata)
            except InvalidTransitionError as e:
                logging.info(f"[scan_id={scan_id}] Not completing: {e.message}")
                return
            self.audit.record(scan_id, "info", f"Scan completed in {result.duration_ms} ms")
            self.hub.publish(scan_topic(scan_id), EVENT_SCAN_COMPLETE, {
                "scan_id": scan_id,
                "status": "completed",
                "exit_code": result.exit_code,
                "duration_ms": result.duration_ms,
                "truncated": result.truncated,
            })
            self.hub.notify_user(user.id, {
                "kind": "scan_completed",
                "scan_id": scan_id,
                "title": "Scan completed",
                "message": f"Scan {scan_id} finished successfully",
            })
            return

        if result.timed_out:
            error = ScanTimeoutError(f"Scan exceeded its time limit after {result.duration_ms} ms", result.to_dict())
        elif result.error:
            error = ExecutionError(f"Sandbox error: {result.error}", result.to_dict())
        else:
            error = ExecutionError(f"Tool exited with code {result.exit_code}", result.to_dict())
        self._fail(scan_id, user, error, metadata)

    def _fail(self, scan_id: str, user: UserContext, error: ScanEngineError, metadata: dict = None):
        metadata = dict(metadata or {})
        metadata["error_code"] = error.code
        try:
            self.state_machine.fail(scan_id, error.message, metadata)
        except InvalidTransitionError as e:
            logging.info(f"[scan_id={scan_id}] Not failing: {e.message}")
            return
        self.audit.record(scan_id, "error", error.message)
        self.hub.publish(scan_topic(scan_id), EVENT_SCAN_ERROR, {
            "scan_id": scan_id,
            "status": "failed",
            "code": error.code,
            "message": error.message,
        })
        self.hub.notify_user(user.id, {
            "kind": "scan_failed",
            "scan_id": scan_id,
            "title": "Scan failed",
            "message": error.message,
        })

    def _publish_container(self, scan_id: str, container_id: str, status: str, **extra):
        data = {"scan_id": scan_id, "container_id": container_id, "status": status}
        data.update(extra)
        self.hub.publish(container_topic(container_id), EVENT_CONTAINER_STATUS, data)
