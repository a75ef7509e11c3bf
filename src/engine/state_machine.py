# src/engine/state_machine.py
"""
ScanStateMachine: sole writer of Scan.status.

    queued --start--> running --complete--> completed
       |                 |------fail------> failed
       |                 '-----cancel-----> cancelled
       '--cancel / fail (sandbox never started)

Transitions for one scan id run under that scan's lock, so a timeout and a
normal exit cannot both finalize the same scan. Terminal states are final.
"""
import json
import logging
import threading
from typing import Dict, Iterable, Optional

from engine.errors import InvalidTransitionError, ScanNotFoundError
from engine.models import (
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_QUEUED,
    STATUS_RUNNING,
    TERMINAL_STATUSES,
    Scan,
    ScanRequestRecord,
    utcnow,
)
from engine.store import ScanStore


class ScanStateMachine:
    def __init__(self, store: ScanStore, clock=utcnow):
        self.store = store
        self.clock = clock
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, scan_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(scan_id)
            if lock is None:
                lock = self._locks[scan_id] = threading.Lock()
            return lock

    def _forget(self, scan_id: str):
        with self._locks_guard:
            self._locks.pop(scan_id, None)

    def create(self, request: ScanRequestRecord, tool: str, metadata: dict = None) -> Scan:
        """Persist an accepted request and its scan in the queued state."""
        self.store.save(request)
        scan = Scan(
            id=request.id,
            user_id=request.user_id,
            target=request.target,
            status=STATUS_QUEUED,
            tool=tool,
            created_at=self.clock(),
            scan_metadata=json.dumps(metadata or {}),
        )
        scan = self.store.save(scan)
        logging.info(f"[scan_id={scan.id}] Scan queued. user_id={scan.user_id} tool={tool}")
        return scan

    def get(self, scan_id: str) -> Scan:
        scan = self.store.get_scan(scan_id)
        if scan is None:
            raise ScanNotFoundError(f"Scan {scan_id} not found", {"scan_id": scan_id})
        return scan

    def _transition(self, scan_id: str, target: str, allowed_from: Iterable[str],
                    metadata: Optional[dict] = None, **fields) -> Scan:
        with self._lock_for(scan_id):
            scan = self.get(scan_id)
            if scan.status in TERMINAL_STATUSES or scan.status not in allowed_from:
                logging.warning(
                    f"[scan_id={scan_id}] Rejected transition {scan.status} -> {target}"
                )
                raise InvalidTransitionError(scan_id, scan.status, target)

            previous = scan.status
            scan.status = target
            for name, value in fields.items():
                setattr(scan, name, value)
            if metadata:
                merged = scan.metadata_dict
                merged.update(metadata)
                scan.scan_metadata = json.dumps(merged, default=str)
            if target in TERMINAL_STATUSES:
                scan.end_time = self.clock()
            scan = self.store.save(scan)
            logging.info(f"[scan_id={scan_id}] Transition {previous} -> {target}")

            if target in TERMINAL_STATUSES:
                self._forget(scan_id)
            return scan

    def start(self, scan_id: str, command_executed: list, metadata: dict = None) -> Scan:
        return self._transition(
            scan_id, STATUS_RUNNING, (STATUS_QUEUED,), metadata,
            command_executed=json.dumps(list(command_executed)),
            start_time=self.clock(),
        )

    def complete(self, scan_id: str, metadata: dict = None) -> Scan:
        return self._transition(scan_id, STATUS_COMPLETED, (STATUS_RUNNING,), metadata)

    def fail(self, scan_id: str, reason: str, metadata: dict = None) -> Scan:
        metadata = dict(metadata or {})
        metadata["failure_reason"] = reason
        return self._transition(scan_id, STATUS_FAILED, (STATUS_QUEUED, STATUS_RUNNING), metadata)

    def cancel(self, scan_id: str, reason: str = "cancelled by user", metadata: dict = None) -> Scan:
        metadata = dict(metadata or {})
        metadata["cancel_reason"] = reason
        return self._transition(scan_id, STATUS_CANCELLED, (STATUS_QUEUED, STATUS_RUNNING), metadata)
