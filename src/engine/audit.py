# src/engine/audit.py
"""
AuditRecorder: append-only, ordered scan log entries in the durable store.
Timestamps never go backwards within a scan, even if the wall clock does.
"""
import logging
import threading
from typing import Dict, Tuple

from engine.models import LOG_LEVELS, ScanLog, utcnow
from engine.store import ScanStore


class AuditRecorder:
    def __init__(self, store: ScanStore, clock=utcnow):
        self.store = store
        self.clock = clock
        self._positions: Dict[str, Tuple] = {}
        self._lock = threading.Lock()

    def record(self, scan_id: str, level: str, message: str, raw_output: str = None) -> ScanLog:
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level: {level}")
        with self._lock:
            last_ts, last_seq = self._positions.get(scan_id) or self.store.last_log_position(scan_id)
            timestamp = self.clock()
            if last_ts is not None and timestamp < last_ts:
                timestamp = last_ts
            entry = self.store.save(ScanLog(
                scan_id=scan_id,
                sequence=last_seq + 1,
                timestamp=timestamp,
                level=level,
                message=message,
                raw_output=raw_output,
            ))
            self._positions[scan_id] = (timestamp, last_seq + 1)
        if level == "error":
            logging.error(f"[scan_id={scan_id}] {message}")
        else:
            logging.debug(f"[scan_id={scan_id}] {level}: {message}")
        return entry

    def get_scan_logs(self, scan_id: str, level: str = None, limit: int = 100, offset: int = 0) -> dict:
        entries, total = self.store.scan_log_page(scan_id, level=level, limit=limit, offset=offset)
        return {
            "entries": [e.to_dict() for e in entries],
            "total": total,
            "offset": offset,
            "limit": limit,
            "has_more": offset + limit < total,
        }

    def delete_scan_logs(self, scan_id: str) -> int:
        with self._lock:
            deleted = self.store.delete_logs(scan_id)
            self._positions.pop(scan_id, None)
        logging.info(f"[scan_id={scan_id}] Deleted {deleted} log entries")
        return deleted

    def release(self, scan_id: str):
        with self._lock:
            self._positions.pop(scan_id, None)
