# src/engine/store.py
"""
ScanStore: the durable store behind the engine. Each call runs in its own
session and commits a single entity; calls are serialized so the same
store can be shared by request handlers and scan worker threads.
"""
import threading
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import sessionmaker

from engine.db import create_session_factory
from engine.models import ACTIVE_STATUSES, Scan, ScanLog, ScanRequestRecord


class ScanStore:
    def __init__(self, session_factory: sessionmaker = None):
        self.SessionLocal = session_factory or create_session_factory()
        self._lock = threading.RLock()

    def save(self, entity):
        with self._lock:
            db = self.SessionLocal()
            try:
                merged = db.merge(entity)
                db.commit()
                db.refresh(merged)
                db.expunge(merged)
                return merged
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

    def get_scan(self, scan_id: str) -> Optional[Scan]:
        with self._lock:
            db = self.SessionLocal()
            try:
                return db.get(Scan, scan_id)
            finally:
                db.close()

    def get_request(self, request_id: str) -> Optional[ScanRequestRecord]:
        with self._lock:
            db = self.SessionLocal()
            try:
                return db.get(ScanRequestRecord, request_id)
            finally:
                db.close()

    def count_active_scans(self, user_id: str) -> int:
        with self._lock:
            db = self.SessionLocal()
            try:
                return (
                    db.query(func.count(Scan.id))
                    .filter(Scan.user_id == user_id, Scan.status.in_(ACTIVE_STATUSES))
                    .scalar()
                )
            finally:
                db.close()

    def count_scans_since(self, user_id: str, since: datetime) -> int:
        with self._lock:
            db = self.SessionLocal()
            try:
                return (
                    db.query(func.count(Scan.id))
                    .filter(Scan.user_id == user_id, Scan.created_at >= since)
                    .scalar()
                )
            finally:
                db.close()

    def list_scans(self, user_id: str = None, status: str = None, limit: int = 20, offset: int = 0) -> List[Scan]:
        with self._lock:
            db = self.SessionLocal()
            try:
                query = db.query(Scan)
                if user_id:
                    query = query.filter(Scan.user_id == user_id)
                if status:
                    query = query.filter(Scan.status == status)
                return query.order_by(Scan.created_at.desc()).offset(offset).limit(limit).all()
            finally:
                db.close()

    def list_active_scans(self) -> List[Scan]:
        with self._lock:
            db = self.SessionLocal()
            try:
                return db.query(Scan).filter(Scan.status.in_(ACTIVE_STATUSES)).all()
            finally:
                db.close()

    def last_log_position(self, scan_id: str) -> Tuple[Optional[datetime], int]:
        with self._lock:
            db = self.SessionLocal()
            try:
                last = (
                    db.query(ScanLog)
                    .filter(ScanLog.scan_id == scan_id)
                    .order_by(ScanLog.sequence.desc())
                    .first()
                )
                if last is None:
                    return None, 0
                return last.timestamp, last.sequence
            finally:
                db.close()

    def scan_log_page(self, scan_id: str, level: str = None, limit: int = 100, offset: int = 0) -> Tuple[List[ScanLog], int]:
        with self._lock:
            db = self.SessionLocal()
            try:
                query = db.query(ScanLog).filter(ScanLog.scan_id == scan_id)
                if level:
                    query = query.filter(ScanLog.level == level)
                total = query.count()
                entries = (
                    query.order_by(ScanLog.timestamp.asc(), ScanLog.sequence.asc())
                    .offset(offset)
                    .limit(limit)
                    .all()
                )
                return entries, total
            finally:
                db.close()

    def delete_logs(self, scan_id: str) -> int:
        with self._lock:
            db = self.SessionLocal()
            try:
                deleted = db.query(ScanLog).filter(ScanLog.scan_id == scan_id).delete()
                db.commit()
                return deleted
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()
