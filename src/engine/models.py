# src/engine/models.py
import json
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base

from utils.timeutils import isoformat_z

Base = declarative_base()

STATUS_QUEUED = "queued"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED, STATUS_CANCELLED)
ACTIVE_STATUSES = (STATUS_QUEUED, STATUS_RUNNING)

LOG_LEVELS = ("info", "warning", "error", "debug")


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ScanRequestRecord(Base):
    __tablename__ = 'scan_requests'
    id = Column(String(36), primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    target = Column(String, nullable=False)
    prompt = Column(Text, nullable=False)
    ai_model = Column(String, nullable=True)
    tool_candidate = Column(String, nullable=True)
    flags = Column(Text, nullable=True)  # JSON list
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "target": self.target,
            "prompt": self.prompt,
            "ai_model": self.ai_model,
            "tool_candidate": self.tool_candidate,
            "flags": json.loads(self.flags) if self.flags else [],
            "created_at": isoformat_z(self.created_at),
        }


class Scan(Base):
    __tablename__ = 'scans'
    id = Column(String(36), primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    target = Column(String, nullable=False)
    status = Column(String, default=STATUS_QUEUED, nullable=False)
    tool = Column(String, nullable=True)
    command_executed = Column(Text, nullable=True)  # JSON argv
    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    scan_metadata = Column("metadata", Text, nullable=True)  # JSON object

    __table_args__ = (Index("ix_scans_user_status", "user_id", "status"),)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def metadata_dict(self) -> dict:
        return json.loads(self.scan_metadata) if self.scan_metadata else {}

    @property
    def argv(self) -> list:
        return json.loads(self.command_executed) if self.command_executed else []

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "target": self.target,
            "status": self.status,
            "tool": self.tool,
            "command_executed": self.argv,
            "start_time": isoformat_z(self.start_time),
            "end_time": isoformat_z(self.end_time),
            "created_at": isoformat_z(self.created_at),
            "metadata": self.metadata_dict,
        }


class ScanLog(Base):
    __tablename__ = 'scan_logs'
    id = Column(Integer, primary_key=True, autoincrement=True)
    scan_id = Column(String(36), nullable=False)
    sequence = Column(Integer, nullable=False)
    timestamp = Column(DateTime, default=utcnow, nullable=False)
    level = Column(String, default="info", nullable=False)
    message = Column(Text, nullable=False)
    raw_output = Column(Text, nullable=True)

    __table_args__ = (Index("ix_scan_logs_scan_seq", "scan_id", "sequence", unique=True),)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "scan_id": self.scan_id,
            "sequence": self.sequence,
            "timestamp": isoformat_z(self.timestamp),
            "level": self.level,
            "message": self.message,
            "raw_output": self.raw_output,
        }
