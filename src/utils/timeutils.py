# src/utils/timeutils.py
from datetime import datetime


def month_start(now: datetime) -> datetime:
    """First instant of the calendar month containing `now`."""
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def isoformat_z(value: datetime) -> str:
    return value.isoformat() + "Z" if value else None
