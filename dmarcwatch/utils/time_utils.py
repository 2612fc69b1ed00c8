"""Naive-UTC time helpers shared by models and services"""
from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    """Current time as a naive UTC datetime (the storage convention)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def next_utc_midnight(moment: datetime) -> datetime:
    """Start of the UTC day following ``moment``"""
    day_start = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    return day_start + timedelta(days=1)
