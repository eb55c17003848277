# punchboard/utils/event_clock.py
from datetime import datetime, timedelta
from typing import Optional

# MeOS reports times in tenths of a second
MS_PER_TICK = 100


def local_midnight(now: Optional[datetime] = None) -> datetime:
    """Start of the local day containing ``now`` (timezone-aware)."""
    now = now or datetime.now().astimezone()
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def to_wall_clock(ticks: int, midnight: datetime) -> datetime:
    """Converts an event-clock value (tenths of a second since midnight) to a timestamp."""
    return midnight + timedelta(milliseconds=ticks * MS_PER_TICK)
