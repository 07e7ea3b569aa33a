from datetime import datetime, timezone
from zoneinfo import ZoneInfo


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def naive_utc(moment: datetime) -> datetime:
    # DateTime columns hold naive UTC, same as datetime.utcnow defaults
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def slot_start(slot, tz_name: str):
    """Aware start of a slot, or None when the slot has no date/time recorded."""
    if slot is None or slot.date is None or slot.start_time is None:
        return None
    return datetime.combine(slot.date, slot.start_time, tzinfo=ZoneInfo(tz_name))


def month_start(now: datetime, tz_name: str) -> datetime:
    """First instant of the calendar month containing ``now`` at the facility, as naive UTC."""
    local = now.astimezone(ZoneInfo(tz_name))
    first = local.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return naive_utc(first)
