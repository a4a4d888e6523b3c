from datetime import date, datetime, time, timedelta


def daterange(start: date, end: date, step_days=1):
    cur = start
    while cur <= end:
        yield cur
        cur += timedelta(days=step_days)


def parse_delivery_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00")).date()


def platform_datetime(d: date) -> str:
    """Midnight of `d` in the ISO form the ordering platform accepts."""
    return datetime.combine(d, time.min).strftime("%Y-%m-%dT%H:%M:%S")
