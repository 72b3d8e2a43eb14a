"""Server-local clock helpers.

The engine works on a single server-local clock: naive ``datetime.now()``
values, dates compared as calendar days and medication times as
time-of-day.
"""
from datetime import datetime, date, time, timedelta


def local_now() -> datetime:
    return datetime.now()


def local_today() -> date:
    return local_now().date()


def days_ago(d: date, days: int) -> date:
    return d - timedelta(days=days)


def time_window(now: datetime, lookahead: timedelta) -> tuple[time, time | None]:
    """Return the ``[start, end)`` time-of-day window starting at ``now``.

    Dose times are minute resolution, so ``now`` is truncated to the minute
    and a late tick still covers a dose due on its boundary. The window is
    clipped at midnight: ``end`` is None when it would cross into tomorrow,
    meaning "until the end of today".
    """
    start = now.replace(second=0, microsecond=0)
    end = start + lookahead
    if end.date() != start.date():
        return start.time(), None
    return start.time(), end.time()


def format_clock(value: time | None) -> str | None:
    if value is None:
        return None
    return value.strftime("%H:%M")
