"""Check-in window calculation.

A check-in is due on a Monday morning and may be submitted during a weekly
window, by default Friday 10:00 AM to Monday 10:00 PM local time. The window
is anchored on the due date's week: it closes on ``end_day`` of that week and
opens on ``start_day``, one week earlier when the start comes after the end in
weekday order (the window spans the weekend).

Everything here is pure: no I/O and no shared state.
"""
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from dateutil.relativedelta import relativedelta, MO

import settings
from errors import InvalidConfiguration

DAY_NAMES = ['monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday']
DAY_OFFSETS = {name: offset for offset, name in enumerate(DAY_NAMES)}
TIME_PATTERN = re.compile(r'^([01]?\d|2[0-3]):([0-5]\d)$')


def parse_day(name):
    """Returns the offset of a weekday name from Monday (monday=0 ... sunday=6)."""
    if not isinstance(name, str) or name.strip().lower() not in DAY_OFFSETS:
        raise InvalidConfiguration(f"Unknown day name: {name!r}", field='day', value=name)
    return DAY_OFFSETS[name.strip().lower()]


def parse_time(value):
    """Parses a 24h ``HH:MM`` string into ``(hour, minute)``."""
    match = TIME_PATTERN.match(value.strip()) if isinstance(value, str) else None
    if not match:
        raise InvalidConfiguration(f"Invalid time {value!r}, expected HH:MM (24h)", field='time', value=value)
    return int(match.group(1)), int(match.group(2))


def format_time(value):
    hour, minute = parse_time(value)
    period = 'PM' if hour >= 12 else 'AM'
    display_hour = hour % 12 or 12
    return f"{display_hour}:{minute:02d} {period}"


@dataclass(frozen=True)
class CheckInWindowConfig:
    enabled: bool = True
    start_day: str = settings.DEFAULT_CHECK_IN_WINDOW['startDay']
    start_time: str = settings.DEFAULT_CHECK_IN_WINDOW['startTime']
    end_day: str = settings.DEFAULT_CHECK_IN_WINDOW['endDay']
    end_time: str = settings.DEFAULT_CHECK_IN_WINDOW['endTime']

    def __post_init__(self):
        # Validate eagerly and normalise day names; disabled windows are still checked.
        parse_day(self.start_day)
        parse_day(self.end_day)
        parse_time(self.start_time)
        parse_time(self.end_time)
        object.__setattr__(self, 'enabled', bool(self.enabled))
        object.__setattr__(self, 'start_day', self.start_day.strip().lower())
        object.__setattr__(self, 'end_day', self.end_day.strip().lower())
        object.__setattr__(self, 'start_time', self.start_time.strip())
        object.__setattr__(self, 'end_time', self.end_time.strip())

    @classmethod
    def default(cls):
        return cls.from_doc(settings.DEFAULT_CHECK_IN_WINDOW)

    @classmethod
    def from_doc(cls, doc):
        """Builds a config from a stored ``checkInWindow`` document; ``None`` means the default."""
        if doc is None:
            doc = settings.DEFAULT_CHECK_IN_WINDOW
        if isinstance(doc, cls):
            return doc
        if not isinstance(doc, dict):
            raise InvalidConfiguration("checkInWindow must be an object", value=doc)
        defaults = settings.DEFAULT_CHECK_IN_WINDOW
        return cls(
            enabled=doc.get('enabled', True),
            start_day=doc.get('startDay', defaults['startDay']),
            start_time=doc.get('startTime', defaults['startTime']),
            end_day=doc.get('endDay', defaults['endDay']),
            end_time=doc.get('endTime', defaults['endTime']),
        )

    def to_doc(self):
        return {
            'enabled': self.enabled,
            'startDay': self.start_day,
            'startTime': self.start_time,
            'endDay': self.end_day,
            'endTime': self.end_time,
        }


@dataclass(frozen=True)
class WindowStatus:
    opens_at: Optional[object]
    closes_at: object
    is_open: bool
    is_overdue: bool
    message: str = ''

    def to_dict(self):
        return {
            'opensAt': self.opens_at.isoformat() if self.opens_at else None,
            'closesAt': self.closes_at.isoformat(),
            'isOpen': self.is_open,
            'isOverdue': self.is_overdue,
            'message': self.message,
        }


def monday_of(instant):
    """Monday 00:00 local of the week containing ``instant``."""
    local = settings.as_local(instant)
    monday = local.date() + relativedelta(weekday=MO(-1))
    return settings.start_of_day_local(monday)


def window_bounds(due_date, config):
    """Returns ``(opens_at, closes_at)`` for an enabled window around ``due_date``."""
    config = CheckInWindowConfig.from_doc(config)
    week_monday = monday_of(due_date).date()
    start_offset, end_offset = parse_day(config.start_day), parse_day(config.end_day)
    start_hour, start_minute = parse_time(config.start_time)
    end_hour, end_minute = parse_time(config.end_time)

    close_day = week_monday + timedelta(days=end_offset)
    open_day = week_monday + timedelta(days=start_offset)
    if (start_offset, start_hour, start_minute) > (end_offset, end_hour, end_minute):
        open_day -= timedelta(weeks=1)
    return (
        settings.at_local(open_day, start_hour, start_minute),
        settings.at_local(close_day, end_hour, end_minute),
    )


def compute_window(due_date, config=None, now=None, completed=False):
    config = CheckInWindowConfig.from_doc(config)
    due_date = settings.as_local(due_date)
    now = settings.as_local(now) if now else settings.now_local()

    if not config.enabled:
        is_open = now <= due_date
        return WindowStatus(
            opens_at=None,
            closes_at=due_date,
            is_open=is_open,
            is_overdue=now > due_date and not completed,
            message='Check-ins are always available' if is_open else 'Check-in is past due',
        )

    opens_at, closes_at = window_bounds(due_date, config)
    is_open = opens_at <= now <= closes_at
    if is_open:
        message = 'Check-in window is open'
    elif now < opens_at:
        message = f"Check-in window opens {config.start_day.capitalize()} at {format_time(config.start_time)}"
    else:
        message = 'Check-in window closed'
    return WindowStatus(
        opens_at=opens_at,
        closes_at=closes_at,
        is_open=is_open,
        is_overdue=now > closes_at and not completed,
        message=message,
    )


def next_open_time(due_date, config=None, now=None):
    """When the window for ``due_date`` next opens; ``None`` if it is open, already past, or disabled."""
    status = compute_window(due_date, config, now)
    if status.opens_at is None or status.is_open:
        return None
    now = settings.as_local(now) if now else settings.now_local()
    return status.opens_at if now < status.opens_at else None


def describe_window(config=None):
    config = CheckInWindowConfig.from_doc(config)
    if not config.enabled:
        return 'Check-ins available anytime'
    return (
        f"{config.start_day.capitalize()} {format_time(config.start_time)} - "
        f"{config.end_day.capitalize()} {format_time(config.end_time)}"
    )
