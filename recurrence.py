"""Weekly recurrence for check-in series.

Week N of a series is due ``7 * (N - 1)`` days after week 1, on a Monday at
09:00 local. These helpers map between weeks and due dates and plan the
documents needed to fill gaps in a series.
"""
from dateutil.relativedelta import relativedelta

import settings
from checkin_window import monday_of
from errors import InvalidArgument

TEMPLATE_FIELDS = (
    'clientId', 'coachId', 'formId', 'formTitle', 'frequency',
    'checkInWindow', 'isRecurring', 'dueTime',
)


def _check_week(week):
    if isinstance(week, bool) or not isinstance(week, int) or week < 1:
        raise InvalidArgument(f"week must be an integer >= 1, got {week!r}", week=week)


def due_date_for_week(base_monday, week):
    _check_week(week)
    day = monday_of(base_monday).date() + relativedelta(weeks=week - 1)
    return settings.at_local(day, settings.DUE_HOUR)


def week_for_due_date(base_monday, due_date):
    days = (monday_of(due_date).date() - monday_of(base_monday).date()).days
    return max(1, round(days / 7) + 1)


def series_base_monday(assignment):
    """Monday of week 1 for the series ``assignment`` belongs to."""
    due_date = assignment.get('dueDate')
    if due_date is None:
        raise InvalidArgument("assignment has no dueDate", assignmentId=str(assignment.get('_id')))
    week = assignment.get('recurringWeek') or 1
    return settings.start_of_day_local(monday_of(due_date).date() - relativedelta(weeks=week - 1))


def pick_template(assignments):
    """Earliest assignment with a usable due date, or ``None``."""
    usable = [a for a in assignments if a.get('dueDate') is not None]
    if not usable:
        return None
    return min(usable, key=lambda a: (settings.as_local(a['dueDate']), a.get('recurringWeek') or 1))


def clone_for_week(template, week, total_weeks):
    _check_week(week)
    doc = {field: template.get(field) for field in TEMPLATE_FIELDS}
    doc['frequency'] = doc['frequency'] or 'weekly'
    doc['dueTime'] = doc['dueTime'] or settings.DUE_TIME
    if doc['isRecurring'] is None:
        doc['isRecurring'] = True
    doc.update({
        'dueDate': due_date_for_week(series_base_monday(template), week),
        'recurringWeek': week,
        'totalWeeks': max(total_weeks, week),
        'status': 'pending',
        'completedAt': None,
        'responseId': None,
        'windowOpenEmailSentDate': None,
        'reminder24hSent': False,
        'windowClosedEmailSent': False,
        'lastOverdueEmailSentAt': None,
    })
    return doc


def plan_backfill(template, existing_weeks, total_weeks):
    """Returns a lazy iterator of new assignment documents for the weeks 2..total_weeks missing from the series."""
    if template is None or template.get('dueDate') is None:
        raise InvalidArgument("series template has no dueDate")
    existing = set(existing_weeks)
    return (
        clone_for_week(template, week, total_weeks)
        for week in range(2, total_weeks + 1)
        if week not in existing
    )
