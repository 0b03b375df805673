"""Assignment lifecycle: assigning a form, resolving a client's week, series
backfill, completion, overdue refresh and marking a check-in as missed.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, date, timedelta

import settings
from checkin_window import CheckInWindowConfig, compute_window, monday_of
from errors import CheckInError, ExternalFailure, InvalidArgument, NotFound
from recurrence import (
    clone_for_week, pick_template, plan_backfill, series_base_monday, week_for_due_date,
)
from scoring import score_answers, thresholds_for, traffic_light
from store import ASSIGNMENTS, CLIENTS, RESPONSES, coerce_id

logger = logging.getLogger(__name__)

MISSED_REASONS = ('sick', 'traveling', 'personal_emergency', 'other')
NO_TEMPLATE_MESSAGE = "No check-in assigned for this type. Ask your coach to assign this form."


@dataclass
class BackfillReport:
    client_id: str
    form_id: str
    created: int = 0
    skipped: str = None

    def to_dict(self):
        return {
            'clientId': self.client_id,
            'formId': self.form_id,
            'created': self.created,
            'skipped': self.skipped,
        }


def _to_local_day(value):
    """Accepts 'YYYY-MM-DD', a date or a datetime; returns local midnight of that day."""
    if isinstance(value, str):
        try:
            value = datetime.strptime(value.strip(), '%Y-%m-%d').date()
        except ValueError:
            raise InvalidArgument("Dates must use the YYYY-MM-DD format", value=value)
    if isinstance(value, datetime):
        value = settings.as_local(value).date() if value.tzinfo else value.date()
    if not isinstance(value, date):
        raise InvalidArgument("A date is required", value=str(value))
    return settings.start_of_day_local(value)


def _series_key(client_id, form_id, week):
    return {'clientId': client_id, 'formId': form_id, 'recurringWeek': week}


def _check_total_weeks(total_weeks):
    if isinstance(total_weeks, bool) or not isinstance(total_weeks, int) or total_weeks < 1:
        raise InvalidArgument("totalWeeks must be a positive integer", totalWeeks=total_weeks)
    return total_weeks


def _upsert_week(store, doc):
    key = _series_key(doc['clientId'], doc['formId'], doc['recurringWeek'])
    created = store.batch_write(ASSIGNMENTS, [store.upsert_op(key, doc)]) == 1
    return store.find(ASSIGNMENTS, key)[0], created


################################################################################
# ASSIGN / RESOLVE
################################################################################
def assign_form(store, client_id, coach_id, form_id, first_due, total_weeks=None,
                window=None, form_title=''):
    """Creates week 1 of a series, due Monday 09:00 of the week containing ``first_due``."""
    if total_weeks is None:
        total_weeks = settings.DEFAULT_TOTAL_WEEKS
    _check_total_weeks(total_weeks)
    config = CheckInWindowConfig.from_doc(window)
    first_monday = monday_of(_to_local_day(first_due))
    template = {
        'clientId': coerce_id(client_id),
        'coachId': coerce_id(coach_id),
        'formId': coerce_id(form_id),
        'formTitle': form_title or 'Weekly Check-in',
        'frequency': 'weekly',
        'checkInWindow': config.to_doc(),
        'isRecurring': True,
        'dueTime': settings.DUE_TIME,
        'dueDate': settings.at_local(first_monday.date(), settings.DUE_HOUR),
        'recurringWeek': 1,
    }
    doc = clone_for_week(template, 1, total_weeks)
    doc['assignedAt'] = settings.now_local()
    assignment, created = _upsert_week(store, doc)
    logger.info("Assigned form %s to client %s (week 1 due %s, created=%s)",
                form_id, client_id, assignment['dueDate'].isoformat(), created)
    return assignment, created


def resolve_week(store, client_id, form_id, week_start):
    """Finds or creates the assignment a client should fill in for the week starting ``week_start``.

    The check-in for a week is due the following Monday at 09:00. The week
    number is derived from the series' earliest assignment, so a week created
    here lines up with what backfill would have created.
    """
    client_id, form_id = coerce_id(client_id), coerce_id(form_id)
    week_monday = monday_of(_to_local_day(week_start)).date()
    due_monday = week_monday + timedelta(weeks=1)
    due_date = settings.at_local(due_monday, settings.DUE_HOUR)

    series = store.series(client_id, form_id)
    template = pick_template(series)
    if template is None:
        raise NotFound(NO_TEMPLATE_MESSAGE)
    week = week_for_due_date(series_base_monday(template), due_date)

    existing = next((a for a in series if a.get('recurringWeek') == week), None)
    if existing is None:
        # Legacy documents without a trustworthy week number.
        for target in (due_monday, week_monday):
            existing = next(
                (a for a in series if a.get('dueDate') and monday_of(a['dueDate']).date() == target),
                None
            )
            if existing:
                break
    if existing is not None:
        return _resolved(existing, created=False)

    total_weeks = template.get('totalWeeks') or settings.DEFAULT_TOTAL_WEEKS
    assignment, created = _upsert_week(store, clone_for_week(template, week, total_weeks))
    if created:
        logger.info("Created week %d of form %s for client %s on demand", week, form_id, client_id)
    return _resolved(assignment, created)


def _resolved(assignment, created):
    return {
        'assignmentId': str(assignment['_id']),
        'title': assignment.get('formTitle'),
        'recurringWeek': assignment.get('recurringWeek'),
        'dueDate': assignment['dueDate'].isoformat() if assignment.get('dueDate') else None,
        'created': created,
    }


################################################################################
# BACKFILL
################################################################################
def backfill_series(store, client_id, form_id, total_weeks=None):
    client_id, form_id = coerce_id(client_id), coerce_id(form_id)
    report = BackfillReport(str(client_id), str(form_id))
    series = store.series(client_id, form_id)
    if not series:
        report.skipped = 'no assignments'
        return report
    template = pick_template(series)
    if template is None:
        report.skipped = 'no assignment with a due date'
        return report

    if total_weeks is not None:
        total = _check_total_weeks(total_weeks)
    else:
        total = max(a.get('totalWeeks') or 0 for a in series) or settings.DEFAULT_TOTAL_WEEKS
    existing = [a['recurringWeek'] for a in series if a.get('recurringWeek')]
    planned = plan_backfill(template, existing, total)
    operations = (
        store.upsert_op(_series_key(client_id, form_id, doc['recurringWeek']), doc)
        for doc in planned
    )
    report.created = store.batch_write(ASSIGNMENTS, operations)
    logger.info("Backfilled %d weeks for client %s form %s", report.created, client_id, form_id)
    return report


def backfill_all(store, total_weeks=None, coach_id=None):
    if total_weeks is not None:
        _check_total_weeks(total_weeks)
    filter_doc = {'isRecurring': {'$ne': False}}
    if coach_id is not None:
        filter_doc['coachId'] = coerce_id(coach_id)
    pairs = []
    for assignment in store.find(ASSIGNMENTS, filter_doc):
        pair = (assignment.get('clientId'), assignment.get('formId'))
        if pair not in pairs:
            pairs.append(pair)

    reports = []
    for client_id, form_id in pairs:
        try:
            reports.append(backfill_series(store, client_id, form_id, total_weeks))
        except CheckInError as e:
            logger.warning("Skipping series client=%s form=%s: %s", client_id, form_id, e.message)
            reports.append(BackfillReport(str(client_id), str(form_id), skipped=e.message))
    return reports


################################################################################
# COMPLETION / STATUS CHANGES
################################################################################
def complete_assignment(store, assignment_id, answers, now=None):
    """Claims the assignment and stores its single response. Returns the response document."""
    now = settings.as_local(now) if now else settings.now_local()
    assignment = store.get(ASSIGNMENTS, assignment_id)
    if assignment is None:
        raise NotFound("Check-in not found", assignmentId=str(assignment_id))
    if assignment.get('status') == 'missed':
        raise InvalidArgument("This check-in was marked as missed", assignmentId=str(assignment_id))

    score = score_answers(answers)
    client = store.get(CLIENTS, assignment.get('clientId'))
    light = traffic_light(score, thresholds_for(client))
    closes_at = compute_window(assignment['dueDate'], assignment.get('checkInWindow'), now).closes_at
    claimed = store.find_one_and_set(
        ASSIGNMENTS,
        {'_id': assignment['_id'], 'completedAt': None, 'status': {'$ne': 'missed'}},
        {'status': 'completed', 'completedAt': now, 'score': score}
    )
    if claimed is None:
        raise InvalidArgument("This check-in has already been submitted", assignmentId=str(assignment_id))

    response = {
        'assignmentId': claimed['_id'],
        'clientId': claimed.get('clientId'),
        'coachId': claimed.get('coachId'),
        'formId': claimed.get('formId'),
        'formTitle': claimed.get('formTitle'),
        'recurringWeek': claimed.get('recurringWeek'),
        'answers': list(answers or []),
        'score': score,
        'trafficLight': light,
        'submittedAt': now,
        'late': now > closes_at,
    }
    try:
        response['_id'] = store.insert(RESPONSES, response)
    except Exception as e:
        # Give the claim back so the client can submit again.
        store.update(ASSIGNMENTS, claimed['_id'],
                     {'status': assignment.get('status') or 'pending', 'completedAt': None,
                      'score': assignment.get('score')},
                     guard={'completedAt': now})
        logger.error("Saving the response for assignment %s failed: %s", claimed['_id'], e)
        raise ExternalFailure("Could not save the check-in response, please try again",
                              assignmentId=str(claimed['_id']))
    store.update(ASSIGNMENTS, claimed['_id'], {'responseId': response['_id']})
    logger.info("Assignment %s completed (week %s, score %d, %s)",
                claimed['_id'], claimed.get('recurringWeek'), score, light)
    return response


def refresh_overdue(store, now=None):
    """Flags pending/active assignments whose window has closed as overdue. Returns how many changed."""
    now = settings.as_local(now) if now else settings.now_local()
    operations = []
    candidates = store.find(ASSIGNMENTS, {'status': {'$in': ['pending', 'active']}, 'completedAt': None})
    for assignment in candidates:
        if assignment.get('dueDate') is None:
            continue
        try:
            status = compute_window(assignment['dueDate'], assignment.get('checkInWindow'), now)
        except CheckInError as e:
            logger.error("Cannot evaluate window for assignment %s: %s", assignment['_id'], e.message)
            continue
        if status.is_overdue:
            operations.append(store.set_op(assignment['_id'], {'status': 'overdue'}))
    store.batch_write(ASSIGNMENTS, operations)
    if operations:
        logger.info("Marked %d assignments as overdue.", len(operations))
    else:
        logger.info("No assignments found to mark as overdue.")
    return len(operations)


def mark_missed(store, assignment_id, client_id, reason, comment=None, now=None):
    now = settings.as_local(now) if now else settings.now_local()
    if reason not in MISSED_REASONS:
        raise InvalidArgument(f"reason must be one of {', '.join(MISSED_REASONS)}", reason=reason)
    comment = (comment or '').strip()
    if reason == 'other' and not comment:
        raise InvalidArgument("A comment is required when the reason is 'other'")

    assignment = store.get(ASSIGNMENTS, assignment_id)
    if assignment is None or assignment.get('clientId') != coerce_id(client_id):
        raise NotFound("Check-in not found", assignmentId=str(assignment_id))
    if assignment.get('completedAt') or assignment.get('status') == 'completed':
        raise InvalidArgument("This check-in has already been completed")
    if assignment.get('status') == 'missed':
        raise InvalidArgument("This check-in is already marked as missed")
    if assignment.get('dueDate') is None or now - assignment['dueDate'] < settings.MISSED_AFTER:
        raise InvalidArgument(
            f"Check-ins can only be marked as missed {settings.MISSED_AFTER.days} days after the due date"
        )

    fields = {'status': 'missed', 'missedReason': reason, 'missedComment': comment or None, 'missedAt': now}
    if not store.update(ASSIGNMENTS, assignment['_id'], fields,
                        guard={'completedAt': None, 'status': {'$ne': 'missed'}}):
        raise InvalidArgument("This check-in can no longer be marked as missed")
    logger.info("Assignment %s marked as missed (%s)", assignment['_id'], reason)
    assignment.update(fields)
    return assignment
