"""Reminder dispatcher: the scan-and-send loop behind the scheduled emails.

Each run walks the open assignments once. For every assignment a reminder
kind decides whether an email is due and which marker guards it. The marker
is claimed with a conditional write before sending, so overlapping runs can
never both send; a failed send gives the claim back so the next tick retries.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import settings
import email_templates
from checkin_window import CheckInWindowConfig, compute_window, window_bounds, format_time
from errors import ExternalFailure
from store import ASSIGNMENTS, CLIENTS, COACHES

logger = logging.getLogger(__name__)

ONBOARDING_DONE = ('completed', 'submitted')


@dataclass
class DispatchResult:
    kind: str
    checked: int = 0
    sent: int = 0
    skipped: int = 0
    errors: list = field(default_factory=list)

    def to_dict(self):
        return {
            'kind': self.kind,
            'checked': self.checked,
            'sent': self.sent,
            'skipped': self.skipped,
            'errors': list(self.errors),
        }


@dataclass(frozen=True)
class Claim:
    marker: str
    value: object
    reclaim_before: Optional[datetime] = None


def is_completed(assignment):
    return assignment.get('status') == 'completed' or bool(assignment.get('completedAt'))


class ReminderDispatcher:
    KINDS = ('window-open', 'due-reminders', 'window-closed', 'overdue')
    HOURLY_KINDS = ('window-open', 'due-reminders', 'overdue')

    def __init__(self, store, mailer, base_url=None):
        self.store = store
        self.mailer = mailer
        self.base_url = (base_url or settings.BASE_URL).rstrip('/')
        self._rules = {
            'window-open': (self._window_open_claim, email_templates.window_open),
            'due-reminders': (self._due_claim, email_templates.due_reminder),
            'window-closed': (self._window_closed_claim, email_templates.window_closed),
            'overdue': (self._overdue_claim, email_templates.overdue),
        }

    # --- entry points ---

    def run(self, kind, now=None, test_email=None):
        if kind not in self._rules:
            raise ValueError(f"Unknown reminder kind: {kind}")
        now = settings.as_local(now) if now else settings.now_local()
        if kind == 'overdue' and now.hour != settings.OVERDUE_REMINDER_HOUR:
            logger.debug("Overdue reminders only run during the %02d:00 hour", settings.OVERDUE_REMINDER_HOUR)
            return DispatchResult(kind)
        return self._scan(kind, now, test_email)

    def run_window_open(self, now=None, test_email=None):
        return self.run('window-open', now, test_email)

    def run_due_reminders(self, now=None, test_email=None):
        return self.run('due-reminders', now, test_email)

    def run_window_closed(self, now=None, test_email=None):
        return self.run('window-closed', now, test_email)

    def run_overdue(self, now=None, test_email=None):
        return self.run('overdue', now, test_email)

    def run_hourly(self, now=None):
        """Runs the hourly reminder kinds; the overdue kind gates itself on the hour.

        The window-closed notice has its own, shorter cadence (``run_window_closed``).
        """
        now = settings.as_local(now) if now else settings.now_local()
        return [self.run(kind, now) for kind in self.HOURLY_KINDS]

    # --- scan loop ---

    def _scan(self, kind, now, test_email):
        result = DispatchResult(kind)
        logger.info("Running %s reminders at %s", kind, now.isoformat())
        for assignment in self.store.open_assignments():
            result.checked += 1
            try:
                sent = self._process(kind, assignment, now, test_email)
            except Exception as e:
                logger.exception("%s reminder failed for assignment %s", kind, assignment.get('_id'))
                result.errors.append(f"{assignment.get('_id')}: {e}")
                continue
            if sent:
                result.sent += 1
            else:
                result.skipped += 1
        logger.info("Finished %s reminders: checked=%d sent=%d skipped=%d errors=%d",
                    kind, result.checked, result.sent, result.skipped, len(result.errors))
        return result

    def _process(self, kind, assignment, now, test_email):
        if is_completed(assignment) or assignment.get('dueDate') is None:
            return False
        decide, template = self._rules[kind]
        claim = decide(assignment, now)
        if claim is None:
            return False
        client = self._eligible_client(assignment, test_email)
        if client is None:
            return False

        # Everything that can fail before the send happens before the claim.
        subject, html = self._build_email(template, kind, assignment, client)
        recipient = test_email or client['email']
        if test_email:
            subject = f"[TEST - Original: {client['email']}] {subject}"

        assignment_id = assignment['_id']
        if not self.store.mark_sent_if_unset(assignment_id, claim.marker, claim.value, claim.reclaim_before):
            logger.info("%s reminder for %s already claimed by another run", kind, assignment_id)
            return False

        try:
            ok = self.mailer.send(recipient, subject, html, metadata={'assignmentId': str(assignment_id), 'kind': kind})
        except Exception as e:
            ok, error = False, str(e)
        else:
            error = None if ok else 'mailer reported failure'

        if not ok:
            self.store.release_marker(assignment_id, claim.marker, claim.value, assignment.get(claim.marker))
            self.store.log_email(kind, assignment_id, recipient, subject, False, error=error, sent_at=now)
            raise ExternalFailure(f"Failed to send {kind} email to {recipient}: {error}")

        if kind == 'window-open':
            self.store.update(ASSIGNMENTS, assignment_id, {'windowOpenEmailSentAt': now})
        self.store.log_email(kind, assignment_id, recipient, subject, True, sent_at=now)
        return True

    # --- reminder rules ---

    def _window_open_claim(self, assignment, now):
        config = CheckInWindowConfig.from_doc(assignment.get('checkInWindow'))
        if not config.enabled:
            return None
        if not compute_window(assignment['dueDate'], config, now).is_open:
            return None
        last_sent = assignment.get('windowOpenEmailSentDate')
        if last_sent and settings.as_local(last_sent).date() >= now.date():
            return None
        return Claim('windowOpenEmailSentDate', now, reclaim_before=settings.start_of_day_local(now.date()))

    def _due_claim(self, assignment, now):
        if assignment.get('reminder24hSent'):
            return None
        low, high = settings.DUE_REMINDER_RANGE
        if not low <= assignment['dueDate'] - now < high:
            return None
        return Claim('reminder24hSent', True)

    def _window_closed_claim(self, assignment, now):
        if assignment.get('windowClosedEmailSent'):
            return None
        config = CheckInWindowConfig.from_doc(assignment.get('checkInWindow'))
        if not config.enabled:
            return None
        _, closes_at = window_bounds(assignment['dueDate'], config)
        low, high = settings.CLOSED_NOTICE_DELAY
        if not low <= now - closes_at <= high:
            return None
        return Claim('windowClosedEmailSent', True)

    def _overdue_claim(self, assignment, now):
        config = CheckInWindowConfig.from_doc(assignment.get('checkInWindow'))
        if not compute_window(assignment['dueDate'], config, now).is_overdue:
            return None
        last_sent = assignment.get('lastOverdueEmailSentAt')
        if last_sent and now - last_sent < settings.OVERDUE_REMINDER_INTERVAL:
            return None
        return Claim('lastOverdueEmailSentAt', now, reclaim_before=now - settings.OVERDUE_REMINDER_INTERVAL)

    # --- helpers ---

    def _eligible_client(self, assignment, test_email):
        client = self.store.get(CLIENTS, assignment.get('clientId'))
        if not client:
            return None
        onboarded = client.get('onboardingStatus') in ONBOARDING_DONE or client.get('canStartCheckIns') is True
        if not onboarded or client.get('status') != 'active':
            return None
        if not client.get('emailNotifications', True) and not test_email:
            logger.info("Skipping email for %s: email notifications disabled", client.get('email'))
            return None
        if not client.get('email'):
            return None
        return client

    def _build_email(self, template, kind, assignment, client):
        client_name = f"{client.get('firstName', '')} {client.get('lastName', '')}".strip() or 'there'
        coach = self.store.get(COACHES, assignment['coachId']) if assignment.get('coachId') else None
        coach_name = f"{coach.get('firstName', '')} {coach.get('lastName', '')}".strip() if coach else None
        form_title = assignment.get('formTitle') or 'Check-in'
        due_label = assignment['dueDate'].strftime('%A, %d %B %Y')
        url = f"{self.base_url}/client-portal/check-in/{assignment['_id']}"
        if kind == 'window-open':
            config = CheckInWindowConfig.from_doc(assignment.get('checkInWindow'))
            close_label = f"{config.end_day.capitalize()} {format_time(config.end_time)}"
            return template(client_name, form_title, due_label, close_label, url, coach_name or None)
        return template(client_name, form_title, due_label, url, coach_name or None)
