"""Subjects and minimal HTML bodies for the reminder emails."""
from markupsafe import escape

LAYOUT = """<!DOCTYPE html>
<html>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #333;">
  <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
    <p>Hi {name},</p>
    {body}
    <p><a href="{url}" style="background: #14b8a6; color: white; padding: 12px 24px; text-decoration: none; border-radius: 6px;">{cta}</a></p>
    <p>{signoff}</p>
  </div>
</body>
</html>
"""


def _render(name, body, url, cta, coach_name=None):
    signoff = f"Best,<br>{escape(coach_name)}" if coach_name else "Best,<br>Your coach"
    return LAYOUT.format(name=escape(name), body=body, url=escape(url), cta=cta, signoff=signoff)


def window_open(client_name, form_title, due_label, close_label, url, coach_name=None):
    subject = f"Your {form_title} is open"
    body = (
        f"<p>Your check-in <strong>{escape(form_title)}</strong> for {escape(due_label)} is now open.</p>"
        f"<p>Please complete it before {escape(close_label)}.</p>"
    )
    return subject, _render(client_name, body, url, "Start check-in", coach_name)


def due_reminder(client_name, form_title, due_label, url, coach_name=None):
    subject = f"Reminder: {form_title} is due soon"
    body = f"<p>Friendly reminder that <strong>{escape(form_title)}</strong> is due {escape(due_label)}.</p>"
    return subject, _render(client_name, body, url, "Complete check-in", coach_name)


def window_closed(client_name, form_title, due_label, url, coach_name=None):
    subject = f"Check-in window closed: {form_title}"
    body = (
        f"<p>The check-in window for <strong>{escape(form_title)}</strong> ({escape(due_label)}) has closed.</p>"
        "<p>You can still submit it late so your coach can see how your week went.</p>"
    )
    return subject, _render(client_name, body, url, "Submit check-in", coach_name)


def overdue(client_name, form_title, due_label, url, coach_name=None):
    subject = f"Overdue: {form_title}"
    body = f"<p><strong>{escape(form_title)}</strong> was due {escape(due_label)} and hasn't been completed yet.</p>"
    return subject, _render(client_name, body, url, "Complete check-in", coach_name)
