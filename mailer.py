"""
Transactional email for check-in reminders.

Supports:
- Mailgun HTTP API
- SMTP
- log (development: nothing is sent, the message is logged)
"""
import re
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import requests

import settings

logger = logging.getLogger(__name__)

TAG_PATTERN = re.compile(r'<[^>]*>')


class Mailer:
    """Sends one HTML email at a time and reports success as a bool."""

    def __init__(self, provider=None, test_recipient=None, session=None):
        self.provider = (provider or settings.MAIL_PROVIDER).lower()
        self.test_recipient = test_recipient if test_recipient is not None else settings.MAIL_TEST_RECIPIENT
        self.session = session or requests.Session()

    def send(self, to, subject, html, metadata=None):
        recipients = [to] if isinstance(to, str) else list(to)
        if self.test_recipient:
            subject = f"[TEST MODE - Original: {', '.join(recipients)}] {subject}"
            recipients = [self.test_recipient]
        text = TAG_PATTERN.sub('', html)

        if self.provider == 'mailgun':
            ok, message = self._send_via_mailgun(recipients, subject, html, text, metadata or {})
        elif self.provider == 'smtp':
            ok, message = self._send_via_smtp(recipients, subject, html, text)
        elif self.provider == 'log':
            ok, message = True, "logged only (MAIL_PROVIDER=log)"
        else:
            ok, message = False, f"Unknown email provider: {self.provider}"

        if ok:
            logger.info("Email to %s %r: %s", ', '.join(recipients), subject, message)
        else:
            logger.error("Email to %s %r failed: %s", ', '.join(recipients), subject, message)
        return ok

    def _send_via_mailgun(self, recipients, subject, html, text, metadata):
        if not settings.MAILGUN_API_KEY or not settings.MAILGUN_DOMAIN:
            return False, "Mailgun not configured (MAILGUN_API_KEY, MAILGUN_DOMAIN)"
        data = {
            'from': f"{settings.MAILGUN_FROM_NAME} <{settings.MAILGUN_FROM_EMAIL}>",
            'to': recipients,
            'subject': subject,
            'html': html,
            'text': text,
            'h:Reply-To': settings.MAILGUN_FROM_EMAIL,
        }
        for key, value in metadata.items():
            data[f"v:{key}"] = str(value)
        try:
            response = self.session.post(
                f"https://api.mailgun.net/v3/{settings.MAILGUN_DOMAIN}/messages",
                auth=('api', settings.MAILGUN_API_KEY),
                data=data,
                timeout=settings.MAIL_TIMEOUT,
            )
        except requests.RequestException as e:
            return False, f"Mailgun error: {e}"
        if response.status_code in (200, 202):
            return True, f"sent via Mailgun (status {response.status_code})"
        return False, f"Mailgun returned status {response.status_code}"

    def _send_via_smtp(self, recipients, subject, html, text):
        if not settings.SMTP_USER or not settings.SMTP_PASS:
            return False, "SMTP credentials not configured (SMTP_USER, SMTP_PASS)"
        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = f"{settings.MAILGUN_FROM_NAME} <{settings.SMTP_USER}>"
        msg['To'] = ', '.join(recipients)
        msg.attach(MIMEText(text, 'plain'))
        msg.attach(MIMEText(html, 'html'))
        try:
            with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=settings.MAIL_TIMEOUT) as server:
                server.starttls()
                server.login(settings.SMTP_USER, settings.SMTP_PASS)
                server.sendmail(settings.SMTP_USER, recipients, msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            return False, f"SMTP error: {e}"
        return True, f"sent via SMTP ({settings.SMTP_HOST})"
