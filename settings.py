import os
import logging
from datetime import datetime, time, timedelta

import pytz
from dotenv import load_dotenv

################################################################################
# 1. ENVIRONMENT
################################################################################
load_dotenv()

def env_flag(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')

SECRET_KEY = os.environ.get('FLASK_SECRET_KEY', 'a-super-secret-key-that-you-should-change')
MONGO_URI = os.environ.get('MONGO_URI', 'mongodb://localhost:27017/')
MONGO_DB_NAME = os.environ.get('MONGO_DB_NAME', 'checkins_app')
BASE_URL = os.environ.get('BASE_URL', 'http://localhost:5001')
CRON_SECRET = os.environ.get('CRON_SECRET', '')
SCHEDULER_ENABLED = env_flag('SCHEDULER_ENABLED', True)
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

# --- MAIL ---
MAIL_PROVIDER = os.environ.get('MAIL_PROVIDER', 'log').lower()
MAILGUN_API_KEY = os.environ.get('MAILGUN_API_KEY', '')
MAILGUN_DOMAIN = os.environ.get('MAILGUN_DOMAIN', '')
MAILGUN_FROM_EMAIL = os.environ.get('MAILGUN_FROM_EMAIL') or f"noreply@{MAILGUN_DOMAIN or 'localhost'}"
MAILGUN_FROM_NAME = os.environ.get('MAILGUN_FROM_NAME', 'Your Coach')
SMTP_HOST = os.environ.get('SMTP_HOST', 'smtp.gmail.com')
SMTP_PORT = int(os.environ.get('SMTP_PORT', '587'))
SMTP_USER = os.environ.get('SMTP_USER', '')
SMTP_PASS = os.environ.get('SMTP_PASS', '')
MAIL_TEST_RECIPIENT = os.environ.get('MAIL_TEST_RECIPIENT') or None
MAIL_TIMEOUT = 10

################################################################################
# 2. TIMEZONE CONFIGURATION
################################################################################
TIMEZONE_NAME = os.environ.get('CHECKIN_TIMEZONE', 'Australia/Sydney')
TIMEZONE = pytz.timezone(TIMEZONE_NAME)

def now_local():
    """Returns the current time localized to the configured check-in timezone."""
    return datetime.now(TIMEZONE)

def today_local():
    return now_local().date()

def start_of_day_local(dt_date):
    """Returns a timezone-aware datetime representing local midnight for the given date object."""
    return TIMEZONE.localize(datetime.combine(dt_date, datetime.min.time()))

def at_local(dt_date, hour, minute=0):
    return TIMEZONE.localize(datetime.combine(dt_date, time(hour, minute)))

def as_local(value):
    """Converts a stored or user-supplied datetime to local time. Naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = pytz.utc.localize(value)
    return value.astimezone(TIMEZONE)

################################################################################
# 3. SCHEDULING CONSTANTS
################################################################################
# Canonical check-in window; every call site uses this one value.
DEFAULT_CHECK_IN_WINDOW = {
    'enabled': True,
    'startDay': 'friday',
    'startTime': '10:00',
    'endDay': 'monday',
    'endTime': '22:00',
}

DUE_HOUR = 9
DUE_TIME = '09:00'
DEFAULT_TOTAL_WEEKS = 20
OVERDUE_REMINDER_HOUR = 7
OVERDUE_REMINDER_INTERVAL = timedelta(hours=23, minutes=30)
DUE_REMINDER_RANGE = (timedelta(hours=24), timedelta(hours=48))
CLOSED_NOTICE_DELAY = (timedelta(minutes=110), timedelta(minutes=130))
# Minutes between closed-notice checks; must not exceed the width of CLOSED_NOTICE_DELAY.
CLOSED_NOTICE_CHECK_MINUTES = 10
MISSED_AFTER = timedelta(days=3)
BATCH_LIMIT = 500

################################################################################
# 4. LOGGING
################################################################################
def configure_logging(level=None):
    logging.basicConfig(
        level=level or LOG_LEVEL,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
