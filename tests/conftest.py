"""Shared fixtures: an in-memory MongoDB, a recording mailer and a Flask test app."""
import os

# Fixed environment before any project module reads it.
os.environ['CHECKIN_TIMEZONE'] = 'Australia/Sydney'
os.environ['SCHEDULER_ENABLED'] = 'false'
os.environ['MAIL_PROVIDER'] = 'log'
os.environ['MAIL_TEST_RECIPIENT'] = ''
os.environ['CRON_SECRET'] = 'test-cron-secret'

from datetime import date

import mongomock
import pytest

import settings
from store import ASSIGNMENTS, CLIENTS, COACHES, USERS, CheckInStore


class RecordingMailer:
    """Stands in for Mailer; records messages and can be told to fail."""

    def __init__(self):
        self.sent = []
        self.fail_for = set()

    def send(self, to, subject, html, metadata=None):
        if to in self.fail_for:
            return False
        self.sent.append({'to': to, 'subject': subject, 'html': html, 'metadata': metadata or {}})
        return True


@pytest.fixture
def local():
    """local(2026, 3, 9, 9) -> aware datetime in the check-in timezone."""
    def build(year, month, day, hour=0, minute=0):
        return settings.at_local(date(year, month, day), hour, minute)
    return build


@pytest.fixture
def store():
    store = CheckInStore(mongomock.MongoClient()['checkins_test'])
    store.ensure_indexes()
    return store


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def people(store):
    coach_id = store.insert(COACHES, {'firstName': 'Sam', 'lastName': 'Rivers', 'email': 'coach@example.com'})
    client_id = store.insert(CLIENTS, {
        'firstName': 'Alex',
        'lastName': 'Nguyen',
        'email': 'alex@example.com',
        'coachId': coach_id,
        'status': 'active',
        'onboardingStatus': 'completed',
        'emailNotifications': True,
    })
    return {'coach_id': coach_id, 'client_id': client_id}


@pytest.fixture
def make_assignment(store, people):
    """Inserts an assignment with sensible defaults and returns it as stored."""
    def build(due_date, week=1, **fields):
        doc = {
            'clientId': people['client_id'],
            'coachId': people['coach_id'],
            'formId': 'weekly-check-in',
            'formTitle': 'Weekly Check-in',
            'frequency': 'weekly',
            'isRecurring': True,
            'dueTime': '09:00',
            'dueDate': due_date,
            'recurringWeek': week,
            'totalWeeks': 12,
            'status': 'pending',
            'completedAt': None,
        }
        doc.update(fields)
        return store.get(ASSIGNMENTS, store.insert(ASSIGNMENTS, doc))
    return build


@pytest.fixture
def app(store, mailer):
    from app import create_app
    flask_app = create_app(store=store, mailer=mailer, start_scheduler=False,
                           config={'TESTING': True, 'CRON_SECRET': 'test-cron-secret', 'BCRYPT_LOG_ROUNDS': 4})
    return flask_app


@pytest.fixture
def http(app):
    return app.test_client()


@pytest.fixture
def users(app, store, people):
    from app import bcrypt
    password_hash = bcrypt.generate_password_hash('password123').decode('utf-8')
    store.insert(USERS, {'email': 'coach@example.com', 'password_hash': password_hash,
                         'role': 'coach', 'coachId': people['coach_id']})
    store.insert(USERS, {'email': 'alex@example.com', 'password_hash': password_hash,
                         'role': 'client', 'clientId': people['client_id']})
    return {'password': 'password123'}
