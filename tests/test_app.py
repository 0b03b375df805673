"""Tests for the JSON routes of the Flask app."""
from datetime import timedelta

import pytest

import settings
from checkin_window import monday_of
from store import ASSIGNMENTS, CLIENTS

CRON_HEADERS = {'Authorization': 'Bearer test-cron-secret'}


def login(http, email, password='password123'):
    return http.post('/login', json={'email': email, 'password': password})


@pytest.fixture
def as_client(http, users):
    assert login(http, 'alex@example.com').status_code == 200
    return http


@pytest.fixture
def as_coach(http, users):
    assert login(http, 'coach@example.com').status_code == 200
    return http


class TestAuth:

    def test_bad_password(self, http, users):
        response = login(http, 'alex@example.com', 'wrong')
        assert response.status_code == 401
        assert response.get_json()['success'] is False

    def test_login_reports_role(self, http, users):
        assert login(http, 'Coach@Example.com').get_json() == {'success': True, 'role': 'coach'}

    def test_routes_need_a_session(self, http):
        response = http.post('/api/client-portal/check-in-resolve', json={'formId': 'f', 'weekStart': '2026-03-02'})
        assert response.status_code == 401

    def test_logout(self, as_client):
        assert as_client.post('/logout').status_code == 200
        assert as_client.post('/logout').status_code == 401


class TestClientPortal:

    def test_resolve_week(self, as_client, make_assignment, local):
        make_assignment(local(2026, 3, 2, 9), week=1, formId='form-1')
        response = as_client.post('/api/client-portal/check-in-resolve',
                                  json={'formId': 'form-1', 'weekStart': '2026-03-09'})
        assert response.status_code == 200
        body = response.get_json()
        assert body['recurringWeek'] == 3
        assert body['created'] is True

    def test_resolve_without_series(self, as_client):
        response = as_client.post('/api/client-portal/check-in-resolve',
                                  json={'formId': 'form-1', 'weekStart': '2026-03-09'})
        assert response.status_code == 404
        assert 'Ask your coach' in response.get_json()['message']

    def test_resolve_needs_fields(self, as_client):
        assert as_client.post('/api/client-portal/check-in-resolve', json={}).status_code == 400

    def test_complete_once(self, as_client, make_assignment, local):
        assignment = make_assignment(local(2026, 3, 9, 9))
        url = f"/api/check-in-assignments/{assignment['_id']}/complete"
        answers = [{'questionId': 'energy', 'score': 9}]
        first = as_client.post(url, json={'answers': answers})
        assert first.status_code == 200
        assert first.get_json()['score'] == 90
        assert as_client.post(url, json={'answers': answers}).status_code == 400

    def test_complete_rejects_malformed_answers(self, as_client, store, make_assignment, local):
        assignment = make_assignment(local(2026, 3, 9, 9))
        url = f"/api/check-in-assignments/{assignment['_id']}/complete"
        assert as_client.post(url, json={'answers': ['great week']}).status_code == 400
        assert as_client.post(url, json={'answers': [{'score': 5, 'weight': -1}]}).status_code == 400
        assert store.get(ASSIGNMENTS, assignment['_id'])['completedAt'] is None

    def test_mark_missed(self, as_client, make_assignment, local):
        assignment = make_assignment(local(2026, 3, 2, 9))
        response = as_client.post(f"/api/check-in-assignments/{assignment['_id']}/mark-missed",
                                  json={'reason': 'traveling'})
        assert response.status_code == 200
        assert response.get_json()['status'] == 'missed'

    def test_window_status(self, as_client, make_assignment, local):
        assignment = make_assignment(local(2026, 3, 9, 9))
        body = as_client.get(f"/api/check-in-assignments/{assignment['_id']}/window").get_json()
        assert body['description'] == 'Friday 10:00 AM - Monday 10:00 PM'
        assert set(body['window']) == {'opensAt', 'closesAt', 'isOpen', 'isOverdue', 'message'}
        assert body['nextOpensAt'] is None

    def test_window_reports_next_opening(self, as_client, make_assignment):
        due = settings.at_local(monday_of(settings.now_local()).date() + timedelta(weeks=3), 9)
        assignment = make_assignment(due)
        body = as_client.get(f"/api/check-in-assignments/{assignment['_id']}/window").get_json()
        assert body['nextOpensAt'] is not None
        assert body['nextOpensAt'] == body['window']['opensAt']

    def test_other_clients_assignment_is_forbidden(self, as_client, store, make_assignment, local):
        other = store.insert(CLIENTS, {'email': 'jordan@example.com'})
        assignment = make_assignment(local(2026, 3, 9, 9), clientId=other)
        assert as_client.get(f"/api/check-in-assignments/{assignment['_id']}/window").status_code == 403

    def test_clients_cannot_assign(self, as_client, people):
        response = as_client.post('/api/check-in-assignments',
                                  json={'clientId': str(people['client_id']), 'formId': 'f', 'firstDueDate': '2026-03-02'})
        assert response.status_code == 403


class TestCoach:

    def test_assign_with_backfill(self, as_coach, store, people, local):
        response = as_coach.post('/api/check-in-assignments', json={
            'clientId': str(people['client_id']),
            'formId': 'form-1',
            'firstDueDate': '2026-03-02',
            'totalWeeks': 4,
            'formTitle': 'Weekly',
            'backfill': True,
        })
        assert response.status_code == 201
        body = response.get_json()
        assert body['backfill']['created'] == 3
        assert store.db[ASSIGNMENTS].count_documents({'formId': 'form-1'}) == 4

    def test_assign_rejects_bad_window(self, as_coach, people):
        response = as_coach.post('/api/check-in-assignments', json={
            'clientId': str(people['client_id']),
            'formId': 'form-1',
            'firstDueDate': '2026-03-02',
            'checkInWindow': {'startDay': 'friday', 'startTime': '25:00'},
        })
        assert response.status_code == 400

    def test_backfill_route(self, as_coach, make_assignment, local):
        make_assignment(local(2026, 3, 2, 9), week=1, formId='form-1', totalWeeks=5)
        body = as_coach.post('/api/check-in-assignments/backfill', json={}).get_json()
        assert body['created'] == 4

    def test_zero_total_weeks_is_rejected(self, as_coach, store, people, make_assignment, local):
        response = as_coach.post('/api/check-in-assignments', json={
            'clientId': str(people['client_id']),
            'formId': 'form-1',
            'firstDueDate': '2026-03-02',
            'totalWeeks': 0,
        })
        assert response.status_code == 400
        assert store.db[ASSIGNMENTS].count_documents({}) == 0

        make_assignment(local(2026, 3, 2, 9), week=1, formId='form-2', totalWeeks=5)
        assert as_coach.post('/api/check-in-assignments/backfill', json={'totalWeeks': 0}).status_code == 400


class TestScheduledEmails:

    def test_requires_cron_secret(self, http):
        assert http.post('/api/scheduled-emails/due-reminders').status_code == 403
        assert http.post('/api/scheduled-emails/due-reminders',
                         headers={'Authorization': 'Bearer wrong'}).status_code == 403

    def test_runs_a_kind(self, http):
        response = http.post('/api/scheduled-emails/window-open', headers=CRON_HEADERS, json={})
        assert response.status_code == 200
        body = response.get_json()
        assert body['kind'] == 'window-open'
        assert body['errors'] == []

    def test_unknown_kind(self, http):
        assert http.post('/api/scheduled-emails/birthday', headers=CRON_HEADERS).status_code == 404


def test_scheduler_checks_closed_windows_more_often_than_hourly(store, mailer):
    from app import build_scheduler
    from reminders import ReminderDispatcher
    scheduler = build_scheduler(store, ReminderDispatcher(store, mailer))
    try:
        assert {job.id for job in scheduler.get_jobs()} == {
            'hourly-reminders', 'window-closed-notices', 'refresh-overdue',
        }
        trigger = str(scheduler.get_job('window-closed-notices').trigger)
        assert f"minute='*/{settings.CLOSED_NOTICE_CHECK_MINUTES}'" in trigger
    finally:
        scheduler.shutdown(wait=False)
