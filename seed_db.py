#!/usr/bin/env python
import random

from flask_bcrypt import Bcrypt
from dateutil.relativedelta import relativedelta

import settings
from assignments import assign_form, backfill_series, complete_assignment
from store import ASSIGNMENTS, CLIENTS, COACHES, EMAIL_LOG, RESPONSES, USERS, CheckInStore

###############################################################################
# Configuration
###############################################################################
class DummyApp:
    """A minimal 'app' class for Flask-Bcrypt initialization."""
    config = {}

bcrypt = Bcrypt(DummyApp())

WEEKS_OF_HISTORY = 6
TOTAL_WEEKS = 12
FORM_ID = 'weekly-check-in'
PASSWORD = 'password123'

QUESTIONS = [
    {'questionId': 'energy', 'weight': 5},
    {'questionId': 'sleep', 'weight': 4},
    {'questionId': 'nutrition', 'weight': 6},
    {'questionId': 'wins', 'weight': 0},
]

###############################################################################
# Helper Functions
###############################################################################
def clear_collections(store):
    """Clears all relevant collections for a fresh start."""
    print("🗑️  Clearing existing data from all collections...")
    for name in (USERS, COACHES, CLIENTS, ASSIGNMENTS, RESPONSES, EMAIL_LOG):
        store.db[name].delete_many({})
    print("✨ Collections cleared.")

def create_people(store):
    """Creates one coach with two clients: one ready for check-ins, one still onboarding."""
    print("\n--- 👥 Creating Coach & Clients ---")
    password_hash = bcrypt.generate_password_hash(PASSWORD).decode('utf-8')
    coach_id = store.insert(COACHES, {'firstName': 'Sam', 'lastName': 'Rivers', 'email': 'coach@example.com'})
    store.insert(USERS, {'email': 'coach@example.com', 'password_hash': password_hash,
                         'role': 'coach', 'coachId': coach_id})
    print("👤 Coach created -> coach@example.com")

    client_ids = []
    for info in [
        {'firstName': 'Alex', 'lastName': 'Nguyen', 'email': 'alex@example.com',
         'onboardingStatus': 'completed', 'scoringProfile': 'lifestyle'},
        {'firstName': 'Jordan', 'lastName': 'Lee', 'email': 'jordan@example.com',
         'onboardingStatus': 'in_progress', 'scoringProfile': 'moderate'},
    ]:
        info.update({'coachId': coach_id, 'status': 'active', 'emailNotifications': True})
        client_id = store.insert(CLIENTS, info)
        store.insert(USERS, {'email': info['email'], 'password_hash': password_hash,
                             'role': 'client', 'clientId': client_id})
        client_ids.append(client_id)
        print(f"👤 Client created -> {info['email']} ({info['onboardingStatus']})")
    return coach_id, client_ids

def create_series(store, coach_id, client_id):
    """Assigns the weekly form starting a few weeks back, backfills it and completes past weeks."""
    print("\n--- 🗓️  Generating Check-in Series ---")
    first_due = settings.today_local() - relativedelta(weeks=WEEKS_OF_HISTORY)
    assign_form(store, client_id, coach_id, FORM_ID, first_due, total_weeks=TOTAL_WEEKS,
                form_title='Weekly Check-in')
    report = backfill_series(store, client_id, FORM_ID)
    print(f"✅ Created week 1 plus {report.created} backfilled weeks.")

    completed = 0
    now = settings.now_local()
    for assignment in store.series(client_id, FORM_ID):
        if assignment['dueDate'] >= now or random.random() < 0.2:
            continue
        answers = [dict(q, score=random.randint(3, 10)) for q in QUESTIONS]
        complete_assignment(store, assignment['_id'], answers,
                            now=assignment['dueDate'] - relativedelta(hours=random.randint(1, 40)))
        completed += 1
    print(f"✅ Completed {completed} past check-ins.")

###############################################################################
# Main Seeding Routine
###############################################################################
def seed_database(store):
    clear_collections(store)
    store.ensure_indexes()
    coach_id, client_ids = create_people(store)
    create_series(store, coach_id, client_ids[0])
    return coach_id, client_ids

if __name__ == '__main__':
    print(f"--- 🚀 Starting Database Seeding for '{settings.MONGO_DB_NAME}' ---")
    confirm = input(f"⚠️  This will DELETE ALL DATA in '{settings.MONGO_DB_NAME}'. Type 'yes' to continue: ")
    if confirm.lower() != 'yes':
        print("\nSeeding cancelled by user.")
    else:
        seed_database(CheckInStore.from_uri())
        print("\n--- 🎉 Database Seeding Complete! ---")
        print("Sample logins:")
        print(f"  • Coach: coach@example.com / {PASSWORD}")
        print(f"  • Client: alex@example.com / {PASSWORD}")
        print(f"  • Client (onboarding): jordan@example.com / {PASSWORD}")
