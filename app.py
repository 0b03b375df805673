import hmac
import logging
from datetime import datetime, date
from functools import wraps

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from bson import json_util
from bson.objectid import ObjectId
from flask import Blueprint, Flask, current_app, jsonify, request
from flask.json.provider import DefaultJSONProvider
from flask_bcrypt import Bcrypt
from flask_login import (
    LoginManager,
    UserMixin,
    login_user,
    logout_user,
    login_required,
    current_user
)

import settings
from assignments import (
    assign_form, backfill_all, backfill_series, complete_assignment, mark_missed,
    refresh_overdue, resolve_week,
)
from checkin_window import CheckInWindowConfig, compute_window, describe_window, next_open_time
from errors import CheckInError, Forbidden, InvalidArgument, NotFound
from mailer import Mailer
from reminders import ReminderDispatcher
from store import ASSIGNMENTS, CLIENTS, USERS, CheckInStore

logger = logging.getLogger(__name__)

################################################################################
# 1. EXTENSIONS, JSON AND MODELS
################################################################################
bcrypt = Bcrypt()
login_manager = LoginManager()
api = Blueprint('checkins', __name__)

ROLES = ('coach', 'client')


def _json_default(obj):
    if isinstance(obj, ObjectId):
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    return json_util.default(obj)


class MongoJSONProvider(DefaultJSONProvider):
    default = staticmethod(_json_default)


class User(UserMixin):
    def __init__(self, user_data):
        self.id = str(user_data['_id'])
        self.email = user_data.get('email')
        self.password_hash = user_data['password_hash']
        self.role = user_data['role']
        self.client_id = user_data.get('clientId')
        self.coach_id = user_data.get('coachId')

    @staticmethod
    def get(store, user_id):
        data = store.get(USERS, user_id)
        if data and data.get('role') in ROLES:
            return User(data)
        return None


@login_manager.user_loader
def load_user(user_id):
    return User.get(_services()['store'], user_id)


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({'success': False, 'message': 'Authentication required'}), 401


def _services():
    return current_app.extensions['checkins']


def role_required(role):
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if current_user.role != role:
                raise Forbidden(f"Only a {role} can do this")
            return view(*args, **kwargs)
        return wrapped
    return decorator


def _body():
    return request.get_json(silent=True) or {}


def _load_assignment(assignment_id):
    """Loads an assignment the current user may see."""
    assignment = _services()['store'].get(ASSIGNMENTS, assignment_id)
    if assignment is None:
        raise NotFound("Check-in not found", assignmentId=assignment_id)
    owner = assignment.get('coachId') if current_user.role == 'coach' else assignment.get('clientId')
    mine = current_user.coach_id if current_user.role == 'coach' else current_user.client_id
    if owner is None or owner != mine:
        raise Forbidden("You do not have access to this check-in")
    return assignment


################################################################################
# 2. BACKGROUND JOBS
################################################################################
def run_scheduled_reminders(dispatcher):
    logger.info("Running hourly reminder job...")
    try:
        for result in dispatcher.run_hourly():
            if result.errors:
                logger.warning("%s reminders finished with %d errors", result.kind, len(result.errors))
    except Exception:
        logger.exception("Error in hourly reminder job")
    finally:
        logger.info("Finished hourly reminder job.")


def run_closed_notices(dispatcher):
    try:
        result = dispatcher.run_window_closed()
        if result.errors:
            logger.warning("window-closed notices finished with %d errors", len(result.errors))
    except Exception:
        logger.exception("Error in window-closed notice job")


def run_overdue_refresh(store):
    logger.info("Running refresh_overdue job...")
    try:
        refresh_overdue(store)
    except Exception:
        logger.exception("Error in refresh_overdue job")
    finally:
        logger.info("Finished refresh_overdue job.")


def build_scheduler(store, dispatcher):
    scheduler = BackgroundScheduler(daemon=True, timezone=settings.TIMEZONE_NAME)
    # Minute 5 of every hour; the overdue kind only fires in the 07:00 hour.
    scheduler.add_job(run_scheduled_reminders, args=[dispatcher], trigger=CronTrigger(minute=5),
                      id='hourly-reminders', max_instances=1, coalesce=True)
    scheduler.add_job(run_closed_notices, args=[dispatcher],
                      trigger=CronTrigger(minute=f"*/{settings.CLOSED_NOTICE_CHECK_MINUTES}"),
                      id='window-closed-notices', max_instances=1, coalesce=True)
    scheduler.add_job(run_overdue_refresh, args=[store], trigger=CronTrigger(hour=2, minute=5),
                      id='refresh-overdue', max_instances=1, coalesce=True)
    scheduler.start()
    logger.info("Scheduler started successfully.")
    return scheduler


################################################################################
# 3. APP FACTORY
################################################################################
def create_app(store=None, mailer=None, start_scheduler=None, config=None):
    settings.configure_logging()
    app = Flask(__name__)
    app.json = MongoJSONProvider(app)
    app.config['SECRET_KEY'] = settings.SECRET_KEY
    app.config['CRON_SECRET'] = settings.CRON_SECRET
    app.config['BASE_URL'] = settings.BASE_URL
    app.config.update(config or {})

    store = store or CheckInStore.from_uri()
    store.ensure_indexes()
    mailer = mailer or Mailer()
    dispatcher = ReminderDispatcher(store, mailer, base_url=app.config['BASE_URL'])
    app.extensions['checkins'] = {'store': store, 'mailer': mailer, 'dispatcher': dispatcher}

    bcrypt.init_app(app)
    login_manager.init_app(app)
    app.register_blueprint(api)

    @app.errorhandler(CheckInError)
    def handle_checkin_error(error):
        if error.status_code >= 500:
            logger.error("%s: %s", type(error).__name__, error.message)
        return jsonify(error.to_dict()), error.status_code

    if start_scheduler is None:
        start_scheduler = settings.SCHEDULER_ENABLED
    if start_scheduler:
        app.extensions['checkins']['scheduler'] = build_scheduler(store, dispatcher)
    return app


################################################################################
# 4. AUTH ROUTES
################################################################################
@api.route('/login', methods=['POST'])
def login():
    data = _body()
    email = (data.get('email') or '').strip().lower()
    user_data = _services()['store'].db[USERS].find_one({'email': email}) if email else None
    if user_data and user_data.get('role') in ROLES and \
            bcrypt.check_password_hash(user_data['password_hash'], data.get('password') or ''):
        user = User(user_data)
        login_user(user)
        return jsonify({'success': True, 'role': user.role})
    return jsonify({'success': False, 'message': 'Invalid credentials. Please try again.'}), 401


@api.route('/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    return jsonify({'success': True})


################################################################################
# 5. CLIENT PORTAL ROUTES
################################################################################
@api.route('/api/client-portal/check-in-resolve', methods=['POST'])
@login_required
@role_required('client')
def resolve_check_in():
    data = _body()
    if not data.get('formId') or not data.get('weekStart'):
        raise InvalidArgument("formId and weekStart are required")
    resolved = resolve_week(_services()['store'], current_user.client_id, data['formId'], data['weekStart'])
    return jsonify({'success': True, **resolved})


@api.route('/api/check-in-assignments/<assignment_id>/complete', methods=['POST'])
@login_required
@role_required('client')
def complete_check_in(assignment_id):
    assignment = _load_assignment(assignment_id)
    answers = _body().get('answers')
    if not isinstance(answers, list):
        raise InvalidArgument("answers must be a list")
    response = complete_assignment(_services()['store'], assignment['_id'], answers)
    return jsonify({
        'success': True,
        'responseId': response['_id'],
        'score': response['score'],
        'trafficLight': response['trafficLight'],
        'late': response['late'],
    })


@api.route('/api/check-in-assignments/<assignment_id>/mark-missed', methods=['POST'])
@login_required
@role_required('client')
def mark_check_in_missed(assignment_id):
    data = _body()
    assignment = mark_missed(
        _services()['store'], assignment_id, current_user.client_id,
        data.get('reason'), data.get('comment')
    )
    return jsonify({'success': True, 'assignmentId': assignment['_id'], 'status': assignment['status']})


################################################################################
# 6. COACH ROUTES
################################################################################
@api.route('/api/check-in-assignments', methods=['POST'])
@login_required
@role_required('coach')
def create_assignment():
    data = _body()
    store = _services()['store']
    for field in ('clientId', 'formId', 'firstDueDate'):
        if not data.get(field):
            raise InvalidArgument(f"{field} is required")
    client = store.get(CLIENTS, data['clientId'])
    if client is None:
        raise NotFound("Client not found", clientId=data['clientId'])
    if client.get('coachId') != current_user.coach_id:
        raise Forbidden("This client is not assigned to you")

    assignment, created = assign_form(
        store, client['_id'], current_user.coach_id, data['formId'], data['firstDueDate'],
        total_weeks=data.get('totalWeeks'), window=data.get('checkInWindow'),
        form_title=data.get('formTitle', '')
    )
    report = backfill_series(store, client['_id'], assignment['formId']) if data.get('backfill') else None
    return jsonify({
        'success': True,
        'created': created,
        'assignmentId': assignment['_id'],
        'dueDate': assignment['dueDate'],
        'backfill': report.to_dict() if report else None,
    }), 201 if created else 200


@api.route('/api/check-in-assignments/backfill', methods=['POST'])
@login_required
@role_required('coach')
def backfill_assignments():
    data = _body()
    store = _services()['store']
    total_weeks = data.get('totalWeeks')
    if data.get('clientId') and data.get('formId'):
        client = store.get(CLIENTS, data['clientId'])
        if client is None or client.get('coachId') != current_user.coach_id:
            raise Forbidden("This client is not assigned to you")
        reports = [backfill_series(store, client['_id'], data['formId'], total_weeks)]
    else:
        reports = backfill_all(store, total_weeks, coach_id=current_user.coach_id)
    return jsonify({
        'success': True,
        'created': sum(r.created for r in reports),
        'series': [r.to_dict() for r in reports],
    })


@api.route('/api/check-in-assignments/<assignment_id>/window', methods=['GET'])
@login_required
def assignment_window(assignment_id):
    assignment = _load_assignment(assignment_id)
    config = CheckInWindowConfig.from_doc(assignment.get('checkInWindow'))
    now = settings.now_local()
    status = compute_window(assignment['dueDate'], config, now, completed=bool(assignment.get('completedAt')))
    return jsonify({
        'success': True,
        'assignmentId': assignment['_id'],
        'recurringWeek': assignment.get('recurringWeek'),
        'dueDate': assignment['dueDate'],
        'window': status.to_dict(),
        'nextOpensAt': next_open_time(assignment['dueDate'], config, now),
        'description': describe_window(config),
    })


################################################################################
# 7. SCHEDULER TRIGGER ROUTES
################################################################################
def _check_cron_secret():
    expected = current_app.config.get('CRON_SECRET') or ''
    auth = request.headers.get('Authorization', '')
    provided = auth[len('Bearer '):] if auth.startswith('Bearer ') else request.headers.get('X-Cron-Secret', '')
    if not expected or not hmac.compare_digest(provided.encode(), expected.encode()):
        raise Forbidden("Invalid cron secret")


@api.route('/api/scheduled-emails/<kind>', methods=['POST'])
def scheduled_emails(kind):
    _check_cron_secret()
    dispatcher = _services()['dispatcher']
    if kind not in dispatcher.KINDS:
        raise NotFound(f"Unknown reminder kind: {kind}")
    result = dispatcher.run(kind, test_email=_body().get('testEmail'))
    return jsonify({'success': not result.errors, **result.to_dict()})


################################################################################
# 8. MAIN EXECUTION
################################################################################
if __name__ == '__main__':
    app = create_app()
    try:
        # use_reloader=False keeps the scheduler from starting twice in debug mode
        app.run(debug=True, port=5001, use_reloader=False)
    finally:
        scheduler = app.extensions['checkins'].get('scheduler')
        if scheduler and scheduler.running:
            scheduler.shutdown()
