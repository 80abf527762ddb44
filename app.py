from flask import Flask, Blueprint, current_app, request, jsonify
from flask_cors import CORS
from svix.webhooks import Webhook, WebhookVerificationError
from werkzeug.exceptions import HTTPException
import json
import logging
from datetime import date, datetime

from analytics import build_analytics, build_dashboard
from config import Config
from errors import StudyTrackerError, ValidationFailed
from models import db
from schemas import (
    DailyRecordPayload, NotePayload, NoteUpdate, TaskPayload, TaskUpdate,
    TimerConfigPayload, TimerModePayload, changes_from, parse,
)
from sessions import SessionRegistry
from storage import LocalStore, delete_user_data

logger = logging.getLogger(__name__)

api = Blueprint('api', __name__, url_prefix='/api')


def create_app(config_object=Config, clock=None):
    app = Flask(__name__)
    app.config.from_object(config_object)

    # Configure logging
    logging.basicConfig(level=app.config['LOG_LEVEL'])

    CORS(app, resources={r"/api/*": {"origins": "*"}})

    db.init_app(app)
    with app.app_context():
        db.create_all()

    local_store = LocalStore(app.config['LOCAL_STORE_PATH'])
    app.extensions['local_store'] = local_store
    app.extensions['study_sessions'] = SessionRegistry.from_config(
        app.config, local_store, clock=clock or datetime.now)

    app.register_blueprint(api)
    app.register_error_handler(Exception, handle_error)
    return app


def handle_error(e):
    if isinstance(e, HTTPException):
        return jsonify({"success": False, "message": e.description}), e.code
    if isinstance(e, StudyTrackerError):
        return jsonify({"success": False, "message": str(e)}), e.status_code
    logger.exception(f"Unexpected error on {request.method} {request.path}")
    db.session.rollback()
    return jsonify({"success": False, "message": "Something went wrong, please try again"}), 500


# Helpers

def sessions():
    return current_app.extensions['study_sessions']


def current_user_id():
    """User id injected by the identity provider in front of the service."""
    return request.headers.get(current_app.config['IDENTITY_HEADER']) or None


def unauthorized():
    return jsonify({"success": False, "message": "Unauthorized"}), 401


def request_body():
    return request.get_json(silent=True)


def today():
    return sessions().clock().date()


def parse_date(value, field='date'):
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationFailed(f"{field}: must be a date in YYYY-MM-DD format")


# Routes

@api.route('/health', methods=['GET'])
def health():
    return jsonify({"success": True, "status": "ok"})


@api.route('/timer', methods=['GET'])
def get_timer():
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    with sessions().checkout(user_id) as session:
        return jsonify({"success": True, **session.state()})


@api.route('/timer/start', methods=['POST'])
def start_timer():
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    with sessions().checkout(user_id) as session:
        session.timer.start()
        return jsonify({"success": True, **session.state()})


@api.route('/timer/pause', methods=['POST'])
def pause_timer():
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    with sessions().checkout(user_id) as session:
        session.timer.pause()
        return jsonify({"success": True, **session.state()})


@api.route('/timer/reset', methods=['POST'])
def reset_timer():
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    with sessions().checkout(user_id) as session:
        session.timer.reset()
        return jsonify({"success": True, **session.state()})


@api.route('/timer/mode', methods=['POST'])
def set_timer_mode():
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    payload = parse(TimerModePayload, request_body())
    with sessions().checkout(user_id) as session:
        session.timer.set_mode(payload.mode)
        return jsonify({"success": True, **session.state()})


@api.route('/timer/config', methods=['PUT'])
def configure_timer():
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    payload = parse(TimerConfigPayload, request_body())
    durations = {name: value for name, value in payload.model_dump().items() if value is not None}
    with sessions().checkout(user_id) as session:
        session.timer.configure(**durations)
        return jsonify({"success": True, **session.state()})


@api.route('/timer/save', methods=['POST'])
def save_timer():
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    with sessions().checkout(user_id) as session:
        saved = session.save(session.last_seen_at)
        return jsonify({"success": True, "saved": saved, **session.state()})


@api.route('/timer/exit', methods=['POST'])
def exit_timer():
    """Called when the user leaves the timer page; saves and ends the session."""
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    ended = sessions().end(user_id)
    return jsonify({"success": True, "ended": ended})


@api.route('/timer/reconnect', methods=['POST'])
def reconnect_storage():
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    store = sessions().store_for(user_id)
    reconnected = store.reconnect()
    return jsonify({"success": True, "reconnected": reconnected, "backend": store.backend})


@api.route('/pomodoro', methods=['GET'])
def get_daily_record():
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    day = parse_date(request.args['date']) if 'date' in request.args else today()
    store = sessions().store_for(user_id)
    record = store.timer.read(day)
    data = record.to_dict() if record else {
        "user_id": user_id,
        "date": day.isoformat(),
        "study_time_seconds": 0,
        "pomodoro_count": 0,
        "updated_at": None,
    }
    return jsonify({"success": True, "record": data, "backend": store.backend})


@api.route('/pomodoro', methods=['POST'])
def save_daily_record():
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    payload = parse(DailyRecordPayload, request_body())
    store = sessions().store_for(user_id)
    record = store.timer.write(payload.date or today(), payload.study_time_seconds, payload.pomodoro_count)
    return jsonify({"success": True, "record": record.to_dict(), "backend": store.backend})


@api.route('/tasks', methods=['GET'])
def get_tasks():
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    tasks = sessions().store_for(user_id).tasks.list()
    return jsonify({"success": True, "tasks": tasks})


@api.route('/tasks', methods=['POST'])
def create_task():
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    payload = parse(TaskPayload, request_body())
    task = sessions().store_for(user_id).tasks.create(payload.model_dump())
    return jsonify({"success": True, "task": task}), 201


@api.route('/tasks/<task_id>', methods=['GET'])
def get_task(task_id):
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    task = sessions().store_for(user_id).tasks.get(task_id)
    return jsonify({"success": True, "task": task})


@api.route('/tasks/<task_id>', methods=['PUT'])
def update_task(task_id):
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    changes = changes_from(parse(TaskUpdate, request_body()))
    task = sessions().store_for(user_id).tasks.update(task_id, changes)
    return jsonify({"success": True, "task": task})


@api.route('/tasks/<task_id>/complete', methods=['POST'])
def complete_task(task_id):
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    tasks = sessions().store_for(user_id).tasks
    task = tasks.get(task_id)
    updated_task = tasks.update(task_id, {"completed": not task['completed']})
    return jsonify({"success": True, "message": "Task status updated", "task": updated_task})


@api.route('/tasks/<task_id>', methods=['DELETE'])
def delete_task(task_id):
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    sessions().store_for(user_id).tasks.delete(task_id)
    return jsonify({"success": True, "message": "Task deleted successfully"})


@api.route('/notes', methods=['GET'])
def get_notes():
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    notes = sessions().store_for(user_id).notes.list()
    return jsonify({"success": True, "notes": notes})


@api.route('/notes', methods=['POST'])
def create_note():
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    payload = parse(NotePayload, request_body())
    note = sessions().store_for(user_id).notes.create(payload.model_dump())
    return jsonify({"success": True, "note": note}), 201


@api.route('/notes/<note_id>', methods=['GET'])
def get_note(note_id):
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    note = sessions().store_for(user_id).notes.get(note_id)
    return jsonify({"success": True, "note": note})


@api.route('/notes/<note_id>', methods=['PUT'])
def update_note(note_id):
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    changes = changes_from(parse(NoteUpdate, request_body()))
    note = sessions().store_for(user_id).notes.update(note_id, changes)
    return jsonify({"success": True, "note": note})


@api.route('/notes/<note_id>', methods=['DELETE'])
def delete_note(note_id):
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    sessions().store_for(user_id).notes.delete(note_id)
    return jsonify({"success": True, "message": "Note deleted successfully"})


@api.route('/analytics', methods=['GET'])
def get_analytics():
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    days = request.args.get('days', current_app.config['ANALYTICS_DAYS'], type=int)
    if not 1 <= days <= 366:
        raise ValidationFailed("days: must be between 1 and 366")

    store = sessions().store_for(user_id)
    analytics = build_analytics(store, today(), days, current_app.config['STREAK_MIN_SECONDS'])
    return jsonify({"success": True, "analytics": analytics, "backend": store.backend})


@api.route('/dashboard', methods=['GET'])
def get_dashboard():
    user_id = current_user_id()
    if not user_id:
        return unauthorized()

    store = sessions().store_for(user_id)
    dashboard = build_dashboard(store, today(), current_app.config['STREAK_MIN_SECONDS'])
    return jsonify({"success": True, "dashboard": dashboard, "backend": store.backend})


@api.route('/webhook/identity', methods=['POST'])
def identity_webhook():
    secret = current_app.config.get('WEBHOOK_SECRET')
    if not secret:
        logger.error("WEBHOOK_SECRET is not configured")
        return jsonify({"success": False, "message": "Webhook secret is not configured"}), 500

    headers = {name: request.headers.get(name) for name in ('svix-id', 'svix-timestamp', 'svix-signature')}
    if not all(headers.values()):
        return jsonify({"success": False, "message": "Missing signature headers"}), 400

    body = request.get_data(as_text=True)
    try:
        Webhook(secret).verify(body, headers)
    except WebhookVerificationError as e:
        logger.warning(f"Rejected webhook: {e}")
        return jsonify({"success": False, "message": "Invalid signature"}), 400

    try:
        event = json.loads(body)
    except ValueError:
        raise ValidationFailed("Webhook body must be JSON")
    if not isinstance(event, dict):
        raise ValidationFailed("Webhook body must be a JSON object")

    event_type = event.get('type')
    user_id = (event.get('data') or {}).get('id')
    logger.info(f"Webhook received: {event_type} for user {user_id}")

    if event_type == 'user.deleted' and user_id:
        sessions().discard(user_id)
        delete_user_data(user_id, current_app.extensions['local_store'])
        return jsonify({"success": True, "message": "User data deleted successfully"})

    return jsonify({"success": True, "message": f"Webhook received: {event_type}"})


if __name__ == '__main__':
    create_app().run(host='0.0.0.0', port=8080, debug=True)
