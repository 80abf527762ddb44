"""
Storage backends for timer records, tasks and notes.

Each entity has a remote backend (the relational database behind
Flask-SQLAlchemy) and a local backend (string blobs in a SQLite key-value
file). A :class:`Repository` sends every call to the active one and falls
back to the local backend when the remote one is unreachable. The choice is
shared by all repositories of a :class:`UserStore` and stays on "local" until
an explicit reconnect succeeds.
"""
import functools
import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import (
    DisconnectionError, IntegrityError, InterfaceError, OperationalError, SQLAlchemyError,
)

from errors import BackendUnavailable, NotFoundError, StorageExhausted
from models import db, new_id, utcnow, Note, Tag, Task, TimerData, note_tags, USER_OWNED_MODELS

logger = logging.getLogger(__name__)


@dataclass
class DailyStudyRecord:
    user_id: str
    date: date
    study_time_seconds: int = 0
    pomodoro_count: int = 0
    updated_at: Optional[datetime] = None

    def to_dict(self):
        return {
            'user_id': self.user_id,
            'date': self.date.isoformat(),
            'study_time_seconds': self.study_time_seconds,
            'pomodoro_count': self.pomodoro_count,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }


# ---------------------------------------------------------------------------
# Local key-value store
# ---------------------------------------------------------------------------

class LocalStore:
    """String blobs keyed by (namespace, key). One namespace per user."""

    def __init__(self, path):
        self.path = path
        self.init_db()

    def get_db_connection(self):
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self):
        self._execute('''
            CREATE TABLE IF NOT EXISTS blobs (
                namespace TEXT NOT NULL,
                key TEXT NOT NULL,
                value TEXT NOT NULL,
                PRIMARY KEY (namespace, key)
            )
        ''')

    def _execute(self, sql, params=()):
        try:
            conn = self.get_db_connection()
            try:
                rows = conn.execute(sql, params).fetchall()
                conn.commit()
                return rows
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error(f"Local store error: {e}")
            raise BackendUnavailable(f"Local store error: {e}") from e

    def get(self, namespace, key):
        rows = self._execute('SELECT value FROM blobs WHERE namespace = ? AND key = ?', (namespace, key))
        return rows[0]['value'] if rows else None

    def set(self, namespace, key, value):
        self._execute('''
            INSERT INTO blobs (namespace, key, value) VALUES (?, ?, ?)
            ON CONFLICT (namespace, key) DO UPDATE SET value = excluded.value
        ''', (namespace, key, value))

    def delete(self, namespace, key):
        self._execute('DELETE FROM blobs WHERE namespace = ? AND key = ?', (namespace, key))

    def keys(self, namespace, prefix=''):
        rows = self._execute(
            'SELECT key FROM blobs WHERE namespace = ? AND substr(key, 1, ?) = ? ORDER BY key',
            (namespace, len(prefix), prefix),
        )
        return [row['key'] for row in rows]

    def drop_namespace(self, namespace):
        self._execute('DELETE FROM blobs WHERE namespace = ?', (namespace,))


# ---------------------------------------------------------------------------
# Remote (SQLAlchemy) backends
# ---------------------------------------------------------------------------

@contextmanager
def remote_errors(action):
    """Turn connection failures into BackendUnavailable. Other database errors propagate."""
    try:
        yield
    except (OperationalError, InterfaceError, DisconnectionError) as e:
        db.session.rollback()
        logger.error(f"{action} failed: {e}")
        raise BackendUnavailable(f"{action} failed") from e
    except SQLAlchemyError:
        db.session.rollback()
        raise


def ping_remote():
    with remote_errors("Connection test"):
        db.session.execute(text('SELECT 1'))


class SqlTimerBackend:
    def __init__(self, user_id):
        self.user_id = user_id

    def _record(self, row):
        return DailyStudyRecord(
            user_id=row.user_id,
            date=row.date,
            study_time_seconds=row.study_time_seconds,
            pomodoro_count=row.pomodoro_count,
            updated_at=row.updated_at,
        )

    def read(self, day):
        with remote_errors("Loading timer data"):
            row = TimerData.query.filter_by(user_id=self.user_id, date=day).first()
            return self._record(row) if row else None

    def read_range(self, start, end):
        with remote_errors("Loading study time"):
            rows = (TimerData.query
                    .filter(TimerData.user_id == self.user_id, TimerData.date >= start, TimerData.date <= end)
                    .order_by(TimerData.date)
                    .all())
            return [self._record(row) for row in rows]

    def write(self, day, study_time_seconds, pomodoro_count):
        with remote_errors("Saving timer data"):
            try:
                row = self._upsert(day, study_time_seconds, pomodoro_count)
            except IntegrityError:
                # Another writer inserted the same (user, day) first
                db.session.rollback()
                row = self._upsert(day, study_time_seconds, pomodoro_count)
            return self._record(row)

    def _upsert(self, day, study_time_seconds, pomodoro_count):
        now = utcnow()
        row = TimerData.query.filter_by(user_id=self.user_id, date=day).first()
        if row is None:
            row = TimerData(user_id=self.user_id, date=day, created_at=now)
            db.session.add(row)
        row.study_time_seconds = study_time_seconds
        row.pomodoro_count = pomodoro_count
        row.updated_at = now
        db.session.commit()
        return row


class SqlTaskBackend:
    def __init__(self, user_id):
        self.user_id = user_id

    def _get(self, task_id):
        task = Task.query.filter_by(id=task_id, user_id=self.user_id).first()
        if task is None:
            raise NotFoundError("Task not found")
        return task

    def list(self):
        with remote_errors("Loading tasks"):
            tasks = Task.query.filter_by(user_id=self.user_id).order_by(Task.created_at.desc()).all()
            return [task.to_dict() for task in tasks]

    def get(self, task_id):
        with remote_errors("Loading task"):
            return self._get(task_id).to_dict()

    def create(self, data):
        with remote_errors("Creating task"):
            now = utcnow()
            task = Task(user_id=self.user_id, created_at=now, updated_at=now, **data)
            db.session.add(task)
            db.session.commit()
            return task.to_dict()

    def update(self, task_id, changes):
        with remote_errors("Updating task"):
            task = self._get(task_id)
            for field, value in changes.items():
                setattr(task, field, value)
            task.updated_at = utcnow()
            db.session.commit()
            return task.to_dict()

    def delete(self, task_id):
        with remote_errors("Deleting task"):
            db.session.delete(self._get(task_id))
            db.session.commit()


class SqlNoteBackend:
    def __init__(self, user_id):
        self.user_id = user_id

    def _get(self, note_id):
        note = Note.query.filter_by(id=note_id, user_id=self.user_id).first()
        if note is None:
            raise NotFoundError("Note not found")
        return note

    def _find_tag(self, name):
        return Tag.query.filter_by(name=name).first()

    def _resolve_tags(self, names):
        tags = []
        for name in dict.fromkeys(names):
            tag = self._find_tag(name)
            if tag is None:
                tag = Tag(name=name)
                db.session.add(tag)
                db.session.flush()
            tags.append(tag)
        return tags

    def list(self):
        with remote_errors("Loading notes"):
            notes = Note.query.filter_by(user_id=self.user_id).order_by(Note.updated_at.desc()).all()
            return [note.to_dict() for note in notes]

    def get(self, note_id):
        with remote_errors("Loading note"):
            return self._get(note_id).to_dict()

    def _retry_on_tag_conflict(self, operation, *args):
        try:
            return operation(*args)
        except IntegrityError:
            # Another writer created one of the tags first
            db.session.rollback()
            return operation(*args)

    def create(self, data):
        with remote_errors("Creating note"):
            return self._retry_on_tag_conflict(self._create, data)

    def _create(self, data):
        now = utcnow()
        note = Note(user_id=self.user_id, title=data['title'], content=data['content'],
                    created_at=now, updated_at=now)
        note.tags = self._resolve_tags(data.get('tags') or [])
        db.session.add(note)
        db.session.commit()
        return note.to_dict()

    def update(self, note_id, changes):
        with remote_errors("Updating note"):
            return self._retry_on_tag_conflict(self._update, note_id, changes)

    def _update(self, note_id, changes):
        note = self._get(note_id)
        for field in ('title', 'content'):
            if field in changes:
                setattr(note, field, changes[field])
        if 'tags' in changes:
            note.tags = self._resolve_tags(changes['tags'])
        note.updated_at = utcnow()
        db.session.commit()
        return note.to_dict()

    def delete(self, note_id):
        with remote_errors("Deleting note"):
            # The ORM removes the note_tags rows along with the note
            db.session.delete(self._get(note_id))
            db.session.commit()


# ---------------------------------------------------------------------------
# Local backends
# ---------------------------------------------------------------------------

def _decode(raw, key):
    try:
        return json.loads(raw)
    except ValueError as e:
        logger.error(f"Unreadable local data under {key}: {e}")
        raise BackendUnavailable(f"Unreadable local data under {key}") from e


def _to_json_value(value):
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


class LocalTimerBackend:
    def __init__(self, user_id, store):
        self.user_id = user_id
        self.store = store

    @staticmethod
    def key_for(day):
        return f'studyData_{day.isoformat()}'

    def _record(self, key, raw):
        data = _decode(raw, key)
        try:
            return DailyStudyRecord(
                user_id=self.user_id,
                date=date.fromisoformat(data['date']),
                study_time_seconds=data.get('study_time_seconds', 0),
                pomodoro_count=data.get('pomodoro_count', 0),
                updated_at=datetime.fromisoformat(data['updated_at']) if data.get('updated_at') else None,
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.error(f"Unreadable local data under {key}: {e}")
            raise BackendUnavailable(f"Unreadable local data under {key}") from e

    def read(self, day):
        key = self.key_for(day)
        raw = self.store.get(self.user_id, key)
        return self._record(key, raw) if raw else None

    def read_range(self, start, end):
        records = []
        for key in self.store.keys(self.user_id, 'studyData_'):
            day = date.fromisoformat(key[len('studyData_'):])
            if start <= day <= end:
                records.append(self._record(key, self.store.get(self.user_id, key)))
        return sorted(records, key=lambda record: record.date)

    def write(self, day, study_time_seconds, pomodoro_count):
        record = DailyStudyRecord(self.user_id, day, study_time_seconds, pomodoro_count, utcnow())
        self.store.set(self.user_id, self.key_for(day), json.dumps(record.to_dict()))
        return record


class LocalCollectionBackend:
    """A user's tasks or notes, kept as one JSON list."""

    defaults = {}
    order_by = 'created_at'

    def __init__(self, user_id, store, prefix):
        self.user_id = user_id
        self.store = store
        self.key = f'{prefix}_{user_id}'

    def _load(self):
        raw = self.store.get(self.user_id, self.key)
        items = _decode(raw, self.key) if raw else []
        if not isinstance(items, list):
            raise BackendUnavailable(f"Unreadable local data under {self.key}")
        return items

    def _save(self, items):
        self.store.set(self.user_id, self.key, json.dumps(items))

    def _index(self, items, item_id):
        for i, item in enumerate(items):
            if item['id'] == item_id:
                return i
        raise NotFoundError(f"{self.entity} not found")

    def list(self):
        return sorted(self._load(), key=lambda item: item[self.order_by], reverse=True)

    def get(self, item_id):
        items = self._load()
        return items[self._index(items, item_id)]

    def create(self, data):
        now = utcnow().isoformat()
        item = {**self.defaults, **{k: _to_json_value(v) for k, v in data.items()}}
        item.update(id=new_id(), created_at=now, updated_at=now)
        items = self._load()
        items.append(item)
        self._save(items)
        return item

    def update(self, item_id, changes):
        items = self._load()
        i = self._index(items, item_id)
        items[i].update({k: _to_json_value(v) for k, v in changes.items()})
        items[i]['updated_at'] = utcnow().isoformat()
        self._save(items)
        return items[i]

    def delete(self, item_id):
        items = self._load()
        del items[self._index(items, item_id)]
        self._save(items)


class LocalTaskBackend(LocalCollectionBackend):
    entity = 'Task'
    defaults = {'description': '', 'category': '', 'estimated': '', 'priority': 'medium',
                'due': None, 'completed': False}

    def __init__(self, user_id, store):
        super().__init__(user_id, store, 'tasks')


class LocalNoteBackend(LocalCollectionBackend):
    entity = 'Note'
    defaults = {'tags': []}
    order_by = 'updated_at'

    def __init__(self, user_id, store):
        super().__init__(user_id, store, 'notes')

    def create(self, data):
        return super().create({**data, 'tags': list(dict.fromkeys(data.get('tags') or []))})

    def update(self, item_id, changes):
        if 'tags' in changes:
            changes = {**changes, 'tags': list(dict.fromkeys(changes['tags']))}
        return super().update(item_id, changes)


# ---------------------------------------------------------------------------
# Backend selection
# ---------------------------------------------------------------------------

class BackendSwitch:
    """The remote/local choice shared by every repository of a user."""

    def __init__(self):
        self.use_local = False

    @property
    def active(self):
        return 'local' if self.use_local else 'remote'

    def fail_over(self, reason):
        if not self.use_local:
            logger.warning(f"Remote backend unavailable ({reason}), using local storage")
        self.use_local = True

    def reconnect(self, probe):
        """Re-test the remote backend. Returns True if it is in use again."""
        try:
            probe()
        except BackendUnavailable:
            logger.warning("Reconnect failed, staying on local storage")
            return False
        if self.use_local:
            logger.info("Remote backend reachable again")
        self.use_local = False
        return True


class Repository:
    """Dispatches any backend operation to the active backend of ``switch``."""

    def __init__(self, name, remote, local, switch):
        self.name = name
        self.remote = remote
        self.local = local
        self.switch = switch

    def __getattr__(self, operation):
        if operation.startswith('_'):
            raise AttributeError(operation)
        return functools.partial(self._dispatch, operation)

    def _dispatch(self, operation, *args, **kwargs):
        if not self.switch.use_local:
            try:
                return getattr(self.remote, operation)(*args, **kwargs)
            except BackendUnavailable as e:
                self.switch.fail_over(f"{self.name}.{operation}: {e}")
        try:
            return getattr(self.local, operation)(*args, **kwargs)
        except BackendUnavailable as e:
            logger.error(f"{self.name}.{operation} failed on local storage too: {e}")
            raise StorageExhausted("Storage is unavailable, please try again later") from e


class UserStore:
    """All repositories of one user, sharing one backend switch."""

    def __init__(self, user_id, local_store):
        self.user_id = user_id
        self.switch = BackendSwitch()
        self.timer = Repository('timer_data', SqlTimerBackend(user_id),
                                LocalTimerBackend(user_id, local_store), self.switch)
        self.tasks = Repository('tasks', SqlTaskBackend(user_id),
                                LocalTaskBackend(user_id, local_store), self.switch)
        self.notes = Repository('notes', SqlNoteBackend(user_id),
                                LocalNoteBackend(user_id, local_store), self.switch)

    @property
    def backend(self):
        return self.switch.active

    def reconnect(self):
        return self.switch.reconnect(ping_remote)


def delete_user_data(user_id, local_store):
    """Remove every row owned by ``user_id`` from both backends."""
    with remote_errors(f"Deleting data of user {user_id}"):
        note_ids = [note_id for (note_id,) in db.session.query(Note.id).filter_by(user_id=user_id)]
        if note_ids:
            db.session.execute(note_tags.delete().where(note_tags.c.note_id.in_(note_ids)))
        for model in USER_OWNED_MODELS:
            model.query.filter_by(user_id=user_id).delete(synchronize_session=False)
        db.session.commit()
    local_store.drop_namespace(user_id)
    logger.info(f"Deleted all data for user {user_id}")
