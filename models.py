from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timezone
import uuid

db = SQLAlchemy()


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id():
    return uuid.uuid4().hex


note_tags = db.Table(
    'note_tags',
    db.Column('note_id', db.String(32), db.ForeignKey('notes.id', ondelete='CASCADE'), primary_key=True),
    db.Column('tag_id', db.Integer, db.ForeignKey('tags.id', ondelete='CASCADE'), primary_key=True),
)


class TimerData(db.Model):
    __tablename__ = 'timer_data'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    date = db.Column(db.Date, nullable=False)
    study_time_seconds = db.Column(db.Integer, nullable=False, default=0)
    pomodoro_count = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow)

    # One row per user per day; the upsert relies on it
    __table_args__ = (
        db.UniqueConstraint('user_id', 'date', name='uq_timer_data_user_date'),
    )

    def __repr__(self):
        return f'<TimerData {self.user_id} {self.date}>'


class Task(db.Model):
    __tablename__ = 'tasks'
    id = db.Column(db.String(32), primary_key=True, default=new_id)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default='')
    category = db.Column(db.String(50), default='')
    estimated = db.Column(db.String(50), default='')
    priority = db.Column(db.String(10), default='medium')
    due = db.Column(db.Date)
    completed = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description or '',
            'category': self.category or '',
            'estimated': self.estimated or '',
            'priority': self.priority,
            'due': self.due.isoformat() if self.due else None,
            'completed': bool(self.completed),
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
        }

    def __repr__(self):
        return f'<Task {self.title}>'


class Tag(db.Model):
    __tablename__ = 'tags'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), unique=True, nullable=False)

    def __repr__(self):
        return f'<Tag {self.name}>'


class Note(db.Model):
    __tablename__ = 'notes'
    id = db.Column(db.String(32), primary_key=True, default=new_id)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False)
    content = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow)
    tags = db.relationship('Tag', secondary=note_tags, lazy='selectin', order_by='Tag.name')

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'content': self.content,
            'tags': [tag.name for tag in self.tags],
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
        }

    def __repr__(self):
        return f'<Note {self.title}>'


class UserSettings(db.Model):
    __tablename__ = 'user_settings'
    user_id = db.Column(db.String(64), primary_key=True)
    key = db.Column(db.String(50), primary_key=True)
    value = db.Column(db.Text)


class UserAchievement(db.Model):
    __tablename__ = 'user_achievements'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    achieved_at = db.Column(db.DateTime, default=utcnow)


# Tables holding rows owned by a single user, in deletion order
USER_OWNED_MODELS = (UserSettings, TimerData, Task, Note, UserAchievement)
