import datetime as dt
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from errors import ValidationFailed

Priority = Literal['low', 'medium', 'high']


def _required_text(value):
    if value is None or not str(value).strip():
        raise ValueError("is required")
    return str(value).strip()


def _clean_tags(tags):
    cleaned = []
    for tag in tags or []:
        tag = str(tag).strip()
        if tag and tag not in cleaned:
            cleaned.append(tag)
    return cleaned


class TaskPayload(BaseModel):
    title: str
    description: str = ''
    category: str = ''
    estimated: str = Field('', description="Free-text effort estimate, e.g. '2h'")
    priority: Priority = 'medium'
    due: Optional[dt.date] = None
    completed: bool = False

    @field_validator('title', mode='before')
    @classmethod
    def title_required(cls, value):
        return _required_text(value)


class TaskUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    estimated: Optional[str] = None
    priority: Optional[Priority] = None
    due: Optional[dt.date] = None
    completed: Optional[bool] = None

    @field_validator('title', mode='before')
    @classmethod
    def title_not_blank(cls, value):
        return value if value is None else _required_text(value)


class NotePayload(BaseModel):
    title: str
    content: str
    tags: List[str] = []

    @field_validator('title', 'content', mode='before')
    @classmethod
    def text_required(cls, value):
        return _required_text(value)

    @field_validator('tags')
    @classmethod
    def clean_tags(cls, value):
        return _clean_tags(value)


class NoteUpdate(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None
    tags: Optional[List[str]] = None

    @field_validator('title', 'content', mode='before')
    @classmethod
    def text_not_blank(cls, value):
        return value if value is None else _required_text(value)

    @field_validator('tags')
    @classmethod
    def clean_tags(cls, value):
        return None if value is None else _clean_tags(value)


class TimerConfigPayload(BaseModel):
    focus: Optional[int] = Field(None, gt=0)
    short_break: Optional[int] = Field(None, gt=0)
    long_break: Optional[int] = Field(None, gt=0)
    cycles_until_long_break: Optional[int] = Field(None, gt=0)


class TimerModePayload(BaseModel):
    mode: Literal['focus', 'short_break', 'long_break']


class DailyRecordPayload(BaseModel):
    date: Optional[dt.date] = None
    study_time_seconds: int = Field(ge=0)
    pomodoro_count: int = Field(0, ge=0)


def parse(model, data):
    """Validate ``data`` against ``model``; raise ValidationFailed with a readable reason."""
    if not isinstance(data, dict):
        raise ValidationFailed("Request body must be a JSON object")
    try:
        return model.model_validate(data)
    except ValidationError as e:
        reasons = []
        for error in e.errors():
            field = '.'.join(str(part) for part in error['loc']) or 'body'
            message = error['msg'].removeprefix('Value error, ')
            reasons.append(f"{field}: {message}")
        raise ValidationFailed('; '.join(reasons)) from e


def changes_from(update):
    """The fields a client actually sent in an update payload. A null ``due`` clears it."""
    return {field: value for field, value in update.model_dump(exclude_unset=True).items()
            if value is not None or field == 'due'}
