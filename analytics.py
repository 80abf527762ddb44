"""Aggregates behind the dashboard and analytics pages."""
from collections import Counter
from datetime import datetime, timedelta

WEEKDAYS = ['Sunday', 'Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday']


def _day_of(timestamp):
    return datetime.fromisoformat(timestamp).date()


def study_streak(records, today, min_seconds=300):
    """Consecutive days up to and including today with at least ``min_seconds`` of study."""
    study_days = {record.date for record in records if record.study_time_seconds >= min_seconds}
    streak = 0
    day = today
    while day in study_days:
        streak += 1
        day -= timedelta(days=1)
    return streak


def tag_counts(notes):
    counts = Counter(tag for note in notes for tag in note.get('tags', []))
    return [{'name': name, 'count': count}
            for name, count in sorted(counts.items(), key=lambda item: (-item[1], item[0]))]


def daily_series(records, tasks, today, days):
    by_date = {record.date: record for record in records}
    completed = Counter(_day_of(task['updated_at']) for task in tasks if task.get('completed'))

    series = []
    for offset in range(days - 1, -1, -1):
        day = today - timedelta(days=offset)
        record = by_date.get(day)
        seconds = record.study_time_seconds if record else 0
        series.append({
            'date': day.isoformat(),
            'study_time_seconds': seconds,
            'hours': round(seconds / 3600, 1),
            'pomodoros': record.pomodoro_count if record else 0,
            'tasks': completed[day],
        })
    return series


def week_start(today):
    return today - timedelta(days=(today.weekday() + 1) % 7)


def weekly_series(records, tasks, today):
    """The Sunday-to-Saturday week containing ``today``."""
    saturday = week_start(today) + timedelta(days=6)
    week = daily_series(records, tasks, saturday, 7)
    return [{'day': name, 'hours': entry['hours'], 'tasks': entry['tasks'], 'pomodoros': entry['pomodoros']}
            for name, entry in zip(WEEKDAYS, week)]


def build_analytics(store, today, days=30, min_seconds=300):
    start = today - timedelta(days=days - 1)
    # One read covers both the requested window and the current week
    records = store.timer.read_range(min(start, week_start(today)), today)
    tasks = store.tasks.list()
    notes = store.notes.list()

    daily = daily_series(records, tasks, today, days)
    total_seconds = sum(entry['study_time_seconds'] for entry in daily)
    study_days = sum(1 for entry in daily if entry['study_time_seconds'] > 0)
    total_hours = total_seconds / 3600

    return {
        'daily': daily,
        'weekly': weekly_series(records, tasks, today),
        'subjects': tag_counts(notes)[:5],
        'stats': {
            'total_hours': round(total_hours, 1),
            'total_tasks': sum(1 for task in tasks if task.get('completed')),
            'avg_hours': round(total_hours / (study_days or 1), 1),
            'streak_days': study_streak(records, today, min_seconds),
            'pomodoro_count': sum(entry['pomodoros'] for entry in daily),
        },
    }


def build_dashboard(store, today, min_seconds=300):
    records = store.timer.read_range(today - timedelta(days=29), today)
    todays = next((record for record in records if record.date == today), None)
    tasks = store.tasks.list()
    notes = store.notes.list()

    upcoming = sorted((task for task in tasks if not task.get('completed') and task.get('due')),
                      key=lambda task: task['due'])
    return {
        'today': {
            'date': today.isoformat(),
            'study_time_seconds': todays.study_time_seconds if todays else 0,
            'pomodoro_count': todays.pomodoro_count if todays else 0,
        },
        'streak_days': study_streak(records, today, min_seconds),
        'recent_tasks': sorted(tasks, key=lambda task: task['updated_at'], reverse=True)[:5],
        'upcoming_tasks': upcoming[:5],
        'recent_notes': sorted(notes, key=lambda note: note['updated_at'], reverse=True)[:3],
    }
