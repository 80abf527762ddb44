"""Per-user study sessions: timer, accrual and persistence of the daily record."""
import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta

from errors import StorageExhausted
from storage import UserStore
from timer import Mode, PomodoroTimer, StudyTimeTracker, TimerConfig

logger = logging.getLogger(__name__)


class Reconciler:
    """Loads and saves the daily study record through the user's repositories."""

    def __init__(self, store):
        self.store = store
        self.last_error = None

    def load(self, day):
        """Return ``(study_time_seconds, pomodoro_count)`` stored for ``day``."""
        try:
            record = self.store.timer.read(day)
        except StorageExhausted as e:
            logger.error(f"Could not load study data for {self.store.user_id} on {day}: {e}")
            self.last_error = "Failed to load study data"
            return 0, 0
        self.last_error = None
        if record is None:
            return 0, 0
        return record.study_time_seconds, record.pomodoro_count

    def save(self, day, study_time_seconds, pomodoro_count):
        """Upsert the record for ``day``. Returns False if nothing was written."""
        if study_time_seconds <= 0 and pomodoro_count <= 0:
            return False
        try:
            self.store.timer.write(day, study_time_seconds, pomodoro_count)
        except StorageExhausted as e:
            logger.error(f"Could not save study data for {self.store.user_id} on {day}: {e}")
            self.last_error = "Failed to save study data"
            return False
        self.last_error = None
        return True

    def reconnect(self):
        return self.store.reconnect()


class StudySession:
    """
    One user's running timer and today's counters.

    ``advance(now)`` is the clock: it replays one tick per whole second that
    passed since the previous call, so a session only needs to be touched,
    not driven by a background thread. The stored record for today is loaded
    on the first advance.
    """

    def __init__(self, user_id, store, now, timer_config=None, auto_start_delay=2, save_interval=60):
        self.user_id = user_id
        self.store = store
        self.save_interval = save_interval
        self.timer = PomodoroTimer(timer_config, auto_start_delay)
        self.tracker = StudyTimeTracker(now.date())
        self.reconciler = Reconciler(store)
        self.alerts = []
        self.lock = threading.Lock()
        self.last_tick_at = now
        self.last_save_at = now
        self.last_seen_at = now
        self.loaded = False
        # An idle session of the same user that must be saved before loading
        self.replaces = None

        self.timer.on_expire.add_listener(self._on_expire)

    def load(self):
        self.tracker.hydrate(*self.reconciler.load(self.tracker.current_date))
        self.loaded = True

    def save(self, now):
        self.last_save_at = now
        return self.reconciler.save(
            self.tracker.current_date, self.tracker.study_time_seconds, self.tracker.pomodoro_count)

    def close(self, now):
        """Final save when the user leaves the timer."""
        self.timer.pause()
        return self.save(now)

    def advance(self, now):
        if not self.loaded:
            self.load()
        elapsed = int((now - self.last_tick_at).total_seconds())
        for second in range(1, elapsed + 1):
            self._tick(self.last_tick_at + timedelta(seconds=second))
        if elapsed > 0:
            self.last_tick_at += timedelta(seconds=elapsed)
        self.last_seen_at = now
        if (now - self.last_save_at).total_seconds() >= self.save_interval:
            self.save(now)

    def _tick(self, at):
        previous = (self.tracker.current_date, self.tracker.study_time_seconds, self.tracker.pomodoro_count)
        if self.tracker.observe_date(at.date()):
            self.reconciler.save(*previous)
            self.load()
            self.last_save_at = at

        counts = self.timer.running and self.timer.mode is Mode.FOCUS
        self.timer.tick()
        self.tracker.accrue(counts)

    def _on_expire(self, expiry):
        if expiry.previous_mode is Mode.FOCUS:
            self.tracker.record_pomodoro()
        self.alerts.append({
            'type': 'timer_expired',
            'previous_mode': expiry.previous_mode.value,
            'next_mode': expiry.next_mode.value,
        })

    def state(self):
        alerts, self.alerts = self.alerts, []
        return {
            'timer': self.timer.snapshot(),
            'date': self.tracker.current_date.isoformat(),
            'study_time_seconds': self.tracker.study_time_seconds,
            'pomodoro_count': self.tracker.pomodoro_count,
            'backend': self.store.backend,
            'error': self.reconciler.last_error,
            'alerts': alerts,
        }


class SessionRegistry:
    """Live sessions and storage switches, one of each per user."""

    def __init__(self, local_store, timer_config=None, auto_start_delay=2, save_interval=60,
                 idle_timeout=300, clock=datetime.now):
        self.local_store = local_store
        self.timer_config = timer_config or TimerConfig()
        self.auto_start_delay = auto_start_delay
        self.save_interval = save_interval
        self.idle_timeout = idle_timeout
        self.clock = clock
        self._sessions = {}
        self._stores = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config, local_store, clock=datetime.now):
        return cls(
            local_store,
            timer_config=TimerConfig(
                focus=config['FOCUS_SECONDS'],
                short_break=config['SHORT_BREAK_SECONDS'],
                long_break=config['LONG_BREAK_SECONDS'],
                cycles_until_long_break=config['CYCLES_UNTIL_LONG_BREAK'],
            ),
            auto_start_delay=config['AUTO_START_DELAY_SECONDS'],
            save_interval=config['SAVE_INTERVAL_SECONDS'],
            idle_timeout=config['SESSION_IDLE_TIMEOUT_SECONDS'],
            clock=clock,
        )

    def store_for(self, user_id):
        with self._lock:
            return self._store_for(user_id)

    def _store_for(self, user_id):
        store = self._stores.get(user_id)
        if store is None:
            store = self._stores[user_id] = UserStore(user_id, self.local_store)
        return store

    def _is_idle(self, session, now):
        return (now - session.last_seen_at).total_seconds() > self.idle_timeout

    def _session_for(self, user_id, now):
        session = self._sessions.get(user_id)
        if session is not None and not self._is_idle(session, now):
            return session
        replacement = StudySession(
            user_id, self._store_for(user_id), now,
            timer_config=replace(self.timer_config),
            auto_start_delay=self.auto_start_delay,
            save_interval=self.save_interval,
        )
        replacement.replaces = session
        self._sessions[user_id] = replacement
        return replacement

    def _sweep(self, now):
        """Forget every idle session and its store. The caller closes them."""
        idle = [user_id for user_id, session in self._sessions.items() if self._is_idle(session, now)]
        for user_id in idle:
            self._stores.pop(user_id, None)
        return [self._sessions.pop(user_id) for user_id in idle]

    def _close_idle(self, session):
        with session.lock:
            logger.info(f"Session of {session.user_id} idle since {session.last_seen_at}, closing it")
            session.close(session.last_seen_at)

    def _settle(self, session):
        previous, session.replaces = session.replaces, None
        if previous is not None:
            self._close_idle(previous)

    @contextmanager
    def checkout(self, user_id):
        """Yield the user's session, brought up to the current second."""
        now = self.clock()
        with self._lock:
            session = self._session_for(user_id, now)
            idle = self._sweep(now)
        for stale in idle:
            self._close_idle(stale)
        with session.lock:
            self._settle(session)
            session.advance(now)
            yield session

    def end(self, user_id):
        """Save and forget the user's session. Returns False if there was none."""
        now = self.clock()
        with self._lock:
            session = self._sessions.pop(user_id, None)
        if session is None:
            return False
        with session.lock:
            self._settle(session)
            if self._is_idle(session, now):
                logger.info(f"Session of {user_id} idle since {session.last_seen_at}, closing it")
                session.close(session.last_seen_at)
            else:
                session.advance(now)
                session.close(now)
        return True

    def discard(self, user_id):
        with self._lock:
            self._sessions.pop(user_id, None)
            self._stores.pop(user_id, None)
