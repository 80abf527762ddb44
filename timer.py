"""Pomodoro timer state machine and study-time accrual.

Nothing in here reads the wall clock. The owner of a timer calls
:meth:`PomodoroTimer.tick` once per elapsed second and feeds the same ticks
to a :class:`StudyTimeTracker`.
"""
import logging
from dataclasses import dataclass, asdict
from datetime import date
from enum import Enum
from typing import Optional

from errors import TimerLocked, ValidationFailed

logger = logging.getLogger(__name__)


class Mode(str, Enum):
    FOCUS = 'focus'
    SHORT_BREAK = 'short_break'
    LONG_BREAK = 'long_break'


class Event:
    """A list of listeners. A failing listener is logged and skipped."""

    def __init__(self):
        self._listeners = []

    def add_listener(self, listener):
        if not callable(listener):
            raise ValueError("Listener must be callable")
        self._listeners.append(listener)

    def remove_listener(self, listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, *args, **kwargs):
        for listener in list(self._listeners):
            try:
                listener(*args, **kwargs)
            except Exception:
                logger.exception("Error in event listener")


@dataclass
class TimerConfig:
    focus: int = 25 * 60
    short_break: int = 5 * 60
    long_break: int = 15 * 60
    cycles_until_long_break: int = 4

    def __post_init__(self):
        for name, value in asdict(self).items():
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ValidationFailed(f"{name} must be a positive whole number")

    def duration_for(self, mode: Mode) -> int:
        return {
            Mode.FOCUS: self.focus,
            Mode.SHORT_BREAK: self.short_break,
            Mode.LONG_BREAK: self.long_break,
        }[mode]


@dataclass
class TimerState:
    mode: Mode
    remaining_seconds: int
    running: bool = False
    completed_focus_count: int = 0


@dataclass(frozen=True)
class Expiry:
    """What happened when a mode ran out."""
    previous_mode: Mode
    next_mode: Mode
    completed_focus_count: int


class PomodoroTimer:
    """
    Cycles focus, short break and long break.

    On expiry the timer stops, moves to the next mode and starts again by
    itself after ``auto_start_delay`` further ticks.
    """

    def __init__(self, config: Optional[TimerConfig] = None, auto_start_delay: int = 2):
        self.config = config or TimerConfig()
        self.auto_start_delay = auto_start_delay
        self.state = TimerState(mode=Mode.FOCUS, remaining_seconds=self.config.focus)
        self._auto_start_in = None
        self.on_expire = Event()

    @property
    def running(self) -> bool:
        return self.state.running

    @property
    def mode(self) -> Mode:
        return self.state.mode

    @property
    def auto_start_pending(self) -> bool:
        return self._auto_start_in is not None

    def start(self):
        self._auto_start_in = None
        if self.state.running:
            return
        self.state.running = True
        logger.debug(f"Timer started in {self.state.mode.value} with {self.state.remaining_seconds}s left")

    def pause(self):
        self._auto_start_in = None
        if not self.state.running:
            return
        self.state.running = False
        logger.debug(f"Timer paused with {self.state.remaining_seconds}s left")

    def reset(self):
        self._auto_start_in = None
        self.state.running = False
        self.state.remaining_seconds = self.config.duration_for(self.state.mode)

    def set_mode(self, mode: Mode):
        if self.state.running:
            raise TimerLocked("Pause the timer before switching modes")
        self._auto_start_in = None
        self.state.mode = Mode(mode)
        self.state.remaining_seconds = self.config.duration_for(self.state.mode)

    def configure(self, **durations):
        """Replace some durations. Only allowed while the timer is not running."""
        if self.state.running:
            raise TimerLocked("Durations cannot be changed while the timer is running")
        current = self.config.duration_for(self.state.mode)
        self.config = TimerConfig(**{**asdict(self.config), **durations})
        updated = self.config.duration_for(self.state.mode)
        if updated != current:
            self.state.remaining_seconds = updated

    def tick(self) -> Optional[Expiry]:
        """Advance one second. Returns the expiry if the current mode ran out."""
        if not self.state.running:
            if self._auto_start_in is not None:
                self._auto_start_in -= 1
                if self._auto_start_in <= 0:
                    self.start()
            return None

        self.state.remaining_seconds = max(0, self.state.remaining_seconds - 1)
        if self.state.remaining_seconds > 0:
            return None
        return self._expire()

    def _expire(self) -> Expiry:
        previous = self.state.mode
        if previous is Mode.FOCUS:
            self.state.completed_focus_count += 1
            if self.state.completed_focus_count % self.config.cycles_until_long_break == 0:
                next_mode = Mode.LONG_BREAK
            else:
                next_mode = Mode.SHORT_BREAK
        elif previous is Mode.LONG_BREAK:
            self.state.completed_focus_count = 0
            next_mode = Mode.FOCUS
        else:
            next_mode = Mode.FOCUS

        self.state.mode = next_mode
        self.state.remaining_seconds = self.config.duration_for(next_mode)
        self.state.running = False
        self._auto_start_in = self.auto_start_delay

        expiry = Expiry(previous, next_mode, self.state.completed_focus_count)
        logger.info(f"{previous.value} finished, switching to {next_mode.value}")
        self.on_expire.emit(expiry)
        return expiry

    def snapshot(self) -> dict:
        return {
            'mode': self.state.mode.value,
            'remaining_seconds': self.state.remaining_seconds,
            'running': self.state.running,
            'completed_focus_count': self.state.completed_focus_count,
            'auto_start_pending': self.auto_start_pending,
            'config': asdict(self.config),
        }


class StudyTimeTracker:
    """Counts study seconds and finished pomodoros for one calendar day."""

    def __init__(self, today: date):
        self.current_date = today
        self.study_time_seconds = 0
        self.pomodoro_count = 0

    def observe_date(self, today: date) -> bool:
        """Start a fresh day if the date moved. Returns True on rollover."""
        if today == self.current_date:
            return False
        logger.info(f"Date changed: {self.current_date} -> {today}")
        self.current_date = today
        self.study_time_seconds = 0
        self.pomodoro_count = 0
        return True

    def accrue(self, counts: bool):
        if counts:
            self.study_time_seconds += 1

    def record_pomodoro(self):
        self.pomodoro_count += 1

    def hydrate(self, study_time_seconds: int, pomodoro_count: int):
        self.study_time_seconds = study_time_seconds
        self.pomodoro_count = pomodoro_count

    @property
    def is_empty(self) -> bool:
        return self.study_time_seconds <= 0 and self.pomodoro_count <= 0
