"""
Progress reporting for backup and restore runs.

ProgressReporter keeps the current percent/message and broadcasts every change
through blinker signals, which the API layer and tests subscribe to:

- progress_updated(sender, percent, message, pulsing, operation)
- progress_closed(sender, operation)
- notification(sender, level, message)
- reload_requested(sender)

SimulatedProgress drives a capped, artificial percentage while an opaque
operation (an upload whose byte progress cannot be observed) is pending.
"""

import logging
import threading
from datetime import datetime
from typing import Optional

from blinker import Namespace


logger = logging.getLogger(__name__)

backup_signals = Namespace()
progress_updated = backup_signals.signal('backup-progress')
progress_closed = backup_signals.signal('backup-progress-closed')
notification = backup_signals.signal('backup-notification')
reload_requested = backup_signals.signal('backup-reload-requested')


class ProgressReporter:
    """
    Tracks and broadcasts progress for one operation at a time.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._release_timer = None
        self.operation = None
        self.percent = 0
        self.message = ''
        self.pulsing = False
        self.active = False
        self.updated_at = None

    def open(self, operation: str):
        """Show the progress indicator for a new operation."""
        self._cancel_release()
        with self._lock:
            self.operation = operation
            self.percent = 0
            self.message = ''
            self.pulsing = False
            self.active = True
            self.updated_at = datetime.utcnow()

    def update(self, percent: int, message: str, pulsing: bool = False):
        """
        Record progress and emit a progress event.

        Args:
            percent: Progress percentage (0-100)
            message: Status message
            pulsing: True while the displayed value is simulated
        """
        with self._lock:
            self.percent = percent
            self.message = message
            self.pulsing = pulsing
            self.updated_at = datetime.utcnow()
            operation = self.operation

        logger.debug(f"Progress: {percent}% - {message}{' (simulated)' if pulsing else ''}")
        progress_updated.send(
            self, percent=percent, message=message, pulsing=pulsing, operation=operation
        )

    def release(self, delay: float = 0):
        """
        Dismiss the progress indicator, after `delay` seconds if given.

        The delay leaves the terminal percentage visible for a moment.
        """
        self._cancel_release()
        if delay and delay > 0:
            timer = threading.Timer(delay, self._close)
            timer.daemon = True
            self._release_timer = timer
            timer.start()
        else:
            self._close()

    def simulate(self, start: int, message: str, ceiling: int = 94, step: int = 2,
                 interval: float = 2.0) -> 'SimulatedProgress':
        """Create a simulated progress task bound to this reporter."""
        return SimulatedProgress(self, start, message, ceiling=ceiling, step=step, interval=interval)

    def snapshot(self) -> dict:
        with self._lock:
            return {
                'operation': self.operation,
                'active': self.active,
                'percent': self.percent,
                'message': self.message,
                'pulsing': self.pulsing,
                'updated_at': self.updated_at.isoformat() if self.updated_at else None
            }

    def _close(self):
        with self._lock:
            operation = self.operation
            self.active = False
            self.pulsing = False
            self._release_timer = None
        progress_closed.send(self, operation=operation)

    def _cancel_release(self):
        timer = self._release_timer
        if timer is not None:
            timer.cancel()
            self._release_timer = None


class SimulatedProgress:
    """
    Scoped ticking task: raises the reported percentage by `step` every
    `interval` seconds until `ceiling`, for as long as the `with` block runs.

    The ticker thread is stopped and joined on exit, including when the block
    raises.
    """

    def __init__(self, reporter: ProgressReporter, start: int, message: str,
                 ceiling: int = 94, step: int = 2, interval: float = 2.0):
        self.reporter = reporter
        self.start = start
        self.message = message
        self.ceiling = min(ceiling, 99)
        self.step = step
        self.interval = interval
        self.current = start
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def __enter__(self) -> 'SimulatedProgress':
        self.reporter.update(self.start, self.message, pulsing=True)
        self._thread = threading.Thread(target=self._run, name='simulated-progress', daemon=True)
        self._thread.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
        return False

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def stop(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def _run(self):
        while not self._stop.wait(self.interval):
            if self.current + self.step > self.ceiling:
                continue
            self.current += self.step
            self.reporter.update(self.current, self.message, pulsing=True)
