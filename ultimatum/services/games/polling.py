import threading
import time
from typing import Callable, Optional, TypeVar

from flask import current_app
from sqlalchemy.exc import OperationalError

from ultimatum import db


T = TypeVar('T')


class PollTimeout(Exception):
    pass


class PollCancelled(Exception):
    pass


class Poller:
    """Cancellable fixed-interval wait with a deadline.

    - `check` is called until it returns something other than None
    - Sleeps `interval` seconds between checks, never past the deadline
    - Raises PollTimeout once `timeout` seconds have elapsed
    - Raises PollCancelled after `cancel()`, waking a sleeping poller
    - Transient store errors inside `check` roll back the session and
      count as "not ready"; the deadline still bounds them
    """

    def __init__(self, interval: float, timeout: float,
                 sleep: Optional[Callable[[float], None]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self.timeout = timeout
        self._cancelled = threading.Event()
        self._sleep = sleep or self._cancelled.wait
        self._clock = clock

    @classmethod
    def from_config(cls, config, **kwargs) -> 'Poller':
        return cls(
            interval=float(config.get('POLL_INTERVAL_SEC', 2)),
            timeout=float(config.get('POLL_TIMEOUT_SEC', 60)),
            **kwargs,
        )

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def pause(self, seconds: float) -> None:
        """Sleep on this poller's clock; `cancel()` wakes it early."""
        if not self.cancelled:
            self._sleep(seconds)

    def wait(self, check: Callable[[], Optional[T]], label: str = '') -> T:
        deadline = self._clock() + self.timeout
        attempt = 0
        while True:
            if self.cancelled:
                raise PollCancelled(label)
            attempt += 1
            try:
                result = check()
            except OperationalError as exc:
                db.session.rollback()
                current_app.logger.warning(f"[poll-error] {label} attempt={attempt} error={exc.orig!r}")
                result = None
            if result is not None:
                return result
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise PollTimeout(f"{label} not ready after {self.timeout}s ({attempt} checks)")
            self._sleep(min(self.interval, remaining))
