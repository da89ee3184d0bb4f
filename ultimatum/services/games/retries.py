import time
from typing import Callable, Optional, TypeVar

from flask import current_app
from sqlalchemy.exc import OperationalError

from ultimatum import db
from .errors import StoreUnavailable


T = TypeVar('T')


def retry_transient(action: Callable[[], T], label: str,
                    attempts: Optional[int] = None, backoff: Optional[float] = None,
                    sleep: Callable[[float], None] = time.sleep) -> T:
    """Run `action`, retrying transient store errors with a fixed backoff.

    Defaults come from STORE_MAX_ATTEMPTS / STORE_RETRY_SEC. After the last
    attempt the error surfaces as StoreUnavailable. Game errors such as
    PreconditionFailed are not retried.
    """
    cfg = current_app.config
    if attempts is None:
        attempts = int(cfg.get('STORE_MAX_ATTEMPTS', 3))
    if backoff is None:
        backoff = float(cfg.get('STORE_RETRY_SEC', 1))
    attempts = max(1, attempts)

    attempt = 0
    while True:
        attempt += 1
        try:
            return action()
        except OperationalError as exc:
            db.session.rollback()
            current_app.logger.warning(
                f"[store-retry] op={label} attempt={attempt}/{attempts} error={exc.orig!r}"
            )
            if attempt >= attempts:
                raise StoreUnavailable('The game store is temporarily unavailable') from exc
            sleep(backoff)
