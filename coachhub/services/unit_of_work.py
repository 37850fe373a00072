"""One engine operation == one transaction.

Wrap a service function whose body raises ``OnboardingError`` subclasses
for expected failures. The wrapper:

- injects ``session`` (defaults to ``db.session``),
- commits when the body returns, and returns ``(value, None)``,
- rolls back and returns ``(None, error)`` on an ``OnboardingError``,
- rolls back and re-raises anything else (persistence faults).
"""

import logging
from functools import wraps

from coachhub.errors import OnboardingError
from coachhub.extensions import db

logger = logging.getLogger(__name__)


def unit_of_work(f):
    """Make ``f`` a transactional operation returning ``(value, error)``."""

    @wraps(f)
    def wrapper(*args, session=None, **kwargs):
        session = session or db.session
        try:
            value = f(*args, session=session, **kwargs)
            session.commit()
        except OnboardingError as e:
            session.rollback()
            logger.info(f"{f.__name__} rejected: {e.code}: {e.message}")
            return None, e
        except Exception:
            session.rollback()
            logger.error(f"{f.__name__} failed", exc_info=True)
            raise
        return value, None

    # Undecorated body, for composing operations inside one transaction.
    wrapper.inner = f
    return wrapper
