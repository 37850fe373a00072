"""Account service — login-capable accounts for new coaches.

Issues a User + CoachProfile from a prospect's data. The password is
either supplied by the admin or generated; a generated one is returned to
the caller exactly once and is never persisted or logged. Only hashes
are stored.
"""

import logging
import secrets

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from werkzeug.security import generate_password_hash

from coachhub.errors import DuplicateAccount, ValidationFailed
from coachhub.models.coach_profile import CoachProfile
from coachhub.models.user import User

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8


def generate_temporary_password():
    """Random password satisfying the usual complexity rules."""
    return f"Coach-{secrets.token_urlsafe(9)}{secrets.randbelow(10)}!"


def issue_coach_account(session, prospect, password=None):
    """Create the user and coach profile for ``prospect``.

    Flushes but does NOT commit — runs inside the caller's unit of work.

    Args:
        password: admin-chosen password. When omitted a temporary one is
            generated and the user must change it at first login.

    Returns:
        tuple: (User, CoachProfile, temporary_password). The last item is
        None when ``password`` was supplied.

    Raises:
        ValidationFailed: ``password`` is shorter than MIN_PASSWORD_LENGTH.
        DuplicateAccount: a user with the prospect's email already exists.
    """
    if password is not None and (
        not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH
    ):
        raise ValidationFailed(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters.",
            details={"password": "Too short."},
        )
    email = prospect.email.lower().strip()
    exists = session.execute(
        sa.select(User.id).where(sa.func.lower(User.email) == email)
    ).first()
    if exists:
        raise DuplicateAccount(f"A user with email {email} already exists.")

    temporary = None if password is not None else generate_temporary_password()
    user = User(
        email=email,
        password_hash=generate_password_hash(password or temporary),
        full_name=prospect.full_name,
        role="COACH",
        must_change_password=temporary is not None,
    )
    session.add(user)
    try:
        session.flush()
    except IntegrityError:
        raise DuplicateAccount(f"A user with email {email} already exists.")

    profile = CoachProfile(
        user_id=user.id,
        first_name=prospect.first_name,
        last_name=prospect.last_name,
        phone=prospect.phone,
        company_name=prospect.company_name,
        bio=prospect.bio,
        vision_statement=prospect.vision_statement,
        mission_statement=prospect.mission_statement,
    )
    session.add(profile)
    session.flush()

    logger.info(f"Issued coach account {user.id} for prospect {prospect.id}")
    return user, profile, temporary
