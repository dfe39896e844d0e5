"""Sign-in token issuance with a per-account attempt limit."""

import logging
import math
from datetime import datetime, timedelta

from app.auth.jwt import create_sign_in_token
from app.config import settings
from app.database import utcnow
from app.models.user import User

logger = logging.getLogger(__name__)


class TooManySignInAttemptsError(Exception):
    """The account requested too many sign-in links without signing in."""

    def __init__(self, email: str, retry_after: timedelta) -> None:
        super().__init__(f"too many sign-in attempts for {email}")
        self.retry_after = retry_after

    @property
    def retry_after_seconds(self) -> int:
        return max(1, math.ceil(self.retry_after.total_seconds()))


def issue_sign_in_token(user: User, now: datetime | None = None) -> str:
    """Count a sign-in attempt for ``user`` and return a fresh sign-in token.

    Attempts are reset by a successful sign-in, or once the window has
    passed since the last attempt.

    Raises:
        TooManySignInAttemptsError: If the account is out of attempts.
    """
    now = now or utcnow()
    window = timedelta(minutes=settings.sign_in_attempt_window_minutes)
    last_attempt = user.last_sign_in_attempt_at
    if last_attempt is None or now - last_attempt >= window:
        user.sign_in_attempts = 0

    if user.sign_in_attempts >= settings.sign_in_max_attempts:
        logger.warning("Too many sign-in attempts for user %s", user.id)
        raise TooManySignInAttemptsError(user.email, last_attempt + window - now)

    user.sign_in_attempts += 1
    user.last_sign_in_attempt_at = now
    return create_sign_in_token(str(user.id), user.sign_in_token_version)
