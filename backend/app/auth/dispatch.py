"""Sign-in link dispatch."""

import logging
from typing import Protocol

from app.config import settings

logger = logging.getLogger(__name__)


class SignInTokenDispatcher(Protocol):
    async def dispatch(self, email: str, token: str) -> None: ...


def build_sign_in_link(token: str) -> str:
    return settings.sign_in_link_fmt.replace("{token}", token)


class ConsoleSignInTokenDispatcher:
    """Writes sign-in links to the application log instead of emailing them."""

    async def dispatch(self, email: str, token: str) -> None:
        logger.info("Sign-in link for %s: %s", email, build_sign_in_link(token))


def get_sign_in_token_dispatcher() -> SignInTokenDispatcher:
    return ConsoleSignInTokenDispatcher()
