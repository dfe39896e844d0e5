"""Shared API dependencies — single import point for all routers.

Re-exports database session, authentication and billing gateway
dependencies so that router modules can import everything they need from
one place::

    from app.api.deps import get_db, get_current_active_user
"""

from app.auth.dependencies import (
    get_current_active_user,
    get_current_user,
)
from app.billing.gateways import (
    get_google_play_gateway,
    get_provider_gateways,
    get_stripe_gateway,
)
from app.database import get_db

__all__ = [
    "get_db",
    "get_current_user",
    "get_current_active_user",
    "get_google_play_gateway",
    "get_provider_gateways",
    "get_stripe_gateway",
]
