"""SQLAlchemy models for the Ambience API.

All models are imported here so that Alembic's autogenerate can discover
them via Base.metadata. If you add a new model, import it in this file.
"""

from app.models.subscription import (
    Customer,
    GiftCard,
    Subscription,
    SubscriptionPlan,
    SubscriptionProvider,
    SubscriptionStatus,
)
from app.models.user import User

__all__ = [
    "Customer",
    "GiftCard",
    "Subscription",
    "SubscriptionPlan",
    "SubscriptionProvider",
    "SubscriptionStatus",
    "User",
]
