"""Billing models — customers, plans, subscriptions and gift cards."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, Enum, ForeignKey, Index, String, UniqueConstraint, false, text, true
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin, utcnow


class SubscriptionProvider(str, enum.Enum):
    """External system that bills for a subscription plan."""

    GOOGLE_PLAY = "GOOGLE_PLAY"
    STRIPE = "STRIPE"
    GIFT_CARD = "GIFT_CARD"


class SubscriptionStatus(str, enum.Enum):
    INACTIVE = "inactive"
    PENDING = "pending"
    ACTIVE = "active"


class Customer(TimestampMixin, Base):
    """Billing identity of a user. Created lazily on the first purchase attempt."""

    __tablename__ = "customers"

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
    )
    stripe_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    is_trial_period_used: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False, server_default=false()
    )

    # Relationships
    user: Mapped["User"] = relationship(back_populates="customer", lazy="selectin")  # type: ignore[name-defined]  # noqa: F821

    def __repr__(self) -> str:
        return f"<Customer(user_id={self.user_id}, stripe_id={self.stripe_id!r})>"


class SubscriptionPlan(Base):
    """A purchasable offer. Reference data, never mutated by webhooks."""

    __tablename__ = "subscription_plans"
    __table_args__ = (UniqueConstraint("provider", "provider_plan_id", name="uq_subscription_plans_provider_plan"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    provider: Mapped[SubscriptionProvider] = mapped_column(
        Enum(SubscriptionProvider, native_enum=False, length=32), nullable=False
    )
    provider_plan_id: Mapped[str] = mapped_column(String(255), nullable=False)
    billing_period_months: Mapped[int] = mapped_column(nullable=False)
    trial_period_days: Mapped[int] = mapped_column(nullable=False, default=0)
    price_in_cents: Mapped[int] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")

    def __repr__(self) -> str:
        return f"<SubscriptionPlan(id={self.id}, provider={self.provider.value}, provider_plan_id={self.provider_plan_id!r})>"


class Subscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One purchase lifecycle of a customer.

    A row is inserted without ``provider_subscription_id`` and ``start_at``
    when the purchase flow starts. Webhooks attach the provider id, start
    and end timestamps. The subscription grants entitlement while
    ``end_at`` is in the future.
    """

    __tablename__ = "subscriptions"
    __table_args__ = (
        Index(
            "uq_subscriptions_provider_subscription_id",
            "provider_subscription_id",
            unique=True,
            postgresql_where=text("provider_subscription_id IS NOT NULL"),
            sqlite_where=text("provider_subscription_id IS NOT NULL"),
        ),
    )

    customer_user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("customers.user_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    plan_id: Mapped[int] = mapped_column(ForeignKey("subscription_plans.id"), nullable=False)

    provider_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    start_at: Mapped[datetime | None] = mapped_column(nullable=True)
    end_at: Mapped[datetime | None] = mapped_column(nullable=True)
    is_auto_renewing: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, server_default=true())
    is_payment_pending: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, server_default=false())
    is_refunded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, server_default=false())

    # Relationships
    customer: Mapped[Customer] = relationship(lazy="selectin")
    plan: Mapped[SubscriptionPlan] = relationship(lazy="selectin")

    @property
    def is_active(self) -> bool:
        return self.start_at is not None and self.end_at is not None and self.end_at > utcnow()

    @property
    def status(self) -> SubscriptionStatus:
        if not self.is_active:
            return SubscriptionStatus.INACTIVE
        if self.is_payment_pending:
            return SubscriptionStatus.PENDING
        return SubscriptionStatus.ACTIVE

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, customer={self.customer_user_id}, "
            f"plan_id={self.plan_id}, status={self.status.value})>"
        )


class GiftCard(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Prepaid code that converts into a non-renewing subscription."""

    __tablename__ = "gift_cards"

    code: Mapped[str] = mapped_column(String(32), unique=True, index=True, nullable=False)
    hour_credits: Mapped[int] = mapped_column(nullable=False)
    plan_id: Mapped[int] = mapped_column(ForeignKey("subscription_plans.id"), nullable=False)
    customer_user_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("customers.user_id", ondelete="SET NULL"),
        nullable=True,
    )
    is_redeemed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, server_default=false())
    expires_at: Mapped[datetime | None] = mapped_column(nullable=True)

    plan: Mapped[SubscriptionPlan] = relationship(lazy="selectin")

    def __repr__(self) -> str:
        return f"<GiftCard(code={self.code!r}, redeemed={self.is_redeemed})>"
