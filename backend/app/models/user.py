"""User model — passwordless account and profile."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class User(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Application user, signed in through emailed sign-in links."""

    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Sign-in links requested since the last successful sign-in
    sign_in_attempts: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)
    last_sign_in_attempt_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    # Carried by sign-in tokens; bumped on every exchange so a link works once
    sign_in_token_version: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)

    # Relationships
    customer: Mapped["Customer | None"] = relationship(  # type: ignore[name-defined]  # noqa: F821
        "Customer", back_populates="user", uselist=False, lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r}>"
