"""User model."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import Boolean, Enum, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from hotelstock.core.rbac import UserRole
from hotelstock.db.base import Base, TimestampMixin


class User(Base, TimestampMixin):
    """Local profile of a console user.

    Tokens come from the external identity service, so the user ids recorded on
    counts, movements and discount cycles need not have a row here.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole),
        default=UserRole.STAFF,
        nullable=False,
    )
    hotel_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("hotels.id", ondelete="SET NULL"), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
