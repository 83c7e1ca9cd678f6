from __future__ import annotations

from datetime import datetime
import secrets
import uuid
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column, relationship


json_type = JSON().with_variant(JSONB, "postgresql")


def _new_id() -> str:
    return str(uuid.uuid4())


def new_conversion_token() -> str:
    return secrets.token_urlsafe(32)


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class TimestampMixin:
    """Common created/updated timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class Profile(Base, TimestampMixin):
    """Durable identity; ``id`` is the auth provider's subject, never generated here."""

    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(320))

    def __repr__(self) -> str:
        return f"Profile(id={self.id}, email={self.email})"


class Guest(Base):
    __tablename__ = "guests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    conversion_token: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True, default=new_conversion_token
    )
    converted_to_profile: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    converted_user_id: Mapped[Optional[str]] = mapped_column(
        String(128), ForeignKey("profiles.id", ondelete="SET NULL")
    )
    converted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        # conversion_token deliberately omitted
        return f"Guest(id={self.id}, converted_to_profile={self.converted_to_profile})"


class GuestConversion(Base):
    """Audit trail for guest-to-profile migrations."""

    __tablename__ = "guest_conversions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    guest_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("guests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    converted_user_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    ip_address: Mapped[Optional[str]] = mapped_column(String(64))
    user_agent: Mapped[Optional[str]] = mapped_column(String(512))
    records_transferred: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class OwnedMixin:
    """Mutually exclusive guest/profile ownership columns.

    Exactly one of ``owner_guest_id`` and ``owner_profile_id`` is set; the CHECK
    constraint holds the database to it.
    """

    @declared_attr
    def owner_guest_id(cls) -> Mapped[Optional[str]]:
        return mapped_column(
            String(36), ForeignKey("guests.id", ondelete="CASCADE"), nullable=True, index=True
        )

    @declared_attr
    def owner_profile_id(cls) -> Mapped[Optional[str]]:
        return mapped_column(
            String(128), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=True, index=True
        )

    @declared_attr.directive
    def __table_args__(cls):
        return (
            CheckConstraint(
                "(owner_guest_id IS NULL) <> (owner_profile_id IS NULL)",
                name=f"ck_{cls.__tablename__}_single_owner",
            ),
        )


class Conversation(Base, OwnedMixin, TimestampMixin):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="New chat")

    messages: Mapped[list["Message"]] = relationship(
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.created_at",
    )


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    conversation_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    conversation: Mapped[Conversation] = relationship(back_populates="messages")


class SavedRecipe(Base, OwnedMixin, TimestampMixin):
    __tablename__ = "saved_recipes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    recipe: Mapped[Optional[dict]] = mapped_column(json_type)


class MealPlan(Base, OwnedMixin, TimestampMixin):
    __tablename__ = "meal_plans"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    items: Mapped[Optional[list]] = mapped_column(json_type)


class GroceryList(Base, OwnedMixin, TimestampMixin):
    __tablename__ = "grocery_lists"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    items: Mapped[Optional[list]] = mapped_column(json_type)


# Every table whose rows move from guest to profile on conversion.
OWNED_MODELS: tuple[type[OwnedMixin], ...] = (Conversation, SavedRecipe, MealPlan, GroceryList)
