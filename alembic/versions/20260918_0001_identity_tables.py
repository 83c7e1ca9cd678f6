"""Profiles, guests, conversion audit and owned tables.

Revision ID: 5b1f0c2d7a10
Revises:
Create Date: 2026-09-18 10:00:00
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "5b1f0c2d7a10"
down_revision = None
branch_labels = None
depends_on = None

OWNED_TABLES = ("conversations", "saved_recipes", "meal_plans", "grocery_lists")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()"), nullable=False),
    ]


def _owner_columns() -> list[sa.Column]:
    return [
        sa.Column(
            "owner_guest_id",
            sa.String(length=36),
            sa.ForeignKey("guests.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column(
            "owner_profile_id",
            sa.String(length=128),
            sa.ForeignKey("profiles.id", ondelete="CASCADE"),
            nullable=True,
        ),
    ]


def _owned_table(name: str, *columns: sa.Column) -> None:
    op.create_table(
        name,
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        *columns,
        *_owner_columns(),
        *_timestamps(),
        sa.CheckConstraint(
            "(owner_guest_id IS NULL) <> (owner_profile_id IS NULL)",
            name=f"ck_{name}_single_owner",
        ),
    )
    op.create_index(f"ix_{name}_owner_guest_id", name, ["owner_guest_id"])
    op.create_index(f"ix_{name}_owner_profile_id", name, ["owner_profile_id"])


def upgrade() -> None:
    json_type = sa.JSON().with_variant(postgresql.JSONB, "postgresql")

    op.create_table(
        "profiles",
        sa.Column("id", sa.String(length=128), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "guests",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("conversion_token", sa.String(length=64), nullable=False, unique=True),
        sa.Column("converted_to_profile", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "converted_user_id",
            sa.String(length=128),
            sa.ForeignKey("profiles.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("converted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()"), nullable=False),
    )

    op.create_table(
        "guest_conversions",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column(
            "guest_id",
            sa.String(length=36),
            sa.ForeignKey("guests.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "converted_user_id",
            sa.String(length=128),
            sa.ForeignKey("profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=512), nullable=True),
        sa.Column("records_transferred", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()"), nullable=False),
    )
    op.create_index("ix_guest_conversions_guest_id", "guest_conversions", ["guest_id"])
    op.create_index("ix_guest_conversions_converted_user_id", "guest_conversions", ["converted_user_id"])

    _owned_table(
        "conversations",
        sa.Column("title", sa.String(length=255), nullable=False, server_default="New chat"),
    )
    _owned_table(
        "saved_recipes",
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("recipe", json_type, nullable=True),
    )
    _owned_table(
        "meal_plans",
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("items", json_type, nullable=True),
    )
    _owned_table(
        "grocery_lists",
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("items", json_type, nullable=True),
    )

    op.create_table(
        "messages",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column(
            "conversation_id",
            sa.String(length=36),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()"), nullable=False),
    )
    op.create_index("ix_messages_conversation_id", "messages", ["conversation_id"])


def downgrade() -> None:
    op.drop_index("ix_messages_conversation_id", table_name="messages")
    op.drop_table("messages")
    for name in reversed(OWNED_TABLES):
        op.drop_index(f"ix_{name}_owner_profile_id", table_name=name)
        op.drop_index(f"ix_{name}_owner_guest_id", table_name=name)
        op.drop_table(name)
    op.drop_index("ix_guest_conversions_converted_user_id", table_name="guest_conversions")
    op.drop_index("ix_guest_conversions_guest_id", table_name="guest_conversions")
    op.drop_table("guest_conversions")
    op.drop_table("guests")
    op.drop_table("profiles")
