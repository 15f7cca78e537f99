"""pairing_schema

Revision ID: 5b2e81c4d7a9
Revises: 
Create Date: 2026-10-19 09:12:31.402118

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5b2e81c4d7a9'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

destination = sa.Enum("AIRPORT", "TRAIN_STATION", "BUS_TERMINAL", name="destination")
ride_status = sa.Enum("AVAILABLE", "PENDING", "CONFIRMED", name="ridestatus")
ref_status = sa.Enum("PENDING", "AWAITING_CONFIRMATION", "CONFIRMED", "DECLINED", name="refstatus")


def upgrade() -> None:
    """Create user, riderequest, conversation and message tables."""
    op.create_table(
        "user",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        # no FK: the ride may expire while the pointer still names it
        sa.Column("current_ride_id", sa.Integer(), nullable=True),
        sa.Column("request_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("request_count_reset", sa.Date(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "riderequest",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("destination", destination, nullable=False),
        sa.Column("departure_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", ride_status, nullable=False, server_default="AVAILABLE"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_riderequest_user_id", "riderequest", ["user_id"])
    op.create_index("ix_riderequest_destination", "riderequest", ["destination"])
    op.create_index("ix_riderequest_departure_time", "riderequest", ["departure_time"])
    op.create_index("ix_riderequest_status", "riderequest", ["status"])
    op.create_table(
        "conversation",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("ride_a_id", sa.Integer(), nullable=False),
        sa.Column("ride_b_id", sa.Integer(), nullable=False),
        sa.Column("status_a", ref_status, nullable=False, server_default="PENDING"),
        sa.Column("status_b", ref_status, nullable=False, server_default="PENDING"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_conversation_ride_a_id", "conversation", ["ride_a_id"])
    op.create_index("ix_conversation_ride_b_id", "conversation", ["ride_b_id"])
    op.create_index("ix_conversation_expires_at", "conversation", ["expires_at"])
    op.create_table(
        "message",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("conversation_id", sa.Integer(), nullable=False),
        sa.Column("sender_id", sa.Integer(), nullable=False),
        sa.Column("content", sa.String(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["conversation_id"], ["conversation.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_message_conversation_id", "message", ["conversation_id"])


def downgrade() -> None:
    """Drop all pairing tables."""
    op.drop_index("ix_message_conversation_id", table_name="message")
    op.drop_table("message")
    op.drop_index("ix_conversation_expires_at", table_name="conversation")
    op.drop_index("ix_conversation_ride_b_id", table_name="conversation")
    op.drop_index("ix_conversation_ride_a_id", table_name="conversation")
    op.drop_table("conversation")
    op.drop_index("ix_riderequest_status", table_name="riderequest")
    op.drop_index("ix_riderequest_departure_time", table_name="riderequest")
    op.drop_index("ix_riderequest_destination", table_name="riderequest")
    op.drop_index("ix_riderequest_user_id", table_name="riderequest")
    op.drop_table("riderequest")
    op.drop_table("user")
    ref_status.drop(op.get_bind(), checkfirst=True)
    ride_status.drop(op.get_bind(), checkfirst=True)
    destination.drop(op.get_bind(), checkfirst=True)
