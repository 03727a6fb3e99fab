"""Initial schema: users, broadcasts, join_requests

The composite primary key on join_requests (broadcast_id, user_id) is what
stops a user from asking to join the same broadcast twice, even when two
requests race each other.

Revision ID: 3f1c2a9d7b40
Revises:
Create Date: 2026-10-16 09:12:44.510233
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f1c2a9d7b40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("username", sa.String(length=100), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "broadcasts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("creator_id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_broadcasts_status_expires", "broadcasts", ["status", "expires_at"])
    op.create_index("idx_broadcasts_created", "broadcasts", ["created_at"])
    op.create_index("idx_broadcasts_creator", "broadcasts", ["creator_id"])

    op.create_table(
        "join_requests",
        sa.Column("broadcast_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["broadcast_id"], ["broadcasts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("broadcast_id", "user_id"),
    )


def downgrade() -> None:
    op.drop_table("join_requests")
    op.drop_index("idx_broadcasts_creator", table_name="broadcasts")
    op.drop_index("idx_broadcasts_created", table_name="broadcasts")
    op.drop_index("idx_broadcasts_status_expires", table_name="broadcasts")
    op.drop_table("broadcasts")
    op.drop_table("users")
