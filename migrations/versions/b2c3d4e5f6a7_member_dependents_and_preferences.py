"""Member IUA level, enrollment dependents and notification preferences.

Revision ID: b2c3d4e5f6a7
Revises: a0b1c2d3e4f5
Create Date: 2026-10-17
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "b2c3d4e5f6a7"
down_revision: Union[str, Sequence[str], None] = "a0b1c2d3e4f5"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    with op.batch_alter_table("member_profiles") as batch_op:
        batch_op.add_column(sa.Column("iua_level", sa.String(8), nullable=False, server_default="1500"))

    op.create_table(
        "member_dependents",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("member_id", sa.Integer(), nullable=False),
        sa.Column("first_name", sa.String(128), nullable=False),
        sa.Column("last_name", sa.String(128), nullable=False),
        sa.Column("date_of_birth", sa.Date(), nullable=False),
        sa.Column("relation", sa.String(32), nullable=False),
        sa.Column("gender", sa.String(16), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["member_id"], ["member_profiles.id"], ondelete="CASCADE"),
    )
    op.create_index("idx_member_dependents_member_id", "member_dependents", ["member_id"])

    op.create_table(
        "notification_preferences",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("member_id", sa.Integer(), nullable=False),
        sa.Column("email_notifications", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("sms_notifications", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("share_request_updates", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("billing_reminders", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("marketing_emails", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["member_id"], ["member_profiles.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("member_id"),
    )


def downgrade() -> None:
    op.drop_table("notification_preferences")
    op.drop_index("idx_member_dependents_member_id", table_name="member_dependents")
    op.drop_table("member_dependents")
    with op.batch_alter_table("member_profiles") as batch_op:
        batch_op.drop_column("iua_level")
