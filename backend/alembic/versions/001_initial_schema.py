"""Initial schema: venues, checkins, checkin gates, rewards, user rewards, profiles.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Venues: read-only for this service
    op.create_table(
        "venues",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("slug", sa.String(120), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )
    op.create_index("ix_venues_slug", "venues", ["slug"], unique=True)

    # Checkins: append-only history. No is_active column; validity is expires_at > now.
    op.create_table(
        "checkins",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("venue_id", sa.String(36), sa.ForeignKey("venues.id"), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=True),
        sa.Column("device_fingerprint", sa.String(128), nullable=True),
        sa.Column("checked_in_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("expires_at > checked_in_at", name="check_checkin_expiry_after_start"),
    )
    # Crowd count scans one venue's unexpired rows:
    # WHERE venue_id = :v AND expires_at > now()
    op.create_index("ix_checkins_venue_expires", "checkins", ["venue_id", "expires_at"])
    op.create_index("ix_checkins_user_checked_in", "checkins", ["user_id", "checked_in_at"])

    # Cooldown gates: the primary key is what serializes concurrent check-ins
    op.create_table(
        "checkin_gates",
        sa.Column("venue_id", sa.String(36), sa.ForeignKey("venues.id"), primary_key=True),
        sa.Column("subject_kind", sa.String(10), primary_key=True),
        sa.Column("subject", sa.String(128), primary_key=True),
        sa.Column("last_checked_in_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("subject_kind IN ('user', 'device')", name="check_gate_subject_kind"),
    )

    op.create_table(
        "rewards",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("venue_id", sa.String(36), sa.ForeignKey("venues.id"), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.String(1000), nullable=True),
        sa.Column("checkins_required", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.CheckConstraint("checkins_required >= 1", name="check_reward_checkins_required_positive"),
    )
    op.create_index("ix_rewards_venue_id", "rewards", ["venue_id"])

    op.create_table(
        "user_rewards",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("reward_id", sa.String(36), sa.ForeignKey("rewards.id"), nullable=False),
        sa.Column("venue_id", sa.String(36), sa.ForeignKey("venues.id"), nullable=False),
        sa.Column("checkins_completed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'in_progress'")),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "reward_id", name="uq_user_reward"),
        sa.CheckConstraint("checkins_completed >= 0", name="check_user_reward_completed_non_negative"),
        sa.CheckConstraint(
            "status IN ('in_progress', 'redeemable', 'redeemed')",
            name="check_user_reward_status",
        ),
    )
    op.create_index("ix_user_rewards_user_id", "user_rewards", ["user_id"])
    op.create_index("ix_user_rewards_user_venue", "user_rewards", ["user_id", "venue_id"])

    op.create_table(
        "user_profiles",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("total_points", sa.Integer(), nullable=False, server_default=sa.text("0")),
        *_timestamps(),
        sa.CheckConstraint("total_points >= 0", name="check_profile_points_non_negative"),
    )


def downgrade() -> None:
    op.drop_table("user_profiles")
    op.drop_table("user_rewards")
    op.drop_table("rewards")
    op.drop_table("checkin_gates")
    op.drop_table("checkins")
    op.drop_table("venues")
