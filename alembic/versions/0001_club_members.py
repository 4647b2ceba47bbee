"""Create club membership tables.

Revision ID: 0001_club_members
Revises: 
Create Date: 2026-01-20 00:00:00
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_club_members"
down_revision = None
branch_labels = None
depends_on = None


def _now_column(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("now()"),
    )


def upgrade() -> None:
    op.create_table(
        "members",
        sa.Column("player_tag", sa.String(length=20), primary_key=True),
        sa.Column("player_name", sa.String(length=64), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="member"),
        sa.Column("trophies", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("highest_trophies", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("exp_level", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("rank_current", sa.String(length=32), nullable=True),
        sa.Column("rank_highest", sa.String(length=32), nullable=True),
        sa.Column("win_rate", sa.Integer(), nullable=True),
        sa.Column("brawlers_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("solo_victories", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("duo_victories", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("trio_victories", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _now_column("last_updated"),
    )
    op.create_index("ix_members_trophies", "members", ["trophies"])

    op.create_table(
        "member_history",
        sa.Column("player_tag", sa.String(length=20), primary_key=True),
        sa.Column("player_name", sa.String(length=64), nullable=False),
        _now_column("first_seen"),
        _now_column("last_seen"),
        sa.Column("last_left_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("times_joined", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("times_left", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "is_current_member", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        sa.Column("role_at_leave", sa.String(length=32), nullable=True),
        sa.Column("trophies_at_leave", sa.Integer(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
    )
    op.create_index(
        "ix_member_history_current", "member_history", ["is_current_member"]
    )

    op.create_table(
        "activity_log",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("player_tag", sa.String(length=20), nullable=False),
        sa.Column("trophies", sa.Integer(), nullable=False),
        sa.Column("trophy_change", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "activity_type", sa.String(length=16), nullable=False, server_default="inactive"
        ),
        _now_column("recorded_at"),
    )
    op.create_index("ix_activity_log_player", "activity_log", ["player_tag"])
    op.create_index("ix_activity_log_recorded_at", "activity_log", ["recorded_at"])

    op.create_table(
        "club_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("event_type", sa.String(length=16), nullable=False),
        sa.Column("player_tag", sa.String(length=20), nullable=False),
        sa.Column("player_name", sa.String(length=64), nullable=False),
        _now_column("event_time"),
    )
    op.create_index("ix_club_events_event_time", "club_events", ["event_time"])
    op.create_index(
        "ix_club_events_type_player", "club_events", ["event_type", "player_tag"]
    )

    op.create_table(
        "settings",
        sa.Column("key", sa.String(length=64), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
        _now_column("updated_at"),
    )


def downgrade() -> None:
    op.drop_table("settings")
    op.drop_index("ix_club_events_type_player", table_name="club_events")
    op.drop_index("ix_club_events_event_time", table_name="club_events")
    op.drop_table("club_events")
    op.drop_index("ix_activity_log_recorded_at", table_name="activity_log")
    op.drop_index("ix_activity_log_player", table_name="activity_log")
    op.drop_table("activity_log")
    op.drop_index("ix_member_history_current", table_name="member_history")
    op.drop_table("member_history")
    op.drop_index("ix_members_trophies", table_name="members")
    op.drop_table("members")
