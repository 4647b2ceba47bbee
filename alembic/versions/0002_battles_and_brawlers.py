"""Add battle history, daily stats and brawler tracking.

Revision ID: 0002_battles_and_brawlers
Revises: 0001_club_members
Create Date: 2026-02-03 00:00:00
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0002_battles_and_brawlers"
down_revision = "0001_club_members"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "battle_history",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("player_tag", sa.String(length=20), nullable=False),
        sa.Column("battle_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("mode", sa.String(length=64), nullable=True),
        sa.Column("map", sa.String(length=128), nullable=True),
        sa.Column("battle_type", sa.String(length=32), nullable=True),
        sa.Column("result", sa.String(length=16), nullable=False, server_default="unknown"),
        sa.Column("trophy_change", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "is_star_player", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("brawler_name", sa.String(length=64), nullable=True),
        sa.Column("brawler_power", sa.Integer(), nullable=True),
        sa.Column("brawler_trophies", sa.Integer(), nullable=True),
        sa.Column("duration", sa.Integer(), nullable=True),
        sa.Column("teams_json", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.UniqueConstraint(
            "player_tag", "battle_time", name="uq_battle_history_player_time"
        ),
    )
    op.create_index("ix_battle_history_battle_time", "battle_history", ["battle_time"])
    op.create_index("ix_battle_history_mode", "battle_history", ["mode"])

    op.create_table(
        "daily_stats",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("player_tag", sa.String(length=20), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("battles", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("wins", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("losses", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("star_player", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("trophies_gained", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("trophies_lost", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.UniqueConstraint("player_tag", "date", name="uq_daily_stats_player_date"),
    )
    op.create_index("ix_daily_stats_date", "daily_stats", ["date"])

    op.create_table(
        "brawler_snapshots",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("player_tag", sa.String(length=20), nullable=False),
        sa.Column("brawler_id", sa.Integer(), nullable=False),
        sa.Column("brawler_name", sa.String(length=64), nullable=False),
        sa.Column("power_level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("trophies", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("highest_trophies", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rank", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("gadgets_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("star_powers_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("gears_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("captured_on", sa.Date(), nullable=False),
        sa.Column(
            "recorded_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.UniqueConstraint(
            "player_tag",
            "brawler_id",
            "captured_on",
            name="uq_brawler_snapshots_player_brawler_day",
        ),
    )
    op.create_index(
        "ix_brawler_snapshots_player_day",
        "brawler_snapshots",
        ["player_tag", "captured_on"],
    )

    op.create_table(
        "player_tracking",
        sa.Column("player_tag", sa.String(length=20), primary_key=True),
        sa.Column("power_ups", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unlocks", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "tracking_started",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "last_updated",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    )


def downgrade() -> None:
    op.drop_table("player_tracking")
    op.drop_index("ix_brawler_snapshots_player_day", table_name="brawler_snapshots")
    op.drop_table("brawler_snapshots")
    op.drop_index("ix_daily_stats_date", table_name="daily_stats")
    op.drop_table("daily_stats")
    op.drop_index("ix_battle_history_mode", table_name="battle_history")
    op.drop_index("ix_battle_history_battle_time", table_name="battle_history")
    op.drop_table("battle_history")
