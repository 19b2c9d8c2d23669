"""init consensus tables

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 10:50:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("username", sa.String(), nullable=False),
        sa.Column("username_key", sa.String(), nullable=False),
        sa.Column("created_at", sa.String(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_users_id"), "users", ["id"], unique=False)
    op.create_index(op.f("ix_users_username_key"), "users", ["username_key"], unique=True)

    op.create_table(
        "lobbies",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("host_id", sa.String(), nullable=False),
        sa.Column("lat", sa.Float(), nullable=False),
        sa.Column("lon", sa.Float(), nullable=False),
        sa.Column("radius", sa.Float(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("start_hour", sa.Integer(), nullable=False),
        sa.Column("end_hour", sa.Integer(), nullable=False),
        sa.Column("activity_counts", sa.JSON(), nullable=False),
        sa.Column("max_members", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("current_round", sa.Integer(), nullable=False),
        sa.Column("total_rounds", sa.Integer(), nullable=False),
        sa.Column("join_seq", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.String(), nullable=False),
        sa.ForeignKeyConstraint(["host_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_lobbies_id"), "lobbies", ["id"], unique=False)
    op.create_index(op.f("ix_lobbies_code"), "lobbies", ["code"], unique=False)
    op.create_index(op.f("ix_lobbies_status"), "lobbies", ["status"], unique=False)

    op.create_table(
        "members",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("lobby_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("username", sa.String(), nullable=False),
        sa.Column("is_owner", sa.Boolean(), nullable=False),
        sa.Column("is_ready", sa.Boolean(), nullable=False),
        sa.Column("joined_seq", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["lobby_id"], ["lobbies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("lobby_id", "user_id", name="uq_members_lobby_user"),
    )
    op.create_index(op.f("ix_members_lobby_id"), "members", ["lobby_id"], unique=False)
    op.create_index(op.f("ix_members_user_id"), "members", ["user_id"], unique=False)

    op.create_table(
        "rounds",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("lobby_id", sa.String(), nullable=False),
        sa.Column("round_number", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("options", sa.JSON(), nullable=False),
        sa.Column("active_option_ids", sa.JSON(), nullable=False),
        sa.Column("pass_number", sa.Integer(), nullable=False),
        sa.Column("tiebreak_count", sa.Integer(), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("winner_option_id", sa.String(), nullable=True),
        sa.Column("last_outcome", sa.String(), nullable=True),
        sa.ForeignKeyConstraint(["lobby_id"], ["lobbies.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("lobby_id", "round_number", name="uq_rounds_lobby_number"),
    )
    op.create_index(op.f("ix_rounds_lobby_id"), "rounds", ["lobby_id"], unique=False)

    op.create_table(
        "votes",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("lobby_id", sa.String(), nullable=False),
        sa.Column("round_number", sa.Integer(), nullable=False),
        sa.Column("pass_number", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("option_id", sa.String(), nullable=False),
        sa.Column("value", sa.Boolean(), nullable=False),
        sa.ForeignKeyConstraint(["lobby_id"], ["lobbies.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "lobby_id", "round_number", "pass_number", "user_id", "option_id", name="uq_votes_pass_user_option"
        ),
    )
    op.create_index(op.f("ix_votes_lobby_id"), "votes", ["lobby_id"], unique=False)

    op.create_table(
        "itineraries",
        sa.Column("lobby_id", sa.String(), nullable=False),
        sa.Column("generated_at", sa.String(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.ForeignKeyConstraint(["lobby_id"], ["lobbies.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("lobby_id"),
    )


def downgrade() -> None:
    op.drop_table("itineraries")
    op.drop_index(op.f("ix_votes_lobby_id"), table_name="votes")
    op.drop_table("votes")
    op.drop_index(op.f("ix_rounds_lobby_id"), table_name="rounds")
    op.drop_table("rounds")
    op.drop_index(op.f("ix_members_user_id"), table_name="members")
    op.drop_index(op.f("ix_members_lobby_id"), table_name="members")
    op.drop_table("members")
    op.drop_index(op.f("ix_lobbies_status"), table_name="lobbies")
    op.drop_index(op.f("ix_lobbies_code"), table_name="lobbies")
    op.drop_index(op.f("ix_lobbies_id"), table_name="lobbies")
    op.drop_table("lobbies")
    op.drop_index(op.f("ix_users_username_key"), table_name="users")
    op.drop_index(op.f("ix_users_id"), table_name="users")
    op.drop_table("users")
