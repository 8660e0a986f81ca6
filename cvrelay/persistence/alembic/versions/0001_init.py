"""init

Revision ID: 0001_init
Revises: 
Create Date: 2026-10-01 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "merchant_sessions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("shop", sa.String(), nullable=False),
        sa.Column("access_token", sa.String(), nullable=False),
        sa.Column("primary_domain", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "pixel_key_pairs",
        sa.Column("kid", sa.String(), primary_key=True),
        sa.Column("public_jwk", sa.Text(), nullable=False),
        sa.Column("private_key_ciphertext", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_pixel_key_pairs_created_at", "pixel_key_pairs", ["created_at"])

    op.create_table(
        "replay_tokens",
        sa.Column("nonce", sa.String(), primary_key=True),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_replay_tokens_received_at", "replay_tokens", ["received_at"])

    op.create_table(
        "conversion_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("yclid", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("visited_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("converted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        # Idempotency key; duplicate deliveries collide here.
        sa.Column("order_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("order_id", name="uq_conversion_records_order_id"),
    )
    op.create_index("ix_conversion_records_yclid", "conversion_records", ["yclid"])
    op.create_index("ix_conversion_records_visited_at", "conversion_records", ["visited_at"])
    op.create_index(
        "ix_conversion_records_export",
        "conversion_records",
        ["is_processed", "converted_at"],
    )

    op.create_table(
        "ad_applications",
        sa.Column("client_id", sa.String(), primary_key=True),
        sa.Column("client_secret", sa.String(), nullable=False),
        sa.Column("redirect_uri", sa.String(), nullable=False),
        sa.Column("state", sa.String(), nullable=True),
        sa.Column("code", sa.String(), nullable=True),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("token_created_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "ad_accounts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("network_type", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("child_account_id", sa.String(), nullable=False),
        sa.Column("duration_days", sa.Integer(), nullable=False),
        sa.Column("conversion_title", sa.String(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("ad_accounts")
    op.drop_table("ad_applications")
    op.drop_index("ix_conversion_records_export", table_name="conversion_records")
    op.drop_index("ix_conversion_records_visited_at", table_name="conversion_records")
    op.drop_index("ix_conversion_records_yclid", table_name="conversion_records")
    op.drop_table("conversion_records")
    op.drop_index("ix_replay_tokens_received_at", table_name="replay_tokens")
    op.drop_table("replay_tokens")
    op.drop_index("ix_pixel_key_pairs_created_at", table_name="pixel_key_pairs")
    op.drop_table("pixel_key_pairs")
    op.drop_table("merchant_sessions")
