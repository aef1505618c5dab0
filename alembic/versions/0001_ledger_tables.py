"""Кошельки, журнал транзакций и журнал генераций

Revision ID: 0001
Revises:
Create Date: 2026-10-18 12:00:00
"""

import sqlalchemy as sa

from alembic import op

revision: str = "0001"
down_revision: str | None = None
branch_labels: str | None = None
depends_on: str | None = None


def upgrade() -> None:
    op.create_table(
        "user_wallets",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("text_balance", sa.Integer(), nullable=False),
        sa.Column("image_balance", sa.Integer(), nullable=False),
        sa.Column("video_balance", sa.Integer(), nullable=False),
        sa.Column("audio_balance", sa.Integer(), nullable=False),
        sa.Column("money_balance", sa.Numeric(12, 2), nullable=False),
        sa.Column("signup_bonus_granted", sa.Boolean(), nullable=False),
        sa.Column(
            "created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False
        ),
        sa.Column(
            "updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False
        ),
        sa.CheckConstraint("text_balance >= 0", name="ck_wallet_text_non_negative"),
        sa.CheckConstraint("image_balance >= 0", name="ck_wallet_image_non_negative"),
        sa.CheckConstraint("video_balance >= 0", name="ck_wallet_video_non_negative"),
        sa.CheckConstraint("audio_balance >= 0", name="ck_wallet_audio_non_negative"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_user_wallets_user_id", "user_wallets", ["user_id"], unique=True
    )

    op.create_table(
        "wallet_transactions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("category", sa.String(length=20), nullable=False),
        sa.Column("type", sa.String(length=20), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_before", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("request_id", sa.String(length=64), nullable=True),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column(
            "created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False
        ),
        sa.CheckConstraint("amount > 0", name="ck_wallet_tx_amount_positive"),
        sa.ForeignKeyConstraint(
            ["user_id"], ["user_wallets.user_id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_wallet_tx_user_category",
        "wallet_transactions",
        ["user_id", "category", "id"],
    )
    op.create_index("ix_wallet_tx_request", "wallet_transactions", ["request_id"])
    op.create_index(
        "uq_wallet_tx_refund_request",
        "wallet_transactions",
        ["request_id"],
        unique=True,
        sqlite_where=sa.text("type = 'refund'"),
        postgresql_where=sa.text("type = 'refund'"),
    )

    op.create_table(
        "generations",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("request_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("model_slug", sa.String(length=100), nullable=False),
        sa.Column("category", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("priced_cost", sa.Integer(), nullable=False),
        sa.Column("charge_transaction_id", sa.BigInteger(), nullable=True),
        sa.Column("refund_transaction_id", sa.BigInteger(), nullable=True),
        sa.Column("attempted_providers", sa.String(length=255), nullable=False),
        sa.Column("provider_name", sa.String(length=50), nullable=True),
        sa.Column("result_content", sa.Text(), nullable=True),
        sa.Column("result_file_url", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False
        ),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_generations_request_id", "generations", ["request_id"], unique=True
    )
    op.create_index("ix_generations_user_id", "generations", ["user_id"])
    op.create_index("ix_generations_created_at", "generations", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_generations_created_at", table_name="generations")
    op.drop_index("ix_generations_user_id", table_name="generations")
    op.drop_index("ix_generations_request_id", table_name="generations")
    op.drop_table("generations")

    op.drop_index("uq_wallet_tx_refund_request", table_name="wallet_transactions")
    op.drop_index("ix_wallet_tx_request", table_name="wallet_transactions")
    op.drop_index("ix_wallet_tx_user_category", table_name="wallet_transactions")
    op.drop_table("wallet_transactions")

    op.drop_index("ix_user_wallets_user_id", table_name="user_wallets")
    op.drop_table("user_wallets")
