"""initial iap schema

Revision ID: 2026_10_16_0001
Revises:
Create Date: 2026-10-16 00:00:00.000000

Creates the in-app purchase tables:
- iap_product_map: store product -> business effect (reference data)
- okcoins_packs: coin pack quantities (reference data)
- iap_transactions: one row per purchase, unique per (provider, transaction_id)
- abonnements: subscription rows, including permanent grants
- okcoins_users_balance / okcoins_ledger: coin balances and audit trail
- profiles: denormalized current plan
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_16_0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "iap_product_map",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("platform", sa.String(length=32), nullable=False),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("store_product_id", sa.String(length=255), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("plan_key", sa.String(length=100), nullable=True),
        sa.Column("pack_id", sa.String(length=100), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "uq_iap_product_map_active",
        "iap_product_map",
        ["platform", "provider", "store_product_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )

    op.create_table(
        "okcoins_packs",
        sa.Column("id", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("coins", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "iap_transactions",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("platform", sa.String(length=32), nullable=False),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("transaction_id", sa.String(length=255), nullable=False),
        sa.Column("original_transaction_id", sa.String(length=255), nullable=True),
        sa.Column("product_id", sa.String(length=255), nullable=False),
        sa.Column("product_type", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="paid"),
        sa.Column("purchased_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("raw", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider", "transaction_id", name="uq_iap_transactions_provider_tx"),
    )
    op.create_index(
        "idx_iap_transactions_user_type", "iap_transactions", ["user_id", "product_type"]
    )
    op.create_index(
        "idx_iap_transactions_original_tx", "iap_transactions", ["original_transaction_id"]
    )

    op.create_table(
        "abonnements",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("profile_id", sa.String(length=255), nullable=False),
        sa.Column("plan_name", sa.String(length=100), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_renew", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_permanent", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("status IN ('active', 'expired')", name="ck_abonnements_status"),
    )
    op.create_index("idx_abonnements_profile_end", "abonnements", ["profile_id", "end_date"])

    op.create_table(
        "okcoins_users_balance",
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("coins_balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "okcoins_ledger",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("delta", sa.BigInteger(), nullable=False),
        sa.Column("kind", sa.String(length=50), nullable=False),
        sa.Column("ref_type", sa.String(length=50), nullable=False),
        sa.Column("ref_id", sa.String(length=255), nullable=False),
        sa.Column("balance_after", sa.BigInteger(), nullable=False),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("ref_type", "ref_id", name="uq_okcoins_ledger_ref"),
    )
    op.create_index("idx_okcoins_ledger_user", "okcoins_ledger", ["user_id"])

    op.create_table(
        "profiles",
        sa.Column("id", sa.String(length=255), nullable=False),
        sa.Column("plan", sa.String(length=100), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    op.drop_table("profiles")
    op.drop_index("idx_okcoins_ledger_user", table_name="okcoins_ledger")
    op.drop_table("okcoins_ledger")
    op.drop_table("okcoins_users_balance")
    op.drop_index("idx_abonnements_profile_end", table_name="abonnements")
    op.drop_table("abonnements")
    op.drop_index("idx_iap_transactions_original_tx", table_name="iap_transactions")
    op.drop_index("idx_iap_transactions_user_type", table_name="iap_transactions")
    op.drop_table("iap_transactions")
    op.drop_table("okcoins_packs")
    op.drop_index("uq_iap_product_map_active", table_name="iap_product_map")
    op.drop_table("iap_product_map")
