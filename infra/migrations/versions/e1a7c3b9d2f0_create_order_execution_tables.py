"""Create ledger tables used by the order execution worker."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "e1a7c3b9d2f0"
down_revision = None
branch_labels = None
depends_on = None


def _money(name: str, *, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.Numeric(precision=20, scale=8), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "trading_accounts",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        _money("balance"),
        _money("available_margin"),
        _money("used_margin"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
    )
    op.create_index(op.f("ix_trading_accounts_user_id"), "trading_accounts", ["user_id"])

    op.create_table(
        "stocks",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("symbol", sa.String(length=64), nullable=False),
        sa.Column("instrument_token", sa.Integer(), nullable=True),
        sa.Column("segment", sa.String(length=16), nullable=False, server_default="NSE"),
        sa.Column("lot_size", sa.Integer(), nullable=False, server_default="1"),
        _money("ltp", nullable=True),
    )
    op.create_index(op.f("ix_stocks_symbol"), "stocks", ["symbol"])
    op.create_index(op.f("ix_stocks_instrument_token"), "stocks", ["instrument_token"])

    op.create_table(
        "orders",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "trading_account_id",
            sa.String(length=36),
            sa.ForeignKey("trading_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "stock_id",
            sa.String(length=36),
            sa.ForeignKey("stocks.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("symbol", sa.String(length=64), nullable=False),
        sa.Column("side", sa.String(length=16), nullable=False),
        sa.Column("order_type", sa.String(length=16), nullable=False, server_default="MARKET"),
        sa.Column("product_type", sa.String(length=16), nullable=False, server_default="MIS"),
        sa.Column("quantity", sa.Integer(), nullable=False),
        _money("price", nullable=True),
        _money("average_price", nullable=True),
        sa.Column("filled_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
        sa.Column("position_id", sa.String(length=36), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_orders_status_created", "orders", ["status", "created_at"])

    op.create_table(
        "positions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "trading_account_id",
            sa.String(length=36),
            sa.ForeignKey("trading_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "stock_id",
            sa.String(length=36),
            sa.ForeignKey("stocks.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("symbol", sa.String(length=64), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        _money("average_price"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.UniqueConstraint("trading_account_id", "stock_id", name="uq_positions_account_stock"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "trading_account_id",
            sa.String(length=36),
            sa.ForeignKey("trading_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        _money("amount"),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("category", sa.String(length=16), nullable=False, server_default="ADJUSTMENT"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("order_id", sa.String(length=36), nullable=True),
        sa.Column("position_id", sa.String(length=36), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
    )
    op.create_index(op.f("ix_transactions_order_id"), "transactions", ["order_id"])
    op.create_index(
        "ix_transactions_account_created", "transactions", ["trading_account_id", "created_at"]
    )

    risk_config = op.create_table(
        "risk_config",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("segment", sa.String(length=16), nullable=False),
        sa.Column("product_type", sa.String(length=16), nullable=False),
        _money("leverage"),
        _money("brokerage_flat", nullable=True),
        _money("brokerage_rate", nullable=True),
        _money("brokerage_cap", nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.bulk_insert(
        risk_config,
        [
            {
                "id": "6f0b8f8e-4c1a-4d8e-9a35-0c4c1f6b2a01",
                "segment": "NSE",
                "product_type": "MIS",
                "leverage": 200,
                "brokerage_flat": None,
                "brokerage_rate": 0.0003,
                "brokerage_cap": 20,
                "active": True,
            },
            {
                "id": "6f0b8f8e-4c1a-4d8e-9a35-0c4c1f6b2a02",
                "segment": "NSE",
                "product_type": "CNC",
                "leverage": 50,
                "brokerage_flat": None,
                "brokerage_rate": 0.0003,
                "brokerage_cap": 20,
                "active": True,
            },
            {
                "id": "6f0b8f8e-4c1a-4d8e-9a35-0c4c1f6b2a03",
                "segment": "NFO",
                "product_type": "DELIVERY",
                "leverage": 100,
                "brokerage_flat": 20,
                "brokerage_rate": None,
                "brokerage_cap": None,
                "active": True,
            },
        ],
    )

    op.create_table(
        "system_settings",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("owner_id", sa.String(length=64), nullable=True),
        sa.Column("key", sa.String(length=128), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("category", sa.String(length=32), nullable=False, server_default="GENERAL"),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
    )
    op.create_index(op.f("ix_system_settings_key"), "system_settings", ["key"])


def downgrade() -> None:
    op.drop_index(op.f("ix_system_settings_key"), table_name="system_settings")
    op.drop_table("system_settings")
    op.drop_table("risk_config")
    op.drop_index("ix_transactions_account_created", table_name="transactions")
    op.drop_index(op.f("ix_transactions_order_id"), table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("positions")
    op.drop_index("ix_orders_status_created", table_name="orders")
    op.drop_table("orders")
    op.drop_index(op.f("ix_stocks_instrument_token"), table_name="stocks")
    op.drop_index(op.f("ix_stocks_symbol"), table_name="stocks")
    op.drop_table("stocks")
    op.drop_index(op.f("ix_trading_accounts_user_id"), table_name="trading_accounts")
    op.drop_table("trading_accounts")
