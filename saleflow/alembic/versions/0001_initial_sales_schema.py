"""initial sales schema: products ledger, sales, profit, returns, saga log

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 09:00:00

"""
from alembic import op
import sqlalchemy as sa


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

SAGA_KINDS = ("create_sale", "add_items", "process_return")
SAGA_STATES = (
    "normalizing",
    "reserving_stock",
    "restoring_stock",
    "persisting",
    "issuing_invoice",
    "compensating",
    "done",
    "aborted",
    "inconsistent",
)


def upgrade() -> None:
    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("quantity", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("price", sa.Numeric(12, 2), nullable=True),
        sa.Column("barcode", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "purchases",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("supplier_id", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=True),
        sa.Column("date", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "purchase_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("purchase_id", sa.Integer(), sa.ForeignKey("purchases.id", ondelete="CASCADE"), nullable=False),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("price_per_unit", sa.Numeric(12, 2), nullable=False),
        sa.CheckConstraint("price_per_unit >= 0", name="ck_purchase_item_price_nonneg"),
    )
    op.create_index("ix_purchase_items_product_id", "purchase_items", ["product_id"])

    op.create_table(
        "stock_transactions",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("amount_added", sa.Numeric(12, 2), nullable=False),
        sa.Column("reference", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("amount_added <> 0", name="ck_stock_transaction_amount_nonzero"),
    )
    op.create_index("ix_stock_transactions_product_id", "stock_transactions", ["product_id"])
    op.create_index("ix_stock_transactions_reference", "stock_transactions", ["reference"])
    op.create_index("ix_stock_transactions_product_time", "stock_transactions", ["product_id", "created_at"])

    op.create_table(
        "sales",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("sold_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_sales_customer_id", "sales", ["customer_id"])

    op.create_table(
        "sale_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("sale_id", sa.Integer(), sa.ForeignKey("sales.id", ondelete="CASCADE"), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("quantity_sold", sa.Numeric(10, 2), nullable=False),
        sa.Column("sale_price_per_quantity", sa.Numeric(10, 2), nullable=False),
        sa.Column("total_sale_price", sa.Numeric(12, 2), nullable=False),
        sa.UniqueConstraint("sale_id", "product_id", name="uq_sale_item_sale_product"),
        sa.CheckConstraint("quantity_sold >= 0", name="ck_sale_item_qty_nonneg"),
        sa.CheckConstraint("sale_price_per_quantity >= 0", name="ck_sale_item_price_nonneg"),
        sa.CheckConstraint("total_sale_price >= 0", name="ck_sale_item_total_nonneg"),
    )
    op.create_index("ix_sale_items_sale_id", "sale_items", ["sale_id"])

    op.create_table(
        "profit_trackers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("sale_id", sa.Integer(), sa.ForeignKey("sales.id", ondelete="CASCADE"), nullable=False, unique=True),
        sa.Column("gross_profit", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("net_profit", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "product_returns",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("saleitem_id", sa.Integer(), sa.ForeignKey("sale_items.id", ondelete="CASCADE"), nullable=False),
        sa.Column("quantity_returned", sa.Numeric(10, 2), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("returned_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("quantity_returned > 0", name="ck_product_return_qty_pos"),
    )
    op.create_index("ix_product_returns_saleitem_id", "product_returns", ["saleitem_id"])

    op.create_table(
        "saga_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("kind", sa.Enum(*SAGA_KINDS, name="saga_kind"), nullable=False),
        sa.Column("state", sa.Enum(*SAGA_STATES, name="saga_state"), nullable=False),
        sa.Column("sale_id", sa.Integer(), nullable=True),
        sa.Column("saleitem_id", sa.Integer(), nullable=True),
        sa.Column("compensation", sa.JSON(), nullable=False),
        sa.Column("reference", sa.String(length=64), nullable=False, unique=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_saga_records_state", "saga_records", ["state"])


def downgrade() -> None:
    op.drop_index("ix_saga_records_state", table_name="saga_records")
    op.drop_table("saga_records")
    op.drop_index("ix_product_returns_saleitem_id", table_name="product_returns")
    op.drop_table("product_returns")
    op.drop_table("profit_trackers")
    op.drop_index("ix_sale_items_sale_id", table_name="sale_items")
    op.drop_table("sale_items")
    op.drop_index("ix_sales_customer_id", table_name="sales")
    op.drop_table("sales")
    op.drop_index("ix_stock_transactions_product_time", table_name="stock_transactions")
    op.drop_index("ix_stock_transactions_reference", table_name="stock_transactions")
    op.drop_index("ix_stock_transactions_product_id", table_name="stock_transactions")
    op.drop_table("stock_transactions")
    op.drop_index("ix_purchase_items_product_id", table_name="purchase_items")
    op.drop_table("purchase_items")
    op.drop_table("purchases")
    op.drop_table("products")
    sa.Enum(name="saga_state").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="saga_kind").drop(op.get_bind(), checkfirst=True)
