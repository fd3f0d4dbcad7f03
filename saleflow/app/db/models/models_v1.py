from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from saleflow.app.db.base import Base, utcnow
from saleflow.app.db.models.core_types import SagaKind, SagaState


# ---------- PRODUCTS / STOCK LEDGER ----------
class Product(Base):
    __tablename__ = "products"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))  # prix catalogue
    barcode: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class Purchase(Base):
    __tablename__ = "purchases"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    supplier_id: Mapped[int | None] = mapped_column(Integer)
    status: Mapped[str | None] = mapped_column(String(16))
    date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=utcnow)

    items: Mapped[list["PurchaseItem"]] = relationship(back_populates="purchase", cascade="all, delete-orphan")


class PurchaseItem(Base):
    __tablename__ = "purchase_items"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    purchase_id: Mapped[int] = mapped_column(ForeignKey("purchases.id", ondelete="CASCADE"), nullable=False)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), nullable=False, index=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    price_per_unit: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    purchase: Mapped[Purchase] = relationship(back_populates="items")

    __table_args__ = (CheckConstraint("price_per_unit >= 0", name="ck_purchase_item_price_nonneg"),)


class StockTransaction(Base):
    """Journal append-only des mouvements de stock (+restore, -sell)."""

    __tablename__ = "stock_transactions"
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[int | None] = mapped_column(Integer)
    amount_added: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    reference: Mapped[str | None] = mapped_column(String(64), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("amount_added <> 0", name="ck_stock_transaction_amount_nonzero"),
        Index("ix_stock_transactions_product_time", "product_id", "created_at"),
    )


# ---------- SALES ----------
class Sale(Base):
    __tablename__ = "sales"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    customer_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    sold_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    items: Mapped[list["SaleItem"]] = relationship(
        back_populates="sale",
        cascade="all, delete-orphan",
        order_by="SaleItem.id",
    )
    profit: Mapped[Optional["ProfitTracker"]] = relationship(back_populates="sale", cascade="all, delete-orphan")


class SaleItem(Base):
    __tablename__ = "sale_items"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    sale_id: Mapped[int] = mapped_column(ForeignKey("sales.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_sold: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    sale_price_per_quantity: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    total_sale_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    sale: Mapped[Sale] = relationship(back_populates="items")

    __table_args__ = (
        UniqueConstraint("sale_id", "product_id", name="uq_sale_item_sale_product"),
        CheckConstraint("quantity_sold >= 0", name="ck_sale_item_qty_nonneg"),
        CheckConstraint("sale_price_per_quantity >= 0", name="ck_sale_item_price_nonneg"),
        CheckConstraint("total_sale_price >= 0", name="ck_sale_item_total_nonneg"),
    )


class ProfitTracker(Base):
    __tablename__ = "profit_trackers"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    sale_id: Mapped[int] = mapped_column(ForeignKey("sales.id", ondelete="CASCADE"), unique=True, nullable=False)
    gross_profit: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    net_profit: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    sale: Mapped[Sale] = relationship(back_populates="profit")


class ProductReturn(Base):
    __tablename__ = "product_returns"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    saleitem_id: Mapped[int] = mapped_column(ForeignKey("sale_items.id", ondelete="CASCADE"), nullable=False, index=True)
    quantity_returned: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    returned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (CheckConstraint("quantity_returned > 0", name="ck_product_return_qty_pos"),)


# ---------- SAGA LOG ----------
class SagaRecord(Base):
    __tablename__ = "saga_records"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    kind: Mapped[SagaKind] = mapped_column(Enum(SagaKind, name="saga_kind"), nullable=False)
    state: Mapped[SagaState] = mapped_column(Enum(SagaState, name="saga_state"), nullable=False, index=True)
    sale_id: Mapped[int | None] = mapped_column(Integer)
    saleitem_id: Mapped[int | None] = mapped_column(Integer)
    # [{"product_id": .., "quantity": ".."}] à restaurer si la saga ne va pas au bout
    compensation: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    reference: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )
