from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import func, literal_column, select
from sqlalchemy.orm import Session

from saleflow.app.core.errors import NotFoundError
from saleflow.app.db.base import utcnow
from saleflow.app.db.models.models_v1 import ProfitTracker, Sale, SaleItem

ZERO = Decimal("0")


def _dec(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def item_payload(it: SaleItem) -> dict[str, Any]:
    return {
        "id": it.id,
        "sale_id": it.sale_id,
        "product_id": it.product_id,
        "quantity_sold": it.quantity_sold,
        "sale_price_per_quantity": it.sale_price_per_quantity,
        "total_sale_price": it.total_sale_price,
    }


def sale_total(db: Session, sale_id: int) -> Decimal:
    total = db.execute(
        select(func.coalesce(func.sum(SaleItem.total_sale_price), 0)).where(SaleItem.sale_id == sale_id)
    ).scalar_one()
    return _dec(total)


def sale_payload(db: Session, sale_id: int, *, alerts: list[dict] | None = None) -> dict[str, Any]:
    sale = db.get(Sale, sale_id)
    if sale is None:
        raise NotFoundError("Sale not found")

    items = (
        db.execute(select(SaleItem).where(SaleItem.sale_id == sale_id).order_by(SaleItem.id))
        .scalars()
        .all()
    )
    tracker = db.execute(select(ProfitTracker).where(ProfitTracker.sale_id == sale_id)).scalar_one_or_none()

    payload: dict[str, Any] = {
        "id": sale.id,
        "customer_id": sale.customer_id,
        "sold_at": sale.sold_at,
        "total_amount": sum((_dec(it.total_sale_price) for it in items), ZERO),
        "items": [item_payload(it) for it in items],
        "profit": (
            {"gross_profit": tracker.gross_profit, "net_profit": tracker.net_profit}
            if tracker is not None
            else None
        ),
    }
    if alerts is not None:
        payload["alerts"] = alerts
    return payload


def list_sales(db: Session) -> list[dict[str, Any]]:
    total = func.coalesce(func.sum(SaleItem.total_sale_price), 0).label("total_amount")
    rows = db.execute(
        select(Sale.id, Sale.customer_id, Sale.sold_at, total)
        .join(SaleItem, SaleItem.sale_id == Sale.id, isouter=True)
        .group_by(Sale.id, Sale.customer_id, Sale.sold_at)
        .order_by(Sale.sold_at, Sale.id)
    ).all()
    return [
        {"id": r.id, "customer_id": r.customer_id, "sold_at": r.sold_at, "total_amount": _dec(r.total_amount)}
        for r in rows
    ]


def get_sale_item(db: Session, saleitem_id: int) -> SaleItem:
    item = db.get(SaleItem, saleitem_id)
    if item is None:
        raise NotFoundError("Sale item not found")
    return item


def delete_sale(db: Session, sale_id: int) -> None:
    """Supprime l'en-tête, ses lignes et son profit. Le stock n'est PAS restitué."""
    sale = db.get(Sale, sale_id)
    if sale is None:
        raise NotFoundError("Sale not found")
    db.delete(sale)
    db.flush()


def default_window(date_from: datetime | None, date_to: datetime | None) -> tuple[datetime, datetime]:
    date_to = date_to or utcnow()
    date_from = date_from or (date_to - timedelta(days=30))
    return date_from, date_to


def profit_summary(db: Session, date_from: datetime | None = None, date_to: datetime | None = None) -> dict:
    date_from, date_to = default_window(date_from, date_to)
    in_window = (Sale.sold_at >= date_from, Sale.sold_at <= date_to)

    revenue, orders = db.execute(
        select(
            func.coalesce(func.sum(SaleItem.total_sale_price), 0),
            func.count(func.distinct(Sale.id)),
        )
        .select_from(Sale)
        .join(SaleItem, SaleItem.sale_id == Sale.id, isouter=True)
        .where(*in_window)
    ).one()

    gross, net = db.execute(
        select(
            func.coalesce(func.sum(ProfitTracker.gross_profit), 0),
            func.coalesce(func.sum(ProfitTracker.net_profit), 0),
        )
        .join(Sale, Sale.id == ProfitTracker.sale_id)
        .where(*in_window)
    ).one()

    revenue, gross, net = _dec(revenue), _dec(gross), _dec(net)
    margin = (net / revenue * 100).quantize(Decimal("0.01")) if revenue > 0 else ZERO
    return {
        "revenue": revenue,
        "gross_profit": gross,
        "net_profit": net,
        "profit_margin": margin,
        "orders": int(orders),
        "from": date_from,
        "to": date_to,
    }


def profit_transactions(db: Session, *, limit: int = 20, offset: int = 0) -> list[dict]:
    limit = max(1, min(100, limit))
    offset = max(0, offset)

    totals = (
        select(SaleItem.sale_id, func.sum(SaleItem.total_sale_price).label("total_amount"))
        .group_by(SaleItem.sale_id)
        .subquery()
    )
    rows = db.execute(
        select(
            Sale.id,
            Sale.sold_at,
            func.coalesce(totals.c.total_amount, 0).label("total_amount"),
            func.coalesce(ProfitTracker.gross_profit, 0).label("gross_profit"),
            func.coalesce(ProfitTracker.net_profit, 0).label("net_profit"),
        )
        .join(totals, totals.c.sale_id == Sale.id, isouter=True)
        .join(ProfitTracker, ProfitTracker.sale_id == Sale.id, isouter=True)
        .order_by(Sale.sold_at.desc(), Sale.id.desc())
        .limit(limit)
        .offset(offset)
    ).all()
    return [
        {
            "id": r.id,
            "sold_at": r.sold_at,
            "total_amount": _dec(r.total_amount),
            "gross_profit": _dec(r.gross_profit),
            "net_profit": _dec(r.net_profit),
        }
        for r in rows
    ]


TIMELINE_BUCKETS = {"daily": "day", "weekly": "week", "monthly": "month"}


def _bucket_label(db: Session, bucket: str):
    """Début du jour / de la semaine (lundi) / du mois, formaté YYYY-MM-DD."""
    # littéraux, pas de bind params : SELECT et GROUP BY doivent être la même expression
    if db.get_bind().dialect.name == "postgresql":
        truncated = func.date_trunc(literal_column(f"'{bucket}'"), Sale.sold_at)
        return func.to_char(truncated, literal_column("'YYYY-MM-DD'"))
    # SQLite : pas de date_trunc
    if bucket == "month":
        return func.strftime(literal_column("'%Y-%m-01'"), Sale.sold_at)
    if bucket == "week":
        return func.date(Sale.sold_at, literal_column("'weekday 0'"), literal_column("'-6 days'"))
    return func.date(Sale.sold_at)


def profit_timeline(
    db: Session,
    view: str = "daily",
    date_from: datetime | None = None,
    date_to: datetime | None = None,
) -> list[dict]:
    """
    Points {label, revenue, gross_profit, net_profit, orders} par jour,
    semaine ou mois. Vue inconnue => daily.
    """
    bucket = TIMELINE_BUCKETS.get((view or "daily").lower(), "day")
    date_from, date_to = default_window(date_from, date_to)

    # totaux par vente d'abord : le profit n'est pas multiplié par le nombre de lignes
    totals = (
        select(SaleItem.sale_id, func.sum(SaleItem.total_sale_price).label("total_amount"))
        .group_by(SaleItem.sale_id)
        .subquery()
    )
    label = _bucket_label(db, bucket).label("label")
    rows = db.execute(
        select(
            label,
            func.coalesce(func.sum(totals.c.total_amount), 0).label("revenue"),
            func.coalesce(func.sum(ProfitTracker.gross_profit), 0).label("gross_profit"),
            func.coalesce(func.sum(ProfitTracker.net_profit), 0).label("net_profit"),
            func.count(Sale.id).label("orders"),
        )
        .select_from(Sale)
        .join(totals, totals.c.sale_id == Sale.id, isouter=True)
        .join(ProfitTracker, ProfitTracker.sale_id == Sale.id, isouter=True)
        .where(Sale.sold_at >= date_from, Sale.sold_at <= date_to)
        .group_by(label)
        .order_by(label)
    ).all()
    return [
        {
            "label": r.label,
            "revenue": _dec(r.revenue),
            "gross_profit": _dec(r.gross_profit),
            "net_profit": _dec(r.net_profit),
            "orders": int(r.orders),
        }
        for r in rows
    ]
