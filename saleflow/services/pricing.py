"""Lectures prix catalogue / dernier coût d'achat (aucune écriture)."""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from saleflow.app.db.models.models_v1 import Product, Purchase, PurchaseItem


def get_list_price(db: Session, product_id: int) -> Decimal | None:
    product = db.get(Product, product_id)
    if product is None or product.price is None:
        return None
    return Decimal(product.price)


def get_latest_purchase_cost(db: Session, product_id: int) -> Decimal | None:
    """
    Prix unitaire de la ligne d'achat la plus récente.

    Tri : date d'achat DESC (NULL en dernier), puis id de ligne DESC.
    None = aucun achat enregistré, état normal pour un produit neuf.
    """
    row = db.execute(
        select(PurchaseItem.price_per_unit)
        .join(Purchase, Purchase.id == PurchaseItem.purchase_id, isouter=True)
        .where(PurchaseItem.product_id == product_id)
        .order_by(Purchase.date.desc().nulls_last(), PurchaseItem.id.desc())
        .limit(1)
    ).first()
    if row is None:
        return None
    return Decimal(row[0])
