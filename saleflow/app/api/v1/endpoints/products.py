from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.orm import Session

from saleflow.app.api.deps import get_db
from saleflow.app.core.errors import NotFoundError
from saleflow.app.db.models.models_v1 import Product
from saleflow.services import pricing

router = APIRouter(prefix="/products")


def _product_payload(p: Product) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "price": p.price,
        "quantity": p.quantity,
        "barcode": p.barcode,
    }


@router.get("")
def list_products(db: Session = Depends(get_db)):
    rows = db.execute(select(Product).order_by(Product.name, Product.id)).scalars().all()
    return [_product_payload(p) for p in rows]


@router.get("/purchases/latest/{product_id}")
def latest_purchase_cost(product_id: int, db: Session = Depends(get_db)):
    """Coût d'achat le plus récent, lu par le resolver distant."""
    cost = pricing.get_latest_purchase_cost(db, product_id)
    if cost is None:
        raise NotFoundError(f"No purchase record found for product {product_id}")
    return {"product_id": product_id, "price_per_quantity": cost}


@router.get("/{product_id}")
def get_product(product_id: int, db: Session = Depends(get_db)):
    product = db.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product not found")
    return _product_payload(product)
