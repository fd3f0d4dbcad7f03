from __future__ import annotations

from decimal import Decimal

from sqlalchemy import select

from saleflow.app.db.base import utcnow
from saleflow.app.db.models.models_v1 import Product, Purchase, PurchaseItem
from saleflow.app.db.session import SessionLocal


def run_seed():
    db = SessionLocal()
    try:
        # 1) Produit de démo avec stock et prix catalogue
        product = db.scalar(select(Product).where(Product.name == "DEMO-WIDGET"))
        if not product:
            product = Product(name="DEMO-WIDGET", quantity=Decimal("100"), price=Decimal("10.00"))
            db.add(product)
            db.commit()

        # 2) Un achat pour que le profit ait un coût de référence
        has_purchase = db.scalar(select(PurchaseItem.id).where(PurchaseItem.product_id == product.id))
        if not has_purchase:
            purchase = Purchase(status="received", date=utcnow())
            purchase.items.append(
                PurchaseItem(product_id=product.id, quantity=100, price_per_unit=Decimal("6.00"))
            )
            db.add(purchase)
            db.commit()

        print(f"SEED OK: product={product.name} id={product.id}")
    finally:
        db.close()


if __name__ == "__main__":
    run_seed()
