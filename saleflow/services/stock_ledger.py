"""
Stock ledger.

Seul endroit qui écrit Product.quantity et StockTransaction.
Les deux points d'entrée (reserve_batch / restore_batch) travaillent dans la
transaction de la Session reçue : l'appelant commit ou rollback, rien n'est
appliqué partiellement.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from saleflow.app.core.errors import ConflictError, NotFoundError, ValidationError
from saleflow.app.db.base import utcnow
from saleflow.app.db.models.models_v1 import Product, StockTransaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StockLine:
    product_id: int
    quantity: Decimal

    def to_payload(self) -> dict:
        return {"product_id": self.product_id, "quantity": as_number(self.quantity)}

    @classmethod
    def from_payload(cls, raw: dict) -> "StockLine":
        return cls(product_id=int(raw["product_id"]), quantity=Decimal(str(raw["quantity"])))


def as_number(value: Decimal) -> int | float:
    """Decimal -> nombre JSON (int si entier)."""
    if value == value.to_integral_value():
        return int(value)
    return float(value)


def aggregate_quantities(items: Iterable[StockLine]) -> dict[int, Decimal]:
    """Somme par produit, ordre de première apparition conservé."""
    totals: dict[int, Decimal] = {}
    for it in items:
        if it.product_id <= 0:
            raise ValidationError(f"product_id must be > 0 (got {it.product_id})")
        if it.quantity <= 0:
            raise ValidationError(f"quantity must be > 0 for product {it.product_id}")
        totals[it.product_id] = totals.get(it.product_id, Decimal("0")) + Decimal(it.quantity)
    if not totals:
        raise ValidationError("At least one item is required")
    return totals


def _availability_conflicts(
    wanted: dict[int, Decimal],
    available: dict[int, Decimal],
) -> tuple[list[int], list[dict]]:
    missing: list[int] = []
    insufficient: list[dict] = []
    for pid, qty in wanted.items():
        have = available.get(pid)
        if have is None:
            missing.append(pid)
        elif have < qty:
            insufficient.append(
                {"product_id": pid, "requested": as_number(qty), "available": as_number(have)}
            )
    return missing, insufficient


def _current_quantities(db: Session, product_ids: Iterable[int], *, lock: bool = False) -> dict[int, Decimal]:
    stmt = select(Product.id, Product.quantity).where(Product.id.in_(list(product_ids)))
    if lock:
        stmt = stmt.with_for_update()
    return {int(pid): Decimal(qty or 0) for pid, qty in db.execute(stmt).all()}


def _stock_conflict(missing: list[int], insufficient: list[dict]) -> ConflictError:
    return ConflictError(
        "Insufficient stock",
        details={"missing": missing, "insufficient": insufficient},
    )


def reserve_batch(
    db: Session,
    items: Iterable[StockLine],
    *,
    reference: str | None = None,
) -> None:
    """
    Décrémente le stock de tous les produits du lot, ou d'aucun.

    - un produit absent ou insuffisant => ConflictError{missing, insufficient}
    - UPDATE ... WHERE quantity >= :qty : deux reserve concurrents sur le même
      produit se sérialisent sur la ligne, le second voit rowcount == 0
    - une StockTransaction négative par produit
    """
    wanted = aggregate_quantities(items)

    available = _current_quantities(db, wanted, lock=True)
    missing, insufficient = _availability_conflicts(wanted, available)
    if missing or insufficient:
        logger.warning(
            "reserve rejected reference=%s missing=%s insufficient=%s",
            reference,
            missing,
            insufficient,
        )
        raise _stock_conflict(missing, insufficient)

    now = utcnow()
    for pid, qty in wanted.items():
        result = db.execute(
            update(Product)
            .where(Product.id == pid, Product.quantity >= qty)
            .values(quantity=Product.quantity - qty, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # le stock a bougé entre la lecture et l'update
            missing, insufficient = _availability_conflicts(wanted, _current_quantities(db, wanted))
            raise _stock_conflict(missing, insufficient)

        db.add(StockTransaction(product_id=pid, amount_added=-qty, reference=reference))

    db.flush()


def _has_entries(db: Session, reference: str, *, negative: bool | None = None) -> bool:
    stmt = select(StockTransaction.id).where(StockTransaction.reference == reference)
    if negative is True:
        stmt = stmt.where(StockTransaction.amount_added < 0)
    return db.execute(stmt.limit(1)).first() is not None


def restore_batch(
    db: Session,
    items: Iterable[StockLine],
    *,
    reference: str | None = None,
    compensates: str | None = None,
) -> bool:
    """
    Ré-incrémente le stock (pas de plafond) et journalise une ligne positive
    par produit. Produit inconnu => NotFoundError{missing}, rien n'est appliqué.

    `compensates` : référence d'un reserve à annuler. Si aucun reserve n'a été
    journalisé sous cette référence, ou si `reference` a déjà été appliquée,
    on ne touche à rien et on retourne False (rejeu de recovery).
    """
    wanted = aggregate_quantities(items)

    existing = _current_quantities(db, wanted, lock=True)
    missing = [pid for pid in wanted if pid not in existing]
    if missing:
        raise NotFoundError("Some products were not found", details={"missing": missing})

    if compensates is not None:
        if not _has_entries(db, compensates, negative=True):
            logger.info("restore skipped: no reservation under %s", compensates)
            return False
        if reference is not None and _has_entries(db, reference):
            logger.info("restore skipped: %s already applied", reference)
            return False

    now = utcnow()
    for pid, qty in wanted.items():
        db.execute(
            update(Product)
            .where(Product.id == pid)
            .values(quantity=Product.quantity + qty, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        db.add(StockTransaction(product_id=pid, amount_added=qty, reference=reference))

    db.flush()
    return True


def list_transactions(
    db: Session,
    *,
    product_id: int | None = None,
    reference: str | None = None,
    limit: int = 100,
) -> list[StockTransaction]:
    stmt = select(StockTransaction).order_by(StockTransaction.id.desc()).limit(limit)
    if product_id is not None:
        stmt = stmt.where(StockTransaction.product_id == product_id)
    if reference is not None:
        stmt = stmt.where(StockTransaction.reference == reference)
    return list(db.execute(stmt).scalars().all())
