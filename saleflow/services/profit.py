"""
Profit par vente.

La ligne ProfitTracker est toujours réécrite en entier à partir des lignes
de vente courantes, jamais incrémentée : pas de dérive d'arrondi quand on
ajoute des lignes ou qu'on traite des retours.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from saleflow.app.core.errors import MissingCostError
from saleflow.app.db.models.core_types import CostFallback
from saleflow.app.db.models.models_v1 import ProfitTracker, SaleItem
from saleflow.services.gateways import PriceResolver
from saleflow.services.normalizer import ZERO, round_money

logger = logging.getLogger(__name__)


def resolve_effective_cost(
    cost: Decimal | None,
    *,
    product_id: int,
    unit_price: Decimal,
    fallback: CostFallback,
) -> Decimal:
    if cost is not None:
        return cost
    if fallback is CostFallback.error:
        raise MissingCostError(product_id)
    if fallback is CostFallback.unit_price:
        logger.warning("missing cost for product %s, falling back to unit price", product_id)
        return unit_price
    logger.warning("missing cost for product %s, falling back to zero", product_id)
    return ZERO


def line_gross_profit(unit_price: Decimal, effective_cost: Decimal, quantity: Decimal) -> Decimal:
    return (Decimal(unit_price) - Decimal(effective_cost)) * Decimal(quantity)


def replace_profit(db: Session, sale_id: int, gross: Decimal) -> ProfitTracker:
    gross = round_money(gross)
    tracker = db.execute(
        select(ProfitTracker).where(ProfitTracker.sale_id == sale_id).with_for_update()
    ).scalar_one_or_none()
    if tracker is None:
        tracker = ProfitTracker(sale_id=sale_id)
        db.add(tracker)
    tracker.gross_profit = gross
    # pas de charges ventilées par vente : net == brut
    tracker.net_profit = gross
    db.flush()
    return tracker


class ProfitRecalculator:
    def __init__(self, prices: PriceResolver, cost_fallback: CostFallback):
        self.prices = prices
        self.cost_fallback = cost_fallback

    def recompute(self, db: Session, sale_id: int) -> ProfitTracker:
        """Relit toutes les lignes de la vente et remplace le ProfitTracker."""
        items = db.execute(select(SaleItem).where(SaleItem.sale_id == sale_id)).scalars().all()

        gross = ZERO
        costs: dict[int, Decimal] = {}
        for it in items:
            if it.product_id not in costs:
                costs[it.product_id] = resolve_effective_cost(
                    self.prices.get_latest_cost(it.product_id),
                    product_id=it.product_id,
                    unit_price=Decimal(it.sale_price_per_quantity),
                    fallback=self.cost_fallback,
                )
            gross += line_gross_profit(it.sale_price_per_quantity, costs[it.product_id], it.quantity_sold)

        tracker = replace_profit(db, sale_id, gross)
        logger.debug("profit recomputed sale_id=%s gross=%s", sale_id, tracker.gross_profit)
        return tracker
