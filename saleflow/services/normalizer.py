from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Mapping

from saleflow.app.core.errors import ValidationError
from saleflow.app.db.models.core_types import PricingFlag
from saleflow.services.gateways import PriceResolver
from saleflow.services.stock_ledger import StockLine

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0")

# champ canonique -> alias acceptés côté client
QUANTITY_FIELDS = ("quantity_sold", "quantity")
UNIT_PRICE_FIELDS = ("sale_price_per_quantity", "unit_price")
TOTAL_FIELDS = ("total_sale_price", "total_price")


def round_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class NormalizedItem:
    product_id: int
    quantity_sold: Decimal
    sale_price_per_quantity: Decimal
    total_sale_price: Decimal
    has_discount: bool
    discount_amount: Decimal
    list_price: Decimal

    def stock_line(self) -> StockLine:
        return StockLine(product_id=self.product_id, quantity=self.quantity_sold)


def _first(raw: Mapping[str, Any], fields: tuple[str, ...]) -> Any:
    for f in fields:
        value = raw.get(f)
        if value is not None and value != "":
            return value
    return None


def _to_decimal(value: Any, index: int, field: str) -> Decimal | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"items[{index}].{field} must be a number")
    try:
        number = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"items[{index}].{field} must be a number") from None
    if not number.is_finite():
        raise ValidationError(f"items[{index}].{field} must be a number")
    return number


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


def normalize_item(raw: Mapping[str, Any], index: int, prices: PriceResolver) -> NormalizedItem:
    """
    Ordre de résolution du prix unitaire :
        1. prix unitaire explicite s'il est > 0 (0 = non fourni)
        2. list_price - discount_amount si remise > 0
        3. list_price (fourni si > 0, sinon lu chez le resolver)
    """
    product_id = _to_decimal(raw.get("product_id"), index, "product_id") or ZERO
    if product_id <= 0 or product_id != product_id.to_integral_value():
        raise ValidationError(f"items[{index}].product_id is required and must be > 0")

    quantity_sold = _to_decimal(_first(raw, QUANTITY_FIELDS), index, "quantity_sold") or ZERO
    if quantity_sold <= 0:
        raise ValidationError(f"items[{index}].quantity_sold/quantity must be > 0")
    if quantity_sold != quantity_sold.quantize(CENT):
        raise ValidationError(f"items[{index}].quantity_sold/quantity allows at most 2 decimals")

    explicit_unit = _to_decimal(_first(raw, UNIT_PRICE_FIELDS), index, "sale_price_per_quantity")
    provided_total = _to_decimal(_first(raw, TOTAL_FIELDS), index, "total_sale_price")
    discount_amount = _to_decimal(raw.get("discount_amount"), index, "discount_amount") or ZERO

    list_price = _to_decimal(raw.get("list_price"), index, "list_price") or ZERO
    if list_price <= 0:
        list_price = prices.get_list_price(int(product_id)) or ZERO

    if explicit_unit is not None and explicit_unit < 0:
        raise ValidationError(f"items[{index}].sale_price_per_quantity/unit_price must be >= 0")

    if explicit_unit is not None and explicit_unit > 0:
        unit_price = explicit_unit
    elif discount_amount > 0:
        unit_price = max(ZERO, list_price - discount_amount)
    else:
        unit_price = list_price

    if provided_total is not None and provided_total < 0:
        raise ValidationError(f"items[{index}].total_sale_price/total_price must be >= 0")

    unit_price = round_money(unit_price)
    total = round_money(quantity_sold * unit_price)
    if provided_total is not None and round_money(provided_total) != total:
        logger.warning(
            "items[%s] total %s ignored, recomputed %s x %s = %s",
            index,
            provided_total,
            quantity_sold,
            unit_price,
            total,
        )

    return NormalizedItem(
        product_id=int(product_id),
        quantity_sold=quantity_sold,
        sale_price_per_quantity=unit_price,
        total_sale_price=total,
        has_discount=_to_bool(raw.get("has_discount")) or discount_amount > 0,
        discount_amount=discount_amount,
        list_price=list_price,
    )


def normalize_items(raw_items: Iterable[Mapping[str, Any]], prices: PriceResolver) -> list[NormalizedItem]:
    normalized: list[NormalizedItem] = []
    seen: set[int] = set()
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, Mapping):
            raise ValidationError(f"items[{index}] must be an object")
        item = normalize_item(raw, index, prices)
        if item.product_id in seen:
            raise ValidationError(f"items[{index}].product_id {item.product_id} appears more than once")
        seen.add(item.product_id)
        normalized.append(item)
    return normalized


def pricing_alert(item: NormalizedItem) -> dict[str, Any] | None:
    """Prix sans remise différent du prix catalogue : signalé, jamais bloquant."""
    if item.has_discount or item.list_price <= 0:
        return None
    if item.sale_price_per_quantity > item.list_price:
        flag = PricingFlag.over_list
    elif item.sale_price_per_quantity < item.list_price:
        flag = PricingFlag.under_list
    else:
        return None
    return {
        "product_id": item.product_id,
        "flag": flag.value,
        "unit_price": float(item.sale_price_per_quantity),
        "list_price": float(item.list_price),
    }
