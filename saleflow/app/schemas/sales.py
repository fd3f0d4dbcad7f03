from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import AliasChoices, BaseModel, Field

# les lignes restent des dicts bruts : alias et coercitions sont gérés
# par le normalizer, qui produit des messages indexés (items[i].field)
# une ligne seule est acceptée à la place de la liste
RawItems = list[dict[str, Any]] | dict[str, Any]


class SaleCreate(BaseModel):
    customer_id: int | None = None
    paid_amount: Decimal | None = None
    sold_at: datetime | None = None
    items: RawItems | None = Field(
        default=None,
        validation_alias=AliasChoices("items", "sale_items", "saleItems"),
    )


class SaleItemsAdd(BaseModel):
    items: RawItems | None = Field(
        default=None,
        validation_alias=AliasChoices("items", "sale_items", "saleItems"),
    )
