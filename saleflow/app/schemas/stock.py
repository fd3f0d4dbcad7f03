from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from saleflow.services.stock_ledger import StockLine


class BatchItem(BaseModel):
    product_id: int = Field(gt=0)
    quantity: Decimal = Field(gt=0, decimal_places=2)

    def to_line(self) -> StockLine:
        return StockLine(product_id=self.product_id, quantity=self.quantity)


class BatchRequest(BaseModel):
    items: list[BatchItem] = Field(min_length=1)
    reference: str | None = Field(default=None, max_length=64)
    # référence du reserve à annuler (rejeu de compensation)
    compensates: str | None = Field(default=None, max_length=64)

    def lines(self) -> list[StockLine]:
        return [it.to_line() for it in self.items]


class StockTransactionRead(BaseModel):
    id: int
    product_id: int
    user_id: int | None
    amount_added: float
    reference: str | None
    created_at: datetime

    class Config:
        from_attributes = True
