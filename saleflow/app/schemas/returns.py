from decimal import Decimal

from pydantic import BaseModel, Field


class ReturnProcess(BaseModel):
    saleitem_id: int
    quantity_returned: Decimal


class ReturnCreate(ReturnProcess):
    reason: str | None = Field(default=None, max_length=2000)
