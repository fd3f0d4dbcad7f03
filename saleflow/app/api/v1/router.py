from fastapi import APIRouter

from saleflow.app.api.v1.endpoints.products import router as products_router
from saleflow.app.api.v1.endpoints.returns import router as returns_router
from saleflow.app.api.v1.endpoints.sagas import router as sagas_router
from saleflow.app.api.v1.endpoints.sales import router as sales_router
from saleflow.app.api.v1.endpoints.stock import router as stock_router

router = APIRouter()
router.include_router(stock_router, tags=["stock"])
router.include_router(products_router, tags=["products"])
router.include_router(sales_router, tags=["sales"])
router.include_router(returns_router, tags=["returns"])
router.include_router(sagas_router, tags=["sagas"])
