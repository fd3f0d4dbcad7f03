from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from saleflow.app.api.v1.router import router as v1_router
from saleflow.app.core.config import settings
from saleflow.app.core.errors import SaleflowError
from saleflow.app.core.logging import configure_logging
from saleflow.app.db.session import SessionLocal
from saleflow.services.gateways import build_gateways
from saleflow.services.invoicing import shutdown_executor
from saleflow.services.recovery import recover_pending_sagas

logger = logging.getLogger("saleflow.app")


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    if settings.saga_recovery_on_startup:
        try:
            gateways = build_gateways(settings, SessionLocal)
            report = recover_pending_sagas(SessionLocal, gateways.stock)
            logger.info("startup recovery: %s", report.as_dict())
        except Exception:
            # la base ou le ledger peut être indisponible au boot : on démarre quand même
            logger.exception("startup saga recovery failed")
    yield
    shutdown_executor()


app = FastAPI(title="SALEFLOW", version="0.1.0", lifespan=lifespan)


@app.exception_handler(SaleflowError)
async def saleflow_error_handler(request: Request, exc: SaleflowError):
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_body()))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "Validation failed", "details": jsonable_encoder(exc.errors())},
    )


app.include_router(v1_router, prefix="/v1")
