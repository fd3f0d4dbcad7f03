from __future__ import annotations

from typing import Generator

from fastapi import BackgroundTasks, Depends

from saleflow.app.core.config import Settings, settings
from saleflow.app.db.session import SessionLocal
from saleflow.services.gateways import Gateways, SessionFactory, build_gateways
from saleflow.services.invoicing import InvoiceDispatcher
from saleflow.services.profit import ProfitRecalculator
from saleflow.services.returns import ReturnProcessor
from saleflow.services.sales import SaleOrchestrator


def get_settings() -> Settings:
    return settings


def get_session_factory() -> SessionFactory:
    return SessionLocal


def get_db(session_factory: SessionFactory = Depends(get_session_factory)) -> Generator:
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


def get_gateways(
    session_factory: SessionFactory = Depends(get_session_factory),
    app_settings: Settings = Depends(get_settings),
) -> Gateways:
    return build_gateways(app_settings, session_factory)


def get_sale_orchestrator(
    background_tasks: BackgroundTasks,
    session_factory: SessionFactory = Depends(get_session_factory),
    gateways: Gateways = Depends(get_gateways),
    app_settings: Settings = Depends(get_settings),
) -> SaleOrchestrator:
    # la facture part après l'envoi de la réponse
    dispatcher = InvoiceDispatcher(gateways.invoices, submit=background_tasks.add_task)
    return SaleOrchestrator(
        session_factory,
        stock=gateways.stock,
        prices=gateways.prices,
        invoices=dispatcher,
        cost_fallback=app_settings.cost_fallback,
    )


def get_return_processor(
    session_factory: SessionFactory = Depends(get_session_factory),
    gateways: Gateways = Depends(get_gateways),
    app_settings: Settings = Depends(get_settings),
) -> ReturnProcessor:
    return ReturnProcessor(
        session_factory,
        stock=gateways.stock,
        recalculator=ProfitRecalculator(gateways.prices, app_settings.cost_fallback),
    )
