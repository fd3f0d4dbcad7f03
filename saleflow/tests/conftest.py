import os

# avant tout import saleflow : l'engine de session.py ne doit pas viser Postgres
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

from decimal import Decimal  # noqa: E402
from typing import Sequence  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from saleflow.app.db.base import Base  # noqa: E402
from saleflow.app.db.models import models_v1  # noqa: F401,E402
from saleflow.app.db.models.core_types import CostFallback  # noqa: E402
from saleflow.app.db.models.models_v1 import Product, Purchase, PurchaseItem  # noqa: E402
from saleflow.services.gateways import LocalPriceResolver, LocalStockLedger  # noqa: E402
from saleflow.services.invoicing import InvoiceDispatcher  # noqa: E402
from saleflow.services.sales import SaleOrchestrator  # noqa: E402
from saleflow.services.stock_ledger import StockLine  # noqa: E402


@pytest.fixture(scope="function")
def session_factory(tmp_path):
    """
    Base SQLite fichier, neuve pour chaque test.

    Un fichier (pas :memory:) : chaque Session a sa propre connexion, comme
    avec le pool Postgres. Les gateways locales ouvrent leurs propres
    sessions pendant qu'une transaction de vente est ouverte.
    """
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'saleflow.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    try:
        yield factory
    finally:
        engine.dispose()


@pytest.fixture
def make_product(session_factory):
    def _make(
        name: str = "WIDGET",
        quantity: str = "10",
        price: str | None = "10.00",
        cost: str | None = "6.00",
    ) -> int:
        with session_factory() as db, db.begin():
            product = Product(
                name=name,
                quantity=Decimal(quantity),
                price=Decimal(price) if price is not None else None,
            )
            db.add(product)
            db.flush()
            if cost is not None:
                purchase = Purchase(status="received")
                purchase.items.append(
                    PurchaseItem(product_id=product.id, quantity=100, price_per_unit=Decimal(cost))
                )
                db.add(purchase)
            return product.id

    return _make


@pytest.fixture
def stock_of(session_factory):
    def _stock(product_id: int) -> Decimal:
        with session_factory() as db:
            return db.get(Product, product_id).quantity

    return _stock


class FlakyStockLedger(LocalStockLedger):
    """Ledger local avec injection de pannes."""

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.fail_reserve: Exception | None = None
        self.fail_restore: Exception | None = None
        self.reserve_calls: list[str | None] = []
        self.restore_calls: list[tuple[str | None, str | None]] = []

    def reserve(self, items: Sequence[StockLine], *, reference=None) -> None:
        self.reserve_calls.append(reference)
        if self.fail_reserve is not None:
            raise self.fail_reserve
        super().reserve(items, reference=reference)

    def restore(self, items: Sequence[StockLine], *, reference=None, compensates=None) -> bool:
        self.restore_calls.append((reference, compensates))
        if self.fail_restore is not None:
            raise self.fail_restore
        return super().restore(items, reference=reference, compensates=compensates)


class FakeInvoiceIssuer:
    def __init__(self):
        self.invoices: list[dict] = []
        self.payments: list[tuple[int, Decimal]] = []
        self.fail_create: Exception | None = None
        self.fail_payment: Exception | None = None

    def create_invoice(self, *, customer_id, total_amount, status, sale_id):
        if self.fail_create is not None:
            raise self.fail_create
        self.invoices.append(
            {"customer_id": customer_id, "total_amount": total_amount, "status": status, "sale_id": sale_id}
        )
        return len(self.invoices)

    def add_payment(self, invoice_id, amount):
        if self.fail_payment is not None:
            raise self.fail_payment
        self.payments.append((invoice_id, amount))


class QueuedSubmit:
    """submit() qui garde les tâches : on les lance quand le test le décide."""

    def __init__(self):
        self.tasks: list[tuple] = []

    def __call__(self, fn, *args):
        self.tasks.append((fn, args))

    def run_all(self):
        tasks, self.tasks = self.tasks, []
        for fn, args in tasks:
            fn(*args)


@pytest.fixture
def stock(session_factory):
    return FlakyStockLedger(session_factory)


@pytest.fixture
def prices(session_factory):
    return LocalPriceResolver(session_factory)


@pytest.fixture
def issuer():
    return FakeInvoiceIssuer()


@pytest.fixture
def submit():
    return QueuedSubmit()


@pytest.fixture
def orchestrator(session_factory, stock, prices, issuer, submit):
    return SaleOrchestrator(
        session_factory,
        stock=stock,
        prices=prices,
        invoices=InvoiceDispatcher(issuer, submit=submit),
        cost_fallback=CostFallback.error,
    )
