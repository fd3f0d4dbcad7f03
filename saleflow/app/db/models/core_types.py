import enum


class SagaKind(str, enum.Enum):
    create_sale = "CREATE_SALE"
    add_items = "ADD_ITEMS"
    process_return = "PROCESS_RETURN"


class SagaState(str, enum.Enum):
    normalizing = "NORMALIZING"
    reserving_stock = "RESERVING_STOCK"
    restoring_stock = "RESTORING_STOCK"
    persisting = "PERSISTING"
    issuing_invoice = "ISSUING_INVOICE"
    compensating = "COMPENSATING"
    done = "DONE"
    aborted = "ABORTED"
    inconsistent = "INCONSISTENT"


# sagas qui ont peut-être laissé du stock réservé sans vente
PENDING_SALE_STATES = {
    SagaState.reserving_stock,
    SagaState.persisting,
    SagaState.compensating,
}


class InvoiceStatus(str, enum.Enum):
    full = "full"
    credited = "credited"
    unpaid = "unpaid"


class PricingFlag(str, enum.Enum):
    over_list = "over_list"
    under_list = "under_list"


class CostFallback(str, enum.Enum):
    error = "error"
    zero = "zero"
    unit_price = "unit_price"
