"""
                        Services Module

Business logic of the ordering core. Every operation takes the caller's
AsyncSession explicitly and runs under the configured persistence timeout.

Services:
    - pricing: line, subtotal, service fee and total computation
    - catalog: product price lookup contract
    - orders: order creation and status workflow
    - tables: QR session resolution and table administration
    - accounts: table bill aggregation and closing
    - settlement: at-most-once payment of closed accounts
    - excel_manager: file-locked revenue ledger
"""

from tableside.services.accounts import BillPreview, TableAccountAggregator
from tableside.services.catalog import BaseProductCatalog, ProductSnapshot, SqlProductCatalog
from tableside.services.orders import OrderLifecycleManager, OwnerRef, TRANSITIONS, can_transition
from tableside.services.pricing import LineRequest, PricingCalculator
from tableside.services.settlement import PaymentSettlementCoordinator
from tableside.services.tables import TableRef, TableService, TableSessionResolver

__all__ = [
    "BillPreview",
    "TableAccountAggregator",
    "BaseProductCatalog",
    "ProductSnapshot",
    "SqlProductCatalog",
    "OrderLifecycleManager",
    "OwnerRef",
    "TRANSITIONS",
    "can_transition",
    "LineRequest",
    "PricingCalculator",
    "PaymentSettlementCoordinator",
    "TableRef",
    "TableService",
    "TableSessionResolver",
]
