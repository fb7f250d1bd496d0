"""ORM models.  Importing this package registers every table on Base.metadata."""

from procurement_kernel.models.payment import PaymentModel
from procurement_kernel.models.purchase_order import PurchaseItemModel, PurchaseOrderModel
from procurement_kernel.models.stock import (
    GoodsReceiptModel,
    ProductStockModel,
    StockLedgerEntryModel,
)

__all__ = [
    "PurchaseOrderModel",
    "PurchaseItemModel",
    "PaymentModel",
    "StockLedgerEntryModel",
    "ProductStockModel",
    "GoodsReceiptModel",
]
