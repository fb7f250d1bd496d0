"""
Procurement services -- orchestration over the procurement kernel.

Owns sessions, per-order locks, and transaction boundaries.  The exposed
API is ``PurchaseOrderService``; the payment gateway adapters and the two
managers it coordinates live beside it.
"""

from procurement_services.goods_receipt_processor import GoodsReceiptProcessor
from procurement_services.payment_gateway import (
    GatewayEvent,
    GatewayIntent,
    InMemoryPaymentGateway,
    PaymentGateway,
    normalize_gateway_status,
)
from procurement_services.payment_intent_manager import PaymentIntentManager
from procurement_services.purchase_order_service import PurchaseOrderService

__all__ = [
    "GatewayEvent",
    "GatewayIntent",
    "GoodsReceiptProcessor",
    "InMemoryPaymentGateway",
    "PaymentGateway",
    "PaymentIntentManager",
    "PurchaseOrderService",
    "normalize_gateway_status",
]
