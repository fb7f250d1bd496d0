#!/usr/bin/env python3
"""
Purchase order command line -- drive the engine's exposed operations.

Usage:
    python3 scripts/po_cli.py create --supplier SUP-1 --item SKU-1:10:5.00 --created-by me
    python3 scripts/po_cli.py approve <order-id>
    python3 scripts/po_cli.py pay <order-id>
    python3 scripts/po_cli.py reconcile <payment-id> succeeded
    python3 scripts/po_cli.py receive <order-id> <item-id> 10 [--causation-id ID]
    python3 scripts/po_cli.py close <order-id>
    python3 scripts/po_cli.py cancel <order-id>
    python3 scripts/po_cli.py show <order-id> [--json]
    python3 scripts/po_cli.py list [--status APPROVED] [--supplier SUP-1]
    python3 scripts/po_cli.py stats
    python3 scripts/po_cli.py stock <product-id>

Without a Stripe key in the configuration the in-memory gateway is used,
so intents created here exist only for the life of the process.
"""

import argparse
import json
import logging
import sys
from dataclasses import asdict, is_dataclass
from decimal import Decimal
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

W = 72


def _fmt(v) -> str:
    d = Decimal(str(v))
    return f"${d:,.2f}"


def _parse_item(text: str) -> tuple[str, str, str]:
    parts = text.rsplit(":", 2)
    if len(parts) != 3:
        raise argparse.ArgumentTypeError(
            f"item must be PRODUCT:QUANTITY:UNIT_PRICE, got {text!r}"
        )
    return parts[0], parts[1], parts[2]


def _emit_json(value) -> None:
    if isinstance(value, list):
        payload = [asdict(v) for v in value]
    elif is_dataclass(value):
        payload = asdict(value)
    else:
        payload = value
    print(json.dumps(payload, indent=2, default=str))


def _print_order(order) -> None:
    print("=" * W)
    print(f"  Purchase order {order.id}")
    print("=" * W)
    print(f"  supplier     {order.supplier_id}")
    print(f"  status       {order.status.value}   (version {order.version})")
    print(f"  total        {_fmt(order.total_amount)} {order.currency}")
    print(f"  created by   {order.created_by}")
    for label in ("approved_at", "paid_at", "received_at", "closed_at", "cancelled_at"):
        stamp = getattr(order, label)
        if stamp is not None:
            print(f"  {label:<12} {stamp}")
    print("-" * W)
    print(f"  {'#':>2}  {'product':<20} {'qty':>6} {'recv':>6} {'unit':>12} {'total':>12}")
    for item in order.items:
        print(
            f"  {item.line_number:>2}  {item.product_id:<20} {item.quantity:>6} "
            f"{item.received_qty:>6} {_fmt(item.unit_price):>12} {_fmt(item.total_price):>12}"
        )
        print(f"      item id: {item.id}")
    print()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Purchase order lifecycle and payment reconciliation.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "examples:\n"
            "  python3 scripts/po_cli.py create --supplier SUP-1 "
            "--item SKU-1:10:5 --item SKU-2:5:20 --created-by buyer\n"
            "  python3 scripts/po_cli.py receive <order-id> <item-id> 10\n"
        ),
    )
    parser.add_argument("--config", type=Path, default=None, help="YAML configuration file")
    parser.add_argument("--db-url", type=str, default=None, help="Override database URL")
    parser.add_argument("--json", action="store_true", help="Print results as JSON")
    parser.add_argument("--verbose", action="store_true", help="Emit structured engine logs")

    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Create a DRAFT purchase order")
    create.add_argument("--supplier", required=True)
    create.add_argument("--item", action="append", type=_parse_item, default=[],
                        help="PRODUCT:QUANTITY:UNIT_PRICE (repeatable)")
    create.add_argument("--created-by", required=True)
    create.add_argument("--notes", default=None)

    for name, text in (
        ("approve", "Approve a DRAFT order"),
        ("pay", "Create or reuse the order's payment intent"),
        ("close", "Close a RECEIVED order"),
        ("cancel", "Cancel a DRAFT or APPROVED order"),
        ("show", "Show one order"),
        ("payments", "List an order's payments"),
        ("receipts", "List an order's goods receipts"),
    ):
        cmd = sub.add_parser(name, help=text)
        cmd.add_argument("order_id")

    reconcile = sub.add_parser("reconcile", help="Apply a processor status to a payment")
    reconcile.add_argument("payment_id")
    reconcile.add_argument("status")

    webhook = sub.add_parser("webhook", help="Apply a processor event for an intent")
    webhook.add_argument("intent_id")
    webhook.add_argument("status")
    webhook.add_argument("--payment-id", default=None)

    receive = sub.add_parser("receive", help="Receive goods against a PAID order")
    receive.add_argument("order_id")
    receive.add_argument("item_id")
    receive.add_argument("quantity", type=int)
    receive.add_argument("--causation-id", default=None)

    listing = sub.add_parser("list", help="List orders, newest first")
    listing.add_argument("--status", default=None)
    listing.add_argument("--supplier", default=None)
    listing.add_argument("--limit", type=int, default=None)
    listing.add_argument("--offset", type=int, default=0)

    sub.add_parser("stats", help="Order statistics")

    stock = sub.add_parser("stock", help="Current stock of a product")
    stock.add_argument("product_id")

    return parser


def _dispatch(service, args):
    cmd = args.command
    if cmd == "create":
        return service.create_order(args.supplier, args.item, args.created_by, args.notes)
    if cmd == "approve":
        return service.approve(args.order_id)
    if cmd == "pay":
        return service.initiate_payment(args.order_id)
    if cmd == "close":
        return service.close(args.order_id)
    if cmd == "cancel":
        return service.cancel(args.order_id)
    if cmd == "show":
        return service.get_order(args.order_id)
    if cmd == "payments":
        return service.list_payments(args.order_id)
    if cmd == "receipts":
        return service.list_receipts(args.order_id)
    if cmd == "reconcile":
        return service.reconcile_payment(args.payment_id, args.status)
    if cmd == "webhook":
        return service.handle_gateway_event(args.intent_id, args.status, args.payment_id)
    if cmd == "receive":
        return service.receive(args.order_id, args.item_id, args.quantity, args.causation_id)
    if cmd == "list":
        return service.list_orders(args.status, args.supplier, args.limit, args.offset)
    if cmd == "stats":
        return service.statistics()
    if cmd == "stock":
        return {"product_id": args.product_id, "quantity": service.current_stock(args.product_id)}
    raise ValueError(f"unknown command {cmd}")


def _render(result) -> None:
    from procurement_kernel.domain.dtos import (
        PaymentIntentResult,
        PaymentReconciliation,
        PurchaseOrderView,
        ReceiptResult,
    )

    if isinstance(result, PurchaseOrderView):
        _print_order(result)
    elif isinstance(result, PaymentIntentResult):
        verb = "created" if result.created else "reused"
        print(f"  Intent {result.intent_id} {verb}")
        print(f"  payment        {result.payment.id}")
        print(f"  amount         {_fmt(result.payment.amount)} {result.payment.currency}")
        print(f"  client secret  {result.client_secret}")
    elif isinstance(result, PaymentReconciliation):
        state = "applied" if result.applied else "ignored (stale or repeated)"
        print(f"  Payment {result.payment.id}: {result.payment.status.value} -- {state}")
        print(f"  order status   {result.order.status.value}")
    elif isinstance(result, ReceiptResult):
        tag = " (duplicate, no change)" if result.duplicate else ""
        r = result.receipt
        print(f"  Received {r.quantity} x {r.product_id}{tag}")
        print(f"  stock          {r.previous_stock} -> {r.new_stock}")
        print(f"  order status   {result.order.status.value}")
    elif isinstance(result, list):
        for row in result:
            if isinstance(row, PurchaseOrderView):
                print(
                    f"  {row.id}  {row.status.value:<10} {row.supplier_id:<16} "
                    f"{_fmt(row.total_amount):>14}"
                )
            else:
                _emit_json(row)
        if not result:
            print("  (none)")
    else:
        _emit_json(result)


def main() -> int:
    args = _build_parser().parse_args()

    from procurement_config import get_active_config
    from procurement_kernel.exceptions import ProcurementError
    from procurement_kernel.logging_config import configure_logging
    from procurement_services import PurchaseOrderService

    if not args.verbose:
        logging.disable(logging.CRITICAL)

    try:
        config = get_active_config(args.config)
    except (OSError, ValueError) as exc:
        print(f"  ERROR: Cannot load configuration: {exc}", file=sys.stderr)
        return 1
    if args.db_url:
        config.database_url = args.db_url
    configure_logging(level=config.log_level)

    try:
        service = PurchaseOrderService.from_config(config)
    except Exception as exc:
        print(f"  ERROR: Cannot connect to database: {exc}", file=sys.stderr)
        return 1

    try:
        result = _dispatch(service, args)
    except ProcurementError as exc:
        print(f"  ERROR [{exc.code}]: {exc}", file=sys.stderr)
        return 2

    if args.json:
        _emit_json(result)
    else:
        _render(result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
