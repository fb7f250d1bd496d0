"""
Pytest fixtures for the procurement engine test suite.

Provides:
- A fresh SQLite file database per test (WAL, busy timeout, foreign keys)
- Session factory, deterministic clock, in-memory payment gateway, and a
  private order lock registry
- The ``PurchaseOrderService`` facade wired to all of the above
- Order builders for each lifecycle stage
- Structured log capture

Environment Variables:
- DATABASE_URL: run the suite against another database (e.g. PostgreSQL)
  instead of the per-test SQLite file.
"""

import json
import logging
import os
from decimal import Decimal
from io import StringIO

import pytest
from sqlalchemy.orm import Session

from procurement_config.schema import EngineConfig
from procurement_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from procurement_kernel.domain.clock import DeterministicClock
from procurement_kernel.domain.dtos import NewItem
from procurement_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from procurement_kernel.utils.locking import OrderLockRegistry
from procurement_services.payment_gateway import InMemoryPaymentGateway
from procurement_services.purchase_order_service import PurchaseOrderService

TEST_ACTOR_ID = "buyer-test"

# 10 @ $5 + 5 @ $20 = $150
STANDARD_ITEMS = (
    NewItem("SKU-WIDGET", 10, Decimal("5.00")),
    NewItem("SKU-GADGET", 5, Decimal("20.00")),
)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture procurement logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, service):
            service.approve(order.id)
            logs = captured_logs()
            assert any(r["message"] == "order_transitioned" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("procurement")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "postgres: mark test as requiring PostgreSQL"
    )
    config.addinivalue_line(
        "markers", "slow_locks: mark test as potentially waiting for DB locks"
    )


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def engine(tmp_path):
    """A freshly created schema, disposed after the test."""
    url = os.environ.get("DATABASE_URL") or f"sqlite:///{tmp_path / 'procurement.db'}"
    engine = init_engine_from_url(url)
    drop_tables()
    create_tables()
    yield engine
    reset_engine()


@pytest.fixture
def session_factory(engine):
    return get_session_factory()


@pytest.fixture
def session(session_factory):
    """A session for direct kernel-level tests; rolled back afterwards."""
    s: Session = session_factory()
    yield s
    s.rollback()
    s.close()


# =============================================================================
# Collaborators
# =============================================================================


@pytest.fixture
def clock():
    return DeterministicClock()


@pytest.fixture
def gateway():
    return InMemoryPaymentGateway()


@pytest.fixture
def locks():
    return OrderLockRegistry(default_timeout=10.0)


@pytest.fixture
def config():
    return EngineConfig(
        database_url="sqlite://",
        gateway_timeout_seconds=2.0,
        lock_timeout_seconds=10.0,
        default_page_size=20,
        max_page_size=50,
    )


@pytest.fixture
def service(session_factory, gateway, config, clock, locks):
    return PurchaseOrderService(
        session_factory, gateway, config=config, clock=clock, locks=locks,
    )


# =============================================================================
# Order builders
# =============================================================================


@pytest.fixture
def create_order(service, clock):
    """Factory: create a DRAFT order (standard $150 items by default)."""

    def _create(items=STANDARD_ITEMS, supplier_id="SUP-001", created_by=TEST_ACTOR_ID, notes=None):
        clock.tick()
        return service.create_order(supplier_id, items, created_by, notes=notes)

    return _create


@pytest.fixture
def approved_order(service, create_order):
    order = create_order()
    return service.approve(order.id)


@pytest.fixture
def paid_order(service, approved_order):
    intent = service.initiate_payment(approved_order.id)
    result = service.reconcile_payment(intent.payment.id, "succeeded")
    return result.order
