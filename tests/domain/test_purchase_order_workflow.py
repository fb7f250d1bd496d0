"""
Tests for the declarative purchase order workflow and payment status ladder.

Pure domain: no database, no services.
"""

import pytest

from procurement_kernel.domain.lifecycle import (
    ACTION_APPROVE,
    ACTION_CANCEL,
    ACTION_CLOSE,
    ACTION_MARK_PAID,
    ACTION_MARK_RECEIVED,
    PURCHASE_ORDER_WORKFLOW,
    STATUS_TIMESTAMP_FIELDS,
    OrderStatus,
    PaymentStatus,
)
from procurement_kernel.domain.workflow import Transition, Workflow


class TestPurchaseOrderWorkflow:
    """The lifecycle graph DRAFT -> APPROVED -> PAID -> RECEIVED -> CLOSED."""

    @pytest.mark.parametrize(
        "from_state,action,to_state",
        [
            ("DRAFT", ACTION_APPROVE, "APPROVED"),
            ("APPROVED", ACTION_MARK_PAID, "PAID"),
            ("PAID", ACTION_MARK_RECEIVED, "RECEIVED"),
            ("RECEIVED", ACTION_CLOSE, "CLOSED"),
            ("DRAFT", ACTION_CANCEL, "CANCELLED"),
            ("APPROVED", ACTION_CANCEL, "CANCELLED"),
        ],
    )
    def test_legal_edges(self, from_state, action, to_state):
        transition = PURCHASE_ORDER_WORKFLOW.find_transition(from_state, action)
        assert transition is not None
        assert transition.to_state == to_state

    @pytest.mark.parametrize(
        "from_state,action",
        [
            ("DRAFT", ACTION_MARK_PAID),
            ("APPROVED", ACTION_APPROVE),
            ("PAID", ACTION_CANCEL),
            ("RECEIVED", ACTION_CANCEL),
            ("PAID", ACTION_CLOSE),
            ("CLOSED", ACTION_CANCEL),
            ("CANCELLED", ACTION_APPROVE),
        ],
    )
    def test_illegal_edges_have_no_transition(self, from_state, action):
        assert PURCHASE_ORDER_WORKFLOW.find_transition(from_state, action) is None

    def test_cancel_allowed_only_before_payment(self):
        assert PURCHASE_ORDER_WORKFLOW.allowed_from(ACTION_CANCEL) == ("DRAFT", "APPROVED")

    def test_terminal_states_have_no_outgoing_edges(self):
        for terminal in PURCHASE_ORDER_WORKFLOW.terminal_states:
            assert not [t for t in PURCHASE_ORDER_WORKFLOW.transitions if t.from_state == terminal]

    def test_engine_only_transitions_are_internal(self):
        internal = {t.action for t in PURCHASE_ORDER_WORKFLOW.transitions if t.internal}
        assert internal == {ACTION_MARK_PAID, ACTION_MARK_RECEIVED}

    def test_every_target_state_has_a_timestamp(self):
        targets = {OrderStatus(t.to_state) for t in PURCHASE_ORDER_WORKFLOW.transitions}
        assert targets == set(STATUS_TIMESTAMP_FIELDS)


class TestWorkflowValidation:
    """A malformed workflow declaration fails at import time."""

    def test_unknown_state_rejected(self):
        with pytest.raises(ValueError, match="unknown state"):
            Workflow(
                name="bad",
                description="",
                initial_state="A",
                states=("A",),
                transitions=(Transition("A", "B", action="go"),),
            )

    def test_initial_state_must_exist(self):
        with pytest.raises(ValueError, match="initial state"):
            Workflow(name="bad", description="", initial_state="X", states=("A",), transitions=())

    def test_terminal_state_cannot_have_outgoing_edge(self):
        with pytest.raises(ValueError, match="terminal state"):
            Workflow(
                name="bad",
                description="",
                initial_state="A",
                states=("A", "B"),
                transitions=(Transition("B", "A", action="reopen"),),
                terminal_states=("B",),
            )


class TestPaymentStatusLadder:

    def test_ranks(self):
        assert PaymentStatus.PENDING.rank == 0
        assert PaymentStatus.PROCESSING.rank == 1
        for status in (PaymentStatus.SUCCEEDED, PaymentStatus.FAILED, PaymentStatus.CANCELED):
            assert status.rank == 2
            assert status.is_terminal

    def test_active_and_open_sets(self):
        assert PaymentStatus.SUCCEEDED.is_active
        assert not PaymentStatus.SUCCEEDED.is_open
        assert PaymentStatus.PENDING.is_open
        assert PaymentStatus.PROCESSING.is_open
        assert not PaymentStatus.FAILED.is_active
        assert not PaymentStatus.CANCELED.is_active
