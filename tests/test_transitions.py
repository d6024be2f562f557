"""
Tests for the status transition guard.
"""

import pytest

from pipeline.errors import InvalidStatusError, TransitionConflictError
from pipeline.transitions import RejectReason, TransitionOutcome, evaluate_transition
from schemas.documents import DocumentKind, InvoiceStatus, QuoteStatus, parse_status


class TestInvoiceTransitions:
    """Invoices only move Unpaid -> Paid."""

    def test_unpaid_to_paid_applies(self):
        decision = evaluate_transition(DocumentKind.INVOICE, InvoiceStatus.UNPAID, InvoiceStatus.PAID)
        assert decision.outcome == TransitionOutcome.APPLY
        assert decision.should_apply

    def test_paid_to_paid_is_noop(self):
        decision = evaluate_transition(DocumentKind.INVOICE, InvoiceStatus.PAID, "Paid")
        assert decision.is_noop

    def test_paid_to_unpaid_rejected(self):
        decision = evaluate_transition(DocumentKind.INVOICE, InvoiceStatus.PAID, InvoiceStatus.UNPAID)
        assert decision.is_rejected
        assert decision.reason == RejectReason.NOT_PERMITTED

    def test_quote_status_on_invoice_is_unknown(self):
        decision = evaluate_transition(DocumentKind.INVOICE, InvoiceStatus.UNPAID, "Accepted")
        assert decision.reason == RejectReason.UNKNOWN_TARGET


class TestQuoteTransitions:
    """Quotes move Pending -> Accepted | Rejected, once."""

    @pytest.mark.parametrize("target", [QuoteStatus.ACCEPTED, QuoteStatus.REJECTED])
    def test_pending_to_terminal(self, target):
        decision = evaluate_transition(DocumentKind.QUOTE, QuoteStatus.PENDING, target)
        assert decision.should_apply
        assert decision.target == target.value

    def test_rejected_to_accepted_conflicts(self):
        decision = evaluate_transition(DocumentKind.QUOTE, QuoteStatus.REJECTED, QuoteStatus.ACCEPTED)
        assert decision.reason == RejectReason.NOT_PERMITTED
        with pytest.raises(TransitionConflictError):
            decision.raise_for_reject()

    def test_accepted_back_to_pending_conflicts(self):
        decision = evaluate_transition(DocumentKind.QUOTE, QuoteStatus.ACCEPTED, QuoteStatus.PENDING)
        assert decision.is_rejected

    def test_repeat_is_noop(self):
        decision = evaluate_transition(DocumentKind.QUOTE, QuoteStatus.ACCEPTED, "accepted")
        assert decision.is_noop
        decision.raise_for_reject()

    def test_unknown_value_is_invalid(self):
        decision = evaluate_transition(DocumentKind.QUOTE, QuoteStatus.PENDING, "Approved")
        assert decision.reason == RejectReason.UNKNOWN_TARGET
        with pytest.raises(InvalidStatusError):
            decision.raise_for_reject()

    def test_localized_label(self):
        decision = evaluate_transition(DocumentKind.QUOTE, "Terkirim", "Diterima")
        assert decision.should_apply
        assert decision.current == "Pending"
        assert decision.target == "Accepted"


class TestParseStatus:
    """Boundary label mapping."""

    def test_case_insensitive(self):
        assert parse_status(DocumentKind.INVOICE, "PAID") == InvoiceStatus.PAID

    def test_localized(self):
        assert parse_status(DocumentKind.INVOICE, "Lunas") == InvoiceStatus.PAID
        assert parse_status(DocumentKind.INVOICE, "Belum Lunas") == InvoiceStatus.UNPAID
        assert parse_status(DocumentKind.QUOTE, "Ditolak") == QuoteStatus.REJECTED

    def test_wrong_kind(self):
        assert parse_status(DocumentKind.INVOICE, "Diterima") is None
        assert parse_status(DocumentKind.QUOTE, InvoiceStatus.PAID) is None

    def test_non_string(self):
        assert parse_status(DocumentKind.QUOTE, 42) is None
