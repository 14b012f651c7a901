"""
Unit Tests for Payment Reconciliation and Balance Queries

Tests cover:
1. Online payment submission
2. Offline (cash) payments
3. Approval against the current due balance
4. Rejection and proof re-upload
5. Balance facade and legacy due fallback
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from pydantic import ValidationError as ModelValidationError

from pharma_ledger.errors import (
    AuthorizationError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from pharma_ledger.models import (
    HistoryType,
    OfflinePaymentRequest,
    PaymentMethod,
    PaymentStatus,
    RejectPaymentRequest,
    ReuploadProofRequest,
    SubmitPaymentRequest,
)
from conftest import ADMIN_ID, add_customer


PROOF = "https://cdn.example.com/proofs/upi-001.png"


def submit(payments, customer_id, amount):
    return payments.submit_payment(
        customer_id,
        SubmitPaymentRequest(amount=Decimal(amount), proof_url=PROOF, transaction_id="UPI123"),
    ).payment


class TestSubmitPayment:
    """Tests for customer payment submission."""

    def test_submit_records_pending_payment_without_touching_due(self, ledger, payments):
        """Test that a submitted payment waits for review and leaves the due balance alone."""
        customer = add_customer(ledger, due="500")

        response = payments.submit_payment(
            customer.id, SubmitPaymentRequest(amount=Decimal("200"), proof_url=PROOF)
        )

        payment = response.payment
        assert payment.status == PaymentStatus.PENDING
        assert payment.payment_method == PaymentMethod.ONLINE
        assert payment.original_due_amount == Decimal("500")
        assert payment.remaining_due_amount == Decimal("300")
        assert [log.action for log in payment.audit_logs] == ["created"]

        assert ledger.get_balance(customer.id).pending_balance == Decimal("500")
        assert ledger.find_wallet(customer.id).wallet_history == []

    def test_submit_requires_proof(self, ledger, payments):
        """Test that online payments need a proof of payment."""
        customer = add_customer(ledger, due="500")

        with pytest.raises(ValidationError, match="proof"):
            payments.submit_payment(customer.id, SubmitPaymentRequest(amount=Decimal("100")))

    def test_submit_cannot_exceed_due(self, ledger, payments):
        """Test that a customer cannot pay more than they owe."""
        customer = add_customer(ledger, due="300")

        with pytest.raises(ValidationError, match="exceeds"):
            submit(payments, customer.id, "301")

    def test_amount_below_one_is_rejected(self):
        """Test that the request model refuses amounts below 1."""
        with pytest.raises(ModelValidationError):
            SubmitPaymentRequest(amount=Decimal("0.5"), proof_url=PROOF)

    def test_unknown_customer(self, payments):
        """Test that submitting for a missing customer fails."""
        with pytest.raises(NotFoundError):
            submit(payments, "missing-customer", "10")


class TestOfflinePayment:
    """Tests for admin-recorded cash payments."""

    def test_offline_payment_applies_immediately(self, ledger, payments):
        """Test offline payment of 150 against due 300."""
        customer = add_customer(ledger, due="300")

        response = payments.submit_offline_payment(
            ADMIN_ID, OfflinePaymentRequest(customer_id=customer.id, amount=Decimal("150"))
        )

        payment = response.payment
        assert payment.status == PaymentStatus.APPROVED
        assert payment.payment_method == PaymentMethod.CASH
        assert payment.proof_url is None
        assert payment.remaining_due_amount == Decimal("150")

        wallet = ledger.find_wallet(customer.id)
        assert wallet.pending_balance == Decimal("150")
        assert wallet.total_paid == Decimal("150")

        entries = wallet.entries_for(payment.id, HistoryType.PAYMENT)
        assert len(entries) == 1
        assert entries[0].amount == Decimal("150")
        assert entries[0].balance_after == Decimal("150")

    def test_offline_payment_cannot_exceed_due(self, ledger, payments):
        """Test that an offline payment larger than the due is refused and nothing is recorded."""
        customer = add_customer(ledger, due="100")

        with pytest.raises(ValidationError):
            payments.submit_offline_payment(
                ADMIN_ID, OfflinePaymentRequest(customer_id=customer.id, amount=Decimal("150"))
            )

        assert payments.list_customer_payments(customer.id) == []
        assert ledger.get_balance(customer.id).pending_balance == Decimal("100")

    def test_offline_payment_mirrors_legacy_due(self, ledger, payments):
        """Test that the customer record's due amount follows the wallet."""
        customer = add_customer(ledger, due="300")

        payments.submit_offline_payment(
            ADMIN_ID, OfflinePaymentRequest(customer_id=customer.id, amount=Decimal("100"))
        )

        assert ledger.get_customer(customer.id).due_amount == Decimal("200")


class TestApprovePayment:
    """Tests for admin approval of online payments."""

    def test_full_payment_clears_due(self, ledger, payments):
        """Test due 500, payment approved for 500."""
        customer = add_customer(ledger, due="500")
        payment = submit(payments, customer.id, "500")

        response = payments.approve_payment(payment.id, ADMIN_ID)

        assert response.payment.status == PaymentStatus.APPROVED
        assert response.balance.pending_balance == Decimal("0")
        assert response.balance.wallet_balance == Decimal("0")
        assert response.payment.audit_logs[-1].action == "approved"

        wallet = ledger.find_wallet(customer.id)
        assert len(wallet.entries_for(payment.id, HistoryType.PAYMENT)) == 1
        assert wallet.total_paid == Decimal("500")

    def test_cannot_approve_twice(self, ledger, payments):
        """Test that approving an already approved payment is refused, not reapplied."""
        customer = add_customer(ledger, due="500")
        payment = submit(payments, customer.id, "200")
        payments.approve_payment(payment.id, ADMIN_ID)

        with pytest.raises(InvalidStateTransitionError):
            payments.approve_payment(payment.id, ADMIN_ID)

        wallet = ledger.find_wallet(customer.id)
        assert wallet.pending_balance == Decimal("300")
        assert len(wallet.entries_for(payment.id, HistoryType.PAYMENT)) == 1

    def test_approval_uses_current_due(self, ledger, payments):
        """Test that approval reads the due balance at approval time, not the submission snapshot."""
        customer = add_customer(ledger, due="500")
        payment = submit(payments, customer.id, "100")
        payments.submit_offline_payment(
            ADMIN_ID, OfflinePaymentRequest(customer_id=customer.id, amount=Decimal("200"))
        )

        approved = payments.approve_payment(payment.id, ADMIN_ID).payment

        assert approved.original_due_amount == Decimal("300")
        assert approved.remaining_due_amount == Decimal("200")
        assert ledger.get_balance(customer.id).pending_balance == Decimal("200")

    def test_approval_refused_when_due_dropped_below_amount(self, ledger, payments):
        """Test that a stale payment larger than the current due cannot push the due negative."""
        customer = add_customer(ledger, due="500")
        payment = submit(payments, customer.id, "400")
        payments.submit_offline_payment(
            ADMIN_ID, OfflinePaymentRequest(customer_id=customer.id, amount=Decimal("300"))
        )

        with pytest.raises(ValidationError):
            payments.approve_payment(payment.id, ADMIN_ID)

        assert payments.get_payment(payment.id).status == PaymentStatus.PENDING
        assert ledger.get_balance(customer.id).pending_balance == Decimal("200")

    def test_approve_nonexistent_payment(self, payments):
        """Test that approving a missing payment fails."""
        with pytest.raises(NotFoundError):
            payments.approve_payment("no-such-payment", ADMIN_ID)


class TestRejectAndReupload:
    """Tests for rejection and the re-upload flow."""

    def test_reject_then_reupload_returns_to_pending(self, ledger, payments):
        """Test that a rejected payment can be resubmitted with a new proof."""
        customer = add_customer(ledger, due="500")
        payment = submit(payments, customer.id, "100")

        rejected = payments.reject_payment(
            payment.id, ADMIN_ID, RejectPaymentRequest(reason="Screenshot is blurry")
        ).payment
        assert rejected.status == PaymentStatus.REJECTED
        assert rejected.rejection_reason == "Screenshot is blurry"
        assert rejected.can_reupload is True

        reuploaded = payments.reupload_proof(
            payment.id, customer.id, ReuploadProofRequest(proof_url="https://cdn.example.com/proofs/2.png")
        ).payment
        assert reuploaded.status == PaymentStatus.PENDING
        assert reuploaded.rejection_reason is None
        assert reuploaded.can_reupload is False
        assert [log.action for log in reuploaded.audit_logs] == ["created", "rejected", "reuploaded"]

    def test_cannot_approve_rejected_payment(self, ledger, payments):
        """Test that a rejected payment cannot be approved until it is re-uploaded."""
        customer = add_customer(ledger, due="500")
        payment = submit(payments, customer.id, "100")
        payments.reject_payment(payment.id, ADMIN_ID, RejectPaymentRequest(reason="Wrong amount"))

        with pytest.raises(InvalidStateTransitionError):
            payments.approve_payment(payment.id, ADMIN_ID)

    def test_reupload_not_allowed_when_disabled(self, ledger, payments):
        """Test that admins can reject without allowing a re-upload."""
        customer = add_customer(ledger, due="500")
        payment = submit(payments, customer.id, "100")
        payments.reject_payment(
            payment.id, ADMIN_ID, RejectPaymentRequest(reason="Duplicate", can_reupload=False)
        )

        with pytest.raises(InvalidStateTransitionError):
            payments.reupload_proof(payment.id, customer.id, ReuploadProofRequest(proof_url=PROOF))

    def test_reupload_by_other_customer(self, ledger, payments):
        """Test that only the owner can re-upload proof."""
        owner = add_customer(ledger, due="500")
        other = add_customer(ledger, due="0", phone="9123456780")
        payment = submit(payments, owner.id, "100")
        payments.reject_payment(payment.id, ADMIN_ID, RejectPaymentRequest(reason="Blurry"))

        with pytest.raises(AuthorizationError):
            payments.reupload_proof(payment.id, other.id, ReuploadProofRequest(proof_url=PROOF))


class TestBalanceQueries:
    """Tests for the balance facade."""

    def test_balance_reads_wallet(self, ledger):
        """Test that the wallet is the source of truth once it exists."""
        customer = add_customer(ledger, due="120")

        balance = ledger.get_balance(customer.id)

        assert balance.pending_balance == Decimal("120")
        assert balance.wallet_balance == Decimal("0")

    def test_balance_falls_back_to_legacy_due(self, ledger):
        """Test customers created before wallets existed."""
        customer = add_customer(ledger, due="250", with_wallet=False)

        balance = ledger.get_balance(customer.id)

        assert balance.pending_balance == Decimal("250")
        assert balance.wallet_balance == Decimal("0")
        assert ledger.find_wallet(customer.id) is None

    def test_first_mutation_seeds_wallet_from_legacy_due(self, ledger, payments):
        """Test that a wallet is created from the legacy due on first use."""
        customer = add_customer(ledger, due="250", with_wallet=False)

        payments.submit_offline_payment(
            ADMIN_ID, OfflinePaymentRequest(customer_id=customer.id, amount=Decimal("50"))
        )

        wallet = ledger.find_wallet(customer.id)
        assert wallet.total_due == Decimal("250")
        assert wallet.pending_balance == Decimal("200")
        assert wallet.pending_balance == wallet.total_due - wallet.total_paid

    def test_history_newest_first(self, ledger, payments, clock):
        """Test wallet history ordering and pagination."""
        customer = add_customer(ledger, due="300")
        for amount in ("10", "20", "30"):
            payments.submit_offline_payment(
                ADMIN_ID, OfflinePaymentRequest(customer_id=customer.id, amount=Decimal(amount))
            )
            clock.now += timedelta(minutes=1)

        history = ledger.get_wallet_history(customer.id, limit=2)

        assert history.total_count == 3
        assert [e.amount for e in history.entries] == [Decimal("30"), Decimal("20")]
        assert history.pending_balance == Decimal("240")

    def test_due_customers(self, ledger):
        """Test that only customers with an outstanding balance are listed."""
        owing = add_customer(ledger, due="75")
        add_customer(ledger, due="0", phone="9123456780")

        due = ledger.list_due_customers()

        assert [c.id for c, _ in due] == [owing.id]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
