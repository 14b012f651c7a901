import logging
from typing import Optional

from .errors import AuthorizationError, InvalidStateTransitionError, NotFoundError, ValidationError
from .models import (
    AuditLog,
    OfflinePaymentRequest,
    Payment,
    PaymentMethod,
    PaymentResponse,
    PaymentStatus,
    PerformerModel,
    RejectPaymentRequest,
    ReuploadProofRequest,
    SubmitPaymentRequest,
)
from .service import LedgerService, new_id
from .storage import PAYMENTS, to_document

logger = logging.getLogger(__name__)


class PaymentService:
    """Moves customer payments from submitted to applied against the due balance.

    Online payments carry a proof and wait for an admin; cash payments recorded
    by an admin apply immediately. A payment's amount is applied to the due
    balance read at approval time, never the snapshot taken at submission.
    """

    def __init__(self, ledger: LedgerService):
        self.ledger = ledger
        self.storage = ledger.storage

    def submit_payment(self, customer_id: str, request: SubmitPaymentRequest) -> PaymentResponse:
        self.ledger.get_customer(customer_id)
        balance = self.ledger.get_balance(customer_id)

        if request.amount > balance.pending_balance:
            raise ValidationError(
                f"Entered amount (₹{request.amount}) exceeds your total due balance (₹{balance.pending_balance})"
            )
        if not request.proof_url:
            raise ValidationError("Payment proof is required")

        now = self.ledger.clock()
        payment = Payment(
            id=new_id(),
            customer_id=customer_id,
            amount=request.amount,
            original_due_amount=balance.pending_balance,
            remaining_due_amount=balance.pending_balance - request.amount,
            payment_date=now,
            payment_method=PaymentMethod.ONLINE,
            transaction_id=request.transaction_id,
            proof_url=request.proof_url,
            status=PaymentStatus.PENDING,
            audit_logs=[AuditLog(
                action="created",
                performed_by=customer_id,
                performer_model=PerformerModel.CUSTOMER,
                timestamp=now,
                details=f"Payment request of ₹{request.amount} submitted",
            )],
            created_at=now,
        )
        self.storage.insert(PAYMENTS, to_document(payment))
        logger.info("Payment %s of %s submitted by customer %s", payment.id, payment.amount, customer_id)

        return PaymentResponse(payment=payment, balance=balance, message="Payment submitted for review")

    def submit_offline_payment(self, admin_id: str, request: OfflinePaymentRequest) -> PaymentResponse:
        self.ledger.get_customer(request.customer_id)
        wallet = self.ledger.get_or_create_wallet(request.customer_id)
        original_due = wallet.pending_balance

        now = self.ledger.clock()
        payment_id = new_id()
        self.ledger.apply_payment(wallet, request.amount, reference=payment_id)

        payment = Payment(
            id=payment_id,
            customer_id=request.customer_id,
            amount=request.amount,
            original_due_amount=original_due,
            remaining_due_amount=wallet.pending_balance,
            payment_date=now,
            payment_method=PaymentMethod.CASH,
            status=PaymentStatus.APPROVED,
            admin_comment=request.admin_comment,
            audit_logs=[AuditLog(
                action="created_offline",
                performed_by=admin_id,
                performer_model=PerformerModel.ADMIN,
                timestamp=now,
                details=f"Offline cash payment of ₹{request.amount} recorded by admin",
            )],
            created_at=now,
        )
        self.storage.insert(PAYMENTS, to_document(payment))
        self.ledger.save_wallet(wallet)
        logger.info(
            "Offline payment %s of %s applied for customer %s, due now %s",
            payment.id, payment.amount, request.customer_id, wallet.pending_balance,
        )

        return PaymentResponse(
            payment=payment,
            balance=self.ledger.get_balance(request.customer_id),
            message="Offline payment recorded",
        )

    def approve_payment(self, payment_id: str, admin_id: str) -> PaymentResponse:
        payment = self.get_payment(payment_id)
        if not payment.can_review():
            raise InvalidStateTransitionError(f"Payment is already {payment.status.value}")

        wallet = self.ledger.get_or_create_wallet(payment.customer_id)
        original_due = wallet.pending_balance
        self.ledger.apply_payment(wallet, payment.amount, reference=payment.id)

        payment.status = PaymentStatus.APPROVED
        payment.original_due_amount = original_due
        payment.remaining_due_amount = wallet.pending_balance
        payment.can_reupload = False
        payment.audit_logs.append(AuditLog(
            action="approved",
            performed_by=admin_id,
            performer_model=PerformerModel.ADMIN,
            timestamp=self.ledger.clock(),
            details="Payment approved by admin",
        ))
        self.storage.replace(PAYMENTS, to_document(payment))
        self.ledger.save_wallet(wallet)
        logger.info(
            "Payment %s approved for customer %s, due %s -> %s",
            payment.id, payment.customer_id, original_due, wallet.pending_balance,
        )

        return PaymentResponse(
            payment=payment,
            balance=self.ledger.get_balance(payment.customer_id),
            message="Payment approved",
        )

    def reject_payment(self, payment_id: str, admin_id: str, request: RejectPaymentRequest) -> PaymentResponse:
        if not request.reason.strip():
            raise ValidationError("Rejection reason is required")

        payment = self.get_payment(payment_id)
        if not payment.can_review():
            raise InvalidStateTransitionError(f"Payment is already {payment.status.value}")

        payment.status = PaymentStatus.REJECTED
        payment.rejection_reason = request.reason
        payment.can_reupload = request.can_reupload
        payment.audit_logs.append(AuditLog(
            action="rejected",
            performed_by=admin_id,
            performer_model=PerformerModel.ADMIN,
            timestamp=self.ledger.clock(),
            details=f"Rejected: {request.reason}",
        ))
        self.storage.replace(PAYMENTS, to_document(payment))
        logger.info("Payment %s rejected: %s", payment.id, request.reason)

        return PaymentResponse(payment=payment, message="Payment rejected")

    def reupload_proof(self, payment_id: str, customer_id: str, request: ReuploadProofRequest) -> PaymentResponse:
        payment = self.get_payment(payment_id)
        if payment.customer_id != customer_id:
            raise AuthorizationError("Not authorized to update this payment")
        if payment.status != PaymentStatus.REJECTED:
            raise InvalidStateTransitionError("Only rejected payments can be re-uploaded")
        if not payment.can_reupload_proof():
            raise InvalidStateTransitionError("Re-upload is not allowed for this payment")

        payment.proof_url = request.proof_url
        payment.transaction_id = request.transaction_id or payment.transaction_id
        payment.status = PaymentStatus.PENDING
        payment.rejection_reason = None
        payment.can_reupload = False
        payment.audit_logs.append(AuditLog(
            action="reuploaded",
            performed_by=customer_id,
            performer_model=PerformerModel.CUSTOMER,
            timestamp=self.ledger.clock(),
            details="Proof re-uploaded, status reset to pending",
        ))
        self.storage.replace(PAYMENTS, to_document(payment))

        return PaymentResponse(payment=payment, message="Proof re-uploaded")

    def get_payment(self, payment_id: str) -> Payment:
        doc = self.storage.get(PAYMENTS, payment_id)
        if not doc:
            raise NotFoundError(f"Payment {payment_id} not found")
        return Payment(**doc)

    def list_customer_payments(self, customer_id: str) -> list[Payment]:
        payments = [Payment(**d) for d in self.storage.find(PAYMENTS, customer_id=customer_id)]
        payments.sort(key=lambda p: p.created_at, reverse=True)
        return payments

    def list_payments(self, status: Optional[PaymentStatus] = None) -> list[Payment]:
        filters = {"status": status.value} if status else {}
        payments = [Payment(**d) for d in self.storage.find(PAYMENTS, **filters)]
        payments.sort(key=lambda p: p.created_at, reverse=True)
        return payments
