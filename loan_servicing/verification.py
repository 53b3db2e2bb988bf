"""
Payment Verification Module

Two-party workflow for payments backed by borrower-uploaded proof:
the borrower submits (proof stored first, then an awaiting_verification row
is created), and staff approve or reject exactly once.
"""

from decimal import Decimal
from typing import List, Optional, Tuple
import uuid

from .audit import AuditTrail, AuditEventType
from .authorization import Action, Actor, authorize, is_permitted
from .clock import Clock, SystemClock
from .config import LoanServicingConfig, get_config
from .currency import Money
from .documents import DocumentStore, build_proof_key
from .exceptions import InvalidTransitionError, NotAwaitingVerificationError, NotFoundError, ValidationError
from .loans import Loan, LoanStatus
from .logging_config import get_logger, log_action
from .payments import Payment, PaymentLedger, PaymentMethod, PaymentStatus, generate_transaction_id
from .storage import StorageInterface


DEFAULT_REJECTION_REASON = "Rejected by reviewer"


class VerificationWorkflow:
    """
    Submit-then-verify path for proof-backed payments
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        ledger: PaymentLedger,
        documents: DocumentStore,
        clock: Optional[Clock] = None,
        config: Optional[LoanServicingConfig] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.ledger = ledger
        self.loan_manager = ledger.loan_manager
        self.documents = documents
        self.clock = clock or SystemClock()
        self.config = config or get_config()
        self.logger = get_logger("loan_servicing.verification")

    def submit(
        self,
        loan_id: str,
        actor: Actor,
        amount: Decimal,
        method,
        proof_content: bytes,
        proof_filename: str,
        content_type: Optional[str] = None
    ) -> Payment:
        """
        Submit a payment with proof for staff verification.

        The proof is written before the ledger is touched; if the write fails
        nothing is recorded.

        Args:
            loan_id: Loan being paid
            actor: The loan's borrower
            amount: Amount paid
            method: PaymentMethod or its string value
            proof_content: Raw proof file
            proof_filename: Original file name
            content_type: MIME type of the proof

        Returns:
            New payment awaiting verification

        Raises:
            AuthorizationError: If the actor is not the loan's borrower
            InvalidTransitionError: If the loan is not active
            DocumentStorageError: If the proof cannot be stored
        """
        method = PaymentMethod.parse(method)
        if not proof_content:
            raise ValidationError("Proof of payment is required", {"loan_id": loan_id})
        if len(proof_content) > self.config.max_proof_size_bytes:
            raise ValidationError(
                f"Proof of payment exceeds {self.config.max_proof_size_bytes} bytes",
                {"loan_id": loan_id, "size": len(proof_content)}
            )

        loan = self.loan_manager.require_loan(loan_id)
        authorize(actor, Action.SUBMIT_PAYMENT, loan)
        self._require_active(loan, "submit_payment")

        paid = Money(amount, loan.currency)
        if not paid.is_positive():
            raise ValidationError(
                "Payment amount must be positive",
                {"loan_id": loan_id, "amount": paid.amount}
            )

        # Hard precondition: no proof on file, no ledger row
        try:
            reference = self.documents.put(build_proof_key(loan.id, proof_filename), proof_content, content_type)
        except Exception as e:
            log_action(
                self.logger, "error", f"Failed to store proof for loan {loan_id}: {e}",
                user_id=actor.user_id, action="submit_payment", resource=f"loan:{loan_id}"
            )
            raise

        with self.storage.atomic(), self.storage.lock(self.loan_manager.loans_table, loan_id):
            loan = self.loan_manager.require_loan(loan_id)
            self._require_active(loan, "submit_payment")

            now = self.clock.now()
            payment = Payment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                amount=paid,
                due_date=now.date(),
                status=PaymentStatus.AWAITING_VERIFICATION,
                installment_number=None,
                payment_method=method,
                transaction_id=generate_transaction_id(),
                proof_reference=reference
            )
            self.ledger.save_payment(payment)
            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_SUBMITTED,
                entity_type="payment",
                entity_id=payment.id,
                metadata={
                    "loan_id": loan.id,
                    "amount": paid.to_string(),
                    "payment_method": method.value,
                    "proof_reference": reference
                },
                user_id=actor.user_id
            )

        log_action(
            self.logger, "info", f"Payment submitted for verification on loan {loan.loan_number}",
            user_id=actor.user_id, action="submit_payment", resource=f"payment:{payment.id}",
            extra={"amount": paid.to_string(), "payment_method": method.value}
        )

        return payment

    def approve(self, payment_id: str, actor: Actor) -> Tuple[Payment, Loan]:
        """
        Accept a submitted payment: mark it paid and apply it to the loan.

        Returns:
            Tuple of (paid payment, updated loan)

        Raises:
            NotAwaitingVerificationError: If the payment is not awaiting verification
        """
        try:
            with self.storage.atomic():
                payment = self.ledger.require_payment(payment_id)
                with self.storage.lock(self.loan_manager.loans_table, payment.loan_id), \
                        self.storage.lock(self.ledger.payments_table, payment_id):
                    loan = self.loan_manager.require_loan(payment.loan_id)
                    authorize(actor, Action.VERIFY_PAYMENT, loan)
                    if payment.status != PaymentStatus.AWAITING_VERIFICATION:
                        raise NotAwaitingVerificationError(payment.id, payment.status.value, "approve")
                    self._require_active(loan, "verify_payment")

                    now = self.clock.now()
                    payment.status = PaymentStatus.PAID
                    payment.paid_date = now.date()
                    payment.verified_by = actor.user_id
                    payment.verified_at = now
                    self.ledger.save_payment(payment)

                    self.audit_trail.log_event(
                        event_type=AuditEventType.PAYMENT_VERIFIED,
                        entity_type="payment",
                        entity_id=payment.id,
                        metadata={"loan_id": loan.id, "amount": payment.amount.to_string()},
                        user_id=actor.user_id
                    )
                    loan = self.ledger.apply_to_loan(loan, payment, actor.user_id)
        except Exception as e:
            log_action(
                self.logger, "error", f"Failed to approve payment {payment_id}: {e}",
                user_id=actor.user_id, action="verify_payment", resource=f"payment:{payment_id}"
            )
            raise

        log_action(
            self.logger, "info", f"Payment verified for loan {loan.loan_number}",
            user_id=actor.user_id, action="verify_payment", resource=f"payment:{payment.id}",
            extra={
                "amount": payment.amount.to_string(),
                "remaining_balance": loan.outstanding_balance.to_string(),
                "loan_status": loan.status.value
            }
        )

        return payment, loan

    def reject(self, payment_id: str, actor: Actor, reason: Optional[str] = None) -> Payment:
        """Refuse a submitted payment. The loan balance is left untouched."""
        reason = (reason or "").strip() or DEFAULT_REJECTION_REASON
        max_length = self.config.max_rejection_reason_length
        if len(reason) > max_length:
            raise ValidationError(
                f"Rejection reason must be at most {max_length} characters",
                {"payment_id": payment_id, "length": len(reason)}
            )

        with self.storage.atomic():
            payment = self.ledger.require_payment(payment_id)
            with self.storage.lock(self.loan_manager.loans_table, payment.loan_id), \
                    self.storage.lock(self.ledger.payments_table, payment_id):
                loan = self.loan_manager.require_loan(payment.loan_id)
                authorize(actor, Action.VERIFY_PAYMENT, loan)
                if payment.status != PaymentStatus.AWAITING_VERIFICATION:
                    raise NotAwaitingVerificationError(payment.id, payment.status.value, "reject")

                payment.status = PaymentStatus.REJECTED
                payment.rejection_reason = reason
                payment.verified_by = actor.user_id
                payment.verified_at = self.clock.now()
                self.ledger.save_payment(payment)

                self.audit_trail.log_event(
                    event_type=AuditEventType.PAYMENT_REJECTED,
                    entity_type="payment",
                    entity_id=payment.id,
                    metadata={"loan_id": loan.id, "reason": reason},
                    user_id=actor.user_id
                )

        log_action(
            self.logger, "info", f"Payment rejected for loan {loan.loan_number}",
            user_id=actor.user_id, action="reject_payment", resource=f"payment:{payment.id}"
        )

        return payment

    def get_awaiting_verification(
        self,
        loan_id: Optional[str] = None,
        actor: Optional[Actor] = None
    ) -> List[Payment]:
        """
        Review queue, oldest submission first. With an actor, only the rows
        that actor may verify are returned.
        """
        filters = {'status': PaymentStatus.AWAITING_VERIFICATION.value}
        if loan_id:
            filters['loan_id'] = loan_id
        payments = [Payment.from_dict(data) for data in self.storage.find(self.ledger.payments_table, filters)]

        if actor is not None:
            loans = {}
            visible = []
            for payment in payments:
                if payment.loan_id not in loans:
                    loans[payment.loan_id] = self.loan_manager.get_loan(payment.loan_id)
                if is_permitted(actor, Action.VERIFY_PAYMENT, loans[payment.loan_id]):
                    visible.append(payment)
            payments = visible

        return sorted(payments, key=lambda p: p.created_at)

    def open_proof(self, payment_id: str, actor: Optional[Actor] = None) -> bytes:
        """Dereference the proof attached to a submitted payment"""
        payment = self.ledger.require_payment(payment_id)
        if actor is not None:
            authorize(actor, Action.VIEW_PAYMENTS, self.loan_manager.require_loan(payment.loan_id))
        if not payment.proof_reference:
            raise NotFoundError("proof", payment_id)
        return self.documents.open(payment.proof_reference)

    def _require_active(self, loan: Loan, attempted: str) -> None:
        if loan.status != LoanStatus.ACTIVE:
            raise InvalidTransitionError(
                f"Loan {loan.loan_number} is not active (status: {loan.status.value})",
                loan.id,
                loan.status.value,
                attempted
            )
