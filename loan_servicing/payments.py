"""
Payment Ledger Module

Materialized repayment schedule rows plus ad hoc submitted payments.
Recording a payment marks the row paid, decrements the owning loan's
outstanding balance (never below zero) and closes the loan once it is repaid,
all in one unit of work.
"""

from decimal import Decimal
from datetime import datetime, date, timedelta
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
import uuid

from .amortization import ScheduleEntry
from .audit import AuditTrail, AuditEventType
from .authorization import Action, Actor, authorize, is_permitted
from .clock import Clock, SystemClock
from .config import LoanServicingConfig, get_config
from .currency import Money, Currency
from .exceptions import InvalidTransitionError, NotFoundError, ValidationError
from .loans import Loan, LoanManager, LoanStatus
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


class PaymentStatus(Enum):
    """Ledger entry states"""
    PENDING = "pending"                              # Scheduled, not yet paid
    AWAITING_VERIFICATION = "awaiting_verification"  # Submitted with proof
    PAID = "paid"
    REJECTED = "rejected"                            # Submission refused by staff

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentStatus.PAID, PaymentStatus.REJECTED)


class PaymentMethod(Enum):
    """Accepted payment methods"""
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    BANK_TRANSFER = "bank_transfer"
    CHECK = "check"
    CARD = "card"
    BANK = "bank"
    EWALLET = "ewallet"
    CASH = "cash"

    @classmethod
    def parse(cls, value) -> 'PaymentMethod':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ", ".join(m.value for m in cls)
            raise ValidationError(
                f"Unsupported payment method '{value}' (allowed: {allowed})",
                {"payment_method": value}
            )


def generate_transaction_id() -> str:
    return f"TXN-{uuid.uuid4().hex[:12].upper()}"


@dataclass
class Payment(StorageRecord):
    """Single ledger entry: a scheduled installment or a submitted payment"""
    loan_id: str
    amount: Money
    due_date: date
    status: PaymentStatus = PaymentStatus.PENDING
    installment_number: Optional[int] = None   # None for submitted payments
    paid_date: Optional[date] = None
    payment_method: Optional[PaymentMethod] = None
    transaction_id: Optional[str] = None
    proof_reference: Optional[str] = None
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    version: int = 0

    def is_overdue(self, today: date) -> bool:
        """Past due and still owed; paid, submitted and rejected rows never are"""
        if self.status.is_terminal or self.status == PaymentStatus.AWAITING_VERIFICATION:
            return False
        return self.due_date < today

    def late_fee(
        self,
        today: date,
        rate: Decimal = Decimal('0.05'),
        minimum: Optional[Money] = None
    ) -> Money:
        """Late fee on an overdue row: a percentage of the amount with a floor"""
        if not self.is_overdue(today):
            return Money.zero(self.amount.currency)

        floor = minimum if minimum is not None else Money(Decimal('25'), self.amount.currency)
        fee = self.amount * rate
        return fee if fee > floor else floor

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'amount': str(self.amount.amount),
            'currency': self.amount.currency.code,
            'due_date': self.due_date.isoformat(),
            'status': self.status.value,
            'installment_number': self.installment_number,
            'paid_date': self.paid_date.isoformat() if self.paid_date else None,
            'payment_method': self.payment_method.value if self.payment_method else None,
            'transaction_id': self.transaction_id,
            'proof_reference': self.proof_reference,
            'verified_by': self.verified_by,
            'verified_at': self.verified_at.isoformat() if self.verified_at else None,
            'rejection_reason': self.rejection_reason,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            amount=Money(Decimal(data['amount']), Currency[data['currency']]),
            due_date=date.fromisoformat(data['due_date']),
            status=PaymentStatus(data['status']),
            installment_number=data.get('installment_number'),
            paid_date=date.fromisoformat(data['paid_date']) if data.get('paid_date') else None,
            payment_method=PaymentMethod(data['payment_method']) if data.get('payment_method') else None,
            transaction_id=data.get('transaction_id'),
            proof_reference=data.get('proof_reference'),
            verified_by=data.get('verified_by'),
            verified_at=datetime.fromisoformat(data['verified_at']) if data.get('verified_at') else None,
            rejection_reason=data.get('rejection_reason'),
            version=int(data.get('version', 0)),
        )


def _due_order(payment: Payment) -> tuple:
    # Submitted rows carry no installment number; they sort after scheduled rows due the same day
    number = payment.installment_number if payment.installment_number is not None else 10 ** 9
    return (payment.due_date, number, payment.created_at)


class PaymentLedger:
    """
    Ledger of scheduled and submitted payments for every loan
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        loan_manager: LoanManager,
        clock: Optional[Clock] = None,
        config: Optional[LoanServicingConfig] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.loan_manager = loan_manager
        self.clock = clock or SystemClock()
        self.config = config or get_config()
        self.logger = get_logger("loan_servicing.payments")

        self.payments_table = "payments"
        self.completion_epsilon = Decimal(self.config.completion_epsilon)

        loan_manager.attach_ledger(self)

    @property
    def loans_table(self) -> str:
        return self.loan_manager.loans_table

    # ------------------------------------------------------------------
    # Schedule
    # ------------------------------------------------------------------

    def regenerate_schedule(
        self,
        loan: Loan,
        schedule: List[ScheduleEntry],
        actor: Optional[Actor] = None
    ) -> List[Payment]:
        """
        Replace the loan's ledger with a fresh schedule.

        Deletes every existing row and inserts one pending row per entry in a
        single unit of work. Refused once any row has been paid or submitted.

        Raises:
            InvalidTransitionError: If payment history would be lost
        """
        user_id = actor.user_id if actor else None

        with self.storage.atomic():
            existing = self._load_loan_payments(loan.id)
            settled = [p for p in existing
                       if p.status in (PaymentStatus.PAID, PaymentStatus.AWAITING_VERIFICATION)]
            if settled:
                raise InvalidTransitionError(
                    f"Cannot regenerate schedule for loan {loan.loan_number}: "
                    f"{len(settled)} payment(s) already paid or awaiting verification",
                    loan.id,
                    loan.status.value,
                    "regenerate_schedule"
                )

            removed = self.storage.delete_where(self.payments_table, {'loan_id': loan.id})

            now = self.clock.now()
            payments = []
            for entry in schedule:
                payment = Payment(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    loan_id=loan.id,
                    amount=entry.amount,
                    due_date=entry.due_date,
                    status=PaymentStatus.PENDING,
                    installment_number=entry.period_index
                )
                self.save_payment(payment)
                payments.append(payment)

            self.audit_trail.log_event(
                event_type=AuditEventType.SCHEDULE_GENERATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "installments": len(payments),
                    "replaced_rows": removed,
                    "first_due_date": schedule[0].due_date if schedule else None,
                    "last_due_date": schedule[-1].due_date if schedule else None
                },
                user_id=user_id
            )

        log_action(
            self.logger, "info", f"Payment schedule generated for loan {loan.loan_number}",
            user_id=user_id, action="generate_schedule", resource=f"loan:{loan.id}",
            extra={"installments": len(payments), "replaced_rows": removed}
        )

        return payments

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_payment(
        self,
        payment_id: str,
        actor: Actor,
        method,
        transaction_id: Optional[str] = None
    ) -> Tuple[Payment, Loan]:
        """
        Record a pending ledger row as paid.

        Args:
            payment_id: Row to mark paid
            actor: Staff member recording the payment
            method: PaymentMethod or its string value
            transaction_id: External reference (generated when absent)

        Returns:
            Tuple of (paid payment, updated loan)
        """
        method = PaymentMethod.parse(method)

        try:
            with self.storage.atomic():
                payment = self.require_payment(payment_id)
                with self.storage.lock(self.loans_table, payment.loan_id), \
                        self.storage.lock(self.payments_table, payment_id):
                    loan = self.loan_manager.require_loan(payment.loan_id)
                    authorize(actor, Action.RECORD_PAYMENT, loan)
                    self._require_active(loan, "record_payment")
                    if payment.status != PaymentStatus.PENDING:
                        raise InvalidTransitionError(
                            f"Payment {payment.id} is not pending (status: {payment.status.value})",
                            payment.id,
                            payment.status.value,
                            "record_payment",
                            entity_type="payment"
                        )

                    payment.status = PaymentStatus.PAID
                    payment.paid_date = self.clock.today()
                    payment.payment_method = method
                    payment.transaction_id = transaction_id or generate_transaction_id()
                    self.save_payment(payment)

                    self.audit_trail.log_event(
                        event_type=AuditEventType.PAYMENT_RECORDED,
                        entity_type="payment",
                        entity_id=payment.id,
                        metadata={
                            "loan_id": loan.id,
                            "amount": payment.amount.to_string(),
                            "payment_method": method.value,
                            "transaction_id": payment.transaction_id,
                            "installment_number": payment.installment_number
                        },
                        user_id=actor.user_id
                    )
                    loan = self.apply_to_loan(loan, payment, actor.user_id)
        except Exception as e:
            log_action(
                self.logger, "error", f"Failed to record payment {payment_id}: {e}",
                user_id=actor.user_id, action="record_payment", resource=f"payment:{payment_id}"
            )
            raise

        log_action(
            self.logger, "info", f"Payment recorded for loan {loan.loan_number}",
            user_id=actor.user_id, action="record_payment", resource=f"payment:{payment.id}",
            extra={
                "amount": payment.amount.to_string(),
                "remaining_balance": loan.outstanding_balance.to_string(),
                "loan_status": loan.status.value
            }
        )

        return payment, loan

    def record_next_payment(
        self,
        loan_id: str,
        actor: Actor,
        method,
        transaction_id: Optional[str] = None
    ) -> Tuple[Payment, Loan]:
        """
        Record the earliest pending installment of a loan (by due date, then
        installment number).

        Raises:
            NotFoundError: If the loan has no pending installment
        """
        with self.storage.atomic(), self.storage.lock(self.loans_table, loan_id):
            loan = self.loan_manager.require_loan(loan_id)
            authorize(actor, Action.RECORD_PAYMENT, loan)
            pending = [p for p in self.get_loan_payments(loan_id) if p.status == PaymentStatus.PENDING]
            if not pending:
                raise NotFoundError("pending payment", loan_id)
            return self.record_payment(pending[0].id, actor, method, transaction_id)

    def apply_to_loan(self, loan: Loan, payment: Payment, user_id: Optional[str] = None) -> Loan:
        """
        Decrement the loan's balance by a paid amount and close it once repaid.

        The loan closes when its balance is within the completion epsilon of
        zero or when no pending installments remain. The caller holds the
        loan's lock and unit of work.
        """
        balance = (loan.outstanding_balance - payment.amount).clamp_at_zero()
        loan.outstanding_balance = balance

        remaining = len(self.storage.find(self.payments_table, {
            'loan_id': loan.id,
            'status': PaymentStatus.PENDING.value
        }))

        if balance.amount <= self.completion_epsilon or remaining == 0:
            return self.loan_manager.complete(loan, user_id)

        self.loan_manager.save_loan(loan)
        return loan

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        """Get payment by ID"""
        data = self.storage.load(self.payments_table, payment_id)
        if data:
            return Payment.from_dict(data)
        return None

    def require_payment(self, payment_id: str) -> Payment:
        """Get payment by ID or raise NotFoundError"""
        payment = self.get_payment(payment_id)
        if payment is None:
            raise NotFoundError("payment", payment_id)
        return payment

    def get_loan_payments(self, loan_id: str) -> List[Payment]:
        """All ledger rows for a loan ordered by due date"""
        return sorted(self._load_loan_payments(loan_id), key=_due_order)

    def view_loan_payments(self, loan_id: str, actor: Actor) -> List[Payment]:
        """Ledger rows for a loan on behalf of an actor allowed to see them"""
        loan = self.loan_manager.require_loan(loan_id)
        authorize(actor, Action.VIEW_PAYMENTS, loan)
        return self.get_loan_payments(loan_id)

    def get_upcoming_payments(
        self,
        borrower_id: str,
        days: Optional[int] = None,
        actor: Optional[Actor] = None
    ) -> List[Payment]:
        """Pending installments on a borrower's active loans due within the window"""
        if days is None:
            days = self.config.upcoming_window_days
        today = self.clock.today()
        horizon = today + timedelta(days=days)

        upcoming = [
            p for p in self._borrower_pending_payments(borrower_id, actor)
            if today <= p.due_date <= horizon
        ]
        return sorted(upcoming, key=_due_order)

    def get_overdue_payments(self, borrower_id: str, actor: Optional[Actor] = None) -> List[Payment]:
        """Pending installments on a borrower's active loans already past due"""
        today = self.clock.today()
        overdue = [p for p in self._borrower_pending_payments(borrower_id, actor) if p.is_overdue(today)]
        return sorted(overdue, key=_due_order)

    def late_fee_for(self, payment: Payment) -> Money:
        """Late fee owed on a row today under the configured rate and floor"""
        minimum = Money(Decimal(self.config.minimum_late_fee), payment.amount.currency)
        return payment.late_fee(self.clock.today(), Decimal(self.config.late_fee_rate), minimum)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def save_payment(self, payment: Payment) -> None:
        """Save payment guarded by its version"""
        payment.updated_at = self.clock.now()
        payment.version = self.storage.save_versioned(
            self.payments_table, payment.id, payment.to_dict(), "payment"
        )

    def _load_loan_payments(self, loan_id: str) -> List[Payment]:
        return [Payment.from_dict(data)
                for data in self.storage.find(self.payments_table, {'loan_id': loan_id})]

    def _borrower_pending_payments(self, borrower_id: str, actor: Optional[Actor] = None) -> List[Payment]:
        payments = []
        for loan in self.loan_manager.get_borrower_loans(borrower_id):
            if loan.status != LoanStatus.ACTIVE:
                continue
            if actor is not None and not is_permitted(actor, Action.VIEW_PAYMENTS, loan):
                continue
            payments.extend(p for p in self._load_loan_payments(loan.id)
                            if p.status == PaymentStatus.PENDING)
        return payments

    def _require_active(self, loan: Loan, attempted: str) -> None:
        if loan.status != LoanStatus.ACTIVE:
            raise InvalidTransitionError(
                f"Loan {loan.loan_number} is not active (status: {loan.status.value})",
                loan.id,
                loan.status.value,
                attempted
            )
