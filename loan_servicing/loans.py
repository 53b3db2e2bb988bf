"""
Loan Module

Handles loan applications and the loan lifecycle state machine:
pending -> approved -> active -> completed | defaulted, and pending -> rejected.
Activation materializes the repayment schedule through the payment ledger.
"""

from decimal import Decimal
from datetime import datetime, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, TYPE_CHECKING
from enum import Enum
import uuid

from .amortization import compute_schedule, total_simple_interest
from .audit import AuditTrail, AuditEventType
from .authorization import Action, Actor, authorize
from .clock import Clock, SystemClock
from .config import LoanServicingConfig, get_config
from .currency import Money, Currency, quantize_rate
from .exceptions import InvalidTransitionError, InvalidTermError, NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord

if TYPE_CHECKING:
    from .payments import PaymentLedger


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"        # Application submitted, awaiting review
    APPROVED = "approved"      # Approved, funds not yet disbursed
    REJECTED = "rejected"      # Application declined
    ACTIVE = "active"          # Disbursed and in repayment
    COMPLETED = "completed"    # Fully repaid
    DEFAULTED = "defaulted"    # Written into default by an administrator

    @property
    def is_terminal(self) -> bool:
        return self in (LoanStatus.COMPLETED, LoanStatus.REJECTED, LoanStatus.DEFAULTED)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _parse_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Loan(StorageRecord):
    """Loan application and servicing record"""
    loan_number: str
    borrower_id: str
    loan_type: str
    principal_amount: Money
    interest_rate: Decimal             # Annual percentage, e.g. 12.00 for 12%
    term_months: int
    total_amount: Money                # Financed amount plus simple interest
    status: LoanStatus = LoanStatus.PENDING
    purpose: Optional[str] = None
    employment_status: Optional[str] = None

    # Parties
    lender_id: Optional[str] = None
    loan_officer_id: Optional[str] = None

    # Servicing amounts
    approved_amount: Optional[Money] = None
    outstanding_balance: Money = None

    # Lifecycle stamps, each set once by its transition
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    start_date: Optional[date] = None
    first_payment_date: Optional[date] = None
    disbursement_date: Optional[date] = None
    completed_at: Optional[datetime] = None
    defaulted_at: Optional[datetime] = None

    rejection_reason: Optional[str] = None
    notes: Optional[str] = None
    version: int = 0

    def __post_init__(self):
        if self.outstanding_balance is None:
            self.outstanding_balance = Money.zero(self.principal_amount.currency)

    @property
    def currency(self) -> Currency:
        return self.principal_amount.currency

    @property
    def financed_amount(self) -> Money:
        """Amount actually financed: the approved amount once set, else the request"""
        return self.approved_amount if self.approved_amount is not None else self.principal_amount

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_number': self.loan_number,
            'borrower_id': self.borrower_id,
            'loan_type': self.loan_type,
            'currency': self.currency.code,
            'principal_amount': str(self.principal_amount.amount),
            'interest_rate': str(self.interest_rate),
            'term_months': self.term_months,
            'total_amount': str(self.total_amount.amount),
            'status': self.status.value,
            'purpose': self.purpose,
            'employment_status': self.employment_status,
            'lender_id': self.lender_id,
            'loan_officer_id': self.loan_officer_id,
            'approved_amount': str(self.approved_amount.amount) if self.approved_amount is not None else None,
            'outstanding_balance': str(self.outstanding_balance.amount),
            'approved_at': _iso(self.approved_at),
            'rejected_at': _iso(self.rejected_at),
            'start_date': _iso(self.start_date),
            'first_payment_date': _iso(self.first_payment_date),
            'disbursement_date': _iso(self.disbursement_date),
            'completed_at': _iso(self.completed_at),
            'defaulted_at': _iso(self.defaulted_at),
            'rejection_reason': self.rejection_reason,
            'notes': self.notes,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        currency = Currency[data['currency']]

        def money(field: str) -> Optional[Money]:
            if data.get(field) is None:
                return None
            return Money(Decimal(data[field]), currency)

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_number=data['loan_number'],
            borrower_id=data['borrower_id'],
            loan_type=data['loan_type'],
            principal_amount=money('principal_amount'),
            interest_rate=Decimal(data['interest_rate']),
            term_months=int(data['term_months']),
            total_amount=money('total_amount'),
            status=LoanStatus(data['status']),
            purpose=data.get('purpose'),
            employment_status=data.get('employment_status'),
            lender_id=data.get('lender_id'),
            loan_officer_id=data.get('loan_officer_id'),
            approved_amount=money('approved_amount'),
            outstanding_balance=money('outstanding_balance'),
            approved_at=_parse_datetime(data.get('approved_at')),
            rejected_at=_parse_datetime(data.get('rejected_at')),
            start_date=_parse_date(data.get('start_date')),
            first_payment_date=_parse_date(data.get('first_payment_date')),
            disbursement_date=_parse_date(data.get('disbursement_date')),
            completed_at=_parse_datetime(data.get('completed_at')),
            defaulted_at=_parse_datetime(data.get('defaulted_at')),
            rejection_reason=data.get('rejection_reason'),
            notes=data.get('notes'),
            version=int(data.get('version', 0)),
        )


class LoanManager:
    """
    Manages the loan lifecycle from application through completion
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        clock: Optional[Clock] = None,
        config: Optional[LoanServicingConfig] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.clock = clock or SystemClock()
        self.config = config or get_config()
        self.ledger: Optional['PaymentLedger'] = None
        self.logger = get_logger("loan_servicing.loans")

        self.loans_table = "loans"

    def attach_ledger(self, ledger: 'PaymentLedger') -> None:
        """Wire the payment ledger that activation writes schedules into"""
        self.ledger = ledger

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def apply(
        self,
        actor: Actor,
        loan_type: str,
        principal_amount: Decimal,
        interest_rate: Decimal,
        term_months: int,
        purpose: Optional[str] = None,
        employment_status: Optional[str] = None,
        currency: Optional[Currency] = None
    ) -> Loan:
        """
        Submit a loan application

        Args:
            actor: Applying borrower
            loan_type: Product type (personal, business, ...)
            principal_amount: Requested amount
            interest_rate: Quoted annual percentage rate
            term_months: Requested term
            purpose: Stated purpose
            employment_status: Borrower's employment status
            currency: Loan currency (defaults to configured currency)

        Returns:
            Created Loan in pending status
        """
        authorize(actor, Action.APPLY)

        if not loan_type or not loan_type.strip():
            raise ValidationError("Loan type is required", {"field": "loan_type"})

        currency = currency or Currency[self.config.default_currency]
        principal = Money(principal_amount, currency)
        rate = quantize_rate(interest_rate)
        self._validate_terms(principal, rate, term_months)

        now = self.clock.now()
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_number=self._generate_loan_number(),
            borrower_id=actor.user_id,
            loan_type=loan_type.strip(),
            principal_amount=principal,
            interest_rate=rate,
            term_months=term_months,
            total_amount=principal + total_simple_interest(principal, rate, term_months),
            status=LoanStatus.PENDING,
            purpose=purpose,
            employment_status=employment_status
        )

        with self.storage.atomic():
            self.save_loan(loan)
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_APPLIED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "loan_number": loan.loan_number,
                    "borrower_id": loan.borrower_id,
                    "loan_type": loan.loan_type,
                    "principal_amount": principal.to_string(),
                    "interest_rate": str(rate),
                    "term_months": term_months
                },
                user_id=actor.user_id
            )

        log_action(
            self.logger, "info", f"Loan application submitted: {loan.loan_number}",
            user_id=actor.user_id, action="apply", resource=f"loan:{loan.id}",
            extra={"principal_amount": principal.to_string(), "term_months": term_months}
        )

        return loan

    def approve(
        self,
        loan_id: str,
        actor: Actor,
        approved_amount: Decimal,
        interest_rate: Optional[Decimal] = None,
        lender_id: Optional[str] = None,
        loan_officer_id: Optional[str] = None
    ) -> Loan:
        """
        Approve a pending loan. Never creates payment rows.

        A rate override recomputes total_amount on the approved amount. The
        lender and the assigned loan officer default to the approver.
        """
        with self.storage.atomic(), self.storage.lock(self.loans_table, loan_id):
            loan = self.require_loan(loan_id)
            authorize(actor, Action.APPROVE, loan)
            self._require_status(loan, LoanStatus.PENDING, "approve")

            approved = Money(approved_amount, loan.currency)
            if approved.is_negative():
                raise ValidationError(
                    "Approved amount cannot be negative",
                    {"loan_id": loan_id, "approved_amount": approved.amount}
                )

            now = self.clock.now()
            loan.status = LoanStatus.APPROVED
            loan.approved_amount = approved
            loan.approved_at = now
            loan.lender_id = lender_id or actor.user_id
            loan.loan_officer_id = loan_officer_id or actor.user_id

            if interest_rate is not None:
                rate = quantize_rate(interest_rate)
                if rate < 0:
                    raise InvalidTermError(
                        "Interest rate cannot be negative",
                        {"loan_id": loan_id, "interest_rate": rate}
                    )
                loan.interest_rate = rate
                loan.total_amount = approved + total_simple_interest(approved, rate, loan.term_months)

            self.save_loan(loan)
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_APPROVED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "approved_amount": approved.to_string(),
                    "interest_rate": str(loan.interest_rate),
                    "rate_overridden": interest_rate is not None,
                    "lender_id": loan.lender_id
                },
                user_id=actor.user_id
            )

        log_action(
            self.logger, "info", f"Loan approved: {loan.loan_number}",
            user_id=actor.user_id, action="approve", resource=f"loan:{loan.id}",
            extra={"approved_amount": approved.to_string()}
        )

        return loan

    def reject(self, loan_id: str, actor: Actor, reason: str) -> Loan:
        """Reject a pending loan. Irreversible."""
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Rejection reason is required", {"loan_id": loan_id})
        max_length = self.config.max_rejection_reason_length
        if len(reason) > max_length:
            raise ValidationError(
                f"Rejection reason must be at most {max_length} characters",
                {"loan_id": loan_id, "length": len(reason)}
            )

        with self.storage.atomic(), self.storage.lock(self.loans_table, loan_id):
            loan = self.require_loan(loan_id)
            authorize(actor, Action.REJECT, loan)
            self._require_status(loan, LoanStatus.PENDING, "reject")

            loan.status = LoanStatus.REJECTED
            loan.rejected_at = self.clock.now()
            loan.rejection_reason = reason

            self.save_loan(loan)
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_REJECTED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"reason": reason},
                user_id=actor.user_id
            )

        log_action(
            self.logger, "info", f"Loan rejected: {loan.loan_number}",
            user_id=actor.user_id, action="reject", resource=f"loan:{loan.id}"
        )

        return loan

    def activate(
        self,
        loan_id: str,
        actor: Actor,
        start_date: date,
        first_payment_date: date,
        notes: Optional[str] = None
    ) -> Loan:
        """
        Disburse an approved loan and materialize its repayment schedule.

        Balance update and schedule regeneration commit together or not at all.

        Args:
            loan_id: Loan to activate
            actor: Approving lender or admin
            start_date: Disbursement date
            first_payment_date: Due date of the first installment
            notes: Optional activation notes

        Returns:
            Active loan

        Raises:
            InvalidTransitionError: If the loan is not approved
            ValidationError: If first_payment_date precedes start_date
        """
        if first_payment_date < start_date:
            raise ValidationError(
                "First payment date cannot be before the start date",
                {
                    "loan_id": loan_id,
                    "start_date": start_date.isoformat(),
                    "first_payment_date": first_payment_date.isoformat()
                }
            )
        if self.ledger is None:
            raise RuntimeError("LoanManager has no payment ledger attached")

        try:
            with self.storage.atomic(), self.storage.lock(self.loans_table, loan_id):
                loan = self.require_loan(loan_id)
                authorize(actor, Action.ACTIVATE, loan)
                if loan.status != LoanStatus.APPROVED:
                    raise InvalidTransitionError(
                        "Only approved loans can be activated",
                        loan.id,
                        loan.status.value,
                        "activate"
                    )

                financed = loan.financed_amount
                repayable = financed + total_simple_interest(financed, loan.interest_rate, loan.term_months)
                schedule = compute_schedule(
                    financed,
                    loan.interest_rate,
                    loan.term_months,
                    first_payment_date,
                    financed_total=repayable if self.config.schedule_basis == "total_repayable" else None
                )

                loan.status = LoanStatus.ACTIVE
                loan.start_date = start_date
                loan.first_payment_date = first_payment_date
                loan.disbursement_date = start_date
                loan.total_amount = repayable
                loan.outstanding_balance = repayable
                if notes:
                    loan.notes = notes

                self.save_loan(loan)
                self.ledger.regenerate_schedule(loan, schedule, actor)
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_ACTIVATED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={
                        "start_date": start_date,
                        "first_payment_date": first_payment_date,
                        "outstanding_balance": repayable.to_string(),
                        "installments": len(schedule)
                    },
                    user_id=actor.user_id
                )
        except Exception as e:
            log_action(
                self.logger, "error", f"Failed to activate loan {loan_id}: {e}",
                user_id=actor.user_id, action="activate", resource=f"loan:{loan_id}"
            )
            raise

        log_action(
            self.logger, "info", f"Loan activated: {loan.loan_number}",
            user_id=actor.user_id, action="activate", resource=f"loan:{loan.id}",
            extra={"outstanding_balance": loan.outstanding_balance.to_string()}
        )

        return loan

    def complete(self, loan: Loan, user_id: Optional[str] = None) -> Loan:
        """
        Close an active loan as repaid. System-triggered by the payment ledger;
        the caller holds the loan's lock and unit of work.
        """
        self._require_status(loan, LoanStatus.ACTIVE, "complete")

        loan.status = LoanStatus.COMPLETED
        loan.completed_at = self.clock.now()
        self.save_loan(loan)
        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_COMPLETED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={"outstanding_balance": loan.outstanding_balance.to_string()},
            user_id=user_id
        )

        log_action(
            self.logger, "info", f"Loan completed: {loan.loan_number}",
            user_id=user_id, action="complete", resource=f"loan:{loan.id}"
        )

        return loan

    def mark_defaulted(self, loan_id: str, actor: Actor, reason: Optional[str] = None) -> Loan:
        """Administratively move an active loan into default"""
        with self.storage.atomic(), self.storage.lock(self.loans_table, loan_id):
            loan = self.require_loan(loan_id)
            authorize(actor, Action.MARK_DEFAULT, loan)
            self._require_status(loan, LoanStatus.ACTIVE, "default")

            loan.status = LoanStatus.DEFAULTED
            loan.defaulted_at = self.clock.now()
            if reason:
                loan.notes = reason

            self.save_loan(loan)
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_DEFAULTED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "reason": reason,
                    "outstanding_balance": loan.outstanding_balance.to_string()
                },
                user_id=actor.user_id
            )

        log_action(
            self.logger, "warning", f"Loan defaulted: {loan.loan_number}",
            user_id=actor.user_id, action="default", resource=f"loan:{loan.id}"
        )

        return loan

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return Loan.from_dict(data)
        return None

    def require_loan(self, loan_id: str) -> Loan:
        """Get loan by ID or raise NotFoundError"""
        loan = self.get_loan(loan_id)
        if loan is None:
            raise NotFoundError("loan", loan_id)
        return loan

    def view_loan(self, loan_id: str, actor: Actor) -> Loan:
        """Get a loan on behalf of an actor allowed to see it"""
        loan = self.require_loan(loan_id)
        authorize(actor, Action.VIEW_LOAN, loan)
        return loan

    def get_loan_by_number(self, loan_number: str) -> Optional[Loan]:
        """Get loan by its human-readable number"""
        matches = self.storage.find(self.loans_table, {'loan_number': loan_number})
        if matches:
            return Loan.from_dict(matches[0])
        return None

    def get_borrower_loans(self, borrower_id: str) -> List[Loan]:
        """All loans for a borrower, newest first"""
        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, {'borrower_id': borrower_id})]
        return sorted(loans, key=lambda l: l.created_at, reverse=True)

    def get_loans_by_status(self, status: LoanStatus) -> List[Loan]:
        """All loans in a given status, oldest first"""
        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, {'status': status.value})]
        return sorted(loans, key=lambda l: l.created_at)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _validate_terms(self, principal: Money, rate: Decimal, term_months: int) -> None:
        if isinstance(term_months, bool) or not isinstance(term_months, int) or term_months <= 0:
            raise InvalidTermError(
                f"Term must be a positive number of months, got {term_months}",
                {"term_months": term_months}
            )
        if not principal.is_positive():
            raise InvalidTermError(
                f"Principal must be positive, got {principal.to_string()}",
                {"principal_amount": principal.amount}
            )
        if rate < 0:
            raise InvalidTermError(
                f"Interest rate cannot be negative, got {rate}",
                {"interest_rate": rate}
            )

    def _require_status(self, loan: Loan, expected: LoanStatus, attempted: str) -> None:
        if loan.status != expected:
            raise InvalidTransitionError(
                f"Cannot {attempted} loan {loan.loan_number} in status {loan.status.value}",
                loan.id,
                loan.status.value,
                attempted
            )

    def _generate_loan_number(self) -> str:
        while True:
            loan_number = f"LN-{uuid.uuid4().hex[:12].upper()}"
            if not self.storage.find(self.loans_table, {'loan_number': loan_number}):
                return loan_number

    def save_loan(self, loan: Loan) -> None:
        """Save loan guarded by its version"""
        loan.updated_at = self.clock.now()
        loan.version = self.storage.save_versioned(self.loans_table, loan.id, loan.to_dict(), "loan")
