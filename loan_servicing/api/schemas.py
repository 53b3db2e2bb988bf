"""
Pydantic schemas for API requests and responses
"""

from decimal import Decimal
from datetime import date
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

from ..currency import MAX_AMOUNT, Money
from ..loans import Loan
from ..payments import Payment


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (USD, EUR, etc.)")

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


class ApplyLoanRequest(BaseModel):
    loan_type: str = Field(..., min_length=1, max_length=100)
    principal_amount: Decimal = Field(..., gt=0, le=MAX_AMOUNT, allow_inf_nan=False)
    interest_rate: Decimal = Field(..., ge=0, le=100, description="Annual percentage rate")
    term_months: int = Field(..., gt=0, le=600)
    purpose: Optional[str] = Field(None, max_length=1000)
    employment_status: Optional[str] = None
    currency: Optional[str] = Field(None, description="Defaults to the configured currency")


class ApproveLoanRequest(BaseModel):
    approved_amount: Decimal = Field(..., ge=0, le=MAX_AMOUNT, allow_inf_nan=False)
    interest_rate: Optional[Decimal] = Field(None, ge=0, le=100)
    lender_id: Optional[str] = None
    loan_officer_id: Optional[str] = None


class RejectLoanRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class ActivateLoanRequest(BaseModel):
    start_date: date
    first_payment_date: date
    notes: Optional[str] = None


class DefaultLoanRequest(BaseModel):
    reason: Optional[str] = None


class RecordPaymentRequest(BaseModel):
    payment_method: str
    transaction_id: Optional[str] = None


class VerifyPaymentRequest(BaseModel):
    action: str = Field(..., pattern="^(approve|reject)$")
    reason: Optional[str] = Field(None, max_length=500)


def loan_to_response(loan: Loan) -> Dict[str, Any]:
    return {
        "id": loan.id,
        "loan_number": loan.loan_number,
        "borrower_id": loan.borrower_id,
        "lender_id": loan.lender_id,
        "loan_officer_id": loan.loan_officer_id,
        "loan_type": loan.loan_type,
        "purpose": loan.purpose,
        "employment_status": loan.employment_status,
        "status": loan.status.value,
        "principal_amount": MoneyModel.from_money(loan.principal_amount).dict(),
        "approved_amount": MoneyModel.from_money(loan.approved_amount).dict() if loan.approved_amount else None,
        "interest_rate": str(loan.interest_rate),
        "term_months": loan.term_months,
        "total_amount": MoneyModel.from_money(loan.total_amount).dict(),
        "outstanding_balance": MoneyModel.from_money(loan.outstanding_balance).dict(),
        "approved_at": loan.approved_at.isoformat() if loan.approved_at else None,
        "rejected_at": loan.rejected_at.isoformat() if loan.rejected_at else None,
        "rejection_reason": loan.rejection_reason,
        "start_date": loan.start_date.isoformat() if loan.start_date else None,
        "first_payment_date": loan.first_payment_date.isoformat() if loan.first_payment_date else None,
        "disbursement_date": loan.disbursement_date.isoformat() if loan.disbursement_date else None,
        "completed_at": loan.completed_at.isoformat() if loan.completed_at else None,
        "defaulted_at": loan.defaulted_at.isoformat() if loan.defaulted_at else None,
        "notes": loan.notes,
        "version": loan.version
    }


def payment_to_response(payment: Payment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "loan_id": payment.loan_id,
        "installment_number": payment.installment_number,
        "amount": MoneyModel.from_money(payment.amount).dict(),
        "due_date": payment.due_date.isoformat(),
        "status": payment.status.value,
        "paid_date": payment.paid_date.isoformat() if payment.paid_date else None,
        "payment_method": payment.payment_method.value if payment.payment_method else None,
        "transaction_id": payment.transaction_id,
        "has_proof": payment.proof_reference is not None,
        "verified_by": payment.verified_by,
        "verified_at": payment.verified_at.isoformat() if payment.verified_at else None,
        "rejection_reason": payment.rejection_reason
    }
