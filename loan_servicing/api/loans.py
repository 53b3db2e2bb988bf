"""
Loan endpoints
"""

from fastapi import APIRouter, Depends, status

from .auth import LoanServicingSystem, get_current_actor, get_system
from .schemas import (
    ApplyLoanRequest, ApproveLoanRequest, RejectLoanRequest, ActivateLoanRequest,
    DefaultLoanRequest, RecordPaymentRequest, loan_to_response, payment_to_response
)
from ..authorization import Actor
from ..currency import Currency
from ..exceptions import ValidationError


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def apply_for_loan(
    request: ApplyLoanRequest,
    actor: Actor = Depends(get_current_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """Submit a loan application"""
    currency = None
    if request.currency:
        try:
            currency = Currency[request.currency.upper()]
        except KeyError:
            raise ValidationError(f"Unsupported currency: {request.currency}", {"currency": request.currency})

    loan = system.loan_manager.apply(
        actor=actor,
        loan_type=request.loan_type,
        principal_amount=request.principal_amount,
        interest_rate=request.interest_rate,
        term_months=request.term_months,
        purpose=request.purpose,
        employment_status=request.employment_status,
        currency=currency
    )
    return loan_to_response(loan)


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    actor: Actor = Depends(get_current_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """Get loan details"""
    return loan_to_response(system.loan_manager.view_loan(loan_id, actor))


@router.post("/{loan_id}/approve")
async def approve_loan(
    loan_id: str,
    request: ApproveLoanRequest,
    actor: Actor = Depends(get_current_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """Approve a pending loan"""
    loan = system.loan_manager.approve(
        loan_id,
        actor,
        approved_amount=request.approved_amount,
        interest_rate=request.interest_rate,
        lender_id=request.lender_id,
        loan_officer_id=request.loan_officer_id
    )
    return loan_to_response(loan)


@router.post("/{loan_id}/reject")
async def reject_loan(
    loan_id: str,
    request: RejectLoanRequest,
    actor: Actor = Depends(get_current_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """Reject a pending loan"""
    return loan_to_response(system.loan_manager.reject(loan_id, actor, request.reason))


@router.post("/{loan_id}/activate")
async def activate_loan(
    loan_id: str,
    request: ActivateLoanRequest,
    actor: Actor = Depends(get_current_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """Disburse an approved loan and generate its payment schedule"""
    loan = system.loan_manager.activate(
        loan_id,
        actor,
        start_date=request.start_date,
        first_payment_date=request.first_payment_date,
        notes=request.notes
    )
    payments = system.ledger.get_loan_payments(loan.id)
    return {
        "loan": loan_to_response(loan),
        "payments": [payment_to_response(p) for p in payments]
    }


@router.post("/{loan_id}/default")
async def mark_loan_defaulted(
    loan_id: str,
    request: DefaultLoanRequest,
    actor: Actor = Depends(get_current_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """Move an active loan into default"""
    return loan_to_response(system.loan_manager.mark_defaulted(loan_id, actor, request.reason))


@router.get("/{loan_id}/payments")
async def get_loan_payments(
    loan_id: str,
    actor: Actor = Depends(get_current_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """Get the payment ledger of a loan, ordered by due date"""
    payments = system.ledger.view_loan_payments(loan_id, actor)
    return {
        "loan_id": loan_id,
        "payments": [payment_to_response(p) for p in payments],
        "count": len(payments)
    }


@router.post("/{loan_id}/payments/next")
async def record_next_payment(
    loan_id: str,
    request: RecordPaymentRequest,
    actor: Actor = Depends(get_current_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """Record the earliest pending installment of a loan"""
    payment, loan = system.ledger.record_next_payment(
        loan_id, actor, request.payment_method, request.transaction_id
    )
    return {
        "payment": payment_to_response(payment),
        "loan": loan_to_response(loan)
    }
