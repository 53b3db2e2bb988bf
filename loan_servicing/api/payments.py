"""
Payment endpoints
"""


from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status
from fastapi.responses import Response

from .auth import LoanServicingSystem, get_current_actor, get_system
from .schemas import RecordPaymentRequest, VerifyPaymentRequest, loan_to_response, payment_to_response
from ..authorization import Actor
from ..currency import decimal_from_string


router = APIRouter()


@router.get("/awaiting-verification")
async def get_awaiting_verification(
    loan_id: Optional[str] = Query(None),
    actor: Actor = Depends(get_current_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """Payments awaiting verification that the caller may review"""
    payments = system.verification.get_awaiting_verification(loan_id=loan_id, actor=actor)
    return {
        "payments": [payment_to_response(p) for p in payments],
        "count": len(payments)
    }


@router.get("/upcoming")
async def get_upcoming_payments(
    borrower_id: Optional[str] = Query(None, description="Defaults to the caller"),
    days: Optional[int] = Query(None, gt=0, le=366),
    actor: Actor = Depends(get_current_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """Pending installments due within the upcoming window"""
    payments = system.ledger.get_upcoming_payments(borrower_id or actor.user_id, days, actor=actor)
    return {
        "payments": [payment_to_response(p) for p in payments],
        "count": len(payments)
    }


@router.get("/overdue")
async def get_overdue_payments(
    borrower_id: Optional[str] = Query(None, description="Defaults to the caller"),
    actor: Actor = Depends(get_current_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """Pending installments already past due, with their late fees"""
    payments = system.ledger.get_overdue_payments(borrower_id or actor.user_id, actor=actor)
    results = []
    for payment in payments:
        entry = payment_to_response(payment)
        entry["late_fee"] = str(system.ledger.late_fee_for(payment).amount)
        results.append(entry)
    return {
        "payments": results,
        "count": len(results)
    }


@router.post("/submit", status_code=status.HTTP_201_CREATED)
async def submit_payment(
    loan_id: str = Form(...),
    amount: str = Form(...),
    payment_method: str = Form(...),
    proof: UploadFile = File(...),
    actor: Actor = Depends(get_current_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """Submit a payment with proof for verification"""
    paid = decimal_from_string(amount)
    content = await proof.read()
    payment = system.verification.submit(
        loan_id,
        actor,
        amount=paid,
        method=payment_method,
        proof_content=content,
        proof_filename=proof.filename or "proof",
        content_type=proof.content_type
    )
    return payment_to_response(payment)


@router.post("/{payment_id}/record")
async def record_payment(
    payment_id: str,
    request: RecordPaymentRequest,
    actor: Actor = Depends(get_current_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """Record a scheduled installment as paid"""
    payment, loan = system.ledger.record_payment(
        payment_id, actor, request.payment_method, request.transaction_id
    )
    return {
        "payment": payment_to_response(payment),
        "loan": loan_to_response(loan)
    }


@router.post("/{payment_id}/verify")
async def verify_payment(
    payment_id: str,
    request: VerifyPaymentRequest,
    actor: Actor = Depends(get_current_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """Approve or reject a submitted payment"""
    if request.action == "approve":
        payment, loan = system.verification.approve(payment_id, actor)
        return {
            "payment": payment_to_response(payment),
            "loan": loan_to_response(loan)
        }

    payment = system.verification.reject(payment_id, actor, request.reason)
    return {"payment": payment_to_response(payment)}


@router.get("/{payment_id}/proof")
async def get_payment_proof(
    payment_id: str,
    actor: Actor = Depends(get_current_actor),
    system: LoanServicingSystem = Depends(get_system)
):
    """Download the proof attached to a submitted payment"""
    content = system.verification.open_proof(payment_id, actor)
    return Response(content=content, media_type="application/octet-stream")
