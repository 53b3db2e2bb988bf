"""
Shared fixtures for the loan servicing test suite
"""

import pytest
from datetime import date, datetime, timezone
from decimal import Decimal

from loan_servicing.audit import AuditTrail
from loan_servicing.authorization import Actor, Role
from loan_servicing.clock import FixedClock
from loan_servicing.config import LoanServicingConfig
from loan_servicing.documents import InMemoryDocumentStore
from loan_servicing.loans import LoanManager
from loan_servicing.payments import PaymentLedger
from loan_servicing.storage import InMemoryStorage
from loan_servicing.verification import VerificationWorkflow


@pytest.fixture
def config():
    return LoanServicingConfig(
        _env_file=None,
        database_url="memory",
        jwt_secret="test-secret",
        document_root="unused",
    )


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit(storage, clock):
    return AuditTrail(storage, clock)


@pytest.fixture
def loan_manager(storage, audit, clock, config):
    return LoanManager(storage, audit, clock, config)


@pytest.fixture
def ledger(storage, audit, loan_manager, clock, config):
    return PaymentLedger(storage, audit, loan_manager, clock, config)


@pytest.fixture
def documents():
    return InMemoryDocumentStore()


@pytest.fixture
def verification(storage, audit, ledger, documents, clock, config):
    return VerificationWorkflow(storage, audit, ledger, documents, clock, config)


@pytest.fixture
def borrower():
    return Actor("borrower-1", Role.BORROWER)


@pytest.fixture
def other_borrower():
    return Actor("borrower-2", Role.BORROWER)


@pytest.fixture
def lender():
    return Actor("lender-1", Role.LENDER)


@pytest.fixture
def officer():
    return Actor("officer-1", Role.LOAN_OFFICER)


@pytest.fixture
def admin():
    return Actor("admin-1", Role.ADMIN)


@pytest.fixture
def pending_loan(loan_manager, borrower):
    return loan_manager.apply(
        borrower,
        loan_type="personal",
        principal_amount=Decimal("12000.00"),
        interest_rate=Decimal("12"),
        term_months=12,
        purpose="Home renovation",
        employment_status="employed"
    )


@pytest.fixture
def approved_loan(loan_manager, ledger, pending_loan, lender, officer):
    return loan_manager.approve(
        pending_loan.id, lender, Decimal("12000.00"), loan_officer_id=officer.user_id
    )


@pytest.fixture
def active_loan(loan_manager, approved_loan, lender):
    return loan_manager.activate(
        approved_loan.id, lender, start_date=date(2024, 1, 1), first_payment_date=date(2024, 2, 1)
    )


@pytest.fixture
def zero_rate_loan(loan_manager, ledger, borrower, lender):
    """1000.00 at 0% over 3 months, activated"""
    loan = loan_manager.apply(
        borrower,
        loan_type="personal",
        principal_amount=Decimal("1000.00"),
        interest_rate=Decimal("0"),
        term_months=3
    )
    loan_manager.approve(loan.id, lender, Decimal("1000.00"))
    return loan_manager.activate(
        loan.id, lender, start_date=date(2024, 1, 1), first_payment_date=date(2024, 1, 15)
    )
