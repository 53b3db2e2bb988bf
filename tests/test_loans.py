"""
Test suite for loans module

Tests loan applications and every lifecycle transition: approval, rejection,
activation with schedule generation, completion and default, including the
illegal-transition, authorization and concurrency guards.
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timezone

from loan_servicing.audit import AuditEventType
from loan_servicing.currency import Money, Currency
from loan_servicing.exceptions import (
    AuthorizationError, ConcurrencyConflict, InvalidTermError,
    InvalidTransitionError, NotFoundError, ValidationError
)
from loan_servicing.loans import Loan, LoanStatus
from loan_servicing.payments import PaymentStatus


def usd(amount: str) -> Money:
    return Money(Decimal(amount), Currency.USD)


class TestLoanApplication:
    """Test loan application"""

    def test_apply_creates_pending_loan(self, pending_loan, borrower):
        assert pending_loan.status == LoanStatus.PENDING
        assert pending_loan.borrower_id == borrower.user_id
        assert pending_loan.principal_amount == usd("12000.00")
        assert pending_loan.interest_rate == Decimal("12.00")
        assert pending_loan.term_months == 12
        assert pending_loan.approved_amount is None
        assert pending_loan.outstanding_balance == usd("0.00")
        assert pending_loan.lender_id is None
        assert pending_loan.purpose == "Home renovation"

    def test_total_amount_includes_simple_interest(self, pending_loan):
        # 12000 + 12000 * 12 * 12 / 1200
        assert pending_loan.total_amount == usd("13440.00")

    def test_loan_number_format(self, pending_loan):
        assert pending_loan.loan_number.startswith("LN-")
        suffix = pending_loan.loan_number[3:]
        assert len(suffix) == 12
        assert suffix == suffix.upper()

    def test_loan_numbers_unique(self, loan_manager, borrower):
        numbers = {
            loan_manager.apply(borrower, "personal", Decimal("500"), Decimal("5"), 6).loan_number
            for _ in range(20)
        }
        assert len(numbers) == 20

    def test_rate_quantized_to_two_places(self, loan_manager, borrower):
        loan = loan_manager.apply(borrower, "personal", Decimal("500"), Decimal("7.125"), 6)
        assert loan.interest_rate == Decimal("7.13")

    def test_apply_persists_loan(self, loan_manager, pending_loan):
        loaded = loan_manager.get_loan(pending_loan.id)
        assert loaded.loan_number == pending_loan.loan_number
        assert loaded.status == LoanStatus.PENDING
        assert loaded.version == 1

    def test_apply_logs_audit_event(self, audit, pending_loan, borrower):
        events = audit.get_events_for_entity("loan", pending_loan.id)
        assert len(events) == 1
        assert events[0].event_type == AuditEventType.LOAN_APPLIED
        assert events[0].user_id == borrower.user_id

    @pytest.mark.parametrize("principal,rate,term", [
        ("0", "5", 12),
        ("-100", "5", 12),
        ("1000", "-1", 12),
        ("1000", "5", 0),
        ("1000", "5", -6),
    ])
    def test_invalid_terms_rejected(self, loan_manager, borrower, principal, rate, term):
        with pytest.raises(InvalidTermError):
            loan_manager.apply(borrower, "personal", Decimal(principal), Decimal(rate), term)

    @pytest.mark.parametrize("principal", ["NaN", "Infinity", "1e27"])
    def test_principal_must_be_finite_and_bounded(self, loan_manager, borrower, principal):
        with pytest.raises(ValidationError):
            loan_manager.apply(borrower, "personal", Decimal(principal), Decimal("5"), 12)

    def test_loan_type_required(self, loan_manager, borrower):
        with pytest.raises(ValidationError):
            loan_manager.apply(borrower, "  ", Decimal("1000"), Decimal("5"), 12)

    def test_only_borrowers_apply(self, loan_manager, lender, admin):
        for actor in (lender, admin):
            with pytest.raises(AuthorizationError):
                loan_manager.apply(actor, "personal", Decimal("1000"), Decimal("5"), 12)

    def test_explicit_currency(self, loan_manager, borrower):
        loan = loan_manager.apply(borrower, "personal", Decimal("1000"), Decimal("5"), 12, currency=Currency.EUR)
        assert loan.currency == Currency.EUR
        assert loan_manager.get_loan(loan.id).principal_amount == Money(Decimal("1000"), Currency.EUR)


class TestLoanApproval:
    """Test loan approval"""

    def test_approve_pending_loan(self, loan_manager, ledger, pending_loan, lender, clock):
        loan = loan_manager.approve(pending_loan.id, lender, Decimal("10000.00"))

        assert loan.status == LoanStatus.APPROVED
        assert loan.approved_amount == usd("10000.00")
        assert loan.approved_at == clock.now()
        assert loan.lender_id == lender.user_id
        assert loan.loan_officer_id == lender.user_id

    def test_approve_never_creates_payments(self, ledger, approved_loan):
        assert ledger.get_loan_payments(approved_loan.id) == []

    def test_rate_override_recomputes_total(self, loan_manager, ledger, pending_loan, admin):
        loan = loan_manager.approve(pending_loan.id, admin, Decimal("10000.00"), interest_rate=Decimal("6"))

        assert loan.interest_rate == Decimal("6.00")
        # 10000 + 10000 * 6 * 12 / 1200
        assert loan.total_amount == usd("10600.00")

    def test_explicit_lender_and_officer(self, loan_manager, ledger, pending_loan, admin, officer):
        loan = loan_manager.approve(
            pending_loan.id, admin, Decimal("12000"), lender_id="lender-9", loan_officer_id=officer.user_id
        )
        assert loan.lender_id == "lender-9"
        assert loan.loan_officer_id == officer.user_id

    def test_negative_approved_amount(self, loan_manager, pending_loan, lender):
        with pytest.raises(ValidationError):
            loan_manager.approve(pending_loan.id, lender, Decimal("-1"))
        assert loan_manager.get_loan(pending_loan.id).status == LoanStatus.PENDING

    def test_approve_non_pending_fails(self, loan_manager, approved_loan, lender):
        with pytest.raises(InvalidTransitionError) as exc_info:
            loan_manager.approve(approved_loan.id, lender, Decimal("12000"))

        error = exc_info.value
        assert error.current_status == "approved"
        assert error.attempted == "approve"
        assert error.context["loan_id"] == approved_loan.id

    def test_borrower_cannot_approve(self, loan_manager, pending_loan, borrower):
        with pytest.raises(AuthorizationError):
            loan_manager.approve(pending_loan.id, borrower, Decimal("12000"))

    def test_loan_officer_cannot_approve(self, loan_manager, pending_loan, officer):
        with pytest.raises(AuthorizationError):
            loan_manager.approve(pending_loan.id, officer, Decimal("12000"))

    def test_unknown_loan(self, loan_manager, lender):
        with pytest.raises(NotFoundError):
            loan_manager.approve("missing", lender, Decimal("100"))


class TestLoanRejection:
    """Test loan rejection"""

    def test_reject_pending_loan(self, loan_manager, pending_loan, lender, clock):
        loan = loan_manager.reject(pending_loan.id, lender, "Insufficient income")

        assert loan.status == LoanStatus.REJECTED
        assert loan.rejection_reason == "Insufficient income"
        assert loan.rejected_at == clock.now()

    def test_reason_required(self, loan_manager, pending_loan, lender):
        with pytest.raises(ValidationError):
            loan_manager.reject(pending_loan.id, lender, "   ")

    def test_reason_length_limited(self, loan_manager, pending_loan, lender):
        with pytest.raises(ValidationError):
            loan_manager.reject(pending_loan.id, lender, "x" * 501)

    def test_reject_non_pending_fails(self, loan_manager, approved_loan, lender):
        with pytest.raises(InvalidTransitionError):
            loan_manager.reject(approved_loan.id, lender, "Changed our mind")

    def test_rejection_is_terminal(self, loan_manager, ledger, pending_loan, lender):
        loan_manager.reject(pending_loan.id, lender, "No")

        with pytest.raises(InvalidTransitionError):
            loan_manager.approve(pending_loan.id, lender, Decimal("12000"))
        with pytest.raises(InvalidTransitionError):
            loan_manager.reject(pending_loan.id, lender, "No again")


class TestLoanActivation:
    """Test activation and schedule materialization"""

    def test_activate_approved_loan(self, active_loan):
        assert active_loan.status == LoanStatus.ACTIVE
        assert active_loan.start_date == date(2024, 1, 1)
        assert active_loan.disbursement_date == date(2024, 1, 1)
        assert active_loan.first_payment_date == date(2024, 2, 1)

    def test_outstanding_balance_includes_simple_interest(self, active_loan):
        assert active_loan.outstanding_balance == usd("13440.00")

    def test_schedule_generated(self, ledger, active_loan):
        payments = ledger.get_loan_payments(active_loan.id)

        assert len(payments) == 12
        assert all(p.status == PaymentStatus.PENDING for p in payments)
        assert [p.installment_number for p in payments] == list(range(1, 13))
        assert payments[0].due_date == date(2024, 2, 1)
        assert payments[-1].due_date == date(2025, 1, 1)
        assert payments[0].amount == usd("1066.19")
        assert payments[-1].amount == usd("271.91")

        total = sum((p.amount.amount for p in payments), Decimal("0"))
        assert total == Decimal("12000.00")

    def test_schedule_uses_approved_amount(self, loan_manager, ledger, pending_loan, lender):
        loan_manager.approve(pending_loan.id, lender, Decimal("6000.00"))
        loan = loan_manager.activate(pending_loan.id, lender, date(2024, 1, 1), date(2024, 2, 1))

        payments = ledger.get_loan_payments(loan.id)
        assert sum((p.amount.amount for p in payments), Decimal("0")) == Decimal("6000.00")
        assert loan.outstanding_balance == usd("6720.00")

    def test_activation_notes(self, loan_manager, approved_loan, lender):
        loan = loan_manager.activate(
            approved_loan.id, lender, date(2024, 1, 1), date(2024, 1, 1), notes="Wired to checking"
        )
        assert loan.notes == "Wired to checking"

    def test_first_payment_before_start_rejected(self, loan_manager, approved_loan, lender):
        with pytest.raises(ValidationError):
            loan_manager.activate(approved_loan.id, lender, date(2024, 2, 1), date(2024, 1, 1))

    def test_only_approved_loans_can_be_activated(self, loan_manager, ledger, pending_loan, lender):
        with pytest.raises(InvalidTransitionError) as exc_info:
            loan_manager.activate(pending_loan.id, lender, date(2024, 1, 1), date(2024, 2, 1))

        assert "Only approved loans can be activated" in str(exc_info.value)
        assert exc_info.value.current_status == "pending"
        assert ledger.get_loan_payments(pending_loan.id) == []

    def test_double_activation_keeps_single_schedule(self, loan_manager, ledger, active_loan, lender):
        with pytest.raises(InvalidTransitionError):
            loan_manager.activate(active_loan.id, lender, date(2024, 1, 1), date(2024, 2, 1))

        assert len(ledger.get_loan_payments(active_loan.id)) == 12

    def test_borrower_cannot_activate(self, loan_manager, approved_loan, borrower):
        with pytest.raises(AuthorizationError):
            loan_manager.activate(approved_loan.id, borrower, date(2024, 1, 1), date(2024, 2, 1))

    @pytest.mark.parametrize("term,final", [(24, "1573.21"), (60, "2876.04")])
    def test_multi_year_loan_activates(self, loan_manager, ledger, borrower, lender, term, final):
        """Interest-bearing loans beyond a year schedule the repayable total"""
        loan = loan_manager.apply(borrower, "auto", Decimal("10000"), Decimal("12"), term)
        loan_manager.approve(loan.id, lender, Decimal("10000"))

        activated = loan_manager.activate(loan.id, lender, date(2024, 1, 1), date(2024, 2, 1))

        rows = ledger.get_loan_payments(loan.id)
        assert activated.status == LoanStatus.ACTIVE
        assert len(rows) == term
        assert all(p.amount.is_positive() for p in rows)
        assert rows[-1].amount == usd(final)
        total = sum((p.amount.amount for p in rows), Decimal("0"))
        assert usd(str(total)) == activated.outstanding_balance

    def test_failure_mid_schedule_rolls_back(self, loan_manager, ledger, approved_loan, lender, audit, monkeypatch):
        """A crash between delete and insert must not leave a half-written ledger"""
        original_save = ledger.save_payment
        calls = {"count": 0}

        def flaky_save(payment):
            calls["count"] += 1
            if calls["count"] == 3:
                raise RuntimeError("disk full")
            original_save(payment)

        monkeypatch.setattr(ledger, "save_payment", flaky_save)
        events_before = audit.count_events()

        with pytest.raises(RuntimeError):
            loan_manager.activate(approved_loan.id, lender, date(2024, 1, 1), date(2024, 2, 1))

        reloaded = loan_manager.get_loan(approved_loan.id)
        assert reloaded.status == LoanStatus.APPROVED
        assert reloaded.start_date is None
        assert ledger.get_loan_payments(approved_loan.id) == []
        assert audit.count_events() == events_before

    def test_total_repayable_basis(self, storage, audit, clock, config, borrower, lender):
        from loan_servicing.loans import LoanManager
        from loan_servicing.payments import PaymentLedger

        config.schedule_basis = "total_repayable"
        manager = LoanManager(storage, audit, clock, config)
        ledger = PaymentLedger(storage, audit, manager, clock, config)

        loan = manager.apply(borrower, "personal", Decimal("1000"), Decimal("12"), 12)
        manager.approve(loan.id, lender, Decimal("1000"))
        loan = manager.activate(loan.id, lender, date(2024, 1, 1), date(2024, 2, 1))

        payments = ledger.get_loan_payments(loan.id)
        assert sum((p.amount.amount for p in payments), Decimal("0")) == Decimal("1120.00")
        assert loan.outstanding_balance == usd("1120.00")


class TestLoanDefault:
    """Test administrative default"""

    def test_admin_marks_active_loan_defaulted(self, loan_manager, active_loan, admin, clock):
        clock.advance(days=120)
        loan = loan_manager.mark_defaulted(active_loan.id, admin, reason="120 days past due")

        assert loan.status == LoanStatus.DEFAULTED
        assert loan.defaulted_at == clock.now()
        assert loan.notes == "120 days past due"

    def test_lender_cannot_mark_default(self, loan_manager, active_loan, lender):
        with pytest.raises(AuthorizationError):
            loan_manager.mark_defaulted(active_loan.id, lender)

    def test_default_requires_active(self, loan_manager, approved_loan, admin):
        with pytest.raises(InvalidTransitionError):
            loan_manager.mark_defaulted(approved_loan.id, admin)

    def test_default_is_terminal(self, loan_manager, active_loan, admin, lender):
        loan_manager.mark_defaulted(active_loan.id, admin)
        with pytest.raises(InvalidTransitionError):
            loan_manager.mark_defaulted(active_loan.id, admin)
        with pytest.raises(InvalidTransitionError):
            loan_manager.activate(active_loan.id, lender, date(2024, 1, 1), date(2024, 2, 1))


class TestLoanCompletion:
    """Test system-triggered completion"""

    def test_complete_requires_active(self, loan_manager, approved_loan):
        with pytest.raises(InvalidTransitionError):
            loan_manager.complete(approved_loan)

    def test_complete_active_loan(self, loan_manager, active_loan, clock):
        loan = loan_manager.complete(loan_manager.get_loan(active_loan.id))
        assert loan.status == LoanStatus.COMPLETED
        assert loan.completed_at == clock.now()
        assert LoanStatus.COMPLETED.is_terminal


class TestLoanQueries:
    """Test loan lookups"""

    def test_require_loan_missing(self, loan_manager):
        with pytest.raises(NotFoundError) as exc_info:
            loan_manager.require_loan("nope")
        assert exc_info.value.entity_type == "loan"

    def test_get_loan_missing(self, loan_manager):
        assert loan_manager.get_loan("nope") is None

    def test_get_loan_by_number(self, loan_manager, pending_loan):
        assert loan_manager.get_loan_by_number(pending_loan.loan_number).id == pending_loan.id
        assert loan_manager.get_loan_by_number("LN-MISSING") is None

    def test_get_borrower_loans(self, loan_manager, pending_loan, borrower, other_borrower, clock):
        clock.advance(hours=1)
        second = loan_manager.apply(borrower, "auto", Decimal("2000"), Decimal("4"), 24)
        loan_manager.apply(other_borrower, "auto", Decimal("3000"), Decimal("4"), 24)

        loans = loan_manager.get_borrower_loans(borrower.user_id)
        assert [l.id for l in loans] == [second.id, pending_loan.id]

    def test_get_loans_by_status(self, loan_manager, ledger, pending_loan, approved_loan):
        assert [l.id for l in loan_manager.get_loans_by_status(LoanStatus.APPROVED)] == [approved_loan.id]
        assert loan_manager.get_loans_by_status(LoanStatus.PENDING) == []

    def test_view_loan_scopes(self, loan_manager, approved_loan, borrower, other_borrower, officer, admin, lender):
        from loan_servicing.authorization import Actor, Role

        assert loan_manager.view_loan(approved_loan.id, borrower).id == approved_loan.id
        assert loan_manager.view_loan(approved_loan.id, officer).id == approved_loan.id
        assert loan_manager.view_loan(approved_loan.id, admin).id == approved_loan.id
        assert loan_manager.view_loan(approved_loan.id, lender).id == approved_loan.id

        with pytest.raises(AuthorizationError):
            loan_manager.view_loan(approved_loan.id, other_borrower)
        with pytest.raises(AuthorizationError):
            loan_manager.view_loan(approved_loan.id, Actor("officer-2", Role.LOAN_OFFICER))


class TestLoanPersistence:
    """Test serialization and versioned saves"""

    def test_round_trip(self, loan_manager, active_loan):
        loaded = loan_manager.get_loan(active_loan.id)
        assert Loan.from_dict(loaded.to_dict()) == loaded
        assert loaded.approved_amount == usd("12000.00")
        assert loaded.first_payment_date == date(2024, 2, 1)
        assert loaded.approved_at.tzinfo is not None

    def test_version_increments_per_transition(self, loan_manager, active_loan):
        # apply, approve, activate
        assert loan_manager.get_loan(active_loan.id).version == 3

    def test_stale_write_raises_conflict(self, loan_manager, pending_loan):
        first = loan_manager.get_loan(pending_loan.id)
        second = loan_manager.get_loan(pending_loan.id)

        first.notes = "first writer"
        loan_manager.save_loan(first)

        second.notes = "second writer"
        with pytest.raises(ConcurrencyConflict) as exc_info:
            loan_manager.save_loan(second)

        assert exc_info.value.context["expected_version"] == 1
        assert exc_info.value.context["actual_version"] == 2
        assert loan_manager.get_loan(pending_loan.id).notes == "first writer"

    def test_transitions_are_audited(self, audit, loan_manager, active_loan):
        events = audit.get_events_for_entity("loan", active_loan.id)
        types = [e.event_type for e in events]

        assert types == [
            AuditEventType.LOAN_APPLIED,
            AuditEventType.LOAN_APPROVED,
            AuditEventType.SCHEDULE_GENERATED,
            AuditEventType.LOAN_ACTIVATED,
        ]
        assert audit.verify_integrity()["valid"]
