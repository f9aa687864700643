"""
Test suite for the loan lifecycle

Tests application with guarantor validation, approval and rejection,
disbursement, repayment to completion, overpayment protection, reversals,
default and the derived overdue status.
"""

import re
import threading
import pytest
from datetime import date, timedelta
from decimal import Decimal
from hypothesis import given, settings
from hypothesis import strategies as st

from microfinance_core.approvals import Actor, RoleBasedApprovalGateway, Permission
from microfinance_core.audit import AuditTrail, AuditEventType
from microfinance_core.currency import Money, Currency
from microfinance_core.events import DomainEvent, EventDispatcher, EventRecorder
from microfinance_core.exceptions import (
    IncompleteGuarantorInfo, InvalidAmount, InvalidChoice, InvalidStateTransition,
    MissingField, NotFound, OverpaymentRejected, Unauthorized
)
from microfinance_core.ledger import EntryType, Ledger
from microfinance_core.loans import (
    Collateral, Guarantor, LoanLifecycle, LoanState, PaymentMethod, parse_guarantors
)
from microfinance_core.pricing import LoanPricer
from microfinance_core.rates import Frequency, RateSchedule
from microfinance_core.storage import InMemoryStorage, SQLiteStorage


def ngn(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.NGN)


def guarantor_pair():
    return [
        {"name": "Adaeze Okafor", "phone": "08031234567", "address": "12 Broad Street, Lagos"},
        {"name": "Tunde Bakare", "phone": "08037654321", "address": "4 Allen Avenue, Ikeja"},
    ]


class LoanWiring:
    """Builds a loan lifecycle over a given storage backend"""

    def wire(self, storage):
        self.storage = storage
        self.audit = AuditTrail(self.storage)
        self.events = EventDispatcher()
        self.recorder = EventRecorder()
        self.events.subscribe_all(self.recorder)
        self.ledger = Ledger(self.storage, self.audit, Currency.NGN)
        self.pricer = LoanPricer(RateSchedule.default(), Currency.NGN)
        self.gateway = RoleBasedApprovalGateway(audit_trail=self.audit)
        self.loans = LoanLifecycle(
            self.storage, self.ledger, self.pricer, self.gateway, self.events, self.audit
        )
        self.officer = Actor("officer-1")
        self.manager = Actor("manager-1", role="manager")

    def apply(self, principal=100000, frequency="monthly", duration=6, **kwargs):
        kwargs.setdefault("guarantors", guarantor_pair())
        return self.loans.apply_loan(
            client_id=kwargs.pop("client_id", "CL-001"),
            principal=principal,
            frequency=frequency,
            duration_value=duration,
            purpose=kwargs.pop("purpose", "Stock for provisions shop"),
            applied_by=self.officer,
            **kwargs
        )

    def active_loan(self, **kwargs):
        loan = self.apply(**kwargs)
        self.loans.approve_loan(loan.id, self.manager)
        return self.loans.disburse_loan(loan.id, self.manager)


class LoanTestCase(LoanWiring):
    """Shared wiring for loan lifecycle tests"""

    def setup_method(self):
        self.wire(InMemoryStorage())


class TestGuarantors:
    """Both guarantors must be complete"""

    def test_complete_pair(self):
        first, second = parse_guarantors(guarantor_pair())
        assert first == Guarantor("Adaeze Okafor", "08031234567", "12 Broad Street, Lagos")
        assert second.phone == "08037654321"

    def test_accepts_guarantor_objects(self):
        pair = [Guarantor(**g) for g in guarantor_pair()]
        assert parse_guarantors(pair) == tuple(pair)

    def test_missing_phone(self):
        guarantors = guarantor_pair()
        del guarantors[1]["phone"]
        with pytest.raises(IncompleteGuarantorInfo) as exc_info:
            parse_guarantors(guarantors)
        assert exc_info.value.missing_fields == ["guarantor2_phone"]
        assert exc_info.value.field == "guarantor2_phone"

    def test_blank_fields_are_missing(self):
        guarantors = guarantor_pair()
        guarantors[0]["name"] = "   "
        guarantors[1]["address"] = ""
        with pytest.raises(IncompleteGuarantorInfo) as exc_info:
            parse_guarantors(guarantors)
        assert exc_info.value.missing_fields == ["guarantor_name", "guarantor2_address"]

    def test_single_guarantor(self):
        with pytest.raises(IncompleteGuarantorInfo) as exc_info:
            parse_guarantors(guarantor_pair()[:1])
        assert exc_info.value.missing_fields == [
            "guarantor2_name", "guarantor2_phone", "guarantor2_address"
        ]

    def test_no_guarantors(self):
        with pytest.raises(IncompleteGuarantorInfo) as exc_info:
            parse_guarantors(None)
        assert len(exc_info.value.missing_fields) == 6

    def test_three_guarantors(self):
        extra = {"name": "Third", "phone": "0800", "address": "Somewhere"}
        with pytest.raises(IncompleteGuarantorInfo, match="exactly two"):
            parse_guarantors(guarantor_pair() + [extra])


class TestApplication(LoanTestCase):
    """Test loan application"""

    def test_apply_loan(self):
        loan = self.apply(collateral=Collateral("vehicle", ngn(250000), "Toyota Corolla 2008"))

        assert loan.status == LoanState.PENDING_APPROVAL
        assert re.match(r"^LN-\d{8}-00001$", loan.loan_number)
        assert loan.principal_amount == ngn(100000)
        assert loan.frequency == Frequency.MONTHLY
        assert loan.quote.total_repayment == ngn(136000)
        assert loan.installment_amount == ngn('22666.67')
        assert loan.outstanding_balance == ngn(0)
        assert loan.applied_by == "officer-1"

        stored = self.loans.get_loan(loan.id)
        assert stored.quote == loan.quote
        assert stored.guarantors == loan.guarantors
        assert stored.collateral == loan.collateral
        assert stored.status == LoanState.PENDING_APPROVAL

    def test_application_is_audited_and_published(self):
        loan = self.apply()

        events = self.audit.get_events_for_entity("loan", loan.id)
        assert [e.event_type for e in events] == [AuditEventType.LOAN_APPLIED]
        assert events[0].metadata["periodic_rate"] == "0.06"

        applied = self.recorder.of_type(DomainEvent.LOAN_APPLIED)
        assert len(applied) == 1
        assert applied[0].entity_id == loan.id
        assert applied[0].data["status"] == "pending_approval"

    def test_loan_numbers_increase(self):
        first = self.apply()
        second = self.apply(client_id="CL-002")
        assert first.loan_number.endswith("-00001")
        assert second.loan_number.endswith("-00002")
        assert [l.id for l in self.loans.get_client_loans("CL-002")] == [second.id]

    def test_missing_guarantor_phone_creates_nothing(self):
        guarantors = guarantor_pair()
        guarantors[1]["phone"] = None

        with pytest.raises(IncompleteGuarantorInfo) as exc_info:
            self.apply(guarantors=guarantors)

        assert exc_info.value.missing_fields == ["guarantor2_phone"]
        assert self.storage.count("loans") == 0
        assert self.loans.list_loans() == []
        assert self.recorder.events == []

    def test_required_fields(self):
        with pytest.raises(MissingField) as exc_info:
            self.apply(client_id="")
        assert exc_info.value.field == "client_id"

        with pytest.raises(MissingField, match="Purpose is required"):
            self.apply(purpose="  ")

    def test_invalid_terms_create_nothing(self):
        with pytest.raises(InvalidAmount):
            self.apply(principal="-500")
        with pytest.raises(InvalidAmount):
            self.apply(principal=0)
        assert self.storage.count("loans") == 0


class TestDecisions(LoanTestCase):
    """Test approval and rejection"""

    def test_approve(self):
        loan = self.apply()
        approved = self.loans.approve_loan(loan.id, self.manager)

        assert approved.status == LoanState.APPROVED
        assert approved.approved_by == "manager-1"
        assert approved.approved_at is not None
        assert self.recorder.types[-1] == DomainEvent.LOAN_APPROVED

    def test_officer_cannot_approve(self):
        loan = self.apply()

        with pytest.raises(Unauthorized) as exc_info:
            self.loans.approve_loan(loan.id, self.officer)

        assert exc_info.value.action == Permission.APPROVE_LOAN.value
        assert self.loans.get_loan(loan.id).status == LoanState.PENDING_APPROVAL
        denied = self.audit.get_events_by_type(AuditEventType.AUTHORIZATION_DENIED)
        assert denied[0].entity_id == "officer-1"

    def test_approve_twice(self):
        loan = self.apply()
        self.loans.approve_loan(loan.id, self.manager)
        with pytest.raises(InvalidStateTransition) as exc_info:
            self.loans.approve_loan(loan.id, self.manager)
        assert exc_info.value.current_state == "approved"

    def test_reject(self):
        loan = self.apply()
        rejected = self.loans.reject_loan(loan.id, self.manager, "  Insufficient business history ")

        assert rejected.status == LoanState.REJECTED
        assert rejected.rejection_reason == "Insufficient business history"
        assert rejected.rejected_by == "manager-1"

        event = self.recorder.of_type(DomainEvent.LOAN_REJECTED)[0]
        assert event.data["reason"] == "Insufficient business history"

    def test_reject_requires_reason(self):
        loan = self.apply()
        with pytest.raises(MissingField):
            self.loans.reject_loan(loan.id, self.manager, " ")
        assert self.loans.get_loan(loan.id).status == LoanState.PENDING_APPROVAL

    def test_rejected_loan_is_terminal(self):
        loan = self.apply()
        self.loans.reject_loan(loan.id, self.manager, "Declined")

        with pytest.raises(InvalidStateTransition):
            self.loans.approve_loan(loan.id, self.manager)
        with pytest.raises(InvalidStateTransition):
            self.loans.disburse_loan(loan.id, self.manager)

    def test_unknown_loan(self):
        with pytest.raises(NotFound):
            self.loans.approve_loan("no-such-loan", self.manager)


class TestDisbursement(LoanTestCase):
    """Test disbursement and the loan ledger"""

    def test_disburse(self):
        loan = self.apply()
        self.loans.approve_loan(loan.id, self.manager)
        active = self.loans.disburse_loan(loan.id, self.manager, method="mobile_money")

        assert active.status == LoanState.ACTIVE
        assert active.disbursed_by == "manager-1"
        assert active.disbursement_method == PaymentMethod.MOBILE_MONEY
        assert active.outstanding_balance == ngn(136000)

        entries = self.loans.get_ledger_entries(loan.id)
        assert [(e.entry_type, e.amount) for e in entries] == [
            (EntryType.DISBURSEMENT, ngn(100000)),
            (EntryType.INTEREST, ngn(36000)),
        ]
        assert entries[0].reference == f"DISB-{loan.loan_number}"
        assert self.ledger.balance(loan.id) == active.outstanding_balance

        disbursed = self.recorder.of_type(DomainEvent.LOAN_DISBURSED)[0]
        assert disbursed.data["amount"] == "100000.00"
        assert disbursed.data["outstanding_balance"] == "136000.00"

    def test_cannot_disburse_before_approval(self):
        loan = self.apply()
        with pytest.raises(InvalidStateTransition, match="disburse"):
            self.loans.disburse_loan(loan.id, self.manager)
        assert self.ledger.entries(loan.id) == []

    def test_cannot_disburse_twice(self):
        loan = self.active_loan()
        with pytest.raises(InvalidStateTransition):
            self.loans.disburse_loan(loan.id, self.manager)
        assert len(self.ledger.entries(loan.id)) == 2

    def test_officer_cannot_disburse(self):
        loan = self.apply()
        self.loans.approve_loan(loan.id, self.manager)
        with pytest.raises(Unauthorized):
            self.loans.disburse_loan(loan.id, self.officer)
        assert self.loans.get_loan(loan.id).status == LoanState.APPROVED

    def test_invalid_disbursement_method(self):
        loan = self.apply()
        self.loans.approve_loan(loan.id, self.manager)
        with pytest.raises(InvalidChoice) as exc_info:
            self.loans.disburse_loan(loan.id, self.manager, method="barter")
        assert exc_info.value.field == "disbursement_method"


class TestRepayment(LoanTestCase):
    """Test repayments, overpayment protection and completion"""

    def test_partial_repayment(self):
        loan = self.active_loan()
        updated = self.loans.repay_loan(loan.id, "22666.67", self.officer, method="cash", reference="RCPT-1")

        assert updated.status == LoanState.ACTIVE
        assert updated.outstanding_balance == ngn('113333.33')
        assert updated.amount_paid == ngn('22666.67')
        assert updated.installments_paid == 1
        assert self.ledger.balance(loan.id) == updated.outstanding_balance

        entry = self.ledger.entries(loan.id)[-1]
        assert entry.entry_type == EntryType.REPAYMENT
        assert entry.reference == "RCPT-1"
        assert entry.recorded_by == "officer-1"

        event = self.recorder.of_type(DomainEvent.REPAYMENT_POSTED)[0]
        assert event.data["outstanding_balance"] == "113333.33"
        assert event.data["entry_id"] == entry.id

    def test_overpayment_rejected(self):
        """An amount above the outstanding balance posts nothing"""
        loan = self.active_loan()
        before = self.ledger.entries(loan.id)

        with pytest.raises(OverpaymentRejected) as exc_info:
            self.loans.repay_loan(loan.id, "136000.01", self.officer)

        assert exc_info.value.loan_id == loan.id
        assert self.ledger.entries(loan.id) == before
        assert self.ledger.balance(loan.id) == ngn(136000)
        assert self.loans.get_loan(loan.id).outstanding_balance == ngn(136000)
        assert self.recorder.of_type(DomainEvent.REPAYMENT_POSTED) == []

    def test_full_repayment_completes_loan(self):
        loan = self.active_loan()
        for _ in range(5):
            loan = self.loans.repay_loan(loan.id, "22666.67", self.officer)
        assert loan.installments_paid == 5

        completed = self.loans.repay_loan(loan.id, "22666.65", self.officer)

        assert completed.status == LoanState.COMPLETED
        assert completed.outstanding_balance == ngn(0)
        assert completed.amount_paid == ngn(136000)
        assert completed.installments_paid == 6
        assert completed.completed_at is not None
        assert self.ledger.balance(loan.id).is_zero()
        assert self.ledger.verify_chain(loan.id)
        assert self.recorder.types[-2:] == [DomainEvent.REPAYMENT_POSTED, DomainEvent.LOAN_COMPLETED]

        with pytest.raises(InvalidStateTransition):
            self.loans.repay_loan(loan.id, 1, self.officer)

    def test_single_payoff(self):
        loan = self.active_loan()
        completed = self.loans.repay_loan(loan.id, 136000, self.officer, method="bank_transfer")
        assert completed.status == LoanState.COMPLETED

    def test_repay_requires_active_loan(self):
        loan = self.apply()
        with pytest.raises(InvalidStateTransition):
            self.loans.repay_loan(loan.id, 1000, self.officer)

    def test_invalid_amount(self):
        loan = self.active_loan()
        for bad in [0, "-10", "abc"]:
            with pytest.raises(InvalidAmount):
                self.loans.repay_loan(loan.id, bad, self.officer)
        assert len(self.ledger.entries(loan.id)) == 2

    def test_invalid_payment_method(self):
        loan = self.active_loan()
        with pytest.raises(InvalidChoice):
            self.loans.repay_loan(loan.id, 1000, self.officer, method="barter")

    def test_concurrent_repayments_cannot_overpay(self):
        loan = self.active_loan()
        barrier = threading.Barrier(2)
        outcomes = []

        def repay():
            barrier.wait()
            try:
                self.loans.repay_loan(loan.id, 100000, self.officer)
                outcomes.append("ok")
            except OverpaymentRejected:
                outcomes.append("rejected")

        threads = [threading.Thread(target=repay) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(outcomes) == ["ok", "rejected"]
        assert self.loans.get_loan(loan.id).outstanding_balance == ngn(36000)
        assert self.ledger.balance(loan.id) == ngn(36000)


class TestReversalAndDefault(LoanTestCase):
    """Test repayment reversal and default"""

    def test_reverse_repayment(self):
        loan = self.active_loan()
        self.loans.repay_loan(loan.id, "22666.67", self.officer)
        entry = self.ledger.entries(loan.id)[-1]

        restored = self.loans.reverse_repayment(loan.id, entry.id, self.manager, "Bounced transfer")

        assert restored.outstanding_balance == ngn(136000)
        assert restored.amount_paid == ngn(0)
        assert restored.installments_paid == 0
        assert self.ledger.balance(loan.id) == ngn(136000)
        assert self.ledger.entries(loan.id)[-1].reverses == entry.id

    def test_reverse_requires_repayment_entry(self):
        loan = self.active_loan()
        disbursement = self.ledger.entries(loan.id)[0]
        with pytest.raises(NotFound):
            self.loans.reverse_repayment(loan.id, disbursement.id, self.manager, "Error")

    def test_officer_cannot_reverse(self):
        loan = self.active_loan()
        self.loans.repay_loan(loan.id, 1000, self.officer)
        entry = self.ledger.entries(loan.id)[-1]
        with pytest.raises(Unauthorized):
            self.loans.reverse_repayment(loan.id, entry.id, self.officer, "Error")

    def test_mark_defaulted(self):
        loan = self.active_loan()
        defaulted = self.loans.mark_defaulted(loan.id, self.manager, "No contact for 90 days")

        assert defaulted.status == LoanState.DEFAULTED
        assert defaulted.defaulted_by == "manager-1"
        assert self.recorder.types[-1] == DomainEvent.LOAN_DEFAULTED

        with pytest.raises(InvalidStateTransition):
            self.loans.repay_loan(loan.id, 1000, self.officer)

    def test_default_requires_active_loan(self):
        loan = self.apply()
        with pytest.raises(InvalidStateTransition):
            self.loans.mark_defaulted(loan.id, self.manager)
        with pytest.raises(Unauthorized):
            self.loans.mark_defaulted(loan.id, self.officer)


class TestOverdue(LoanTestCase):
    """Overdue status is derived from the schedule, never stored"""

    def test_schedule_starts_at_disbursement(self):
        loan = self.active_loan()
        schedule = self.loans.get_repayment_schedule(loan.id)

        assert len(schedule) == 6
        assert schedule[0].due_date > loan.disbursed_at.date()
        assert schedule[-1].cumulative_due == ngn(136000)

    def test_overdue_after_missed_installment(self):
        loan = self.active_loan()
        schedule = self.loans.get_repayment_schedule(loan.id)
        first_due = schedule[0].due_date

        assert self.loans.get_status(loan, first_due) == LoanState.ACTIVE
        as_of = first_due + timedelta(days=3)
        assert self.loans.get_status(loan, as_of) == LoanState.OVERDUE
        assert self.loans.days_overdue(loan, as_of) == 3

        # Stored status is unchanged
        assert self.loans.get_loan(loan.id).status == LoanState.ACTIVE
        assert [l.id for l in self.loans.list_loans("overdue", as_of)] == [loan.id]

    def test_payment_clears_overdue(self):
        loan = self.active_loan()
        schedule = self.loans.get_repayment_schedule(loan.id)
        as_of = schedule[0].due_date + timedelta(days=1)

        loan = self.loans.repay_loan(loan.id, "22666.67", self.officer)
        assert not self.loans.is_overdue(loan, as_of)
        assert self.loans.is_overdue(loan, schedule[1].due_date + timedelta(days=1))

    def test_inactive_loans_are_never_overdue(self):
        loan = self.apply()
        assert self.loans.get_status(loan, date.today() + timedelta(days=365)) == LoanState.PENDING_APPROVAL


class TestStatistics(LoanTestCase):

    def test_portfolio_statistics(self):
        active = self.active_loan()
        self.loans.repay_loan(active.id, 36000, self.officer)
        self.apply(client_id="CL-002")
        rejected = self.apply(client_id="CL-003")
        self.loans.reject_loan(rejected.id, self.manager, "Declined")

        stats = self.loans.get_statistics(as_of=date.today())

        assert stats['active'] == 1
        assert stats['pending_approval'] == 1
        assert stats['counts']['rejected'] == 1
        assert stats['counts']['overdue'] == 0
        assert stats['total_disbursed'] == ngn(100000)
        assert stats['total_repayments'] == ngn(36000)
        assert stats['total_outstanding'] == ngn(100000)


class FailingLoanSave:
    """Storage that raises on the next write to the loans table once armed"""

    fail_loan_save = False

    def save(self, table, record_id, data):
        if self.fail_loan_save and table == "loans":
            self.fail_loan_save = False
            raise OSError("disk I/O error")
        super().save(table, record_id, data)


class FailingMemoryStorage(FailingLoanSave, InMemoryStorage):
    pass


class FailingSQLiteStorage(FailingLoanSave, SQLiteStorage):
    pass


class TestAtomicTransitions(LoanWiring):
    """A failed loan write leaves the ledger exactly as it was"""

    @pytest.fixture(autouse=True, params=["memory", "sqlite"])
    def failing_storage(self, request, tmp_path):
        if request.param == "memory":
            storage = FailingMemoryStorage()
        else:
            storage = FailingSQLiteStorage(tmp_path / "loans.db")
        self.wire(storage)
        yield storage
        storage.close()

    def test_failed_disbursement_posts_nothing(self):
        loan = self.apply()
        self.loans.approve_loan(loan.id, self.manager)

        self.storage.fail_loan_save = True
        with pytest.raises(OSError):
            self.loans.disburse_loan(loan.id, self.manager)

        assert self.loans.get_loan(loan.id).status == LoanState.APPROVED
        assert self.ledger.balance(loan.id) == ngn(0)
        assert self.ledger.entries(loan.id) == []
        assert self.recorder.of_type(DomainEvent.LOAN_DISBURSED) == []

        # Retrying credits principal and interest once
        active = self.loans.disburse_loan(loan.id, self.manager)
        assert self.ledger.balance(loan.id) == ngn(136000)
        assert active.outstanding_balance == ngn(136000)
        assert len(self.ledger.entries(loan.id)) == 2
        assert self.audit.verify_integrity()['valid']

    def test_failed_repayment_keeps_balances_in_step(self):
        loan = self.active_loan()

        self.storage.fail_loan_save = True
        with pytest.raises(OSError):
            self.loans.repay_loan(loan.id, 1000, self.officer)

        stored = self.loans.get_loan(loan.id)
        assert stored.outstanding_balance == ngn(136000)
        assert stored.amount_paid == ngn(0)
        assert self.ledger.balance(loan.id) == ngn(136000)
        assert len(self.ledger.entries(loan.id)) == 2

        loan = self.loans.repay_loan(loan.id, 1000, self.officer)
        assert loan.outstanding_balance == ngn(135000)
        assert self.ledger.balance(loan.id) == loan.outstanding_balance
        assert self.ledger.verify_chain(loan.id)
        assert self.audit.verify_integrity()['valid']

    def test_failed_reversal_keeps_repayment(self):
        loan = self.active_loan()
        loan = self.loans.repay_loan(loan.id, 5000, self.officer)
        repayment = self.ledger.entries(loan.id)[-1]

        self.storage.fail_loan_save = True
        with pytest.raises(OSError):
            self.loans.reverse_repayment(loan.id, repayment.id, self.manager, "Bounced transfer")

        assert self.ledger.balance(loan.id) == ngn(131000)
        assert self.loans.get_loan(loan.id).outstanding_balance == ngn(131000)

        loan = self.loans.reverse_repayment(loan.id, repayment.id, self.manager, "Bounced transfer")
        assert loan.outstanding_balance == ngn(136000)
        assert self.ledger.balance(loan.id) == ngn(136000)


class TestRepaymentSettlesLoan(LoanWiring):
    """Paying every scheduled installment always brings the loan to exactly zero"""

    @given(
        principal=st.decimals(min_value=1000, max_value=5000000, places=2),
        frequency=st.sampled_from(list(Frequency)),
        duration=st.integers(min_value=1, max_value=60)
    )
    @settings(max_examples=40, deadline=None)
    def test_paying_every_installment(self, principal, frequency, duration):
        self.wire(InMemoryStorage())
        loan = self.active_loan(principal=principal, frequency=frequency, duration=duration)

        for amount in loan.quote.installments():
            assert loan.status == LoanState.ACTIVE
            loan = self.loans.repay_loan(loan.id, amount, self.officer)

        assert loan.status == LoanState.COMPLETED
        assert loan.outstanding_balance.is_zero()
        assert loan.amount_paid == loan.total_repayment
        assert loan.installments_paid == duration
        assert self.ledger.balance(loan.id).is_zero()
        assert self.ledger.verify_chain(loan.id)
