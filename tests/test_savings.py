"""
Test suite for the savings lifecycle

Tests account opening and approval, deposits, withdrawals with overdraw
protection under concurrency, interest, fees, reversals, fixed-deposit
maturity and closing.
"""

import re
import threading
import pytest
from datetime import date, timedelta
from decimal import Decimal

from microfinance_core.approvals import Actor, RoleBasedApprovalGateway
from microfinance_core.audit import AuditTrail, AuditEventType
from microfinance_core.currency import Money, Currency
from microfinance_core.events import DomainEvent, EventDispatcher, EventRecorder
from microfinance_core.exceptions import (
    DuplicateAccountType, ErrorCategory, InsufficientBalance, InvalidAmount, InvalidChoice,
    InvalidStateTransition, NotFound, Unauthorized
)
from microfinance_core.ledger import EntryType, Ledger
from microfinance_core.savings import SavingsAccountType, SavingsLifecycle, SavingsState
from microfinance_core.pricing import add_months
from microfinance_core.storage import InMemoryStorage


def ngn(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.NGN)


class SavingsTestCase:
    """Shared wiring for savings lifecycle tests"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.events = EventDispatcher()
        self.recorder = EventRecorder()
        self.events.subscribe_all(self.recorder)
        self.ledger = Ledger(self.storage, self.audit, Currency.NGN)
        self.gateway = RoleBasedApprovalGateway(audit_trail=self.audit)
        self.savings = SavingsLifecycle(
            self.storage, self.ledger, self.gateway, self.events, self.audit, Currency.NGN
        )
        self.teller = Actor("teller-1", role="teller")
        self.manager = Actor("manager-1", role="manager")

    def open_account(self, account_type="daily", **kwargs):
        account = self.savings.create_savings("CL-001", account_type, created_by=self.teller, **kwargs)
        return self.savings.approve_savings(account.id, self.manager)


class TestAccountOpening(SavingsTestCase):
    """Test creating and approving accounts"""

    def test_create_savings(self):
        account = self.savings.create_savings(
            "CL-001", "Monthly", target_amount="50,000", created_by=self.teller, notes="School fees"
        )

        assert account.status == SavingsState.PENDING_APPROVAL
        assert account.account_type == SavingsAccountType.MONTHLY
        assert re.match(r"^SAV-\d{8}-00001$", account.account_number)
        assert account.target_amount == ngn(50000)
        assert account.balance == ngn(0)
        assert account.created_by == "teller-1"
        assert self.ledger.balance(account.id) == ngn(0)

        stored = self.savings.get_account(account.id)
        assert stored.notes == "School fees"
        assert stored.target_amount == ngn(50000)
        assert self.recorder.types == [DomainEvent.SAVINGS_CREATED]

    def test_invalid_account_type(self):
        with pytest.raises(InvalidChoice) as exc_info:
            self.savings.create_savings("CL-001", "quarterly")
        assert exc_info.value.field == "account_type"
        assert exc_info.value.choices == ["daily", "weekly", "monthly", "fixed"]

    def test_fixed_deposit_matures_after_a_year(self):
        account = self.savings.create_savings("CL-001", "fixed")
        assert account.maturity_date == add_months(date.today(), 12)
        assert not account.is_matured(date.today())

    def test_one_open_account_per_type(self):
        first = self.open_account("daily")
        self.savings.create_savings("CL-001", "weekly")
        self.savings.create_savings("CL-002", "daily")

        with pytest.raises(DuplicateAccountType) as exc_info:
            self.savings.create_savings("CL-001", "Daily")
        assert exc_info.value.field == "account_type"
        assert exc_info.value.category == ErrorCategory.FIELD
        assert len(self.savings.get_client_accounts("CL-001")) == 2

        self.savings.close_savings(first.id, self.manager)
        reopened = self.savings.create_savings("CL-001", "daily")
        assert reopened.status == SavingsState.PENDING_APPROVAL

    def test_pending_account_blocks_duplicate(self):
        self.savings.create_savings("CL-001", "monthly")
        with pytest.raises(DuplicateAccountType, match="already has a monthly"):
            self.savings.create_savings("CL-001", "monthly")

    def test_invalid_target(self):
        with pytest.raises(InvalidAmount) as exc_info:
            self.savings.create_savings("CL-001", "daily", target_amount=0)
        assert exc_info.value.field == "target_amount"

    def test_approve(self):
        account = self.open_account()
        assert account.status == SavingsState.ACTIVE
        assert account.approved_by == "manager-1"
        assert self.audit.get_events_by_type(AuditEventType.SAVINGS_APPROVED)[0].entity_id == account.id

    def test_teller_cannot_approve(self):
        account = self.savings.create_savings("CL-001", "daily")
        with pytest.raises(Unauthorized):
            self.savings.approve_savings(account.id, self.teller)

    def test_approve_twice(self):
        account = self.open_account()
        with pytest.raises(InvalidStateTransition):
            self.savings.approve_savings(account.id, self.manager)

    def test_deposit_requires_approval(self):
        account = self.savings.create_savings("CL-001", "daily")
        with pytest.raises(InvalidStateTransition, match="pending_approval"):
            self.savings.deposit(account.id, 1000, self.teller)
        assert self.ledger.entries(account.id) == []

    def test_unknown_account(self):
        with pytest.raises(NotFound):
            self.savings.deposit("no-such-account", 1000, self.teller)


class TestTransactions(SavingsTestCase):
    """Test deposits, withdrawals, interest and fees"""

    def test_deposit_and_withdraw(self):
        account = self.open_account()
        account = self.savings.deposit(account.id, "5,000", self.teller, method="mobile_money")
        account = self.savings.withdraw(account.id, 1500, self.teller)

        assert account.balance == ngn(3500)
        assert account.total_deposits == ngn(5000)
        assert account.total_withdrawals == ngn(1500)
        assert account.last_transaction_at is not None
        assert self.ledger.balance(account.id) == account.balance

        deposit_event = self.recorder.of_type(DomainEvent.DEPOSIT_POSTED)[0]
        assert deposit_event.data["balance"] == "5000.00"
        assert deposit_event.data["method"] == "mobile_money"
        withdrawal_event = self.recorder.of_type(DomainEvent.WITHDRAWAL_POSTED)[0]
        assert withdrawal_event.data["balance"] == "3500.00"

    def test_overdraw_rejected(self):
        account = self.open_account()
        self.savings.deposit(account.id, 1000, self.teller)

        with pytest.raises(InsufficientBalance):
            self.savings.withdraw(account.id, "1000.01", self.teller)

        stored = self.savings.get_account(account.id)
        assert stored.balance == ngn(1000)
        assert stored.total_withdrawals == ngn(0)
        assert len(self.ledger.entries(account.id)) == 1
        assert self.recorder.of_type(DomainEvent.WITHDRAWAL_POSTED) == []

    def test_concurrent_withdrawals(self):
        """Two withdrawals that together exceed the balance: exactly one succeeds"""
        account = self.open_account()
        self.savings.deposit(account.id, 1000, self.teller)
        barrier = threading.Barrier(2)
        outcomes = []

        def withdraw():
            barrier.wait()
            try:
                self.savings.withdraw(account.id, 700, self.teller)
                outcomes.append("ok")
            except InsufficientBalance:
                outcomes.append("insufficient")

        threads = [threading.Thread(target=withdraw) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(outcomes) == ["insufficient", "ok"]
        assert self.ledger.balance(account.id) == ngn(300)
        assert self.savings.get_account(account.id).balance == ngn(300)
        assert self.ledger.verify_chain(account.id)

    def test_interest_and_fees(self):
        account = self.open_account()
        self.savings.deposit(account.id, 10000, self.teller)
        self.savings.post_interest(account.id, "125.50", self.manager)
        account = self.savings.charge_fee(account.id, 50, self.manager, description="SMS alerts")

        assert account.interest_earned == ngn('125.50')
        assert account.fees_charged == ngn(50)
        assert account.balance == ngn('10075.50')

        types = [e.entry_type for e in self.savings.get_transactions(account.id)]
        assert types == [EntryType.DEPOSIT, EntryType.INTEREST, EntryType.FEE]
        fee_event = self.recorder.of_type(DomainEvent.FEE_CHARGED)[0]
        assert fee_event.data["description"] == "SMS alerts"

    def test_fee_cannot_overdraw(self):
        account = self.open_account()
        with pytest.raises(InsufficientBalance):
            self.savings.charge_fee(account.id, 100, self.manager)

    def test_transactions_newest_first(self):
        account = self.open_account()
        for amount in (100, 200, 300):
            self.savings.deposit(account.id, amount, self.teller)

        amounts = [e.amount for e in self.savings.get_transactions(account.id, "reverse")]
        assert amounts == [ngn(300), ngn(200), ngn(100)]

    def test_invalid_amounts(self):
        account = self.open_account()
        for bad in [0, -1, "abc", None]:
            with pytest.raises(InvalidAmount):
                self.savings.deposit(account.id, bad, self.teller)
        assert self.ledger.entries(account.id) == []


class TestReversal(SavingsTestCase):

    def test_reverse_deposit(self):
        account = self.open_account()
        self.savings.deposit(account.id, 1000, self.teller)
        entry = self.ledger.entries(account.id)[0]

        account = self.savings.reverse_transaction(account.id, entry.id, self.manager, "Posted to wrong account")

        assert account.balance == ngn(0)
        assert account.total_deposits == ngn(0)
        assert self.ledger.entries(account.id)[-1].reverses == entry.id

    def test_reverse_fee(self):
        account = self.open_account()
        self.savings.deposit(account.id, 1000, self.teller)
        self.savings.charge_fee(account.id, 100, self.manager)
        fee = self.ledger.entries(account.id)[-1]

        account = self.savings.reverse_transaction(account.id, fee.id, self.manager, "Fee waived")
        assert account.balance == ngn(1000)
        assert account.fees_charged == ngn(0)

    def test_reverse_spent_deposit(self):
        account = self.open_account()
        self.savings.deposit(account.id, 1000, self.teller)
        deposit = self.ledger.entries(account.id)[0]
        self.savings.withdraw(account.id, 800, self.teller)

        with pytest.raises(InsufficientBalance):
            self.savings.reverse_transaction(account.id, deposit.id, self.manager, "Error")

    def test_reverse_entry_from_another_account(self):
        first = self.open_account()
        second = self.open_account("weekly")
        self.savings.deposit(first.id, 1000, self.teller)
        entry = self.ledger.entries(first.id)[0]

        with pytest.raises(NotFound):
            self.savings.reverse_transaction(second.id, entry.id, self.manager, "Error")

    def test_teller_cannot_reverse(self):
        account = self.open_account()
        self.savings.deposit(account.id, 1000, self.teller)
        entry = self.ledger.entries(account.id)[0]
        with pytest.raises(Unauthorized):
            self.savings.reverse_transaction(account.id, entry.id, self.teller, "Error")


class TestFixedDeposit(SavingsTestCase):
    """Fixed deposits are locked until maturity"""

    def setup_method(self):
        super().setup_method()
        self.maturity = date.today() + timedelta(days=90)
        self.account = self.open_account("fixed", maturity_date=self.maturity)
        self.savings.deposit(self.account.id, 50000, self.teller)

    def test_withdraw_before_maturity(self):
        with pytest.raises(InvalidStateTransition, match="before maturity"):
            self.savings.withdraw(self.account.id, 1000, self.teller, as_of=self.maturity - timedelta(days=1))
        assert self.ledger.balance(self.account.id) == ngn(50000)

    def test_withdraw_at_maturity(self):
        account = self.savings.withdraw(self.account.id, 50000, self.teller, as_of=self.maturity)
        assert account.balance == ngn(0)

    def test_maturity_is_stored(self):
        stored = self.savings.get_account(self.account.id)
        assert stored.maturity_date == self.maturity
        assert not stored.is_matured(date.today())
        assert stored.is_matured(self.maturity)


class TestClosing(SavingsTestCase):

    def test_close_empty_account(self):
        account = self.open_account()
        self.savings.deposit(account.id, 1000, self.teller)
        self.savings.withdraw(account.id, 1000, self.teller)

        closed = self.savings.close_savings(account.id, self.manager)

        assert closed.status == SavingsState.CLOSED
        assert closed.closed_by == "manager-1"
        assert self.recorder.types[-1] == DomainEvent.SAVINGS_CLOSED

        with pytest.raises(InvalidStateTransition):
            self.savings.deposit(account.id, 100, self.teller)

    def test_cannot_close_with_balance(self):
        account = self.open_account()
        self.savings.deposit(account.id, 1000, self.teller)

        with pytest.raises(InvalidStateTransition, match="non-empty"):
            self.savings.close_savings(account.id, self.manager)
        assert self.savings.get_account(account.id).status == SavingsState.ACTIVE

    def test_teller_cannot_close(self):
        account = self.open_account()
        with pytest.raises(Unauthorized):
            self.savings.close_savings(account.id, self.teller)


class TestQueries(SavingsTestCase):

    def test_statistics_and_listing(self):
        first = self.open_account()
        self.savings.deposit(first.id, 2000, self.teller)
        self.savings.post_interest(first.id, 20, self.manager)
        second = self.savings.create_savings("CL-002", "weekly")

        stats = self.savings.get_statistics()
        assert stats['counts'] == {'pending_approval': 1, 'active': 1, 'closed': 0}
        assert stats['total_balance'] == ngn(2020)
        assert stats['total_deposits'] == ngn(2000)
        assert stats['total_interest'] == ngn(20)

        assert [a.id for a in self.savings.list_accounts("pending_approval")] == [second.id]
        assert [a.id for a in self.savings.get_client_accounts("CL-001")] == [first.id]


class FailingAccountStorage(InMemoryStorage):
    """Raises on the next write to the savings accounts table once armed"""

    fail_account_save = False

    def save(self, table, record_id, data):
        if self.fail_account_save and table == "savings_accounts":
            self.fail_account_save = False
            raise OSError("disk I/O error")
        super().save(table, record_id, data)


class TestAtomicPostings(SavingsTestCase):
    """A failed account write rolls back the ledger entry with it"""

    def setup_method(self):
        super().setup_method()
        self.storage = FailingAccountStorage()
        self.audit = AuditTrail(self.storage)
        self.ledger = Ledger(self.storage, self.audit, Currency.NGN)
        self.gateway = RoleBasedApprovalGateway(audit_trail=self.audit)
        self.savings = SavingsLifecycle(
            self.storage, self.ledger, self.gateway, self.events, self.audit, Currency.NGN
        )

    def test_failed_deposit(self):
        account = self.open_account()
        self.storage.fail_account_save = True

        with pytest.raises(OSError):
            self.savings.deposit(account.id, 1000, self.teller)

        assert self.ledger.balance(account.id) == ngn(0)
        assert self.ledger.entries(account.id) == []
        assert self.savings.get_account(account.id).total_deposits == ngn(0)
        assert DomainEvent.DEPOSIT_POSTED not in self.recorder.types

        account = self.savings.deposit(account.id, 1000, self.teller)
        assert account.balance == self.ledger.balance(account.id) == ngn(1000)

    def test_failed_reversal(self):
        account = self.open_account()
        self.savings.deposit(account.id, 1000, self.teller)
        entry = self.ledger.entries(account.id)[0]
        self.storage.fail_account_save = True

        with pytest.raises(OSError):
            self.savings.reverse_transaction(account.id, entry.id, self.manager, "Duplicate")

        assert self.ledger.balance(account.id) == ngn(1000)
        assert len(self.ledger.entries(account.id)) == 1
        assert self.audit.verify_integrity()['valid']

        account = self.savings.reverse_transaction(account.id, entry.id, self.manager, "Duplicate")
        assert account.balance == self.ledger.balance(account.id) == ngn(0)
