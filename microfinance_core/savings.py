"""
Savings Lifecycle Module

Savings accounts move pending_approval -> active -> closed. Deposits,
withdrawals, interest credits and fees are ledger entries on the account;
the account record keeps running totals alongside the ledger balance.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
from enum import Enum
import threading
import uuid

from .currency import Money, Currency, parse_money
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .events import DomainEvent, EventDispatcher, EventPayload
from .approvals import Actor, ApprovalGateway, Permission, actor_id
from .ledger import Ledger, EntryType, LedgerEntry, LedgerHistory
from .loans import PaymentMethod
from .pricing import add_months
from .exceptions import (
    DuplicateAccountType, InvalidChoice, InvalidStateTransition, MissingField, NotFound
)
from .logging_config import get_logger, log_action


FIXED_DEPOSIT_TERM_MONTHS = 12


class SavingsState(Enum):
    """Savings account lifecycle states"""
    PENDING_APPROVAL = "pending_approval"
    ACTIVE = "active"
    CLOSED = "closed"


class SavingsAccountType(Enum):
    """Savings products"""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    FIXED = "fixed"  # fixed deposit, locked until maturity_date

    @classmethod
    def parse(cls, value: Union[str, 'SavingsAccountType']) -> 'SavingsAccountType':
        if isinstance(value, SavingsAccountType):
            return value
        normalized = str(value).strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        raise InvalidChoice("account_type", value, [m.value for m in cls])


@dataclass
class SavingsAccount(StorageRecord):
    """Client savings account with running totals"""
    account_number: str
    client_id: str
    account_type: SavingsAccountType
    currency: Currency
    status: SavingsState = SavingsState.PENDING_APPROVAL
    balance: Money = None
    total_deposits: Money = None
    total_withdrawals: Money = None
    interest_earned: Money = None
    fees_charged: Money = None
    target_amount: Optional[Money] = None
    maturity_date: Optional[date] = None
    notes: Optional[str] = None
    created_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    closed_at: Optional[datetime] = None
    closed_by: Optional[str] = None
    last_transaction_at: Optional[datetime] = None

    def __post_init__(self):
        zero_amount = Money.zero(self.currency)
        if self.balance is None:
            self.balance = zero_amount
        if self.total_deposits is None:
            self.total_deposits = zero_amount
        if self.total_withdrawals is None:
            self.total_withdrawals = zero_amount
        if self.fees_charged is None:
            self.fees_charged = zero_amount
        if self.interest_earned is None:
            self.interest_earned = zero_amount

    @property
    def is_active(self) -> bool:
        return self.status == SavingsState.ACTIVE

    def is_matured(self, as_of: Optional[date] = None) -> bool:
        if self.account_type != SavingsAccountType.FIXED or self.maturity_date is None:
            return True
        return (as_of or date.today()) >= self.maturity_date


class SavingsLifecycle:
    """Owns SavingsAccount records and their ledger postings"""

    def __init__(
        self,
        storage: StorageInterface,
        ledger: Ledger,
        gateway: ApprovalGateway,
        events: EventDispatcher,
        audit_trail: AuditTrail,
        currency: Currency = Currency.NGN
    ):
        self.storage = storage
        self.ledger = ledger
        self.gateway = gateway
        self.events = events
        self.audit_trail = audit_trail
        self.currency = currency
        self.logger = get_logger("microfinance.savings")

        self.accounts_table = "savings_accounts"
        self._numbering_lock = threading.Lock()

    def create_savings(
        self,
        client_id: str,
        account_type,
        target_amount=None,
        maturity_date: Optional[date] = None,
        created_by: Optional[Actor] = None,
        notes: Optional[str] = None
    ) -> SavingsAccount:
        """
        Open a savings account pending approval

        A client holds at most one open (not closed) account of each type. A
        fixed deposit without a maturity date matures twelve months after it
        is opened.

        Raises:
            InvalidChoice: Unknown account type
            InvalidAmount: Non-positive target amount
            DuplicateAccountType: Client already has an open account of this type
        """
        if not client_id:
            raise MissingField("client_id")
        account_type = SavingsAccountType.parse(account_type)
        if target_amount is not None:
            target_amount = parse_money(target_amount, self.currency, field="target_amount")
        if account_type == SavingsAccountType.FIXED and maturity_date is None:
            maturity_date = add_months(date.today(), FIXED_DEPOSIT_TERM_MONTHS)

        now = datetime.now(timezone.utc)
        with self._numbering_lock:
            existing = self.storage.find(
                self.accounts_table, {'client_id': client_id, 'account_type': account_type.value}
            )
            if any(data['status'] != SavingsState.CLOSED.value for data in existing):
                self.logger.warning(f"Client {client_id} already has a {account_type.value} savings account")
                raise DuplicateAccountType(client_id, account_type.value)

            account = SavingsAccount(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                account_number=f"SAV-{now:%Y%m%d}-{self.storage.count(self.accounts_table) + 1:05d}",
                client_id=client_id,
                account_type=account_type,
                currency=self.currency,
                target_amount=target_amount,
                maturity_date=maturity_date,
                notes=notes,
                created_by=actor_id(created_by)
            )
            with self.storage.atomic():
                self.ledger.open_account(account.id, self.currency)
                self._save_account(account)

        self.audit_trail.log_event(
            event_type=AuditEventType.SAVINGS_CREATED,
            entity_type="savings_account",
            entity_id=account.id,
            metadata={"client_id": client_id, "account_type": account_type.value},
            user_id=account.created_by
        )
        self.logger.info(f"Savings account {account.account_number} created for client {client_id}")
        self._publish(DomainEvent.SAVINGS_CREATED, account)
        return account

    def approve_savings(self, account_id: str, actor: Actor) -> SavingsAccount:
        """
        Activate a pending account

        Raises:
            Unauthorized: If actor lacks approval capability
            InvalidStateTransition: Unless the account is pending_approval
        """
        self.gateway.authorize(actor, Permission.APPROVE_SAVINGS)

        with self.ledger.lock(account_id):
            account = self._require_account(account_id)
            self._require_state(account, SavingsState.PENDING_APPROVAL, "approve")
            account.status = SavingsState.ACTIVE
            account.approved_at = datetime.now(timezone.utc)
            account.approved_by = actor.id
            account.updated_at = account.approved_at
            self._save_account(account)

        self.audit_trail.log_event(
            event_type=AuditEventType.SAVINGS_APPROVED,
            entity_type="savings_account",
            entity_id=account.id,
            user_id=actor.id
        )
        self.logger.info(f"Savings account {account.account_number} approved by {actor.id}")
        self._publish(DomainEvent.SAVINGS_APPROVED, account, {"approved_by": actor.id})
        return account

    def deposit(self, account_id: str, amount, actor: Actor,
                method: Union[str, PaymentMethod] = PaymentMethod.CASH,
                reference: Optional[str] = None) -> SavingsAccount:
        """Credit a deposit to an active account"""
        method = PaymentMethod.parse(method)
        account, entry, amount = self._post(
            account_id, EntryType.DEPOSIT, amount, actor, "deposit", method, reference
        )
        self._publish(DomainEvent.DEPOSIT_POSTED, account, {
            "amount": str(amount.amount), "entry_id": entry.id, "method": method.value
        })
        return account

    def withdraw(self, account_id: str, amount, actor: Actor,
                 method: Union[str, PaymentMethod] = PaymentMethod.CASH,
                 reference: Optional[str] = None,
                 as_of: Optional[date] = None) -> SavingsAccount:
        """
        Debit a withdrawal from an active account

        Raises:
            InsufficientBalance: If the withdrawal would overdraw the account
            InvalidStateTransition: If inactive, or a fixed deposit before maturity
        """
        method = PaymentMethod.parse(method)
        account, entry, amount = self._post(
            account_id, EntryType.WITHDRAWAL, amount, actor, "withdraw", method, reference, as_of
        )
        self._publish(DomainEvent.WITHDRAWAL_POSTED, account, {
            "amount": str(amount.amount), "entry_id": entry.id, "method": method.value
        })
        return account

    def post_interest(self, account_id: str, amount, actor: Actor,
                      reference: Optional[str] = None) -> SavingsAccount:
        """Credit externally computed interest"""
        account, entry, amount = self._post(
            account_id, EntryType.INTEREST, amount, actor, "post interest to", None, reference
        )
        self._publish(DomainEvent.INTEREST_POSTED, account, {
            "amount": str(amount.amount), "entry_id": entry.id
        })
        return account

    def charge_fee(self, account_id: str, amount, actor: Actor, description: str = "",
                   reference: Optional[str] = None) -> SavingsAccount:
        """
        Debit a service fee from an active account

        Raises:
            InsufficientBalance: If the fee would overdraw the account
        """
        account, entry, amount = self._post(
            account_id, EntryType.FEE, amount, actor, "charge a fee to", None, reference
        )
        self._publish(DomainEvent.FEE_CHARGED, account, {
            "amount": str(amount.amount), "entry_id": entry.id, "description": description
        })
        return account

    def reverse_transaction(self, account_id: str, entry_id: str, actor: Actor, reason: str) -> SavingsAccount:
        """
        Reverse a deposit, withdrawal, interest credit or fee posted in error

        Raises:
            Unauthorized: If actor lacks the capability
            NotFound: If entry_id is not a reversible entry on this account
            InsufficientBalance: If reversing a credit would overdraw
        """
        self.gateway.authorize(actor, Permission.REVERSE_ENTRY)
        if not reason or not reason.strip():
            raise MissingField("reason")

        with self.ledger.lock(account_id):
            account = self._require_account(account_id)
            self._require_state(account, SavingsState.ACTIVE, "reverse a transaction on")
            entry = self.ledger.get_entry(entry_id)
            if entry is None or entry.account_id != account.id or entry.entry_type == EntryType.REVERSAL:
                raise NotFound("savings transaction", entry_id)

            with self.storage.atomic():
                reversal = self.ledger.reverse(entry_id, recorded_by=actor.id, reason=reason.strip())
                account.balance = reversal.balance_after
                if entry.entry_type == EntryType.DEPOSIT:
                    account.total_deposits = account.total_deposits - entry.amount
                elif entry.entry_type == EntryType.WITHDRAWAL:
                    account.total_withdrawals = account.total_withdrawals - entry.amount
                elif entry.entry_type == EntryType.INTEREST:
                    account.interest_earned = account.interest_earned - entry.amount
                elif entry.entry_type == EntryType.FEE:
                    account.fees_charged = account.fees_charged - entry.amount
                account.last_transaction_at = reversal.timestamp
                account.updated_at = reversal.timestamp
                self._save_account(account)

        self.logger.warning(
            f"{entry.entry_type.value.capitalize()} {entry_id} on {account.account_number} "
            f"reversed by {actor.id}: {reason}"
        )
        return account

    def close_savings(self, account_id: str, actor: Actor) -> SavingsAccount:
        """
        Close an active account with a zero balance

        Raises:
            Unauthorized: If actor lacks the capability
            InvalidStateTransition: If not active or the balance is not zero
        """
        self.gateway.authorize(actor, Permission.CLOSE_SAVINGS)

        with self.ledger.lock(account_id):
            account = self._require_account(account_id)
            self._require_state(account, SavingsState.ACTIVE, "close")
            if not self.ledger.balance(account_id).is_zero():
                self.logger.warning(
                    f"Cannot close savings account {account.account_number} "
                    f"with balance {account.balance.to_string()}"
                )
                raise InvalidStateTransition("savings account", account.status.value, "close a non-empty")
            account.status = SavingsState.CLOSED
            account.closed_at = datetime.now(timezone.utc)
            account.closed_by = actor.id
            account.updated_at = account.closed_at
            self._save_account(account)

        self.audit_trail.log_event(
            event_type=AuditEventType.SAVINGS_CLOSED,
            entity_type="savings_account",
            entity_id=account.id,
            user_id=actor.id
        )
        self.logger.info(f"Savings account {account.account_number} closed by {actor.id}")
        self._publish(DomainEvent.SAVINGS_CLOSED, account, {"closed_by": actor.id})
        return account

    # Queries

    def get_account(self, account_id: str) -> Optional[SavingsAccount]:
        data = self.storage.load(self.accounts_table, account_id)
        return self._account_from_dict(data) if data else None

    def get_client_accounts(self, client_id: str) -> List[SavingsAccount]:
        return [self._account_from_dict(d)
                for d in self.storage.find(self.accounts_table, {'client_id': client_id})]

    def list_accounts(self, status: Optional[SavingsState] = None) -> List[SavingsAccount]:
        accounts = [self._account_from_dict(d) for d in self.storage.load_all(self.accounts_table)]
        if status is None:
            return accounts
        status = SavingsState(status)
        return [a for a in accounts if a.status == status]

    def get_transactions(self, account_id: str, ordering: str = "chronological") -> LedgerHistory:
        self._require_account(account_id)
        return self.ledger.history(account_id, ordering)

    def get_statistics(self) -> Dict[str, Any]:
        """Counts by status and totals across all accounts"""
        counts = {state.value: 0 for state in SavingsState}
        zero = Money.zero(self.currency)
        totals = {'total_balance': zero, 'total_deposits': zero,
                  'total_withdrawals': zero, 'total_interest': zero}
        for account in self.list_accounts():
            counts[account.status.value] += 1
            totals['total_balance'] = totals['total_balance'] + account.balance
            totals['total_deposits'] = totals['total_deposits'] + account.total_deposits
            totals['total_withdrawals'] = totals['total_withdrawals'] + account.total_withdrawals
            totals['total_interest'] = totals['total_interest'] + account.interest_earned
        result = {'counts': counts}
        result.update(totals)
        return result

    # Helpers

    def _post(self, account_id: str, entry_type: EntryType, amount, actor: Actor, action: str,
              method: Optional[PaymentMethod], reference: Optional[str],
              as_of: Optional[date] = None):
        recorded_by = actor_id(actor)

        with self.ledger.lock(account_id):
            account = self._require_account(account_id)
            amount = parse_money(amount, account.currency)
            self._require_state(account, SavingsState.ACTIVE, action)
            if entry_type == EntryType.WITHDRAWAL and not account.is_matured(as_of):
                self.logger.warning(
                    f"Withdrawal from fixed deposit {account.account_number} before "
                    f"maturity {account.maturity_date.isoformat()}"
                )
                raise InvalidStateTransition("fixed deposit", account.status.value, "withdraw before maturity from")

            with self.storage.atomic():
                entry: LedgerEntry = self.ledger.post(
                    account.id, entry_type, amount,
                    recorded_by=recorded_by,
                    reference=reference,
                    payment_method=method.value if method else None,
                    description=f"{entry_type.value.capitalize()} on {account.account_number}"
                )

                account.balance = entry.balance_after
                if entry_type == EntryType.DEPOSIT:
                    account.total_deposits = account.total_deposits + amount
                elif entry_type == EntryType.WITHDRAWAL:
                    account.total_withdrawals = account.total_withdrawals + amount
                elif entry_type == EntryType.INTEREST:
                    account.interest_earned = account.interest_earned + amount
                elif entry_type == EntryType.FEE:
                    account.fees_charged = account.fees_charged + amount
                account.last_transaction_at = entry.timestamp
                account.updated_at = entry.timestamp
                self._save_account(account)

        log_action(
            self.logger, "info", f"{entry_type.value.capitalize()} of {amount.to_string()} on {account.account_number}",
            user_id=recorded_by, action=f"savings.{entry_type.value}", resource=account.id,
            extra={"balance": str(account.balance.amount)}
        )
        return account, entry, amount

    def _require_account(self, account_id: str) -> SavingsAccount:
        account = self.get_account(account_id)
        if not account:
            raise NotFound("savings account", account_id)
        return account

    def _require_state(self, account: SavingsAccount, state: SavingsState, action: str) -> None:
        if account.status != state:
            self.logger.warning(
                f"Cannot {action} savings account {account.account_number} in {account.status.value} state"
            )
            raise InvalidStateTransition("savings account", account.status.value, action)

    def _publish(self, event_type: DomainEvent, account: SavingsAccount,
                 extra: Optional[Dict[str, Any]] = None) -> None:
        data = {
            'account_number': account.account_number,
            'client_id': account.client_id,
            'status': account.status.value,
            'balance': str(account.balance.amount),
            'currency': account.currency.code
        }
        data.update(extra or {})
        self.events.publish(EventPayload(
            event_type=event_type, entity_type="savings_account", entity_id=account.id, data=data
        ))

    def _save_account(self, account: SavingsAccount) -> None:
        self.storage.save(self.accounts_table, account.id, self._account_to_dict(account))

    def _account_to_dict(self, account: SavingsAccount) -> Dict[str, Any]:
        result = {
            'id': account.id,
            'created_at': account.created_at.isoformat(),
            'updated_at': account.updated_at.isoformat(),
            'account_number': account.account_number,
            'client_id': account.client_id,
            'account_type': account.account_type.value,
            'currency': account.currency.code,
            'status': account.status.value,
            'target_amount': str(account.target_amount.amount) if account.target_amount else None,
            'maturity_date': account.maturity_date.isoformat() if account.maturity_date else None,
            'notes': account.notes,
            'created_by': account.created_by,
            'approved_by': account.approved_by,
            'closed_by': account.closed_by
        }
        for field in ['balance', 'total_deposits', 'total_withdrawals', 'interest_earned', 'fees_charged']:
            result[field] = str(getattr(account, field).amount)
        for field in ['approved_at', 'closed_at', 'last_transaction_at']:
            value = getattr(account, field)
            result[field] = value.isoformat() if value else None
        return result

    def _account_from_dict(self, data: Dict[str, Any]) -> SavingsAccount:
        currency = Currency[data['currency']]

        def get_money(field: str) -> Money:
            return Money(Decimal(data[field]), currency)

        def get_datetime(field: str) -> Optional[datetime]:
            if data.get(field):
                return datetime.fromisoformat(data[field])
            return None

        return SavingsAccount(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_number=data['account_number'],
            client_id=data['client_id'],
            account_type=SavingsAccountType(data['account_type']),
            currency=currency,
            status=SavingsState(data['status']),
            balance=get_money('balance'),
            total_deposits=get_money('total_deposits'),
            total_withdrawals=get_money('total_withdrawals'),
            interest_earned=get_money('interest_earned'),
            fees_charged=get_money('fees_charged') if data.get('fees_charged') else None,
            target_amount=get_money('target_amount') if data.get('target_amount') else None,
            maturity_date=date.fromisoformat(data['maturity_date']) if data.get('maturity_date') else None,
            notes=data.get('notes'),
            created_by=data.get('created_by'),
            approved_at=get_datetime('approved_at'),
            approved_by=data.get('approved_by'),
            closed_at=get_datetime('closed_at'),
            closed_by=data.get('closed_by'),
            last_transaction_at=get_datetime('last_transaction_at')
        )
