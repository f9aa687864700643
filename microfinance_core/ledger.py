"""
Account Ledger Engine

Append-only, per-account ledger of balance-affecting entries for loans and
savings accounts. Every entry records the balance before and after it, so
for any account:

    entries[i].balance_after == entries[i + 1].balance_before
    account balance          == entries[-1].balance_after (zero if empty)

Posting to one account is serialized by a per-account re-entrant lock; posts
to different accounts share no lock beyond the storage write itself. Entries are never edited or deleted:
corrections are reversal entries. A broken balance chain halts the account
until manual reconciliation.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Any
from enum import Enum
import threading
import uuid
import weakref

from .currency import Money, Currency, parse_money
from .storage import StorageInterface
from .audit import AuditTrail, AuditEventType
from .exceptions import InsufficientBalance, LedgerCorrupted, NotFound
from .logging_config import get_logger, log_action


class EntryType(Enum):
    """Types of ledger entries"""
    DISBURSEMENT = "loan_disbursement"
    REPAYMENT = "loan_repayment"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    INTEREST = "interest"
    FEE = "fee"
    REVERSAL = "reversal"


class EntryDirection(Enum):
    """Whether an entry increases or decreases the account balance"""
    CREDIT = "credit"
    DEBIT = "debit"


# Reversals take the opposite direction of the entry they reverse
ENTRY_DIRECTIONS = {
    EntryType.DISBURSEMENT: EntryDirection.CREDIT,
    EntryType.DEPOSIT: EntryDirection.CREDIT,
    EntryType.INTEREST: EntryDirection.CREDIT,
    EntryType.REPAYMENT: EntryDirection.DEBIT,
    EntryType.WITHDRAWAL: EntryDirection.DEBIT,
    EntryType.FEE: EntryDirection.DEBIT,
}


class HistoryOrder(Enum):
    CHRONOLOGICAL = "chronological"
    REVERSE = "reverse"


@dataclass(frozen=True)
class LedgerEntry:
    """
    Immutable balance-affecting record on one account
    """
    id: str
    account_id: str
    sequence_number: int
    entry_type: EntryType
    direction: EntryDirection
    amount: Money
    balance_before: Money
    balance_after: Money
    recorded_by: str
    timestamp: datetime
    reference: str
    description: str = ""
    payment_method: Optional[str] = None
    reverses: Optional[str] = None  # ID of the entry this one reverses

    @property
    def is_credit(self) -> bool:
        return self.direction == EntryDirection.CREDIT

    @property
    def signed_amount(self) -> Money:
        return self.amount if self.is_credit else -self.amount

    def is_consistent(self) -> bool:
        """balance_after == balance_before +/- amount"""
        return self.balance_after == self.balance_before + self.signed_amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'account_id': self.account_id,
            'sequence_number': self.sequence_number,
            'entry_type': self.entry_type.value,
            'direction': self.direction.value,
            'amount': str(self.amount.amount),
            'currency': self.amount.currency.code,
            'balance_before': str(self.balance_before.amount),
            'balance_after': str(self.balance_after.amount),
            'recorded_by': self.recorded_by,
            'timestamp': self.timestamp.isoformat(),
            'reference': self.reference,
            'description': self.description,
            'payment_method': self.payment_method,
            'reverses': self.reverses
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerEntry':
        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            account_id=data['account_id'],
            sequence_number=int(data['sequence_number']),
            entry_type=EntryType(data['entry_type']),
            direction=EntryDirection(data['direction']),
            amount=Money(Decimal(data['amount']), currency),
            balance_before=Money(Decimal(data['balance_before']), currency),
            balance_after=Money(Decimal(data['balance_after']), currency),
            recorded_by=data['recorded_by'],
            timestamp=datetime.fromisoformat(data['timestamp']),
            reference=data['reference'],
            description=data.get('description', ""),
            payment_method=data.get('payment_method'),
            reverses=data.get('reverses')
        )


@dataclass
class AccountLedgerState:
    """Cached balance and sequence for one account"""
    account_id: str
    currency: Currency
    balance: Money
    sequence_number: int = 0
    halted: bool = False
    halt_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'account_id': self.account_id,
            'currency': self.currency.code,
            'balance': str(self.balance.amount),
            'sequence_number': self.sequence_number,
            'halted': self.halted,
            'halt_reason': self.halt_reason
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AccountLedgerState':
        currency = Currency[data['currency']]
        return cls(
            account_id=data['account_id'],
            currency=currency,
            balance=Money(Decimal(data['balance']), currency),
            sequence_number=int(data['sequence_number']),
            halted=bool(data.get('halted', False)),
            halt_reason=data.get('halt_reason')
        )


class LedgerHistory:
    """
    Lazy, finite, restartable view over one account's entries

    Each iteration reads entries one at a time up to the sequence number
    current when that iteration started. Chronological iteration checks the
    balance chain as it reads and halts the account on a break.
    """

    def __init__(self, ledger: 'Ledger', account_id: str, ordering: HistoryOrder):
        self._ledger = ledger
        self._account_id = account_id
        self._ordering = ordering

    def __iter__(self) -> Iterator[LedgerEntry]:
        last = self._ledger._current_sequence(self._account_id)
        if self._ordering == HistoryOrder.REVERSE:
            for seq in range(last, 0, -1):
                yield self._ledger._load_entry(self._account_id, seq)
            return

        previous: Optional[LedgerEntry] = None
        for seq in range(1, last + 1):
            entry = self._ledger._load_entry(self._account_id, seq)
            problem = self._ledger._chain_problem(previous, entry)
            if problem:
                self._ledger._halt(self._account_id, problem)
            previous = entry
            yield entry

    def __len__(self) -> int:
        return self._ledger._current_sequence(self._account_id)


class Ledger:
    """
    Per-account ledger that owns every balance-affecting entry

    The cached balance is written in the same storage transaction as the
    entry, while the account's lock is held, so the two are never
    observably inconsistent.
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 default_currency: Currency = Currency.NGN):
        self.storage = storage
        self.audit_trail = audit_trail
        self.default_currency = default_currency
        self.entries_table = "ledger_entries"
        self.balances_table = "ledger_balances"
        # entry id -> storage key, plus the id of the reversal if any
        self.index_table = "ledger_entry_index"
        # a lock lives only while some caller holds it
        self._locks: "weakref.WeakValueDictionary[str, Any]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()
        self.logger = get_logger("microfinance.ledger")

    # Locking

    def lock(self, account_id: str) -> threading.RLock:
        """
        The account's exclusive lock. Lifecycles hold it across a
        precondition check and the post that depends on it.
        """
        with self._locks_guard:
            account_lock = self._locks.get(account_id)
            if account_lock is None:
                account_lock = threading.RLock()
                self._locks[account_id] = account_lock
            return account_lock

    # Accounts

    def open_account(self, account_id: str, currency: Optional[Currency] = None) -> None:
        """Register an account and fix its currency before the first post"""
        with self.lock(account_id):
            if self.storage.exists(self.balances_table, account_id):
                return
            currency = currency or self.default_currency
            state = AccountLedgerState(account_id, currency, Money.zero(currency))
            self.storage.save(self.balances_table, account_id, state.to_dict())

    def balance(self, account_id: str) -> Money:
        """Current cached balance (zero when the account has no entries)"""
        return self._load_state(account_id).balance

    def is_halted(self, account_id: str) -> bool:
        return self._load_state(account_id).halted

    # Posting

    def post(
        self,
        account_id: str,
        entry_type: EntryType,
        amount,
        recorded_by: str,
        reference: Optional[str] = None,
        payment_method: Optional[str] = None,
        description: str = ""
    ) -> LedgerEntry:
        """
        Append one entry to an account

        Args:
            account_id: Account to post to
            entry_type: Any type except REVERSAL (use reverse())
            amount: Positive amount in the account currency
            recorded_by: Staff member or system actor recording the entry
            reference: External reference; generated when omitted
            payment_method: cash, bank_transfer, ... for repayments and deposits
            description: Free text

        Returns:
            The written LedgerEntry

        Raises:
            InvalidAmount: If amount is not positive
            InsufficientBalance: If a debit would leave a negative balance
            LedgerCorrupted: If the account has been halted
        """
        entry_type = EntryType(entry_type)
        if entry_type == EntryType.REVERSAL:
            raise ValueError("Reversal entries are created with reverse()")

        return self._append(
            account_id=account_id,
            entry_type=entry_type,
            direction=ENTRY_DIRECTIONS[entry_type],
            amount=amount,
            recorded_by=recorded_by,
            reference=reference,
            payment_method=payment_method,
            description=description
        )

    def reverse(self, entry_id: str, recorded_by: str, reason: str) -> LedgerEntry:
        """
        Correct a posted entry by appending its opposite

        Raises:
            NotFound: If the entry does not exist
            ValueError: If the entry is a reversal or was already reversed
            InsufficientBalance: If reversing a credit would overdraw
        """
        original = self.get_entry(entry_id)
        if original is None:
            raise NotFound("ledger entry", entry_id)

        with self.lock(original.account_id):
            if original.entry_type == EntryType.REVERSAL:
                raise ValueError("Cannot reverse a reversal entry")
            if self.storage.load(self.index_table, entry_id).get('reversed_by'):
                raise ValueError(f"Ledger entry {entry_id} has already been reversed")

            opposite = (EntryDirection.DEBIT if original.is_credit else EntryDirection.CREDIT)
            reversal = self._append(
                account_id=original.account_id,
                entry_type=EntryType.REVERSAL,
                direction=opposite,
                amount=original.amount,
                recorded_by=recorded_by,
                reference=f"REV-{original.reference}",
                payment_method=original.payment_method,
                description=f"REVERSAL: {reason}",
                reverses=original.id
            )

        self.audit_trail.log_event(
            event_type=AuditEventType.LEDGER_ENTRY_REVERSED,
            entity_type="ledger_entry",
            entity_id=original.id,
            metadata={"reversal_entry_id": reversal.id, "reason": reason},
            user_id=recorded_by
        )
        return reversal

    def _append(
        self,
        account_id: str,
        entry_type: EntryType,
        direction: EntryDirection,
        amount,
        recorded_by: str,
        reference: Optional[str],
        payment_method: Optional[str],
        description: str,
        reverses: Optional[str] = None
    ) -> LedgerEntry:
        with self.lock(account_id):
            state = self._load_state(account_id)
            if state.halted:
                raise LedgerCorrupted(account_id, state.halt_reason or "posting halted")

            amount = parse_money(amount, state.currency)
            balance_before = state.balance
            if direction == EntryDirection.CREDIT:
                balance_after = balance_before + amount
            else:
                balance_after = balance_before - amount
                if balance_after.is_negative():
                    raise InsufficientBalance(account_id, balance_before.to_string(), amount.to_string())

            sequence_number = state.sequence_number + 1
            entry = LedgerEntry(
                id=str(uuid.uuid4()),
                account_id=account_id,
                sequence_number=sequence_number,
                entry_type=entry_type,
                direction=direction,
                amount=amount,
                balance_before=balance_before,
                balance_after=balance_after,
                recorded_by=recorded_by,
                timestamp=datetime.now(timezone.utc),
                reference=reference or f"{entry_type.value.upper()}-{account_id[:8]}-{sequence_number}",
                description=description,
                payment_method=payment_method,
                reverses=reverses
            )

            state.balance = balance_after
            state.sequence_number = sequence_number

            # Entry, cached balance and index are written together
            key = self._entry_key(account_id, sequence_number)
            with self.storage.atomic():
                self.storage.save(self.entries_table, key, entry.to_dict())
                self.storage.save(self.balances_table, account_id, state.to_dict())
                self.storage.save(self.index_table, entry.id, {'id': entry.id, 'key': key, 'reversed_by': None})
                if reverses:
                    original = self.storage.load(self.index_table, reverses)
                    original['reversed_by'] = entry.id
                    self.storage.save(self.index_table, reverses, original)

            self.audit_trail.log_event(
                event_type=AuditEventType.LEDGER_ENTRY_POSTED,
                entity_type="ledger_entry",
                entity_id=entry.id,
                metadata={
                    "account_id": account_id,
                    "sequence_number": sequence_number,
                    "entry_type": entry_type.value,
                    "amount": str(amount.amount),
                    "balance_after": str(balance_after.amount)
                },
                user_id=recorded_by
            )

        log_action(
            self.logger, "info",
            f"Posted {entry_type.value} of {amount.to_string()} to {account_id}",
            user_id=recorded_by, action="ledger.post", resource=account_id,
            extra={"sequence_number": sequence_number, "balance_after": str(balance_after.amount)}
        )
        return entry

    # Queries

    def history(self, account_id: str, ordering: str = "chronological") -> LedgerHistory:
        """Lazy, restartable sequence of an account's entries"""
        return LedgerHistory(self, account_id, HistoryOrder(ordering))

    def entries(self, account_id: str) -> List[LedgerEntry]:
        """All entries of an account in posting order"""
        return list(self.history(account_id))

    def get_entry(self, entry_id: str) -> Optional[LedgerEntry]:
        index = self.storage.load(self.index_table, entry_id)
        if index is None:
            return None
        data = self.storage.load(self.entries_table, index['key'])
        return LedgerEntry.from_dict(data) if data else None

    # Integrity

    def verify_chain(self, account_id: str) -> bool:
        """
        Re-read an account and check the balance chain and cached balance

        Returns:
            True if consistent

        Raises:
            LedgerCorrupted: On any inconsistency; the account is halted
        """
        problem = self._find_problem(account_id)
        if problem:
            self._halt(account_id, problem)
        return True

    def release_hold(self, account_id: str, recorded_by: str) -> None:
        """
        Resume posting on a halted account after manual reconciliation

        Raises:
            LedgerCorrupted: If the chain is still inconsistent
        """
        with self.lock(account_id):
            problem = self._find_problem(account_id)
            if problem:
                raise LedgerCorrupted(account_id, problem)
            state = self._load_state(account_id)
            state.halted = False
            state.halt_reason = None
            self.storage.save(self.balances_table, account_id, state.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.LEDGER_HOLD_RELEASED,
            entity_type="ledger_account",
            entity_id=account_id,
            user_id=recorded_by
        )
        self.logger.warning(f"Posting resumed on ledger account {account_id} by {recorded_by}")

    def _find_problem(self, account_id: str) -> Optional[str]:
        state = self._load_state(account_id)
        previous: Optional[LedgerEntry] = None
        for seq in range(1, state.sequence_number + 1):
            entry = self._load_entry(account_id, seq)
            problem = self._chain_problem(previous, entry)
            if problem:
                return problem
            previous = entry

        last_balance = previous.balance_after if previous else Money.zero(state.currency)
        if last_balance != state.balance:
            return (f"cached balance {state.balance.to_string()} differs from "
                    f"last entry balance {last_balance.to_string()}")
        return None

    @staticmethod
    def _chain_problem(previous: Optional[LedgerEntry], entry: LedgerEntry) -> Optional[str]:
        if not entry.is_consistent():
            return (f"entry {entry.sequence_number} balance_after {entry.balance_after.to_string()} "
                    f"!= balance_before {entry.balance_before.to_string()} "
                    f"{'+' if entry.is_credit else '-'} {entry.amount.to_string()}")
        if previous is None:
            if not entry.balance_before.is_zero():
                return f"first entry opens at {entry.balance_before.to_string()} instead of zero"
        elif previous.balance_after != entry.balance_before:
            return (f"entry {entry.sequence_number} balance_before {entry.balance_before.to_string()} "
                    f"!= entry {previous.sequence_number} balance_after {previous.balance_after.to_string()}")
        return None

    def _halt(self, account_id: str, reason: str) -> None:
        with self.lock(account_id):
            state = self._load_state(account_id)
            state.halted = True
            state.halt_reason = reason
            self.storage.save(self.balances_table, account_id, state.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.LEDGER_CORRUPTION_DETECTED,
            entity_type="ledger_account",
            entity_id=account_id,
            metadata={"reason": reason}
        )
        self.logger.critical(f"Ledger corruption on account {account_id}, posting halted: {reason}")
        raise LedgerCorrupted(account_id, reason)

    # Storage helpers

    @staticmethod
    def _entry_key(account_id: str, sequence_number: int) -> str:
        return f"{account_id}:{sequence_number:010d}"

    def _load_state(self, account_id: str) -> AccountLedgerState:
        data = self.storage.load(self.balances_table, account_id)
        if data:
            return AccountLedgerState.from_dict(data)
        return AccountLedgerState(account_id, self.default_currency, Money.zero(self.default_currency))

    def _current_sequence(self, account_id: str) -> int:
        return self._load_state(account_id).sequence_number

    def _load_entry(self, account_id: str, sequence_number: int) -> LedgerEntry:
        data = self.storage.load(self.entries_table, self._entry_key(account_id, sequence_number))
        if data is None:
            reason = f"entry {sequence_number} is missing"
            self._halt(account_id, reason)
        return LedgerEntry.from_dict(data)
