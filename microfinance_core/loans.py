"""
Loan Lifecycle Module

Drives a loan from application through approval or rejection, disbursement,
repayment and completion or default. Terms are frozen as a LoanQuote when the
application is submitted and never recomputed.

    draft -> pending_approval -> approved -> disbursed -> active -> completed
                              \\-> rejected                      \\-> defaulted

"overdue" is never stored: it is derived from the frozen repayment schedule
and the amount paid so far.

The loan's ledger account shares the loan id. Disbursement credits the
principal and the flat interest charge, so the ledger balance always equals
the outstanding balance and reaches zero with the final repayment.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
from enum import Enum
import threading
import uuid

from .currency import Money, Currency, parse_money
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .events import DomainEvent, EventDispatcher, EventPayload
from .approvals import Actor, ApprovalGateway, Permission, actor_id
from .ledger import Ledger, EntryType, LedgerEntry
from .pricing import LoanPricer, LoanQuote, ScheduledInstallment
from .rates import Frequency
from .exceptions import (
    IncompleteGuarantorInfo,
    InvalidChoice,
    InvalidStateTransition,
    MissingField,
    NotFound,
    OverpaymentRejected,
)
from .logging_config import get_logger, log_action


class LoanState(Enum):
    """Loan lifecycle states"""
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    DISBURSED = "disbursed"
    ACTIVE = "active"
    COMPLETED = "completed"
    DEFAULTED = "defaulted"
    OVERDUE = "overdue"  # derived by get_status, never stored


LOAN_TRANSITIONS = {
    LoanState.DRAFT: {LoanState.PENDING_APPROVAL},
    LoanState.PENDING_APPROVAL: {LoanState.APPROVED, LoanState.REJECTED},
    LoanState.APPROVED: {LoanState.DISBURSED},
    LoanState.DISBURSED: {LoanState.ACTIVE},
    LoanState.ACTIVE: {LoanState.COMPLETED, LoanState.DEFAULTED},
}


class PaymentMethod(Enum):
    """How a repayment or disbursement was made"""
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    CHEQUE = "cheque"
    MOBILE_MONEY = "mobile_money"
    POS = "pos"

    @classmethod
    def parse(cls, value: Union[str, 'PaymentMethod'], field: str = "payment_method") -> 'PaymentMethod':
        if isinstance(value, PaymentMethod):
            return value
        normalized = str(value).strip().lower().replace("-", "_").replace(" ", "_")
        for member in cls:
            if member.value == normalized:
                return member
        raise InvalidChoice(field, value, [m.value for m in cls])


GUARANTOR_FIELDS = ("name", "phone", "address")
# field prefixes of the first and second guarantor on the application form
GUARANTOR_PREFIXES = ("guarantor", "guarantor2")


@dataclass(frozen=True)
class Guarantor:
    """Person guaranteeing a loan; every field is mandatory"""
    name: str
    phone: str
    address: str

    def to_dict(self) -> Dict[str, str]:
        return {'name': self.name, 'phone': self.phone, 'address': self.address}

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> 'Guarantor':
        return cls(name=data['name'], phone=data['phone'], address=data['address'])


@dataclass(frozen=True)
class Collateral:
    """Optional security pledged against a loan"""
    collateral_type: str
    value: Money
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'collateral_type': self.collateral_type,
            'value': str(self.value.amount),
            'currency': self.value.currency.code,
            'description': self.description
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Collateral':
        return cls(
            collateral_type=data['collateral_type'],
            value=Money(Decimal(data['value']), Currency[data['currency']]),
            description=data.get('description', "")
        )


def parse_guarantors(guarantors: Sequence[Any]) -> Tuple[Guarantor, Guarantor]:
    """
    Validate the guarantor pair

    Accepts Guarantor objects or mappings with name/phone/address. Missing or
    blank fields are reported under the application form's names:
    guarantor_name, guarantor_phone, ... for the first guarantor and
    guarantor2_name, guarantor2_phone, ... for the second.

    Raises:
        IncompleteGuarantorInfo: Unless exactly two complete guarantors are given
    """
    guarantors = list(guarantors or [])
    missing = []
    parsed = []
    for index, prefix in enumerate(GUARANTOR_PREFIXES):
        raw = guarantors[index] if index < len(guarantors) else None
        if isinstance(raw, Guarantor):
            raw = raw.to_dict()
        raw = raw or {}
        values = {}
        for name in GUARANTOR_FIELDS:
            value = raw.get(name)
            value = value.strip() if isinstance(value, str) else value
            if not value:
                missing.append(f"{prefix}_{name}")
            values[name] = value
        parsed.append(values)

    if len(guarantors) > 2:
        missing.append("guarantors (exactly two required)")
    if missing:
        raise IncompleteGuarantorInfo(missing)
    return Guarantor(**parsed[0]), Guarantor(**parsed[1])


@dataclass
class Loan(StorageRecord):
    """Loan application and account with its frozen pricing terms"""
    loan_number: str
    client_id: str
    principal_amount: Money
    frequency: Frequency
    duration_value: int
    purpose: str
    guarantors: Tuple[Guarantor, Guarantor]
    quote: LoanQuote
    status: LoanState = LoanState.DRAFT
    purpose_details: Optional[str] = None
    collateral: Optional[Collateral] = None

    # Balances
    outstanding_balance: Money = None   # principal + interest still owed
    amount_paid: Money = None
    installments_paid: int = 0

    # Lifecycle
    applied_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    disbursed_at: Optional[datetime] = None
    disbursed_by: Optional[str] = None
    disbursement_method: Optional[PaymentMethod] = None
    completed_at: Optional[datetime] = None
    defaulted_at: Optional[datetime] = None
    defaulted_by: Optional[str] = None

    def __post_init__(self):
        zero_amount = Money.zero(self.principal_amount.currency)
        if self.outstanding_balance is None:
            self.outstanding_balance = zero_amount
        if self.amount_paid is None:
            self.amount_paid = zero_amount

    @property
    def currency(self) -> Currency:
        return self.principal_amount.currency

    @property
    def applied_at(self) -> datetime:
        return self.created_at

    @property
    def total_repayment(self) -> Money:
        return self.quote.total_repayment

    @property
    def installment_amount(self) -> Money:
        return self.quote.installment_amount

    @property
    def is_active(self) -> bool:
        return self.status == LoanState.ACTIVE


class LoanLifecycle:
    """
    Owns Loan records and every transition between their states

    Transitions that check a precondition and then post to the ledger hold
    the loan's ledger lock across both steps and reload the loan inside it.
    Authorization checks and event publication happen outside the lock.
    """

    def __init__(
        self,
        storage: StorageInterface,
        ledger: Ledger,
        pricer: LoanPricer,
        gateway: ApprovalGateway,
        events: EventDispatcher,
        audit_trail: AuditTrail
    ):
        self.storage = storage
        self.ledger = ledger
        self.pricer = pricer
        self.gateway = gateway
        self.events = events
        self.audit_trail = audit_trail
        self.logger = get_logger("microfinance.loans")

        self.loans_table = "loans"
        self._numbering_lock = threading.Lock()

    # Application

    def apply_loan(
        self,
        client_id: str,
        principal,
        frequency,
        duration_value,
        purpose: str,
        guarantors: Sequence[Any],
        collateral: Optional[Collateral] = None,
        applied_by: Optional[Actor] = None,
        purpose_details: Optional[str] = None
    ) -> Loan:
        """
        Submit a loan application

        Args:
            client_id: Borrowing client
            principal: Requested principal
            frequency: Repayment frequency
            duration_value: Number of repayment periods
            purpose: Loan purpose
            guarantors: Exactly two guarantors (Guarantor or mapping)
            collateral: Optional collateral
            applied_by: Staff member capturing the application
            purpose_details: Free-text detail on the purpose

        Returns:
            The Loan in pending_approval, with its quote frozen

        Raises:
            IncompleteGuarantorInfo: If either guarantor is incomplete
            InvalidAmount, InvalidDuration, InvalidFrequency: On bad terms
        """
        if not client_id:
            raise MissingField("client_id")
        if not purpose or not purpose.strip():
            raise MissingField("purpose")
        guarantor_pair = parse_guarantors(guarantors)
        quote = self.pricer.quote(principal, frequency, duration_value)

        now = datetime.now(timezone.utc)
        with self._numbering_lock:
            loan = Loan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_number=self._next_loan_number(now),
                client_id=client_id,
                principal_amount=quote.principal,
                frequency=quote.frequency,
                duration_value=quote.duration_value,
                purpose=purpose.strip(),
                purpose_details=purpose_details,
                guarantors=guarantor_pair,
                collateral=collateral,
                quote=quote,
                applied_by=actor_id(applied_by)
            )
            self._transition(loan, LoanState.PENDING_APPROVAL, "submit")
            self._save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_APPLIED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={
                "client_id": client_id,
                "principal_amount": loan.principal_amount.to_string(),
                "frequency": loan.frequency.value,
                "duration_value": loan.duration_value,
                "periodic_rate": str(quote.periodic_rate),
                "total_repayment": quote.total_repayment.to_string()
            },
            user_id=loan.applied_by
        )
        log_action(
            self.logger, "info", f"Loan {loan.loan_number} applied for {loan.principal_amount.to_string()}",
            user_id=loan.applied_by, action="loan.apply", resource=loan.id
        )
        self._publish(DomainEvent.LOAN_APPLIED, loan)
        return loan

    # Decisions

    def approve_loan(self, loan_id: str, actor: Actor) -> Loan:
        """
        Approve a pending application

        Raises:
            Unauthorized: If actor lacks approval capability
            InvalidStateTransition: Unless the loan is pending_approval
        """
        self.gateway.authorize(actor, Permission.APPROVE_LOAN)

        with self.ledger.lock(loan_id):
            loan = self._require_loan(loan_id)
            self._transition(loan, LoanState.APPROVED, "approve")
            loan.approved_at = datetime.now(timezone.utc)
            loan.approved_by = actor.id
            self._save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_APPROVED,
            entity_type="loan",
            entity_id=loan.id,
            user_id=actor.id
        )
        self.logger.info(f"Loan {loan.loan_number} approved by {actor.id}")
        self._publish(DomainEvent.LOAN_APPROVED, loan, {"approved_by": actor.id})
        return loan

    def reject_loan(self, loan_id: str, actor: Actor, reason: str) -> Loan:
        """
        Reject a pending application

        Raises:
            Unauthorized: If actor lacks approval capability
            MissingField: If reason is blank
            InvalidStateTransition: Unless the loan is pending_approval
        """
        self.gateway.authorize(actor, Permission.REJECT_LOAN)
        if not reason or not reason.strip():
            raise MissingField("rejection_reason")

        with self.ledger.lock(loan_id):
            loan = self._require_loan(loan_id)
            self._transition(loan, LoanState.REJECTED, "reject")
            loan.rejected_at = datetime.now(timezone.utc)
            loan.rejected_by = actor.id
            loan.rejection_reason = reason.strip()
            self._save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_REJECTED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={"reason": loan.rejection_reason},
            user_id=actor.id
        )
        self.logger.info(f"Loan {loan.loan_number} rejected by {actor.id}: {loan.rejection_reason}")
        self._publish(DomainEvent.LOAN_REJECTED, loan, {"reason": loan.rejection_reason})
        return loan

    # Money movement

    def disburse_loan(self, loan_id: str, actor: Actor,
                      method: Union[str, PaymentMethod] = PaymentMethod.BANK_TRANSFER,
                      reference: Optional[str] = None) -> Loan:
        """
        Disburse an approved loan: approved -> disbursed -> active

        Posts the principal as a disbursement entry and the flat interest
        charge as an interest entry, then sets the outstanding balance to the
        quote's total repayment.

        Raises:
            Unauthorized: If actor lacks disbursement capability
            InvalidStateTransition: Unless the loan is approved
        """
        self.gateway.authorize(actor, Permission.DISBURSE_LOAN)
        method = PaymentMethod.parse(method, field="disbursement_method")

        with self.ledger.lock(loan_id):
            loan = self._require_loan(loan_id)
            self._require_state(loan, LoanState.APPROVED, "disburse")

            # Both entries and the state change commit together or not at all
            with self.storage.atomic():
                self.ledger.open_account(loan.id, loan.currency)
                entry = self.ledger.post(
                    loan.id, EntryType.DISBURSEMENT, loan.principal_amount,
                    recorded_by=actor.id,
                    reference=reference or f"DISB-{loan.loan_number}",
                    payment_method=method.value,
                    description=f"Disbursement of loan {loan.loan_number}"
                )
                if loan.quote.total_interest.is_positive():
                    self.ledger.post(
                        loan.id, EntryType.INTEREST, loan.quote.total_interest,
                        recorded_by=actor.id,
                        reference=f"INT-{loan.loan_number}",
                        description="Flat interest charged at disbursement"
                    )

                now = datetime.now(timezone.utc)
                self._transition(loan, LoanState.DISBURSED, "disburse")
                loan.disbursed_at = now
                loan.disbursed_by = actor.id
                loan.disbursement_method = method
                loan.outstanding_balance = loan.total_repayment
                self._transition(loan, LoanState.ACTIVE, "activate")
                self._save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_DISBURSED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={
                "entry_id": entry.id,
                "amount": loan.principal_amount.to_string(),
                "outstanding_balance": loan.outstanding_balance.to_string(),
                "method": method.value
            },
            user_id=actor.id
        )
        log_action(
            self.logger, "info", f"Loan {loan.loan_number} disbursed: {loan.principal_amount.to_string()}",
            user_id=actor.id, action="loan.disburse", resource=loan.id
        )
        self._publish(DomainEvent.LOAN_DISBURSED, loan, {
            "amount": str(loan.principal_amount.amount),
            "entry_id": entry.id,
            "method": method.value
        })
        return loan

    def repay_loan(self, loan_id: str, amount, actor: Actor,
                   method: Union[str, PaymentMethod] = PaymentMethod.CASH,
                   reference: Optional[str] = None) -> Loan:
        """
        Record a repayment against an active loan

        Args:
            loan_id: Loan being repaid
            amount: Repayment amount, at most the outstanding balance
            actor: Staff member recording the payment
            method: Payment method
            reference: External payment reference

        Returns:
            The updated Loan (completed when the balance reaches zero)

        Raises:
            InvalidAmount: If amount is not positive
            InvalidStateTransition: Unless the loan is active
            OverpaymentRejected: If amount exceeds the outstanding balance;
                nothing is posted
        """
        method = PaymentMethod.parse(method)
        recorded_by = actor_id(actor)

        with self.ledger.lock(loan_id):
            loan = self._require_loan(loan_id)
            amount = parse_money(amount, loan.currency)
            self._require_state(loan, LoanState.ACTIVE, "repay")

            if amount > loan.outstanding_balance:
                self.logger.warning(
                    f"Rejected overpayment of {amount.to_string()} on loan {loan.loan_number}, "
                    f"outstanding {loan.outstanding_balance.to_string()}"
                )
                raise OverpaymentRejected(loan.id, loan.outstanding_balance.to_string(), amount.to_string())

            with self.storage.atomic():
                entry = self.ledger.post(
                    loan.id, EntryType.REPAYMENT, amount,
                    recorded_by=recorded_by,
                    reference=reference,
                    payment_method=method.value,
                    description=f"Repayment on loan {loan.loan_number}"
                )

                loan.outstanding_balance = loan.outstanding_balance - amount
                loan.amount_paid = loan.amount_paid + amount
                loan.installments_paid = LoanPricer.installments_covered(loan.quote, loan.amount_paid)
                completed = loan.outstanding_balance.is_zero()
                if completed:
                    self._transition(loan, LoanState.COMPLETED, "complete")
                    loan.completed_at = datetime.now(timezone.utc)
                else:
                    loan.updated_at = datetime.now(timezone.utc)
                self._save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_REPAYMENT_POSTED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={
                "entry_id": entry.id,
                "amount": amount.to_string(),
                "outstanding_balance": loan.outstanding_balance.to_string(),
                "method": method.value
            },
            user_id=recorded_by
        )
        log_action(
            self.logger, "info", f"Repayment of {amount.to_string()} on loan {loan.loan_number}",
            user_id=recorded_by, action="loan.repay", resource=loan.id,
            extra={"outstanding_balance": str(loan.outstanding_balance.amount)}
        )
        self._publish(DomainEvent.REPAYMENT_POSTED, loan, {
            "amount": str(amount.amount),
            "entry_id": entry.id,
            "method": method.value
        })

        if completed:
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_COMPLETED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=recorded_by
            )
            self.logger.info(f"Loan {loan.loan_number} fully repaid")
            self._publish(DomainEvent.LOAN_COMPLETED, loan)
        return loan

    def reverse_repayment(self, loan_id: str, entry_id: str, actor: Actor, reason: str) -> Loan:
        """
        Reverse a repayment posted in error on an active loan

        Raises:
            Unauthorized: If actor lacks the capability
            NotFound: If entry_id is not a repayment on this loan
            InvalidStateTransition: Unless the loan is active
        """
        self.gateway.authorize(actor, Permission.REVERSE_ENTRY)
        if not reason or not reason.strip():
            raise MissingField("reason")

        with self.ledger.lock(loan_id):
            loan = self._require_loan(loan_id)
            self._require_state(loan, LoanState.ACTIVE, "reverse a repayment on")
            entry = self.ledger.get_entry(entry_id)
            if entry is None or entry.account_id != loan.id or entry.entry_type != EntryType.REPAYMENT:
                raise NotFound("repayment", entry_id)

            with self.storage.atomic():
                self.ledger.reverse(entry_id, recorded_by=actor.id, reason=reason.strip())
                loan.outstanding_balance = loan.outstanding_balance + entry.amount
                loan.amount_paid = loan.amount_paid - entry.amount
                loan.installments_paid = LoanPricer.installments_covered(loan.quote, loan.amount_paid)
                loan.updated_at = datetime.now(timezone.utc)
                self._save_loan(loan)

        self.logger.warning(
            f"Repayment {entry_id} of {entry.amount.to_string()} on loan {loan.loan_number} "
            f"reversed by {actor.id}: {reason}"
        )
        return loan

    def mark_defaulted(self, loan_id: str, actor: Actor, reason: Optional[str] = None) -> Loan:
        """
        Move an active loan to defaulted

        Raises:
            Unauthorized: If actor lacks the capability
            InvalidStateTransition: Unless the loan is active
        """
        self.gateway.authorize(actor, Permission.DEFAULT_LOAN)

        with self.ledger.lock(loan_id):
            loan = self._require_loan(loan_id)
            self._transition(loan, LoanState.DEFAULTED, "default")
            loan.defaulted_at = datetime.now(timezone.utc)
            loan.defaulted_by = actor.id
            self._save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_DEFAULTED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={"reason": reason, "outstanding_balance": loan.outstanding_balance.to_string()},
            user_id=actor.id
        )
        self.logger.warning(f"Loan {loan.loan_number} marked defaulted by {actor.id}")
        self._publish(DomainEvent.LOAN_DEFAULTED, loan, {"reason": reason})
        return loan

    # Derived status

    def repayment_schedule(self, loan: Loan) -> List[ScheduledInstallment]:
        """Installment due dates counted from disbursement (or application, before it)"""
        start = (loan.disbursed_at or loan.created_at).date()
        return LoanPricer.repayment_schedule(loan.quote, start)

    def days_overdue(self, loan: Loan, as_of: Optional[date] = None) -> int:
        """Days since the earliest installment that is due and not fully paid"""
        if loan.status != LoanState.ACTIVE:
            return 0
        as_of = as_of or date.today()
        for item in self.repayment_schedule(loan):
            if item.due_date >= as_of:
                break
            if item.cumulative_due > loan.amount_paid:
                return (as_of - item.due_date).days
        return 0

    def is_overdue(self, loan: Loan, as_of: Optional[date] = None) -> bool:
        """Active and behind the frozen schedule for installments due before as_of"""
        return self.days_overdue(loan, as_of) > 0

    def get_status(self, loan: Loan, as_of: Optional[date] = None) -> LoanState:
        """Stored status, or OVERDUE for an active loan behind schedule"""
        if self.is_overdue(loan, as_of):
            return LoanState.OVERDUE
        return loan.status

    # Queries

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        data = self.storage.load(self.loans_table, loan_id)
        return self._loan_from_dict(data) if data else None

    def get_client_loans(self, client_id: str) -> List[Loan]:
        """All loans of a client, oldest first"""
        return [self._loan_from_dict(d) for d in self.storage.find(self.loans_table, {'client_id': client_id})]

    def list_loans(self, status: Optional[LoanState] = None, as_of: Optional[date] = None) -> List[Loan]:
        """All loans, optionally filtered by (derived) status"""
        loans = [self._loan_from_dict(d) for d in self.storage.load_all(self.loans_table)]
        if status is None:
            return loans
        status = LoanState(status)
        return [loan for loan in loans if self.get_status(loan, as_of) == status]

    def get_repayment_schedule(self, loan_id: str) -> List[ScheduledInstallment]:
        return self.repayment_schedule(self._require_loan(loan_id))

    def get_ledger_entries(self, loan_id: str) -> List[LedgerEntry]:
        self._require_loan(loan_id)
        return self.ledger.entries(loan_id)

    def get_statistics(self, as_of: Optional[date] = None) -> Dict[str, Any]:
        """Portfolio totals: counts by status, disbursed, repaid, outstanding"""
        currency = self.pricer.currency
        counts = {state.value: 0 for state in LoanState}
        total_disbursed = Money.zero(currency)
        total_repayments = Money.zero(currency)
        total_outstanding = Money.zero(currency)

        for loan in self.list_loans():
            counts[loan.status.value] += 1
            if self.is_overdue(loan, as_of):
                counts[LoanState.OVERDUE.value] += 1
            if loan.disbursed_at is not None:
                total_disbursed = total_disbursed + loan.principal_amount
            total_repayments = total_repayments + loan.amount_paid
            if loan.status == LoanState.ACTIVE:
                total_outstanding = total_outstanding + loan.outstanding_balance

        return {
            'counts': counts,
            'active': counts[LoanState.ACTIVE.value],
            'pending_approval': counts[LoanState.PENDING_APPROVAL.value],
            'total_disbursed': total_disbursed,
            'total_repayments': total_repayments,
            'total_outstanding': total_outstanding
        }

    # Helpers

    def _require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if not loan:
            raise NotFound("loan", loan_id)
        return loan

    def _require_state(self, loan: Loan, state: LoanState, action: str) -> None:
        if loan.status != state:
            self.logger.warning(f"Cannot {action} loan {loan.loan_number} in {loan.status.value} state")
            raise InvalidStateTransition("loan", loan.status.value, action)

    def _transition(self, loan: Loan, new_state: LoanState, action: str) -> None:
        if new_state not in LOAN_TRANSITIONS.get(loan.status, set()):
            self.logger.warning(f"Cannot {action} loan {loan.loan_number} in {loan.status.value} state")
            raise InvalidStateTransition("loan", loan.status.value, action)
        loan.status = new_state
        loan.updated_at = datetime.now(timezone.utc)

    def _next_loan_number(self, now: datetime) -> str:
        return f"LN-{now:%Y%m%d}-{self.storage.count(self.loans_table) + 1:05d}"

    def _publish(self, event_type: DomainEvent, loan: Loan, extra: Optional[Dict[str, Any]] = None) -> None:
        data = {
            'loan_number': loan.loan_number,
            'client_id': loan.client_id,
            'status': loan.status.value,
            'outstanding_balance': str(loan.outstanding_balance.amount),
            'amount_paid': str(loan.amount_paid.amount),
            'installments_paid': loan.installments_paid,
            'currency': loan.currency.code
        }
        data.update(extra or {})
        self.events.publish(EventPayload(event_type=event_type, entity_type="loan", entity_id=loan.id, data=data))

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))

    def _loan_to_dict(self, loan: Loan) -> Dict[str, Any]:
        """Convert loan to dictionary"""
        result = {
            'id': loan.id,
            'created_at': loan.created_at.isoformat(),
            'updated_at': loan.updated_at.isoformat(),
            'loan_number': loan.loan_number,
            'client_id': loan.client_id,
            'currency': loan.currency.code,
            'principal_amount': str(loan.principal_amount.amount),
            'frequency': loan.frequency.value,
            'duration_value': loan.duration_value,
            'purpose': loan.purpose,
            'purpose_details': loan.purpose_details,
            'guarantors': [g.to_dict() for g in loan.guarantors],
            'collateral': loan.collateral.to_dict() if loan.collateral else None,
            'quote': loan.quote.to_dict(),
            'status': loan.status.value,
            'outstanding_balance': str(loan.outstanding_balance.amount),
            'amount_paid': str(loan.amount_paid.amount),
            'installments_paid': loan.installments_paid,
            'disbursement_method': loan.disbursement_method.value if loan.disbursement_method else None
        }

        for field in ['applied_by', 'approved_by', 'rejected_by', 'rejection_reason',
                      'disbursed_by', 'defaulted_by']:
            result[field] = getattr(loan, field)

        for field in ['approved_at', 'rejected_at', 'disbursed_at', 'completed_at', 'defaulted_at']:
            value = getattr(loan, field)
            result[field] = value.isoformat() if value else None

        return result

    def _loan_from_dict(self, data: Dict[str, Any]) -> Loan:
        """Convert dictionary to loan"""
        currency = Currency[data['currency']]

        def get_money(field: str) -> Money:
            return Money(Decimal(data[field]), currency)

        def get_datetime(field: str) -> Optional[datetime]:
            if data.get(field):
                return datetime.fromisoformat(data[field])
            return None

        guarantors = [Guarantor.from_dict(g) for g in data['guarantors']]
        return Loan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_number=data['loan_number'],
            client_id=data['client_id'],
            principal_amount=get_money('principal_amount'),
            frequency=Frequency(data['frequency']),
            duration_value=int(data['duration_value']),
            purpose=data['purpose'],
            purpose_details=data.get('purpose_details'),
            guarantors=(guarantors[0], guarantors[1]),
            collateral=Collateral.from_dict(data['collateral']) if data.get('collateral') else None,
            quote=LoanQuote.from_dict(data['quote']),
            status=LoanState(data['status']),
            outstanding_balance=get_money('outstanding_balance'),
            amount_paid=get_money('amount_paid'),
            installments_paid=int(data.get('installments_paid', 0)),
            applied_by=data.get('applied_by'),
            approved_at=get_datetime('approved_at'),
            approved_by=data.get('approved_by'),
            rejected_at=get_datetime('rejected_at'),
            rejected_by=data.get('rejected_by'),
            rejection_reason=data.get('rejection_reason'),
            disbursed_at=get_datetime('disbursed_at'),
            disbursed_by=data.get('disbursed_by'),
            disbursement_method=PaymentMethod(data['disbursement_method']) if data.get('disbursement_method') else None,
            completed_at=get_datetime('completed_at'),
            defaulted_at=get_datetime('defaulted_at'),
            defaulted_by=data.get('defaulted_by')
        )
