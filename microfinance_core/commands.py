"""
Command Facade

MicrofinanceCore wires the components together from configuration and is the
single entry point for the commands a transport layer issues. Each command
accepts plain Python values or the matching request model from schemas.py;
raw inputs are parsed into domain values here, once.
"""

from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Union

from .approvals import Actor, ApprovalGateway, RoleBasedApprovalGateway, Permission
from .audit import AuditTrail
from .config import MicrofinanceConfig, get_config
from .currency import Currency
from .events import DomainEvent, EventDispatcher
from .exceptions import ConfigurationError, ErrorCategory, MicrofinanceError, NotFound
from .ledger import Ledger
from .loans import Loan, LoanLifecycle, LoanState
from .logging_config import setup_logging, get_logger
from .pricing import LoanPricer, LoanQuote, ScheduledInstallment
from .rates import Frequency, RateSchedule
from .savings import SavingsAccount, SavingsLifecycle
from .schemas import (
    CreateSavingsRequest,
    DepositRequest,
    DisburseLoanRequest,
    ErrorResponse,
    InterestRequest,
    LoanApplicationRequest,
    QuoteRequest,
    RejectLoanRequest,
    RepaymentRequest,
    WithdrawRequest,
)
from .storage import StorageInterface, create_storage

ActorLike = Union[Actor, Mapping[str, str], str]


def as_actor(actor: ActorLike) -> Actor:
    """Coerce an Actor, {"id", "role"} mapping or bare staff ID into an Actor"""
    if isinstance(actor, Actor):
        return actor
    if isinstance(actor, Mapping):
        return Actor(id=str(actor["id"]), role=str(actor.get("role", "loan_officer")))
    return Actor(id=str(actor))


def _model(value, model_class):
    """Validate a mapping into a request model; pass models through"""
    if isinstance(value, model_class):
        return value
    if isinstance(value, Mapping):
        return model_class(**value)
    return None


class MicrofinanceCore:
    """Microfinance core with all components initialized"""

    def __init__(
        self,
        config: Optional[MicrofinanceConfig] = None,
        storage: Optional[StorageInterface] = None,
        gateway: Optional[ApprovalGateway] = None,
        rate_schedule: Optional[RateSchedule] = None
    ):
        self.config = config or get_config()
        self.logger = get_logger("microfinance.core")

        try:
            self.currency = Currency[self.config.currency.upper()]
        except KeyError:
            raise ConfigurationError(f"Unsupported currency: {self.config.currency}")

        # Initialize storage
        self.storage = storage or create_storage(self.config.database_url)

        # Initialize core components
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.events = EventDispatcher()
        self.gateway = gateway or RoleBasedApprovalGateway(
            self.config.approval_role_list, audit_trail=self.audit_trail
        )

        if rate_schedule is None:
            rate_schedule = (RateSchedule.from_file(self.config.rate_schedule_path)
                             if self.config.rate_schedule_path else RateSchedule.default())
        self.rate_schedule = rate_schedule
        self.pricer = LoanPricer(self.rate_schedule, self.currency)

        self.ledger = Ledger(self.storage, self.audit_trail, self.currency)
        self.loans = LoanLifecycle(
            self.storage, self.ledger, self.pricer, self.gateway, self.events, self.audit_trail
        )
        self.savings = SavingsLifecycle(
            self.storage, self.ledger, self.gateway, self.events, self.audit_trail, self.currency
        )
        self.logger.info(
            f"Microfinance core ready: currency {self.currency.code}, storage {type(self.storage).__name__}"
        )

    @classmethod
    def from_env(cls) -> 'MicrofinanceCore':
        """Build from MICROFINANCE_* settings and configure logging"""
        config = get_config()
        setup_logging(config.log_level, log_format=config.log_format)
        return cls(config)

    # Pricing

    def quote(self, principal, frequency=None, duration_value=None) -> LoanQuote:
        request = _model(principal, QuoteRequest)
        if request:
            return self.pricer.quote(request.principal_amount, request.repayment_frequency, request.duration_value)
        return self.pricer.quote(principal, frequency, duration_value)

    def rate_tiers(self) -> Dict[str, List[Dict[str, Any]]]:
        """Tier table for display, straight from the pricing schedule"""
        return {
            frequency.value: [
                {'periods': tier.label, 'min_periods': tier.min_periods, 'max_periods': tier.max_periods,
                 'periodic_rate': str(tier.periodic_rate), 'monthly_rate': str(tier.monthly_rate)}
                for tier in self.rate_schedule.tiers(frequency)
            ]
            for frequency in Frequency
        }

    # Loans

    def apply_loan(self, application: Union[LoanApplicationRequest, Mapping[str, Any]],
                   actor: Optional[ActorLike] = None) -> Loan:
        request = _model(application, LoanApplicationRequest)
        return self.loans.apply_loan(
            client_id=request.client_id,
            principal=request.principal_amount,
            frequency=request.repayment_frequency,
            duration_value=request.duration_value,
            purpose=request.purpose,
            guarantors=request.to_guarantors(),
            collateral=request.to_collateral(self.currency),
            applied_by=as_actor(actor) if actor is not None else None,
            purpose_details=request.purpose_details
        )

    def approve_loan(self, loan_id: str, actor: ActorLike) -> Loan:
        return self.loans.approve_loan(loan_id, as_actor(actor))

    def reject_loan(self, loan_id: str, actor: ActorLike,
                    reason: Union[str, RejectLoanRequest, Mapping[str, Any]]) -> Loan:
        request = _model(reason, RejectLoanRequest)
        return self.loans.reject_loan(loan_id, as_actor(actor), request.reason if request else reason)

    def disburse_loan(self, loan_id: str, actor: ActorLike,
                      details: Optional[Union[DisburseLoanRequest, Mapping[str, Any]]] = None) -> Loan:
        request = _model(details, DisburseLoanRequest) or DisburseLoanRequest()
        return self.loans.disburse_loan(
            loan_id, as_actor(actor), method=request.disbursement_method,
            reference=request.transaction_reference
        )

    def repay_loan(self, loan_id: str, amount, actor: ActorLike,
                   method: str = "cash", reference: Optional[str] = None) -> Loan:
        request = _model(amount, RepaymentRequest)
        if request:
            amount, method, reference = request.amount, request.payment_method, request.reference
        return self.loans.repay_loan(loan_id, amount, as_actor(actor), method=method, reference=reference)

    def reverse_repayment(self, loan_id: str, entry_id: str, actor: ActorLike, reason: str) -> Loan:
        return self.loans.reverse_repayment(loan_id, entry_id, as_actor(actor), reason)

    def mark_defaulted(self, loan_id: str, actor: ActorLike, reason: Optional[str] = None) -> Loan:
        return self.loans.mark_defaulted(loan_id, as_actor(actor), reason)

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        return self.loans.get_loan(loan_id)

    def list_loans(self, status: Optional[Union[str, LoanState]] = None,
                   as_of: Optional[date] = None) -> List[Loan]:
        return self.loans.list_loans(status, as_of)

    def get_loan_status(self, loan_id: str, as_of: Optional[date] = None) -> LoanState:
        loan = self.loans.get_loan(loan_id)
        if loan is None:
            raise NotFound("loan", loan_id)
        return self.loans.get_status(loan, as_of)

    def get_repayment_schedule(self, loan_id: str) -> List[ScheduledInstallment]:
        return self.loans.get_repayment_schedule(loan_id)

    def loan_statistics(self, as_of: Optional[date] = None) -> Dict[str, Any]:
        return self.loans.get_statistics(as_of)

    # Savings

    def create_savings(self, request: Union[CreateSavingsRequest, Mapping[str, Any]],
                       actor: Optional[ActorLike] = None) -> SavingsAccount:
        request = _model(request, CreateSavingsRequest)
        return self.savings.create_savings(
            client_id=request.client_id,
            account_type=request.account_type,
            target_amount=request.target_amount,
            maturity_date=request.maturity_date,
            created_by=as_actor(actor) if actor is not None else None,
            notes=request.notes
        )

    def approve_savings(self, account_id: str, actor: ActorLike) -> SavingsAccount:
        return self.savings.approve_savings(account_id, as_actor(actor))

    def deposit(self, account_id: str, amount, actor: ActorLike,
                method: str = "cash", reference: Optional[str] = None) -> SavingsAccount:
        request = _model(amount, DepositRequest)
        if request:
            amount, method, reference = request.amount, request.payment_method, request.reference
        return self.savings.deposit(account_id, amount, as_actor(actor), method=method, reference=reference)

    def withdraw(self, account_id: str, amount, actor: ActorLike,
                 method: str = "cash", reference: Optional[str] = None,
                 as_of: Optional[date] = None) -> SavingsAccount:
        request = _model(amount, WithdrawRequest)
        if request:
            amount, method, reference = request.amount, request.payment_method, request.reference
        return self.savings.withdraw(
            account_id, amount, as_actor(actor), method=method, reference=reference, as_of=as_of
        )

    def post_interest(self, account_id: str, amount, actor: ActorLike,
                      reference: Optional[str] = None) -> SavingsAccount:
        request = _model(amount, InterestRequest)
        if request:
            amount, reference = request.amount, request.reference
        return self.savings.post_interest(account_id, amount, as_actor(actor), reference=reference)

    def charge_fee(self, account_id: str, amount, actor: ActorLike, description: str = "") -> SavingsAccount:
        return self.savings.charge_fee(account_id, amount, as_actor(actor), description=description)

    def reverse_savings_transaction(self, account_id: str, entry_id: str,
                                    actor: ActorLike, reason: str) -> SavingsAccount:
        return self.savings.reverse_transaction(account_id, entry_id, as_actor(actor), reason)

    def close_savings(self, account_id: str, actor: ActorLike) -> SavingsAccount:
        return self.savings.close_savings(account_id, as_actor(actor))

    def get_savings_account(self, account_id: str) -> Optional[SavingsAccount]:
        return self.savings.get_account(account_id)

    def savings_statistics(self) -> Dict[str, Any]:
        return self.savings.get_statistics()

    # Ledger

    def balance(self, account_id: str):
        return self.ledger.balance(account_id)

    def history(self, account_id: str, ordering: str = "chronological"):
        return self.ledger.history(account_id, ordering)

    def verify_ledger(self, account_id: str) -> bool:
        return self.ledger.verify_chain(account_id)

    def release_ledger_hold(self, account_id: str, actor: ActorLike) -> None:
        actor = as_actor(actor)
        self.gateway.authorize(actor, Permission.REVERSE_ENTRY)
        self.ledger.release_hold(account_id, actor.id)

    # Events

    def subscribe(self, event_type: Optional[DomainEvent], handler) -> None:
        """Subscribe a notification handler; None subscribes to every event"""
        if event_type is None:
            self.events.subscribe_all(handler)
        else:
            self.events.subscribe(event_type, handler)

    # Errors

    @staticmethod
    def error_response(error: MicrofinanceError) -> ErrorResponse:
        """Render a core error for the presentation layer"""
        data = error.to_dict()
        details = {k: v for k, v in data.items() if k not in ('error', 'category', 'message', 'field')}
        return ErrorResponse(
            error=data['error'],
            category=data.get('category', ErrorCategory.ACCOUNT),
            message=data['message'],
            field=data.get('field'),
            details=details
        )

    def close(self) -> None:
        self.storage.close()
