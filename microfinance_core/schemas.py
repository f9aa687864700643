"""
Pydantic schemas for command requests and responses

Request models carry raw form values (strings or numbers). They are turned
into domain values once, by the to_* helpers and the lifecycle commands, so
domain errors (InvalidAmount, IncompleteGuarantorInfo, ...) are what callers
see for bad input.
"""

from decimal import Decimal
from datetime import date
from typing import Dict, List, Optional, Any, Union
from pydantic import BaseModel, Field

from .currency import Money, Currency, parse_money
from .loans import Collateral, Loan
from .savings import SavingsAccount
from .ledger import LedgerEntry
from .pricing import LoanQuote

RawAmount = Union[str, int, float, Decimal]


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (NGN, GHS, etc.)")

    def to_money(self) -> Money:
        return parse_money(self.amount, Currency[self.currency], allow_zero=True)

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


# Loan schemas
class QuoteRequest(BaseModel):
    principal_amount: RawAmount
    repayment_frequency: str = Field(..., description="daily, weekly, biweekly or monthly")
    duration_value: Union[int, str] = Field(..., description="Number of repayment periods")


class LoanApplicationRequest(BaseModel):
    client_id: str
    principal_amount: RawAmount
    repayment_frequency: str = Field(..., description="daily, weekly, biweekly or monthly")
    duration_value: Union[int, str]
    purpose: str
    purpose_details: Optional[str] = None

    collateral_type: Optional[str] = None
    collateral_value: Optional[RawAmount] = None
    collateral_description: Optional[str] = None

    # First and second guarantor, as submitted by the application form
    guarantor_name: Optional[str] = None
    guarantor_phone: Optional[str] = None
    guarantor_address: Optional[str] = None
    guarantor2_name: Optional[str] = None
    guarantor2_phone: Optional[str] = None
    guarantor2_address: Optional[str] = None

    def to_guarantors(self) -> List[Dict[str, Optional[str]]]:
        return [
            {'name': self.guarantor_name, 'phone': self.guarantor_phone, 'address': self.guarantor_address},
            {'name': self.guarantor2_name, 'phone': self.guarantor2_phone, 'address': self.guarantor2_address},
        ]

    def to_collateral(self, currency: Currency) -> Optional[Collateral]:
        if not self.collateral_type:
            return None
        value = (parse_money(self.collateral_value, currency, field="collateral_value")
                 if self.collateral_value is not None else Money.zero(currency))
        return Collateral(
            collateral_type=self.collateral_type,
            value=value,
            description=self.collateral_description or ""
        )


class RejectLoanRequest(BaseModel):
    reason: str


class DisburseLoanRequest(BaseModel):
    disbursement_method: str = "bank_transfer"
    transaction_reference: Optional[str] = None


class RepaymentRequest(BaseModel):
    amount: RawAmount
    payment_method: str = "cash"
    reference: Optional[str] = None


# Savings schemas
class CreateSavingsRequest(BaseModel):
    client_id: str
    account_type: str = Field(..., description="daily, weekly, monthly or fixed")
    target_amount: Optional[RawAmount] = None
    maturity_date: Optional[date] = None
    notes: Optional[str] = None


class DepositRequest(BaseModel):
    amount: RawAmount
    payment_method: str = "cash"
    reference: Optional[str] = None


class WithdrawRequest(BaseModel):
    amount: RawAmount
    payment_method: str = "cash"
    reference: Optional[str] = None


class InterestRequest(BaseModel):
    amount: RawAmount
    reference: Optional[str] = None


# Responses
class QuoteResponse(BaseModel):
    principal_amount: MoneyModel
    repayment_frequency: str
    duration_value: int
    periodic_rate: str
    annual_rate: str
    duration_months: str
    number_of_installments: int
    installment_amount: MoneyModel
    final_installment_amount: MoneyModel
    total_interest: MoneyModel
    total_repayment: MoneyModel

    @classmethod
    def from_quote(cls, quote: LoanQuote) -> 'QuoteResponse':
        return cls(
            principal_amount=MoneyModel.from_money(quote.principal),
            repayment_frequency=quote.frequency.value,
            duration_value=quote.duration_value,
            periodic_rate=str(quote.periodic_rate),
            annual_rate=str(quote.annual_rate),
            duration_months=str(quote.duration_months),
            number_of_installments=quote.number_of_installments,
            installment_amount=MoneyModel.from_money(quote.installment_amount),
            final_installment_amount=MoneyModel.from_money(quote.final_installment_amount),
            total_interest=MoneyModel.from_money(quote.total_interest),
            total_repayment=MoneyModel.from_money(quote.total_repayment)
        )


class LoanResponse(BaseModel):
    id: str
    loan_number: str
    client_id: str
    status: str
    principal_amount: MoneyModel
    outstanding_balance: MoneyModel
    amount_paid: MoneyModel
    installments_paid: int
    quote: QuoteResponse
    rejection_reason: Optional[str] = None
    days_overdue: int = 0

    @classmethod
    def from_loan(cls, loan: Loan, status: Optional[str] = None, days_overdue: int = 0) -> 'LoanResponse':
        return cls(
            id=loan.id,
            loan_number=loan.loan_number,
            client_id=loan.client_id,
            status=status or loan.status.value,
            principal_amount=MoneyModel.from_money(loan.principal_amount),
            outstanding_balance=MoneyModel.from_money(loan.outstanding_balance),
            amount_paid=MoneyModel.from_money(loan.amount_paid),
            installments_paid=loan.installments_paid,
            quote=QuoteResponse.from_quote(loan.quote),
            rejection_reason=loan.rejection_reason,
            days_overdue=days_overdue
        )


class SavingsAccountResponse(BaseModel):
    id: str
    account_number: str
    client_id: str
    account_type: str
    status: str
    balance: MoneyModel
    total_deposits: MoneyModel
    total_withdrawals: MoneyModel
    interest_earned: MoneyModel
    maturity_date: Optional[date] = None

    @classmethod
    def from_account(cls, account: SavingsAccount) -> 'SavingsAccountResponse':
        return cls(
            id=account.id,
            account_number=account.account_number,
            client_id=account.client_id,
            account_type=account.account_type.value,
            status=account.status.value,
            balance=MoneyModel.from_money(account.balance),
            total_deposits=MoneyModel.from_money(account.total_deposits),
            total_withdrawals=MoneyModel.from_money(account.total_withdrawals),
            interest_earned=MoneyModel.from_money(account.interest_earned),
            maturity_date=account.maturity_date
        )


class LedgerEntryResponse(BaseModel):
    id: str
    sequence_number: int
    entry_type: str
    direction: str
    amount: MoneyModel
    balance_before: MoneyModel
    balance_after: MoneyModel
    recorded_by: str
    timestamp: str
    reference: str
    payment_method: Optional[str] = None
    description: str = ""
    reverses: Optional[str] = None

    @classmethod
    def from_entry(cls, entry: LedgerEntry) -> 'LedgerEntryResponse':
        return cls(
            id=entry.id,
            sequence_number=entry.sequence_number,
            entry_type=entry.entry_type.value,
            direction=entry.direction.value,
            amount=MoneyModel.from_money(entry.amount),
            balance_before=MoneyModel.from_money(entry.balance_before),
            balance_after=MoneyModel.from_money(entry.balance_after),
            recorded_by=entry.recorded_by,
            timestamp=entry.timestamp.isoformat(),
            reference=entry.reference,
            payment_method=entry.payment_method,
            description=entry.description,
            reverses=entry.reverses
        )


class ErrorResponse(BaseModel):
    error: str
    category: str
    message: str
    field: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
