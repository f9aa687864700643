"""
Loan Pricing Module

Flat-rate loan pricing: the total repayment is known up front and split into
equal installments, with the last installment absorbing the rounding residual
so the loan balance reaches exactly zero.

    total_interest   = principal x periodic_rate x duration_value
    total_repayment  = principal + total_interest
    installment      = round_half_up(total_repayment / n, 2)
    final            = total_repayment - installment x (n - 1)

The annual rate is periodic_rate x periods_per_year and is for display only.
"""

from decimal import Decimal, InvalidOperation
from datetime import date, timedelta
from dataclasses import dataclass
from typing import Dict, List, Any, Union
import calendar

from .currency import Money, Currency, parse_money, round_half_up
from .exceptions import InvalidAmount, InvalidDuration
from .rates import RateSchedule, Frequency


@dataclass(frozen=True)
class LoanQuote:
    """Pricing terms for one principal/frequency/duration request"""
    principal: Money
    frequency: Frequency
    duration_value: int
    periodic_rate: Decimal
    annual_rate: Decimal
    duration_months: Decimal
    number_of_installments: int
    installment_amount: Money
    final_installment_amount: Money
    total_interest: Money
    total_repayment: Money

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def residual(self) -> Money:
        """Difference between the rounded installments and the exact total"""
        return self.installment_amount * self.number_of_installments - self.total_repayment

    def installments(self) -> List[Money]:
        """The n installment amounts, last one adjusted"""
        n = self.number_of_installments
        return [self.installment_amount] * (n - 1) + [self.final_installment_amount]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'principal': str(self.principal.amount),
            'currency': self.currency.code,
            'frequency': self.frequency.value,
            'duration_value': self.duration_value,
            'periodic_rate': str(self.periodic_rate),
            'annual_rate': str(self.annual_rate),
            'duration_months': str(self.duration_months),
            'number_of_installments': self.number_of_installments,
            'installment_amount': str(self.installment_amount.amount),
            'final_installment_amount': str(self.final_installment_amount.amount),
            'total_interest': str(self.total_interest.amount),
            'total_repayment': str(self.total_repayment.amount)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanQuote':
        currency = Currency[data['currency']]

        def money(key: str) -> Money:
            return Money(Decimal(data[key]), currency)

        return cls(
            principal=money('principal'),
            frequency=Frequency(data['frequency']),
            duration_value=int(data['duration_value']),
            periodic_rate=Decimal(data['periodic_rate']),
            annual_rate=Decimal(data['annual_rate']),
            duration_months=Decimal(data['duration_months']),
            number_of_installments=int(data['number_of_installments']),
            installment_amount=money('installment_amount'),
            final_installment_amount=money('final_installment_amount'),
            total_interest=money('total_interest'),
            total_repayment=money('total_repayment')
        )


@dataclass(frozen=True)
class ScheduledInstallment:
    """One due installment on a repayment schedule"""
    number: int
    due_date: date
    amount: Money
    cumulative_due: Money


def parse_duration(value: Union[int, str, Decimal]) -> int:
    """Parse a duration (number of repayment periods) into a positive int"""
    if isinstance(value, bool) or value is None:
        raise InvalidDuration("Duration must be a whole number of periods")
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation:
        raise InvalidDuration("Duration must be a whole number of periods")
    if not number.is_finite() or number != number.to_integral_value():
        raise InvalidDuration("Duration must be a whole number of periods")
    if number <= 0:
        raise InvalidDuration()
    return int(number)


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def due_date(start_date: date, frequency: Frequency, number: int) -> date:
    """Due date of installment `number` (1-based) for a loan starting on start_date"""
    if frequency.days_per_period is None:
        return add_months(start_date, number)
    return start_date + timedelta(days=frequency.days_per_period * number)


class LoanPricer:
    """Computes LoanQuotes from a RateSchedule. Stateless and thread-safe."""

    def __init__(self, rate_schedule: RateSchedule, currency: Currency = Currency.NGN):
        self.rate_schedule = rate_schedule
        self.currency = currency

    def quote(self, principal, frequency, duration_value) -> LoanQuote:
        """
        Price a loan request

        Args:
            principal: Requested principal (Money, Decimal, int or numeric string)
            frequency: Repayment frequency (Frequency or its name)
            duration_value: Number of repayment periods

        Returns:
            Immutable LoanQuote

        Raises:
            InvalidAmount: If principal is not a positive amount, or too small
                to be split into duration_value non-zero installments
            InvalidDuration: If duration_value is not a positive whole number
        """
        principal = parse_money(principal, self.currency, field="principal_amount")
        n = parse_duration(duration_value)
        frequency = Frequency.parse(frequency)

        periodic_rate = self.rate_schedule.rate_for(frequency, n)
        duration_months = round_half_up(Decimal(n) / frequency.periods_per_month, 4)
        annual_rate = round_half_up(periodic_rate * frequency.periods_per_year, 6)

        total_interest = Money(principal.amount * periodic_rate * n, self.currency)
        total_repayment = principal + total_interest
        installment_amount = total_repayment / n
        final_installment_amount = total_repayment - installment_amount * (n - 1)

        if not installment_amount.is_positive() or not final_installment_amount.is_positive():
            raise InvalidAmount(
                f"Principal {principal.to_string()} is too small to repay in {n} installments",
                field="principal_amount"
            )

        return LoanQuote(
            principal=principal,
            frequency=frequency,
            duration_value=n,
            periodic_rate=periodic_rate,
            annual_rate=annual_rate,
            duration_months=duration_months,
            number_of_installments=n,
            installment_amount=installment_amount,
            final_installment_amount=final_installment_amount,
            total_interest=total_interest,
            total_repayment=total_repayment
        )

    @staticmethod
    def repayment_schedule(quote: LoanQuote, start_date: date) -> List[ScheduledInstallment]:
        """Due dates and amounts for every installment of a quote"""
        schedule = []
        cumulative = Money.zero(quote.currency)
        for number, amount in enumerate(quote.installments(), start=1):
            cumulative = cumulative + amount
            schedule.append(ScheduledInstallment(
                number=number,
                due_date=due_date(start_date, quote.frequency, number),
                amount=amount,
                cumulative_due=cumulative
            ))
        return schedule

    @staticmethod
    def amount_due_before(quote: LoanQuote, start_date: date, as_of: date) -> Money:
        """Cumulative amount of installments whose due date is strictly before as_of"""
        due = Money.zero(quote.currency)
        for item in LoanPricer.repayment_schedule(quote, start_date):
            if item.due_date >= as_of:
                break
            due = item.cumulative_due
        return due

    @staticmethod
    def installments_covered(quote: LoanQuote, amount_paid: Money) -> int:
        """How many installments amount_paid fully covers"""
        covered = 0
        cumulative = Money.zero(quote.currency)
        for amount in quote.installments():
            cumulative = cumulative + amount
            if cumulative > amount_paid:
                break
            covered += 1
        return covered
