"""
Error Taxonomy Module

Every failure the core can report to a caller. All errors are raised
synchronously and carry a category so the presentation layer can tell
field-level problems (bad amount, missing guarantor phone) apart from
account-level ones (overdraw, wrong state).
"""

from typing import List, Optional


class ErrorCategory:
    """Message categories used by the presentation layer"""
    FIELD = "field"
    STATE = "state"
    AUTHORIZATION = "authorization"
    ACCOUNT = "account"
    INTEGRITY = "integrity"
    CONFIGURATION = "configuration"
    NOT_FOUND = "not_found"


class MicrofinanceError(Exception):
    """Base class for all core errors"""

    category = ErrorCategory.ACCOUNT

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field

    def to_dict(self) -> dict:
        """Serializable form for API layers"""
        result = {
            "error": type(self).__name__,
            "category": self.category,
            "message": self.message,
        }
        if self.field:
            result["field"] = self.field
        return result


class InvalidAmount(MicrofinanceError):
    """Non-positive or non-numeric money input"""
    category = ErrorCategory.FIELD

    def __init__(self, message: str = "Amount must be greater than zero", field: Optional[str] = "amount"):
        super().__init__(message, field)


class InvalidDuration(MicrofinanceError):
    """Non-positive loan duration"""
    category = ErrorCategory.FIELD

    def __init__(self, message: str = "Duration must be greater than zero", field: Optional[str] = "duration_value"):
        super().__init__(message, field)


class InvalidPeriodCount(MicrofinanceError):
    """Rate lookup with a period count below one"""
    category = ErrorCategory.FIELD

    def __init__(self, message: str = "Period count must be at least 1", field: Optional[str] = "period_count"):
        super().__init__(message, field)


class IncompleteGuarantorInfo(MicrofinanceError):
    """One or more mandatory guarantor fields are missing"""
    category = ErrorCategory.FIELD

    def __init__(self, missing_fields: List[str]):
        self.missing_fields = list(missing_fields)
        super().__init__(
            "Complete information is required for both guarantors: missing "
            + ", ".join(self.missing_fields),
            field=self.missing_fields[0] if self.missing_fields else None,
        )

    def to_dict(self) -> dict:
        result = super().to_dict()
        result["missing_fields"] = self.missing_fields
        return result


class InvalidStateTransition(MicrofinanceError):
    """Transition attempted from a state that does not permit it"""
    category = ErrorCategory.STATE

    def __init__(self, entity: str, current_state: str, action: str):
        self.entity = entity
        self.current_state = current_state
        self.action = action
        super().__init__(f"Cannot {action} {entity} in {current_state} state")


class Unauthorized(MicrofinanceError):
    """Caller lacks the role required for a privileged transition"""
    category = ErrorCategory.AUTHORIZATION

    def __init__(self, actor: str, action: str):
        self.actor = actor
        self.action = action
        super().__init__(f"Actor {actor} is not authorized to {action}")


class InsufficientBalance(MicrofinanceError):
    """Debit would overdraw the account"""
    category = ErrorCategory.ACCOUNT

    def __init__(self, account_id: str, balance, amount):
        self.account_id = account_id
        self.balance = balance
        self.amount = amount
        super().__init__(
            f"Insufficient balance on account {account_id}: "
            f"balance {balance}, requested {amount}"
        )


class OverpaymentRejected(MicrofinanceError):
    """Repayment exceeds the outstanding balance"""
    category = ErrorCategory.ACCOUNT

    def __init__(self, loan_id: str, outstanding, amount):
        self.loan_id = loan_id
        self.outstanding = outstanding
        self.amount = amount
        super().__init__(
            f"Repayment of {amount} exceeds outstanding balance {outstanding} "
            f"on loan {loan_id}"
        )


class LedgerCorrupted(MicrofinanceError):
    """
    Balance chain inconsistency detected. Fatal for the account: posting is
    halted until manual reconciliation.
    """
    category = ErrorCategory.INTEGRITY

    def __init__(self, account_id: str, detail: str):
        self.account_id = account_id
        self.detail = detail
        super().__init__(f"Ledger for account {account_id} is corrupted: {detail}")


class ConfigurationError(MicrofinanceError):
    """Invalid settings, detected at startup"""
    category = ErrorCategory.CONFIGURATION


class RateScheduleError(ConfigurationError):
    """Rate tier configuration is invalid"""


class NotFound(MicrofinanceError):
    """Unknown loan, account or ledger entry"""
    category = ErrorCategory.NOT_FOUND

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity.capitalize()} {entity_id} not found")


class InvalidFrequency(MicrofinanceError):
    """Repayment frequency outside the supported set"""
    category = ErrorCategory.FIELD

    def __init__(self, value, field: Optional[str] = "repayment_frequency"):
        self.value = value
        super().__init__(f"Unsupported repayment frequency: {value!r}", field)


class InvalidChoice(MicrofinanceError):
    """Value outside a fixed set (payment method, account type)"""
    category = ErrorCategory.FIELD

    def __init__(self, field: str, value, choices):
        self.value = value
        self.choices = list(choices)
        super().__init__(
            f"Invalid {field.replace('_', ' ')} {value!r}; expected one of {', '.join(self.choices)}",
            field,
        )


class MissingField(MicrofinanceError):
    """Required free-text field left blank"""
    category = ErrorCategory.FIELD

    def __init__(self, field: str):
        super().__init__(f"{field.replace('_', ' ').capitalize()} is required", field)


class DuplicateAccountType(MicrofinanceError):
    """Client already holds an open savings account of the requested type"""
    category = ErrorCategory.FIELD

    def __init__(self, client_id: str, account_type: str):
        self.client_id = client_id
        self.account_type = account_type
        super().__init__(
            f"Client {client_id} already has a {account_type} savings account",
            field="account_type",
        )
