"""Error taxonomy for the loan engine."""


class LoanEngineError(Exception):
    """Base exception for all loan engine errors."""


class InvalidInput(LoanEngineError, ValueError):
    """Raised for malformed or out-of-range arguments."""


class UnsupportedFrequency(InvalidInput):
    """Raised when a repayment frequency is not DAILY, WEEKLY or MONTHLY."""

    def __init__(self, frequency):
        self.frequency = frequency
        super().__init__(f"Unsupported frequency: {frequency}")


class NotFound(LoanEngineError, LookupError):
    """Raised when a referenced loan, payment or customer does not exist."""

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class BorrowerHasActiveLoan(LoanEngineError):
    """Raised when a borrower applies while another loan is still ACTIVE."""

    def __init__(self, borrower_id: str, active_display_ids=None):
        self.borrower_id = borrower_id
        self.active_display_ids = list(active_display_ids or [])
        super().__init__(
            f"Customer {borrower_id} already has an active loan "
            f"({', '.join(self.active_display_ids) or 'unknown'}). "
            f"Complete existing loans before creating a new one."
        )


class LoanNotActive(LoanEngineError):
    """Raised when an operation needs a loan state the loan is not in."""

    def __init__(self, loan_id: str, current_state, required_state, operation=None):
        self.loan_id = loan_id
        self.current_state = current_state
        self.required_state = required_state
        self.operation = operation
        current = getattr(current_state, "value", current_state)
        required = getattr(required_state, "value", required_state)
        action = getattr(operation, "value", operation) or "this operation"
        super().__init__(
            f"Loan {loan_id} is {current}; {action} requires a {required} loan"
        )


class PersistenceError(LoanEngineError):
    """Base class for storage failures surfaced by the engine."""

    retryable = False


class TransactionTimeout(PersistenceError):
    """Raised when an atomic unit could not start within the configured bound."""

    retryable = True


class TransactionConflict(PersistenceError):
    """Raised when a concurrent writer invalidated the current atomic unit."""

    retryable = True
