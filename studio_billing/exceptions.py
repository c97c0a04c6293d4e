"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID


class BillingError(Exception):
    """Base exception for all billing errors."""

    pass


class InsufficientCreditsError(BillingError):
    """Raised when the wallet's total balance cannot cover a deduction."""

    def __init__(self, balance: int, required: int) -> None:
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient credits. Balance: {balance}, Required: {required}")


class InvalidAmountError(BillingError):
    """Raised when a credit amount is negative or not an integer."""

    def __init__(self, amount: object) -> None:
        self.amount = amount
        super().__init__(f"Invalid credit amount: {amount!r}")


class WalletNotFoundError(BillingError):
    """Raised when a user has no wallet."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"Wallet not found for user: {user_id}")


class TransactionNotFoundError(BillingError):
    """Raised when a credit transaction doesn't exist (or belongs to another user)."""

    def __init__(self, transaction_id: UUID) -> None:
        self.transaction_id = transaction_id
        super().__init__(f"Credit transaction not found: {transaction_id}")


class TaskNotFoundError(BillingError):
    """Raised when a generation task doesn't exist."""

    def __init__(self, task_id: UUID | str) -> None:
        self.task_id = task_id
        super().__init__(f"Generation task not found: {task_id}")


class InvalidTaskTransitionError(BillingError):
    """Raised when a task operation is attempted from the wrong state."""

    def __init__(self, task_id: UUID, status: str, operation: str) -> None:
        self.task_id = task_id
        self.status = status
        self.operation = operation
        super().__init__(f"Cannot {operation} task {task_id} in status {status}")


class WriteVerificationError(BillingError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(BillingError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class ProviderError(BillingError):
    """Raised when the generation provider rejects a request."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Provider error: {message}")


class ProviderUnavailableError(ProviderError):
    """Raised when the generation provider can't be reached or fails server-side."""

    pass


class CallbackAuthenticationError(BillingError):
    """Raised when a provider callback fails authentication."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Callback authentication failed: {message}")
