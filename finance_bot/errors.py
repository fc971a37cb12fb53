from enum import Enum


class FinanceBotError(Exception):
    """Base class for errors raised inside the bot."""


class TransactionValidationError(FinanceBotError):
    """A transaction draft breaks the ledger rules."""

    def __init__(self, problems: list[str]):
        self.problems = problems
        super().__init__("; ".join(problems))


class ProviderError(FinanceBotError):
    """A single language-model provider call failed."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider}: {message}")


class ProviderUnavailable(FinanceBotError):
    """Every configured provider failed for a request."""


class StorageUnavailable(FinanceBotError):
    """The persistence layer could not be reached."""


class StorageBackpressure(StorageUnavailable):
    """The persistence layer asked the caller to slow down."""


class PromptTemplateError(FinanceBotError):
    """A prompt template references a variable nobody supplies."""


class RejectionReason(str, Enum):
    NOT_FOUND = "not_found"
    NOT_OWNER = "not_owner"
    EXPIRED = "expired"


class ConfirmationRejected(FinanceBotError):
    def __init__(self, reason: RejectionReason, token: str):
        self.reason = reason
        self.token = token
        super().__init__(f"confirmation {token} rejected: {reason.value}")


class RateLimited(FinanceBotError):
    def __init__(self, retry_after: int):
        self.retry_after = retry_after
        super().__init__(f"rate limited, retry after {retry_after}s")


class PermissionDenied(FinanceBotError):
    """The acting participant's role does not allow the operation."""
