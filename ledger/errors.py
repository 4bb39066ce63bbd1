class LedgerServiceError(Exception):
    pass


class ValidationFailedError(LedgerServiceError):
    pass


class InvalidAmountError(ValidationFailedError):
    pass


class NotFoundError(LedgerServiceError):
    pass


class AlreadyProcessedError(LedgerServiceError):
    """The target state already holds; callers treat this as success."""


class DuplicateReferenceError(AlreadyProcessedError):
    pass


class InsufficientFundsError(LedgerServiceError):
    pass


class WrongWorkflowError(LedgerServiceError):
    pass


class StorageFailureError(LedgerServiceError):
    pass
