from typing import Optional


class LedgerServiceError(Exception):
    pass


class ValidationError(LedgerServiceError):
    pass


class InvalidStateTransitionError(ValidationError):
    pass


class NotFoundError(LedgerServiceError):
    pass


class AuthorizationError(LedgerServiceError):
    pass


class DuplicateKeyError(LedgerServiceError):
    def __init__(self, field: str, message: Optional[str] = None):
        self.field = field
        super().__init__(message or f"{field.replace('_', ' ').capitalize()} already exists")
