"""Base exception classes for governance pipeline error handling"""


class GovernanceException(Exception):
    """Base exception for all governance pipeline errors"""

    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(GovernanceException):
    """Raised when input validation fails"""
    pass


class ConsentError(GovernanceException):
    """Raised when a consent operation is called with an unusable record"""
    pass


class LockedEntityError(GovernanceException):
    """Raised when a locked cohort is edited, deleted or re-membered"""
    pass


class InvalidTransitionError(GovernanceException):
    """Raised when a partnership state machine is asked for a disallowed transition"""
    pass


class NotFoundError(GovernanceException):
    """Raised when an operation cannot proceed without a referenced entity"""
    pass


class ExportError(GovernanceException):
    """Raised when an RWE export cannot be generated"""
    pass


class GovernanceDeniedError(GovernanceException):
    """Raised when an export is attempted outside an agreement's data access scope"""
    pass


class ConcurrencyError(GovernanceException):
    """Raised when a write is based on a stale record version"""
    pass


class ConfigurationError(GovernanceException):
    """Raised when configuration is invalid or missing"""
    pass
