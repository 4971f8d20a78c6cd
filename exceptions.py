"""Exception hierarchy for the FutaPay relay."""


class RelayError(Exception):
    """Base exception for all relay errors."""


class ConfigurationError(RelayError):
    """Raised when a processor credential or setting is missing."""


class ValidationError(RelayError):
    """Raised when a client request cannot be accepted as given."""


class NormalizationError(ValidationError):
    """Raised when a phone number or provider cannot be normalized."""

    def __init__(self, message: str, msisdn: str = "", expected_format: str = ""):
        super().__init__(message)
        self.msisdn = msisdn
        self.expected_format = expected_format


class CorrelationConflictError(RelayError):
    """Raised when an external id is already bound to another transaction."""


class LedgerError(RelayError):
    """Raised when a ledger write would break an immutable field."""
