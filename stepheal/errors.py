"""
Exceptions raised by the replay engine.

Provider failures and exhaustion are reported through result objects, so
the only exceptions a caller normally sees are configuration errors.
"""


class ConfigurationError(ValueError):
    """Raised when a configuration value violates an ordering or bound."""


class ProviderError(Exception):
    """Raised by a provider that could not produce an answer."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable
