"""
Transfer-specific errors.

Transfer failures are transient: the item is failed and retried on a
later run. Only TransferConfigurationError is fatal.
"""


class TransferError(Exception):
    """Base exception for remote store transfers."""
    pass


class TransferConfigurationError(TransferError):
    """The transfer client cannot be constructed from the given settings."""
    pass
