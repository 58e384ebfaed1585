"""Remote store transfer clients."""

from .base import RemoteObject, TransferClient
from .errors import TransferConfigurationError, TransferError
from .local import LocalTransferClient
from .rclone import RcloneTransferClient

__all__ = [
    "LocalTransferClient",
    "RcloneTransferClient",
    "RemoteObject",
    "TransferClient",
    "TransferConfigurationError",
    "TransferError",
]
