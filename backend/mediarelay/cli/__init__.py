"""Operator command line."""

from .errors import CLIError, ValidationError
from .main import build_transfer_client

__all__ = ["CLIError", "ValidationError", "build_transfer_client"]
