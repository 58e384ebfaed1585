"""Digest-verified archive copies."""

from .hashing import ArchiveError, HashVerifier, VerificationResult

__all__ = ["ArchiveError", "HashVerifier", "VerificationResult"]
