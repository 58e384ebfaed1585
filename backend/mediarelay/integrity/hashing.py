"""
Content digests for archive verification.

The archive copy of an original is only trusted once its SHA-256 digest
equals the source digest. archive_with_verification() writes to a
temporary sibling and renames it into place only after verification, so
the destination path either holds a verified copy or does not exist.
"""

import hashlib
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)

DEFAULT_ALGORITHM = "sha256"
DEFAULT_CHUNK_SIZE = 8 * 1024 * 1024

PathLike = Union[str, Path]


class ArchiveError(Exception):
    """Raised when the archive copy cannot be written."""
    pass


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of comparing two files by digest."""

    equal: bool
    digest_a: str
    digest_b: str


class HashVerifier:
    """Computes and compares strong content digests."""

    def __init__(self, algorithm: str = DEFAULT_ALGORITHM, chunk_size: int = DEFAULT_CHUNK_SIZE):
        if algorithm not in hashlib.algorithms_available:
            raise ValueError(f"Unsupported digest algorithm: {algorithm}")
        self.algorithm = algorithm
        self.chunk_size = chunk_size

    def digest(self, path: PathLike) -> str:
        """Hex digest of a file's content, read in chunks."""
        hasher = hashlib.new(self.algorithm)
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(self.chunk_size), b""):
                hasher.update(chunk)
        return hasher.hexdigest()

    def verify(self, path_a: PathLike, path_b: PathLike) -> VerificationResult:
        """
        Compare two files by digest.

        Args:
            path_a: Authoritative file (the source)
            path_b: Copy to check (the destination)

        Returns:
            VerificationResult with both digests
        """
        digest_a = self.digest(path_a)
        digest_b = self.digest(path_b)
        return VerificationResult(
            equal=digest_a == digest_b,
            digest_a=digest_a,
            digest_b=digest_b,
        )

    def archive_with_verification(self, source: PathLike, destination: PathLike) -> VerificationResult:
        """
        Copy source to destination and verify the copy by digest.

        On mismatch only the unverified copy is deleted; the source is
        never touched.

        Args:
            source: Authoritative original
            destination: Final archive path

        Returns:
            VerificationResult. When equal is False, destination does not exist.

        Raises:
            ArchiveError: If the copy or the digest computation fails
        """
        source = Path(source)
        destination = Path(destination)
        partial = destination.with_name(destination.name + ".partial")

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, partial)
            result = self.verify(source, partial)
        except OSError as e:
            _remove_quietly(partial)
            raise ArchiveError(f"Archive copy of {source.name} failed: {e}") from e

        if not result.equal:
            logger.error(
                f"[Archive] Digest mismatch for {source.name}: "
                f"{result.digest_a} != {result.digest_b}; removing unverified copy"
            )
            _remove_quietly(partial)
            # A copy left by an earlier attempt is not verified against this source
            _remove_quietly(destination)
            return result

        try:
            os.replace(partial, destination)
        except OSError as e:
            _remove_quietly(partial)
            raise ArchiveError(f"Cannot move verified archive into place: {e}") from e

        logger.info(f"[Archive] Verified {source.name} ({self.algorithm} {result.digest_a[:12]})")
        return result


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"[Archive] Could not remove {path}: {e}")
