"""
Filesystem transfer client.

Treats a mounted directory (NAS share, FUSE mount, local disk) as the
remote store. Locators are POSIX paths relative to the remote root.

Writes go to a temporary sibling and are renamed into place with
os.replace, so readers of the target never see a half-written file.
"""

import logging
import os
import shutil
import time
from pathlib import Path, PurePosixPath
from typing import List

from .base import RemoteObject, TransferClient
from .errors import TransferConfigurationError, TransferError

logger = logging.getLogger(__name__)

_VERIFY_IO_WAIT_SECONDS = 3.0


def _verify_transfer_size(dest: Path, expected_size: int, action: str) -> None:
    """
    Verify a copy completed.

    Network filesystems can report stale sizes briefly after large writes,
    so a mismatch is re-checked once after a short delay.
    """
    actual_size = dest.stat().st_size
    if actual_size == expected_size:
        return

    logger.debug(
        f"File {action} size mismatch, waiting for filesystem sync: {dest} "
        f"({actual_size} != {expected_size})"
    )
    time.sleep(_VERIFY_IO_WAIT_SECONDS)

    actual_size = dest.stat().st_size
    if actual_size != expected_size:
        raise TransferError(
            f"File {action} incomplete: '{dest}' was {actual_size} bytes "
            f"instead of expected {expected_size}."
        )


def _atomic_copy(source: Path, dest: Path, action: str) -> None:
    dest.parent.mkdir(parents=True, exist_ok=True)
    partial = dest.with_name(f".{dest.name}.partial")
    expected_size = source.stat().st_size
    try:
        shutil.copyfile(source, partial)
        _verify_transfer_size(partial, expected_size, action)
        os.replace(partial, dest)
    except BaseException:
        try:
            partial.unlink()
        except FileNotFoundError:
            pass
        raise


class LocalTransferClient(TransferClient):
    """Transfer client over a mounted directory."""

    def __init__(self, remote_root: str):
        root = Path(remote_root)
        if not root.is_dir():
            raise TransferConfigurationError(f"Remote root is not a directory: {remote_root}")
        self.remote_root = root.resolve()

    @property
    def name(self) -> str:
        return f"local:{self.remote_root}"

    def _resolve(self, locator: str) -> Path:
        relative = PurePosixPath(locator)
        if relative.is_absolute() or ".." in relative.parts:
            raise TransferError(f"Locator escapes the remote root: {locator}")
        return self.remote_root.joinpath(*relative.parts)

    def list_objects(self) -> List[RemoteObject]:
        objects = []
        for path in sorted(self.remote_root.rglob("*")):
            if not path.is_file() or path.name.startswith("."):
                continue
            relative = path.relative_to(self.remote_root)
            objects.append(RemoteObject(
                locator=relative.as_posix(),
                filename=path.name,
                size=path.stat().st_size,
            ))
        return objects

    def retrieve(self, locator: str, local_path: str) -> bool:
        try:
            source = self._resolve(locator)
            _atomic_copy(source, Path(local_path), "retrieve")
        except (OSError, TransferError) as e:
            logger.error(f"[Transfer] Retrieve failed for {locator}: {e}")
            return False

        logger.info(f"[Transfer] Retrieved {locator} -> {local_path}")
        return True

    def publish(self, local_path: str, locator: str) -> bool:
        try:
            target = self._resolve(locator)
            _atomic_copy(Path(local_path), target, "publish")
        except (OSError, TransferError) as e:
            logger.error(f"[Transfer] Publish failed for {locator}: {e}")
            return False

        logger.info(f"[Transfer] Published {local_path} -> {locator}")
        return True
