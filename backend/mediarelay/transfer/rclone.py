"""
rclone transfer client.

Drives the rclone binary via subprocess for any remote rclone supports
(S3, SFTP, Drive, ...). Locators are paths relative to the configured
remote, e.g. remote "media:library" + locator "2019/clip.mov".
"""

import json
import logging
import shutil
import subprocess
from pathlib import PurePosixPath
from typing import List, Optional

from .base import RemoteObject, TransferClient
from .errors import TransferConfigurationError, TransferError

logger = logging.getLogger(__name__)

# Whole-file transfers of large media can take a long time
DEFAULT_TRANSFER_TIMEOUT_SECONDS = 6 * 60 * 60
LIST_TIMEOUT_SECONDS = 10 * 60


class RcloneTransferClient(TransferClient):
    """Transfer client backed by the rclone CLI."""

    def __init__(
        self,
        remote: str,
        rclone_path: Optional[str] = None,
        transfer_timeout: float = DEFAULT_TRANSFER_TIMEOUT_SECONDS,
    ):
        if ":" not in remote:
            raise TransferConfigurationError(
                f"rclone remote must look like 'name:path', got '{remote}'"
            )
        self.remote = remote.rstrip("/")
        self.rclone_path = rclone_path or shutil.which("rclone")
        if not self.rclone_path:
            raise TransferConfigurationError("rclone is not installed or not in PATH")
        self.transfer_timeout = transfer_timeout

    @property
    def name(self) -> str:
        return f"rclone:{self.remote}"

    def _remote_path(self, locator: str) -> str:
        relative = PurePosixPath(locator)
        if relative.is_absolute() or ".." in relative.parts:
            raise TransferError(f"Locator escapes the remote root: {locator}")
        return f"{self.remote}/{relative.as_posix()}"

    def _run(self, args: List[str], timeout: float) -> subprocess.CompletedProcess:
        cmd = [self.rclone_path] + args
        logger.debug(f"[rclone] Executing: {' '.join(cmd)}")
        try:
            completed = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise TransferError(f"rclone {args[0]} timed out after {timeout:.0f}s") from e

        if completed.returncode != 0:
            raise TransferError(
                completed.stderr.strip() or f"rclone {args[0]} exited with code {completed.returncode}"
            )
        return completed

    def list_objects(self) -> List[RemoteObject]:
        completed = self._run(
            ["lsjson", "--recursive", "--files-only", self.remote],
            timeout=LIST_TIMEOUT_SECONDS,
        )
        try:
            entries = json.loads(completed.stdout or "[]")
        except json.JSONDecodeError as e:
            raise TransferError(f"Unparseable rclone lsjson output: {e}") from e

        return [
            RemoteObject(
                locator=entry["Path"],
                filename=entry["Name"],
                size=int(entry.get("Size", 0)),
            )
            for entry in entries
            if not entry.get("IsDir") and not entry["Name"].startswith(".")
        ]

    def retrieve(self, locator: str, local_path: str) -> bool:
        try:
            self._run(["copyto", self._remote_path(locator), local_path], self.transfer_timeout)
        except (OSError, TransferError) as e:
            logger.error(f"[Transfer] Retrieve failed for {locator}: {e}")
            return False

        logger.info(f"[Transfer] Retrieved {locator} -> {local_path}")
        return True

    def publish(self, local_path: str, locator: str) -> bool:
        try:
            self._run(["copyto", local_path, self._remote_path(locator)], self.transfer_timeout)
        except (OSError, TransferError) as e:
            logger.error(f"[Transfer] Publish failed for {locator}: {e}")
            return False

        logger.info(f"[Transfer] Published {local_path} -> {locator}")
        return True
