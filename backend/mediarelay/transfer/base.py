"""
Transfer client abstraction.

A transfer client moves whole files between the remote store and local
storage. Locators are opaque strings owned by the client; the pipeline
only stores them and hands them back.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List


@dataclass(frozen=True)
class RemoteObject:
    """A media object found on the remote store."""

    locator: str
    filename: str
    size: int


class TransferClient(ABC):
    """
    Abstract base class for remote store clients.

    retrieve() and publish() report failure by returning False and must
    never leave a partially written file at the target path.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    def list_objects(self) -> List[RemoteObject]:
        """List every object under the configured remote root."""
        pass

    @abstractmethod
    def retrieve(self, locator: str, local_path: str) -> bool:
        """Copy a remote object to a local path."""
        pass

    @abstractmethod
    def publish(self, local_path: str, locator: str) -> bool:
        """Replace the remote object at locator with a local file."""
        pass
