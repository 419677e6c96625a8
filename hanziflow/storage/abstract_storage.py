from abc import ABC, abstractmethod
from typing import Optional


class AbstractStorage(ABC):
    """
    Abstract base class for storage backends

    Defines the interface for generated media storage.
    Implementations can use different storage mechanisms (filesystem, object stores, etc.).
    """

    @abstractmethod
    def save(self, key: str, content: bytes) -> None:
        """
        Save content under the specified key

        Args:
            key: Relative storage key
            content: Bytes to store
        """
        pass

    @abstractmethod
    def load(self, key: str) -> Optional[bytes]:
        """
        Load content stored under the key

        Returns:
            Content bytes, or None if nothing is stored there
        """
        pass

    @abstractmethod
    def exists(self, key: str) -> bool:
        """
        Check if content exists under the key
        """
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """
        Delete content under the key

        Returns:
            True if something was deleted
        """
        pass

    @abstractmethod
    def get_url(self, key: str) -> str:
        """
        Reference stored on the entity for the content under the key
        """
        pass
