# Key-indexed document store with atomic per-key read-modify-write.
# Each backend implements DocumentStore; components only see repositories.

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

Document = Dict[str, Any]
# Receives the current document, returns the replacement or None to leave it unchanged
Mutator = Callable[[Document], Optional[Document]]
UpsertMutator = Callable[[Optional[Document]], Optional[Document]]
Predicate = Callable[[Document], bool]


class DocumentStore(ABC):

    async def initialize(self) -> None:
        """Prepare the backend. Override if needed."""
        pass

    async def close(self) -> None:
        """Release backend resources. Override if needed."""
        pass

    @abstractmethod
    async def get(self, collection: str, key: str) -> Optional[Document]:
        pass

    @abstractmethod
    async def insert(self, collection: str, key: str, document: Document) -> bool:
        """Insert a new document. Returns False if the key already exists."""
        pass

    @abstractmethod
    async def update(self, collection: str, key: str, mutator: Mutator) -> Optional[Document]:
        """
        Atomically apply mutator to an existing document.
        Returns the stored replacement, or None if the key is missing or the
        mutator declined to change anything.
        """
        pass

    @abstractmethod
    async def upsert(self, collection: str, key: str, mutator: UpsertMutator) -> Optional[Document]:
        """Like update, but the mutator receives None for a missing key."""
        pass

    @abstractmethod
    async def update_many(self, collection: str, mutator: Mutator) -> List[Document]:
        """Apply mutator to every document in one pass; returns the changed ones."""
        pass

    @abstractmethod
    async def find(self, collection: str, predicate: Optional[Predicate] = None) -> List[Document]:
        pass
