import asyncio
import copy
from collections import defaultdict
from typing import Dict, List, Optional

from .base import Document, DocumentStore, Mutator, Predicate, UpsertMutator


class MemoryStore(DocumentStore):
    """
    In-process store used by tests and single-node demos.
    A collection-wide lock serialises writers so update_many sees a stable
    snapshot; mutators run without awaiting, so each call is atomic per key.
    """
    def __init__(self):
        self._collections: Dict[str, Dict[str, Document]] = defaultdict(dict)
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get(self, collection: str, key: str) -> Optional[Document]:
        document = self._collections[collection].get(key)
        return copy.deepcopy(document) if document is not None else None

    async def insert(self, collection: str, key: str, document: Document) -> bool:
        async with self._locks[collection]:
            if key in self._collections[collection]:
                return False
            self._collections[collection][key] = copy.deepcopy(document)
            return True

    async def update(self, collection: str, key: str, mutator: Mutator) -> Optional[Document]:
        async with self._locks[collection]:
            current = self._collections[collection].get(key)
            if current is None:
                return None
            replacement = mutator(copy.deepcopy(current))
            if replacement is None:
                return None
            self._collections[collection][key] = copy.deepcopy(replacement)
            return replacement

    async def upsert(self, collection: str, key: str, mutator: UpsertMutator) -> Optional[Document]:
        async with self._locks[collection]:
            current = self._collections[collection].get(key)
            replacement = mutator(copy.deepcopy(current) if current is not None else None)
            if replacement is None:
                return None
            self._collections[collection][key] = copy.deepcopy(replacement)
            return replacement

    async def update_many(self, collection: str, mutator: Mutator) -> List[Document]:
        changed = []
        async with self._locks[collection]:
            documents = self._collections[collection]
            for key in list(documents.keys()):
                replacement = mutator(copy.deepcopy(documents[key]))
                if replacement is not None:
                    documents[key] = copy.deepcopy(replacement)
                    changed.append(replacement)
        return changed

    async def find(self, collection: str, predicate: Optional[Predicate] = None) -> List[Document]:
        return [
            copy.deepcopy(document)
            for document in self._collections[collection].values()
            if predicate is None or predicate(document)
        ]
