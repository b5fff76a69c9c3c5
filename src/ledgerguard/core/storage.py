"""
Document storage and per-entity repository adapters.

DocumentStore keeps raw (encrypted) documents with per-document atomic
writes. Every document carries a ``version``; ``replace`` is a
compare-and-swap on it, so concurrent read-modify-write cycles on the same
document cannot silently drop each other's changes.

Repositories are the single place where the field codecs run: encode on
insert/update, decode on load.
"""

import copy
import threading
from typing import Any, Callable, Dict, FrozenSet, Generic, List, Optional, Type, TypeVar

import structlog
from pydantic import BaseModel

from ..models.finance import Budget, Goal, Transaction
from ..models.user import AuthProvider, User, utcnow
from .exceptions import ConflictError, NotFound
from .fields import BUDGET_CODEC, GOAL_CODEC, TRANSACTION_CODEC, USER_CODEC, EntityCodec

logger = structlog.get_logger(__name__)

Document = Dict[str, Any]
ModelT = TypeVar("ModelT", bound=BaseModel)


class VersionConflict(Exception):
    """The document changed between read and conditional write."""

    def __init__(self, collection: str, doc_id: str, expected: int, actual: int) -> None:
        super().__init__(f"{collection}/{doc_id}: expected version {expected}, found {actual}")
        self.expected = expected
        self.actual = actual


class DocumentStore:
    """
    In-process document store.

    Each call holds the lock for its whole body, which gives per-document
    atomicity; nothing is awaited while the lock is held.
    """

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Document]] = {}
        self._lock = threading.Lock()

    def _collection(self, name: str) -> Dict[str, Document]:
        return self._collections.setdefault(name, {})

    async def insert(
        self,
        collection: str,
        document: Document,
        conflicts: Optional[Callable[[Document], bool]] = None,
    ) -> Document:
        """
        Store a new document. When ``conflicts`` is given, the insert is refused
        if it matches any stored document; the scan and the insert happen under
        one lock hold.
        """
        doc_id = document["id"]
        with self._lock:
            docs = self._collection(collection)
            if doc_id in docs:
                raise ConflictError(f"Document {doc_id} already exists", details={"collection": collection})
            if conflicts is not None and any(conflicts(doc) for doc in docs.values()):
                raise ConflictError("Document conflicts with an existing one", details={"collection": collection})
            stored = copy.deepcopy(document)
            stored["version"] = 1
            docs[doc_id] = stored
            return copy.deepcopy(stored)

    async def append(
        self,
        collection: str,
        build: Callable[[Optional[Document]], Document],
    ) -> Document:
        """
        Insert the document build() makes from the current last document.
        Reading the predecessor and inserting happen under one lock hold.
        """
        with self._lock:
            docs = self._collection(collection)
            last = copy.deepcopy(next(reversed(docs.values()))) if docs else None
            document = build(last)
            if document["id"] in docs:
                raise ConflictError(f"Document {document['id']} already exists", details={"collection": collection})
            stored = copy.deepcopy(document)
            stored["version"] = 1
            docs[stored["id"]] = stored
            return copy.deepcopy(stored)

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        with self._lock:
            doc = self._collection(collection).get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    async def find(
        self,
        collection: str,
        predicate: Optional[Callable[[Document], bool]] = None,
    ) -> List[Document]:
        """Raw documents in insertion order, optionally filtered on stored values."""
        with self._lock:
            docs = list(self._collection(collection).values())
            if predicate is not None:
                docs = [doc for doc in docs if predicate(doc)]
            return copy.deepcopy(docs)

    async def count(self, collection: str) -> int:
        with self._lock:
            return len(self._collection(collection))

    async def replace(
        self,
        collection: str,
        doc_id: str,
        document: Document,
        expected_version: int,
    ) -> Document:
        """Overwrite a document only if its version still equals expected_version."""
        with self._lock:
            docs = self._collection(collection)
            current = docs.get(doc_id)
            if current is None:
                raise NotFound(f"Document {doc_id} not found")
            if current["version"] != expected_version:
                raise VersionConflict(collection, doc_id, expected_version, current["version"])
            stored = copy.deepcopy(document)
            stored["version"] = expected_version + 1
            docs[doc_id] = stored
            return copy.deepcopy(stored)


class Repository(Generic[ModelT]):
    """Encode-on-save / decode-on-load adapter for one entity type."""

    collection: str = ""
    model: Type[ModelT]
    codec: EntityCodec
    hidden_fields: FrozenSet[str] = frozenset()
    max_update_attempts: int = 5

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    def _to_document(self, entity: ModelT) -> Document:
        return self.codec.encode(entity.model_dump(mode="json"))

    def _from_document(self, document: Document, include_hidden: bool = False) -> ModelT:
        decoded = self.codec.decode(document)
        if not include_hidden:
            for name in self.hidden_fields:
                decoded.pop(name, None)
        return self.model.model_validate(decoded)

    async def insert(self, entity: ModelT) -> ModelT:
        stored = await self.store.insert(self.collection, self._to_document(entity))
        return self._from_document(stored, include_hidden=True)

    async def get_or_none(self, entity_id: str, include_hidden: bool = False) -> Optional[ModelT]:
        document = await self.store.get(self.collection, entity_id)
        if document is None:
            return None
        return self._from_document(document, include_hidden)

    async def get(self, entity_id: str, include_hidden: bool = False) -> ModelT:
        entity = await self.get_or_none(entity_id, include_hidden)
        if entity is None:
            raise NotFound(f"{self.model.__name__} not found")
        return entity

    async def find_all(
        self,
        predicate: Optional[Callable[[ModelT], bool]] = None,
        include_hidden: bool = False,
    ) -> List[ModelT]:
        """Decode every document, then filter on plaintext values."""
        entities = [
            self._from_document(doc, include_hidden)
            for doc in await self.store.find(self.collection)
        ]
        if predicate is not None:
            entities = [entity for entity in entities if predicate(entity)]
        return entities

    async def update(self, entity_id: str, mutator: Callable[[ModelT], Any]) -> ModelT:
        """
        Read-modify-write with optimistic concurrency.

        The mutator receives the full entity (hidden fields included) and may
        raise to abort. On a version conflict the cycle restarts from a fresh
        read, so the mutator must be safe to call more than once.
        """
        for attempt in range(1, self.max_update_attempts + 1):
            document = await self.store.get(self.collection, entity_id)
            if document is None:
                raise NotFound(f"{self.model.__name__} not found")

            entity = self._from_document(document, include_hidden=True)
            mutator(entity)
            if hasattr(entity, "updated_at"):
                setattr(entity, "updated_at", utcnow())

            try:
                stored = await self.store.replace(
                    self.collection,
                    entity_id,
                    self._to_document(entity),
                    expected_version=document["version"],
                )
            except VersionConflict as e:
                logger.warning(
                    "Concurrent update detected, retrying",
                    collection=self.collection,
                    entity_id=entity_id,
                    attempt=attempt,
                    expected_version=e.expected,
                    actual_version=e.actual,
                )
                continue

            return self._from_document(stored, include_hidden=True)

        raise ConflictError(
            f"{self.model.__name__} is being modified concurrently",
            details={"attempts": self.max_update_attempts},
        )


class UserRepository(Repository[User]):
    """
    Users with encrypted name and email.

    Email ciphertext is non-deterministic, so lookups by email decrypt every
    stored email until one matches. Cost grows linearly with the user count.
    """

    collection = "users"
    model = User
    codec = USER_CODEC
    hidden_fields = frozenset({"password_hash", "reset_password_token_hash"})

    def _has_email(self, document: Document, wanted: str) -> bool:
        stored_email = self.codec.decode_field("email", document.get("email"))
        return bool(stored_email) and stored_email.lower() == wanted

    async def insert(self, entity: User) -> User:
        """Insert a user unless another one already has the same email."""
        wanted = entity.email.strip().lower()
        try:
            stored = await self.store.insert(
                self.collection,
                self._to_document(entity),
                conflicts=lambda doc: self._has_email(doc, wanted),
            )
        except ConflictError:
            raise ConflictError("User already exists")
        return self._from_document(stored, include_hidden=True)

    async def find_by_email_or_none(self, email: str, include_hidden: bool = False) -> Optional[User]:
        wanted = email.strip().lower()
        documents = await self.store.find(self.collection)

        for document in documents:
            if self._has_email(document, wanted):
                return self._from_document(document, include_hidden)

        logger.debug("Email lookup missed", scanned=len(documents))
        return None

    async def find_by_email(self, email: str, include_hidden: bool = False) -> User:
        user = await self.find_by_email_or_none(email, include_hidden)
        if user is None:
            raise NotFound("User not found")
        return user

    async def find_by_provider(self, provider: AuthProvider, provider_id: str) -> Optional[User]:
        documents = await self.store.find(
            self.collection,
            lambda doc: doc.get("provider") == provider.value and doc.get("provider_id") == provider_id,
        )
        return self._from_document(documents[0]) if documents else None

    async def find_by_reset_token_hash(self, token_hash: str) -> Optional[User]:
        documents = await self.store.find(
            self.collection,
            lambda doc: doc.get("reset_password_token_hash") == token_hash,
        )
        return self._from_document(documents[0], include_hidden=True) if documents else None

    async def all_ids(self) -> List[str]:
        return [doc["id"] for doc in await self.store.find(self.collection)]


class FinanceRepository(Repository[ModelT]):
    """Per-user financial records."""

    async def list_by_user(self, user_id: str) -> List[ModelT]:
        documents = await self.store.find(self.collection, lambda doc: doc.get("user_id") == user_id)
        entities = [self._from_document(doc) for doc in documents]
        entities.sort(key=lambda entity: getattr(entity, "created_at"), reverse=True)
        return entities

    async def get_for_user(self, entity_id: str, user_id: str) -> ModelT:
        entity = await self.get_or_none(entity_id)
        if entity is None or getattr(entity, "user_id") != user_id:
            raise NotFound(f"{self.model.__name__} not found")
        return entity


class TransactionRepository(FinanceRepository[Transaction]):
    collection = "transactions"
    model = Transaction
    codec = TRANSACTION_CODEC

    async def list_by_user(self, user_id: str) -> List[Transaction]:
        transactions = await super().list_by_user(user_id)
        transactions.sort(key=lambda t: t.date, reverse=True)
        return transactions


class BudgetRepository(FinanceRepository[Budget]):
    collection = "budgets"
    model = Budget
    codec = BUDGET_CODEC


class GoalRepository(FinanceRepository[Goal]):
    collection = "goals"
    model = Goal
    codec = GOAL_CODEC


# Global store instance
_store: Optional[DocumentStore] = None


def get_store() -> DocumentStore:
    """Get or create the process document store."""
    global _store

    if _store is None:
        _store = DocumentStore()
        logger.info("Document store initialized")

    return _store
