"""File-based document store with multi-statement transactions."""

import asyncio
import copy
import json
import logging
import os
import tempfile
import uuid
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from filelock import FileLock, Timeout

logger = logging.getLogger(__name__)


COLLECTIONS = (
    "courses",
    "subjects",
    "chapters",
    "topics",
    "tests",
    "questions",
    "batches",
    "lock_states",
)


class StorageError(Exception):
    """Custom exception for storage errors."""
    pass


class TransientStorageError(StorageError):
    """Storage failure that may succeed when the whole unit of work is retried."""
    pass


def _discard(temp_path: str) -> None:
    try:
        os.unlink(temp_path)
    except OSError:
        pass


def new_id() -> str:
    return uuid.uuid4().hex


def _matches(document: Dict[str, Any], query: Dict[str, Any]) -> bool:
    for field, expected in query.items():
        actual = document.get(field)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


def _sort_part(value: Any) -> Tuple[bool, Any]:
    # Missing values sort first; strings compare case-insensitively.
    if isinstance(value, str):
        value = value.lower()
    return (value is not None, value)


def sort_documents(documents: Iterable[Dict[str, Any]], fields: Sequence[str]) -> List[Dict[str, Any]]:
    """Sort documents by the given fields, ascending."""
    return sorted(documents, key=lambda doc: tuple(_sort_part(doc.get(f)) for f in fields))


class Transaction:
    """
    Staged unit of work against a DocumentStore.

    Collections are loaded on first touch and mutated in memory; reads made
    through the transaction see its own writes. Nothing reaches disk until
    commit(), which fails with TransientStorageError if another writer
    committed to a touched collection in the meantime.
    """

    def __init__(self, store: "DocumentStore"):
        self.store = store
        self.active = True
        self._versions: Dict[str, int] = {}
        self._documents: Dict[str, List[Dict[str, Any]]] = {}
        self._dirty: set = set()
        self._undo: List[Callable[[], None]] = []

    def _ensure_active(self) -> None:
        if not self.active:
            raise StorageError("Transaction is no longer active")

    async def collection(self, name: str) -> List[Dict[str, Any]]:
        """Return the staged document list for a collection (loaded lazily)."""
        self._ensure_active()
        if name not in self._documents:
            version, documents = await asyncio.to_thread(self.store._read_collection, name)
            self._versions[name] = version
            self._documents[name] = documents
        return self._documents[name]

    async def _mutable(self, name: str) -> List[Dict[str, Any]]:
        documents = await self.collection(name)
        self._dirty.add(name)
        return documents

    async def insert(self, name: str, document: Dict[str, Any]) -> Dict[str, Any]:
        documents = await self._mutable(name)
        documents.append(document)

        def undo() -> None:
            for index, candidate in enumerate(documents):
                if candidate is document:
                    del documents[index]
                    return

        self._undo.append(undo)
        return document

    async def update(self, name: str, doc_id: str, patch: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        documents = await self._mutable(name)
        for document in documents:
            if document.get("id") == doc_id:
                previous = copy.deepcopy(document)
                document.update(patch)

                def undo(target=document, saved=previous) -> None:
                    target.clear()
                    target.update(saved)

                self._undo.append(undo)
                return document
        return None

    async def delete_many(self, name: str, query: Dict[str, Any]) -> int:
        documents = await self._mutable(name)
        removed = [(index, doc) for index, doc in enumerate(documents) if _matches(doc, query)]
        if not removed:
            return 0
        removed_ids = {id(doc) for _, doc in removed}
        documents[:] = [doc for doc in documents if id(doc) not in removed_ids]

        def undo() -> None:
            for index, doc in removed:
                documents.insert(index, doc)

        self._undo.append(undo)
        return len(removed)

    @contextmanager
    def savepoint(self):
        """Roll back writes made inside the block if it raises."""
        self._ensure_active()
        mark = len(self._undo)
        try:
            yield self
        except BaseException:
            while len(self._undo) > mark:
                self._undo.pop()()
            raise

    async def commit(self) -> None:
        self._ensure_active()
        payload = {name: self._documents[name] for name in self._dirty}
        versions = {name: self._versions[name] for name in self._dirty}
        self.active = False
        if payload:
            await asyncio.to_thread(self.store._write_collections, payload, versions)
        self._reset()

    async def abort(self) -> None:
        self.active = False
        self._reset()

    def _reset(self) -> None:
        self._documents = {}
        self._versions = {}
        self._dirty = set()
        self._undo = []


class DocumentStore:
    """File-based document store, one JSON file per collection."""

    def __init__(self, base_dir: str = "data", lock_timeout: float = 10.0):
        """
        Initialize the document store.

        Args:
            base_dir: Directory holding the collection files
            lock_timeout: Seconds to wait for the store lock before failing
        """
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.lock_timeout = lock_timeout
        self._lock_path = self.base_dir / ".store.lock"

    def _collection_path(self, name: str) -> Path:
        if name not in COLLECTIONS:
            raise StorageError(f"Unknown collection: {name}")
        return self.base_dir / f"{name}.json"

    def _write_temp_json(self, file_path: Path, data: Dict) -> str:
        """
        Write JSON next to its target file without replacing it.

        Args:
            file_path: Target file path
            data: Data to write

        Returns:
            Path of the temp file, to be renamed over the target
        """
        temp_fd, temp_path = tempfile.mkstemp(
            dir=file_path.parent,
            prefix=".tmp_",
            suffix=".json"
        )

        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
        except Exception as e:
            _discard(temp_path)
            raise StorageError(f"Failed to write {file_path}: {e}") from e
        return temp_path

    def _load_unlocked(self, name: str) -> Tuple[int, List[Dict[str, Any]]]:
        file_path = self._collection_path(name)
        if not file_path.exists():
            return 0, []
        try:
            with open(file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StorageError(f"Invalid JSON in {file_path}: {e}") from e
        return int(data.get("version", 0)), list(data.get("documents", []))

    def _read_collection(self, name: str) -> Tuple[int, List[Dict[str, Any]]]:
        try:
            with FileLock(self._lock_path, timeout=self.lock_timeout):
                return self._load_unlocked(name)
        except Timeout as e:
            raise TransientStorageError(f"Timed out reading collection '{name}'") from e

    def _write_collections(
        self,
        payload: Dict[str, List[Dict[str, Any]]],
        expected_versions: Dict[str, int],
    ) -> None:
        try:
            with FileLock(self._lock_path, timeout=self.lock_timeout):
                for name, expected in expected_versions.items():
                    current, _ = self._load_unlocked(name)
                    if current != expected:
                        raise TransientStorageError(
                            f"Write conflict on collection '{name}' "
                            f"(expected version {expected}, found {current})"
                        )
                # Stage every file before replacing any.
                staged: List[Tuple[str, Path]] = []
                try:
                    for name, documents in payload.items():
                        file_path = self._collection_path(name)
                        data = {"version": expected_versions[name] + 1, "documents": documents}
                        staged.append((self._write_temp_json(file_path, data), file_path))
                except StorageError:
                    for temp_path, _ in staged:
                        _discard(temp_path)
                    raise
                for temp_path, file_path in staged:
                    os.replace(temp_path, file_path)
        except Timeout as e:
            raise TransientStorageError("Timed out acquiring the store lock for commit") from e

    def start_transaction(self) -> Transaction:
        return Transaction(self)

    @asynccontextmanager
    async def transaction(self):
        """Run a block in a transaction: commit on success, abort on error."""
        txn = self.start_transaction()
        try:
            yield txn
        except BaseException:
            await txn.abort()
            raise
        await txn.commit()

    async def _documents(self, collection: str, txn: Optional[Transaction]) -> List[Dict[str, Any]]:
        if txn is not None:
            return await txn.collection(collection)
        _, documents = await asyncio.to_thread(self._read_collection, collection)
        return documents

    async def find(
        self,
        collection: str,
        query: Optional[Dict[str, Any]] = None,
        sort: Optional[Sequence[str]] = None,
        txn: Optional[Transaction] = None,
    ) -> List[Dict[str, Any]]:
        """
        Find documents matching an equality filter.

        A filter value that is a list, tuple or set matches any of its members.
        Returned documents are copies; mutate through update().
        """
        documents = await self._documents(collection, txn)
        matched = [copy.deepcopy(doc) for doc in documents if _matches(doc, query or {})]
        if sort:
            matched = sort_documents(matched, sort)
        return matched

    async def find_one(
        self,
        collection: str,
        query: Dict[str, Any],
        txn: Optional[Transaction] = None,
    ) -> Optional[Dict[str, Any]]:
        documents = await self._documents(collection, txn)
        for doc in documents:
            if _matches(doc, query):
                return copy.deepcopy(doc)
        return None

    async def get(self, collection: str, doc_id: str, txn: Optional[Transaction] = None) -> Optional[Dict[str, Any]]:
        if not doc_id:
            return None
        return await self.find_one(collection, {"id": doc_id}, txn=txn)

    async def count(self, collection: str, query: Optional[Dict[str, Any]] = None, txn: Optional[Transaction] = None) -> int:
        documents = await self._documents(collection, txn)
        return sum(1 for doc in documents if _matches(doc, query or {}))

    async def insert(self, collection: str, document: Dict[str, Any], txn: Optional[Transaction] = None) -> Dict[str, Any]:
        if txn is None:
            async with self.transaction() as own:
                return await self.insert(collection, document, txn=own)
        stored = copy.deepcopy(document)
        if not stored.get("id"):
            stored["id"] = new_id()
        await txn.insert(collection, stored)
        return copy.deepcopy(stored)

    async def insert_many(
        self,
        collection: str,
        documents: Iterable[Dict[str, Any]],
        txn: Optional[Transaction] = None,
    ) -> List[Dict[str, Any]]:
        if txn is None:
            async with self.transaction() as own:
                return await self.insert_many(collection, documents, txn=own)
        return [await self.insert(collection, doc, txn=txn) for doc in documents]

    async def update(
        self,
        collection: str,
        doc_id: str,
        patch: Dict[str, Any],
        txn: Optional[Transaction] = None,
    ) -> Optional[Dict[str, Any]]:
        """Patch a document by id; returns the updated document or None if absent."""
        if txn is None:
            async with self.transaction() as own:
                return await self.update(collection, doc_id, patch, txn=own)
        patch = {key: value for key, value in patch.items() if key != "id"}
        updated = await txn.update(collection, doc_id, copy.deepcopy(patch))
        return copy.deepcopy(updated) if updated is not None else None

    async def delete_many(self, collection: str, query: Dict[str, Any], txn: Optional[Transaction] = None) -> int:
        if txn is None:
            async with self.transaction() as own:
                return await self.delete_many(collection, query, txn=own)
        deleted = await txn.delete_many(collection, query)
        if deleted:
            logger.debug(f"Deleted {deleted} document(s) from {collection}")
        return deleted
