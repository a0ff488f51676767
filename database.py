import copy
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from bson import ObjectId
from pymongo import MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from config import Settings, get_settings
from errors import AlreadyExists, NotFound, StoreError

logger = logging.getLogger(__name__)

SUGGESTIONS = "suggestions"
USERS = "users"

Snapshot = List[Dict[str, Any]]


# -------- Record paths ---------

def collection_path(app_id: str, kind: str) -> str:
    return f"artifacts/{app_id}/{kind}"


def document_path(app_id: str, kind: str, doc_id: str) -> str:
    return f"{collection_path(app_id, kind)}/{doc_id}"


def split_path(path: str):
    """Split a document path into (collection path, document id)."""
    col, _, doc_id = path.rpartition("/")
    if not col or not doc_id:
        raise ValueError(f"Not a document path: {path!r}")
    return col, doc_id


def _collection_name(path: str) -> str:
    return path.replace("/", ".")


# -------- In-memory backend ---------

def _match_value(actual: Any, expected: Any) -> bool:
    if isinstance(expected, dict) and "$ne" in expected:
        return not _match_value(actual, expected["$ne"])
    # A scalar matches an array field that contains it, as in MongoDB
    if isinstance(actual, list) and not isinstance(expected, list):
        return expected in actual
    return actual == expected


def _matches(doc: Dict[str, Any], filter_dict: Dict[str, Any]) -> bool:
    return all(_match_value(doc.get(k), v) for k, v in filter_dict.items())


class _MemoryCollection:
    def __init__(self):
        self.items: Dict[str, Dict[str, Any]] = {}
        self.unique_fields: List[str] = []
        self._lock = threading.RLock()

    def create_index(self, field: str, unique: bool = False):
        if unique and field not in self.unique_fields:
            self.unique_fields.append(field)
        return f"{field}_1"

    def _check_unique(self, doc: Dict[str, Any]) -> None:
        for field in self.unique_fields:
            if field not in doc:
                continue
            for oid, other in self.items.items():
                if oid != doc["_id"] and other.get(field) == doc[field]:
                    raise DuplicateKeyError(f"E11000 duplicate key error: {field}={doc[field]!r}")

    def insert_one(self, doc: Dict[str, Any]):
        with self._lock:
            oid = doc["_id"]
            self._check_unique(doc)
            self.items[oid] = copy.deepcopy(doc)

        class Res:
            inserted_id = oid
        return Res()

    def replace_one(self, filter_dict: Dict[str, Any], doc: Dict[str, Any], upsert: bool = False):
        with self._lock:
            replacement = {**doc, "_id": filter_dict["_id"]}
            self._check_unique(replacement)
            self.items[filter_dict["_id"]] = copy.deepcopy(replacement)

    def find(self, filter_dict: Dict[str, Any]):
        with self._lock:
            return [copy.deepcopy(d) for d in self.items.values() if _matches(d, filter_dict or {})]

    def find_one(self, filter_dict: Dict[str, Any]):
        items = self.find(filter_dict)
        return items[0] if items else None

    def find_one_and_update(self, filter_dict: Dict[str, Any], update: Dict[str, Any], return_document=None):
        with self._lock:
            target_id = filter_dict.get("_id")
            item = self.items.get(target_id)
            if item is None or not _matches(item, filter_dict):
                return None
            before = copy.deepcopy(item)
            for k, v in update.get("$set", {}).items():
                item[k] = copy.deepcopy(v)
            for k, v in update.get("$inc", {}).items():
                item[k] = int(item.get(k, 0)) + int(v)
            for k, v in update.get("$push", {}).items():
                item.setdefault(k, []).append(copy.deepcopy(v))
            for k, v in update.get("$addToSet", {}).items():
                arr = item.setdefault(k, [])
                if v not in arr:
                    arr.append(v)
            for k, v in update.get("$pull", {}).items():
                item[k] = [x for x in item.get(k, []) if x != v]
            if return_document == ReturnDocument.BEFORE:
                return before
            return copy.deepcopy(item)

    def delete_one(self, filter_dict: Dict[str, Any]):
        with self._lock:
            tid = filter_dict.get("_id")

            class Res:
                deleted_count = 0
            res = Res()
            if tid in self.items:
                del self.items[tid]
                res.deleted_count = 1
            return res


class _MemoryDB:
    name = "memory"

    def __init__(self):
        self._cols: Dict[str, _MemoryCollection] = {}

    def __getitem__(self, name: str) -> _MemoryCollection:
        if name not in self._cols:
            self._cols[name] = _MemoryCollection()
        return self._cols[name]


# -------- Utility serialization ---------

def _serialize(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    result: Dict[str, Any] = {}
    for k, v in doc.items():
        if k == "_id":
            result["id"] = str(v)
        elif isinstance(v, datetime):
            result[k] = v.isoformat()
        else:
            result[k] = v
    return result


# -------- Change subscriptions ---------

class Subscription:
    """Handle returned by RecordStore.subscribe; unsubscribe() stops delivery."""

    def __init__(self, store: "RecordStore", path: str, callback: Callable[[Snapshot], None],
                 order_by: Optional[str], descending: bool):
        self._store = store
        self.path = path
        self.callback = callback
        self.order_by = order_by
        self.descending = descending
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._store._remove_subscription(self)


# -------- Record store ---------

class RecordStore:
    """Path-addressed document store over MongoDB or an in-memory backend.

    Writes made through the store push the full current collection snapshot to
    every active subscriber of that collection.
    """

    def __init__(self, db, backing: str = "mongo"):
        self.db = db
        self.backing = backing
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._sub_lock = threading.Lock()

    def _col(self, path: str):
        return self.db[_collection_name(path)]

    # -- reads --

    def get(self, path: str) -> Dict[str, Any]:
        col_path, doc_id = split_path(path)
        try:
            doc = self._col(col_path).find_one({"_id": doc_id})
        except PyMongoError as e:
            logger.error("Failed to read %s: %s", path, e)
            raise StoreError(f"Failed to read {path}: {e}") from e
        if not doc:
            raise NotFound(f"Document not found: {path}")
        return _serialize(doc)

    def find(self, col_path: str, filter_dict: Optional[Dict[str, Any]] = None,
             order_by: Optional[str] = None, descending: bool = False) -> Snapshot:
        try:
            docs = list(self._col(col_path).find(dict(filter_dict or {})))
        except PyMongoError as e:
            logger.error("Failed to query %s: %s", col_path, e)
            raise StoreError(f"Failed to query {col_path}: {e}") from e
        docs = [_serialize(doc) for doc in docs]
        if order_by:
            docs.sort(key=lambda d: (d.get(order_by) is None, d.get(order_by)), reverse=descending)
        return docs

    def list(self, col_path: str, order_by: Optional[str] = None, descending: bool = False) -> Snapshot:
        return self.find(col_path, {}, order_by=order_by, descending=descending)

    # -- writes --

    def create(self, col_path: str, data: Dict[str, Any]) -> str:
        doc_id = str(ObjectId())
        payload = {k: v for k, v in data.items() if k != "id"}
        payload["_id"] = doc_id
        try:
            self._col(col_path).insert_one(payload)
        except DuplicateKeyError as e:
            raise AlreadyExists(f"Duplicate document in {col_path}: {e}") from e
        except PyMongoError as e:
            logger.error("Failed to create document in %s: %s", col_path, e)
            raise StoreError(f"Failed to create document in {col_path}: {e}") from e
        self._notify(col_path)
        return doc_id

    def put(self, path: str, data: Dict[str, Any]) -> None:
        """Create or replace the document at an explicit path."""
        col_path, doc_id = split_path(path)
        payload = {k: v for k, v in data.items() if k != "id"}
        try:
            self._col(col_path).replace_one({"_id": doc_id}, payload, upsert=True)
        except DuplicateKeyError as e:
            raise AlreadyExists(f"Duplicate document at {path}: {e}") from e
        except PyMongoError as e:
            logger.error("Failed to write %s: %s", path, e)
            raise StoreError(f"Failed to write {path}: {e}") from e
        self._notify(col_path)

    def update(self, path: str, data: Dict[str, Any],
               where: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        return self.apply(path, where=where, set=data)

    def apply(self, path: str, *, where: Optional[Dict[str, Any]] = None, return_before: bool = False,
              set: Optional[Dict[str, Any]] = None, inc: Optional[Dict[str, int]] = None,
              push: Optional[Dict[str, Any]] = None, add_to_set: Optional[Dict[str, Any]] = None,
              pull: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """Atomic field-level update of one document.

        Returns the document after the write, or before it when return_before
        is set. With a `where` filter the write only happens while the stored
        document still matches it; otherwise nothing is written and None is
        returned.
        """
        col_path, doc_id = split_path(path)
        update: Dict[str, Any] = {}
        for op, fields in (("$set", set), ("$inc", inc), ("$push", push),
                           ("$addToSet", add_to_set), ("$pull", pull)):
            if fields:
                update[op] = {k: v for k, v in fields.items() if k not in ("id", "_id")}
        if not update:
            return self.get(path)
        filter_dict = {**(where or {}), "_id": doc_id}
        try:
            doc = self._col(col_path).find_one_and_update(
                filter_dict, update,
                return_document=ReturnDocument.BEFORE if return_before else ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            logger.error("Failed to update %s: %s", path, e)
            raise StoreError(f"Failed to update {path}: {e}") from e
        if doc is None:
            if where and self._exists(col_path, doc_id):
                return None
            raise NotFound(f"Document not found: {path}")
        self._notify(col_path)
        return _serialize(doc)

    def _exists(self, col_path: str, doc_id: str) -> bool:
        try:
            return self._col(col_path).find_one({"_id": doc_id}) is not None
        except PyMongoError as e:
            raise StoreError(f"Failed to read {col_path}/{doc_id}: {e}") from e

    def ensure_unique(self, col_path: str, field: str) -> None:
        """Reject writes that would give two documents the same `field` value."""
        try:
            self._col(col_path).create_index(field, unique=True)
        except PyMongoError as e:
            logger.error("Failed to index %s.%s: %s", col_path, field, e)
            raise StoreError(f"Failed to index {col_path}.{field}: {e}") from e

    def delete(self, path: str) -> None:
        col_path, doc_id = split_path(path)
        try:
            res = self._col(col_path).delete_one({"_id": doc_id})
        except PyMongoError as e:
            logger.error("Failed to delete %s: %s", path, e)
            raise StoreError(f"Failed to delete {path}: {e}") from e
        if not getattr(res, "deleted_count", 0):
            raise NotFound(f"Document not found: {path}")
        self._notify(col_path)

    # -- subscriptions --

    def subscribe(self, col_path: str, callback: Callable[[Snapshot], None],
                  order_by: Optional[str] = None, descending: bool = False) -> Subscription:
        sub = Subscription(self, col_path, callback, order_by, descending)
        with self._sub_lock:
            self._subscriptions.setdefault(col_path, []).append(sub)
        self._deliver(sub)
        return sub

    def _remove_subscription(self, sub: Subscription) -> None:
        with self._sub_lock:
            subs = self._subscriptions.get(sub.path, [])
            if sub in subs:
                subs.remove(sub)

    def _notify(self, col_path: str) -> None:
        with self._sub_lock:
            subs = list(self._subscriptions.get(col_path, []))
        for sub in subs:
            if sub.active:
                self._deliver(sub)

    def _deliver(self, sub: Subscription) -> None:
        snapshot = self.list(sub.path, order_by=sub.order_by, descending=sub.descending)
        try:
            sub.callback(snapshot)
        except Exception:
            logger.exception("Subscriber callback for %s failed", sub.path)

    def ping(self) -> bool:
        if self.backing == "memory":
            return True
        try:
            self.db.client.admin.command("ping")
            return True
        except PyMongoError as e:
            logger.error("Database ping failed: %s", e)
            return False


# -------- Initialize store ---------

def connect(settings: Optional[Settings] = None) -> RecordStore:
    settings = settings or get_settings()
    if settings.uses_memory_store:
        logger.info("Using in-memory record store")
        return RecordStore(_MemoryDB(), backing="memory")
    client = MongoClient(settings.database_url, serverSelectionTimeoutMS=1500)
    logger.info("Using MongoDB record store %s/%s", settings.database_url, settings.database_name)
    return RecordStore(client[settings.database_name], backing="mongo")
