# functions/resume_store.py

"""
Resume Store Adapter.

CRUD and realtime snapshots for ResumeRecord documents, behind one abstract
interface with two backends:

- InMemoryResumeStore   thread-safe dict store (default, CLI, tests)
- MongoResumeStore      pymongo collection `resumes`

Store-side guarantees, identical for both backends:
- `created_at` / `updated_at` are assigned here, never by callers
- `update` merges only the given keys and always refreshes `updated_at`
- `id`, `owner_id` and `created_at` can never be changed by `update`
- backend errors surface as StoreError, never swallowed; the one exception is
  the snapshot re-read after a write has been persisted, which is logged
  (`snapshot_refresh_failed`) so the caller still sees the write succeed

Realtime subscriptions
----------------------
`subscribe(owner_id, cb)` and `subscribe_one(id, cb)` deliver the full
current value immediately, then again after every write that affects it
(list of the owner's records, or the record / None after delete). Writes
through this store publish directly; MongoResumeStore can also follow a
change stream to pick up writes from other processes.

Delivery goes through a SnapshotChannel: a topic → listeners map that knows
nothing about HTTP, websockets or UI code. Every snapshot carries the store
version read before it was taken, and reading + delivering happens under one
publish lock, so a listener never receives an older snapshot after a newer
one. Callbacks run on the publishing thread, outside the data lock. A
callback that raises is logged and skipped; the write and the other
listeners are unaffected.
"""

from __future__ import annotations

import copy
import itertools
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional

import structlog
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import PyMongoError

from functions.exceptions import CvNotFoundError, StoreError
from functions.utils.common import load_store_params
from schemas.output_schema import ResumeRecord

logger = structlog.get_logger(__name__).bind(module="resume_store")

SnapshotCallback = Callable[[Any], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Snapshot fan-out
# ---------------------------------------------------------------------------


class Subscription:
    """Handle for one listener. `unsubscribe()` is idempotent."""

    def __init__(self, channel: "SnapshotChannel", topic: str, callback: SnapshotCallback) -> None:
        self.topic = topic
        self.callback = callback
        self._channel = channel
        self._active = True
        # Store version of the last delivered snapshot.
        self.version = -1

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._channel.remove(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.unsubscribe()


class SnapshotChannel:
    """Topic-keyed listener registry with best-effort delivery."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: Dict[str, List[Subscription]] = {}

    def add(self, topic: str, callback: SnapshotCallback) -> Subscription:
        sub = Subscription(self, topic, callback)
        with self._lock:
            self._listeners.setdefault(topic, []).append(sub)
        return sub

    def remove(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._listeners.get(sub.topic)
            if not subs:
                return
            if sub in subs:
                subs.remove(sub)
            if not subs:
                del self._listeners[sub.topic]

    def has_listeners(self, topic: str) -> bool:
        with self._lock:
            return bool(self._listeners.get(topic))

    def listener_count(self) -> int:
        with self._lock:
            return sum(len(subs) for subs in self._listeners.values())

    def deliver(self, sub: Subscription, snapshot: Any, version: int = 0) -> None:
        """Hand one snapshot to one listener; older versions than already seen are dropped."""
        if not sub.active:
            return
        if version < sub.version:
            logger.debug("snapshot_dropped_stale", topic=sub.topic, version=version, seen=sub.version)
            return
        sub.version = version
        try:
            sub.callback(snapshot)
        except Exception as exc:
            logger.exception("snapshot_listener_failed", topic=sub.topic, error=str(exc))

    def publish(self, topic: str, snapshot: Any, version: int = 0) -> None:
        with self._lock:
            subs = list(self._listeners.get(topic, ()))
        for sub in subs:
            self.deliver(sub, snapshot, version)

    def topics(self, prefix: str = "") -> List[str]:
        with self._lock:
            return [t for t in self._listeners if t.startswith(prefix)]

    def close(self) -> None:
        with self._lock:
            subs = [s for group in self._listeners.values() for s in group]
            self._listeners.clear()
        for sub in subs:
            sub._active = False


_OWNER_PREFIX = "owner:"


def _owner_topic(owner_id: str) -> str:
    return f"{_OWNER_PREFIX}{owner_id}"


def _record_topic(cv_id: str) -> str:
    return f"record:{cv_id}"


# ---------------------------------------------------------------------------
# Store interface
# ---------------------------------------------------------------------------


class ResumeStore(ABC):
    """Backend-agnostic store; subclasses implement the five primitives."""

    PROTECTED_FIELDS = frozenset({"id", "owner_id", "created_at"})

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or _utcnow
        self._channel = SnapshotChannel()
        # Held across "read snapshot → deliver" so deliveries happen in read
        # order. Reentrant: a listener may read the store on the same thread.
        self._publish_lock = threading.RLock()
        self._version_lock = threading.Lock()
        self._version = 0

    # -- backend primitives -------------------------------------------------
    @abstractmethod
    def _insert(self, cv_id: str, doc: Dict[str, Any]) -> None:
        """Persist a new document under `cv_id`."""

    @abstractmethod
    def _apply_update(self, cv_id: str, fields: Dict[str, Any]) -> bool:
        """Merge fields into an existing document. False if it does not exist."""

    @abstractmethod
    def _remove(self, cv_id: str) -> Optional[str]:
        """Delete a document. Returns its owner id, or None if it did not exist."""

    @abstractmethod
    def _find_one(self, cv_id: str) -> Optional[Dict[str, Any]]:
        """Raw document (with `id`) or None."""

    @abstractmethod
    def _find_by_owner(self, owner_id: str) -> List[Dict[str, Any]]:
        """Raw documents for an owner, most recently updated first."""

    # -- public operations --------------------------------------------------
    def create(self, record_data: Mapping[str, Any]) -> str:
        """Insert a new record and return its generated id."""
        data = dict(record_data)
        owner_id = data.get("owner_id")
        if not owner_id:
            raise StoreError("A new CV record requires an owner id.")
        for key in ("id", "created_at", "updated_at"):
            data.pop(key, None)

        cv_id = uuid.uuid4().hex
        now = self._clock()
        data["created_at"] = now
        data["updated_at"] = now

        self._insert(cv_id, data)
        logger.info("resume_record_created", cv_id=cv_id, owner_id=owner_id)
        self._written(cv_id, owner_id)
        return cv_id

    def update(self, cv_id: str, partial: Mapping[str, Any]) -> None:
        """Merge `partial` into the record and refresh `updated_at`."""
        protected = sorted(self.PROTECTED_FIELDS.intersection(partial))
        if protected:
            raise StoreError(f"Fields cannot be modified: {', '.join(protected)}")

        fields = dict(partial)
        fields["updated_at"] = self._clock()

        if not self._apply_update(cv_id, fields):
            raise CvNotFoundError(cv_id)

        logger.info("resume_record_updated", cv_id=cv_id, fields=sorted(k for k in partial))
        self._written(cv_id, None)

    def delete(self, cv_id: str) -> None:
        """Hard delete. Deleting a missing id is a no-op."""
        owner_id = self._remove(cv_id)
        if owner_id is None:
            logger.info("resume_record_delete_missing", cv_id=cv_id)
            return
        logger.info("resume_record_deleted", cv_id=cv_id, owner_id=owner_id)
        self._written(cv_id, owner_id)

    def get_by_id(self, cv_id: str) -> Optional[ResumeRecord]:
        doc = self._find_one(cv_id)
        return ResumeRecord.model_validate(doc) if doc is not None else None

    def list_by_owner(self, owner_id: str) -> List[ResumeRecord]:
        return [ResumeRecord.model_validate(doc) for doc in self._find_by_owner(owner_id)]

    # -- subscriptions -------------------------------------------------------
    def subscribe(self, owner_id: str, callback: SnapshotCallback) -> Subscription:
        """Push the owner's record list now and after every affecting write."""
        sub = self._channel.add(_owner_topic(owner_id), callback)
        try:
            with self._publish_lock:
                version = self._current_version()
                self._channel.deliver(sub, self.list_by_owner(owner_id), version)
        except Exception:
            sub.unsubscribe()
            raise
        self._on_subscribe()
        logger.debug("resume_list_subscribed", owner_id=owner_id)
        return sub

    def subscribe_one(self, cv_id: str, callback: SnapshotCallback) -> Subscription:
        """Push one record (None once deleted) now and after every write to it."""
        sub = self._channel.add(_record_topic(cv_id), callback)
        try:
            with self._publish_lock:
                version = self._current_version()
                self._channel.deliver(sub, self.get_by_id(cv_id), version)
        except Exception:
            sub.unsubscribe()
            raise
        self._on_subscribe()
        logger.debug("resume_record_subscribed", cv_id=cv_id)
        return sub

    def _on_subscribe(self) -> None:
        """Hook for backends that need a feed of external changes."""

    def _current_version(self) -> int:
        with self._version_lock:
            return self._version

    def _bump_version(self) -> None:
        with self._version_lock:
            self._version += 1

    def _local_fanout(self) -> bool:
        """Whether writes through this instance publish snapshots themselves."""
        return True

    def _written(self, cv_id: str, owner_id: Optional[str]) -> None:
        self._bump_version()
        if self._local_fanout():
            self._notify(cv_id, owner_id)

    def _notify(self, cv_id: str, owner_id: Optional[str]) -> None:
        """
        Re-read and publish the snapshots affected by a write to `cv_id`.

        With `owner_id` unknown (e.g. after an update, or an external delete)
        the owner is looked up from the record; if the record is gone every
        subscribed owner list is refreshed. The write has already been
        persisted, so a failing re-read is logged and never raised.
        """
        if not self._channel.listener_count():
            return
        try:
            with self._publish_lock:
                version = self._current_version()
                record = None
                record_topic = _record_topic(cv_id)
                if owner_id is None or self._channel.has_listeners(record_topic):
                    record = self.get_by_id(cv_id)
                if owner_id is None and record is not None:
                    owner_id = record.owner_id

                if owner_id is not None:
                    owner_topics = [_owner_topic(owner_id)]
                else:
                    owner_topics = self._channel.topics(_OWNER_PREFIX)
                for topic in owner_topics:
                    if self._channel.has_listeners(topic):
                        snapshot = self.list_by_owner(topic[len(_OWNER_PREFIX):])
                        self._channel.publish(topic, snapshot, version)

                if self._channel.has_listeners(record_topic):
                    self._channel.publish(record_topic, record, version)
        except StoreError as exc:
            logger.error("snapshot_refresh_failed", cv_id=cv_id, owner_id=owner_id, error=str(exc))

    def close(self) -> None:
        """Release every subscription."""
        self._channel.close()

    def __enter__(self) -> "ResumeStore":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryResumeStore(ResumeStore):
    """Dict-backed store. Documents are deep-copied on the way in and out."""

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        super().__init__(clock)
        self._lock = threading.Lock()
        self._docs: Dict[str, Dict[str, Any]] = {}
        # Write sequence breaks updated_at ties deterministically.
        self._seq = itertools.count()
        self._write_seq: Dict[str, int] = {}

    def _insert(self, cv_id: str, doc: Dict[str, Any]) -> None:
        with self._lock:
            self._docs[cv_id] = copy.deepcopy(doc)
            self._write_seq[cv_id] = next(self._seq)

    def _apply_update(self, cv_id: str, fields: Dict[str, Any]) -> bool:
        with self._lock:
            doc = self._docs.get(cv_id)
            if doc is None:
                return False
            doc.update(copy.deepcopy(fields))
            self._write_seq[cv_id] = next(self._seq)
            return True

    def _remove(self, cv_id: str) -> Optional[str]:
        with self._lock:
            doc = self._docs.pop(cv_id, None)
            self._write_seq.pop(cv_id, None)
        return doc["owner_id"] if doc is not None else None

    def _find_one(self, cv_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            doc = self._docs.get(cv_id)
            if doc is None:
                return None
            return {"id": cv_id, **copy.deepcopy(doc)}

    def _find_by_owner(self, owner_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            matches = [
                (cv_id, copy.deepcopy(doc), self._write_seq[cv_id])
                for cv_id, doc in self._docs.items()
                if doc.get("owner_id") == owner_id
            ]
        matches.sort(key=lambda m: (m[1]["updated_at"], m[2]), reverse=True)
        return [{"id": cv_id, **doc} for cv_id, doc, _ in matches]


# ---------------------------------------------------------------------------
# MongoDB backend
# ---------------------------------------------------------------------------


class MongoResumeStore(ResumeStore):
    """
    pymongo-backed store over one collection (default `resumes`).

    Record ids are stored as the string `_id`.

    With `watch_changes`, the first subscription starts a change-stream
    thread (`collection.watch()`), so subscribers also see writes made by
    other processes. While the stream is open it is the only source of
    snapshots; if the server does not support change streams (standalone
    mongod) the store falls back to publishing after its own writes.
    """

    def __init__(
        self,
        collection: Any = None,
        *,
        client: MongoClient | None = None,
        mongo_uri: str = "mongodb://localhost:27017",
        database: str = "cv_document_service",
        collection_name: str = "resumes",
        server_selection_timeout_ms: int = 5000,
        ensure_indexes: bool = True,
        watch_changes: bool = False,
        watch_max_await_ms: int = 1000,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        super().__init__(clock)
        self._owns_client = False
        if collection is None:
            if client is None:
                client = MongoClient(
                    mongo_uri,
                    serverSelectionTimeoutMS=server_selection_timeout_ms,
                    tz_aware=True,
                )
                self._owns_client = True
            collection = client[database][collection_name]
        self._client = client
        self._collection = collection

        self._watch_changes = watch_changes
        self._watch_max_await_ms = watch_max_await_ms
        self._watch_lock = threading.Lock()
        self._watcher: threading.Thread | None = None
        self._stop_watching = threading.Event()
        self._stream_open = threading.Event()

        if ensure_indexes:
            with self._guard("create_index"):
                self._collection.create_index([("owner_id", ASCENDING), ("updated_at", DESCENDING)])

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except PyMongoError as exc:
            logger.error("mongo_operation_failed", operation=operation, error=str(exc))
            raise StoreError() from exc

    @staticmethod
    def _from_mongo(doc: Mapping[str, Any]) -> Dict[str, Any]:
        data = dict(doc)
        data["id"] = str(data.pop("_id"))
        return data

    def _insert(self, cv_id: str, doc: Dict[str, Any]) -> None:
        with self._guard("insert_one"):
            self._collection.insert_one({"_id": cv_id, **doc})

    def _apply_update(self, cv_id: str, fields: Dict[str, Any]) -> bool:
        with self._guard("update_one"):
            result = self._collection.update_one({"_id": cv_id}, {"$set": fields})
        return result.matched_count > 0

    def _remove(self, cv_id: str) -> Optional[str]:
        with self._guard("find_one_and_delete"):
            doc = self._collection.find_one_and_delete({"_id": cv_id}, projection={"owner_id": 1})
        return doc["owner_id"] if doc else None

    def _find_one(self, cv_id: str) -> Optional[Dict[str, Any]]:
        with self._guard("find_one"):
            doc = self._collection.find_one({"_id": cv_id})
        return self._from_mongo(doc) if doc else None

    def _find_by_owner(self, owner_id: str) -> List[Dict[str, Any]]:
        with self._guard("find"):
            cursor = self._collection.find({"owner_id": owner_id}).sort("updated_at", DESCENDING)
            docs = list(cursor)
        return [self._from_mongo(doc) for doc in docs]

    # -- change stream -------------------------------------------------------
    def _local_fanout(self) -> bool:
        return not self._stream_open.is_set()

    def _on_subscribe(self) -> None:
        if not self._watch_changes:
            return
        with self._watch_lock:
            if self._watcher is not None or self._stop_watching.is_set():
                return
            self._watcher = threading.Thread(
                target=self._watch_loop,
                name="resume-store-change-stream",
                daemon=True,
            )
            self._watcher.start()
        logger.info("change_stream_started")

    def _watch_loop(self) -> None:
        try:
            with self._collection.watch(
                full_document="updateLookup",
                max_await_time_ms=self._watch_max_await_ms,
            ) as stream:
                self._stream_open.set()
                while not self._stop_watching.is_set() and stream.alive:
                    change = stream.try_next()
                    if change is not None:
                        self.handle_change(change)
        except PyMongoError as exc:
            if not self._stop_watching.is_set():
                logger.warning("change_stream_unavailable", error=str(exc))
        finally:
            self._stream_open.clear()
            logger.info("change_stream_stopped")

    def handle_change(self, change: Mapping[str, Any]) -> None:
        """Publish snapshots for one change-stream event."""
        op = change.get("operationType")
        key = (change.get("documentKey") or {}).get("_id")
        if key is None or op not in ("insert", "update", "replace", "delete"):
            logger.debug("change_stream_event_ignored", operation=op)
            return

        owner_id = None
        if op != "delete":
            full = change.get("fullDocument") or {}
            owner_id = full.get("owner_id")
        self._bump_version()
        self._notify(str(key), owner_id)

    def close(self) -> None:
        self._stop_watching.set()
        watcher = self._watcher
        if watcher is not None:
            watcher.join(timeout=(self._watch_max_await_ms / 1000.0) + 1.0)
            self._watcher = None
        super().close()
        if self._owns_client and self._client is not None:
            self._client.close()
            self._client = None


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_resume_store(store_params: Dict[str, Any] | None = None) -> ResumeStore:
    """Construct the store selected by parameters.yaml `store.backend`."""
    cfg = store_params if store_params is not None else load_store_params()
    backend = str(cfg.get("backend") or "memory").lower()

    if backend == "memory":
        logger.info("resume_store_selected", backend="memory")
        return InMemoryResumeStore()

    if backend == "mongo":
        logger.info(
            "resume_store_selected",
            backend="mongo",
            database=cfg.get("database"),
            collection=cfg.get("collection"),
        )
        try:
            return MongoResumeStore(
                mongo_uri=cfg.get("mongo_uri") or "mongodb://localhost:27017",
                database=cfg.get("database") or "cv_document_service",
                collection_name=cfg.get("collection") or "resumes",
                server_selection_timeout_ms=int(cfg.get("server_selection_timeout_ms") or 5000),
                watch_changes=bool(cfg.get("watch_changes", True)),
            )
        except PyMongoError as exc:
            logger.error("mongo_client_init_failed", error=str(exc))
            raise StoreError() from exc

    raise ValueError(f"Unknown store backend: {backend!r}")


__all__ = [
    "Subscription",
    "SnapshotChannel",
    "ResumeStore",
    "InMemoryResumeStore",
    "MongoResumeStore",
    "build_resume_store",
]
