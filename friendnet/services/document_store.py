"""Path-addressed real-time document store persisted through SQLAlchemy.

Documents live at slash separated paths (``collection/doc`` or
``collection/doc/subcollection/doc``) and hold JSON field maps. Writes are
grouped into :class:`WriteBatch` objects that commit inside a single database
transaction, and live subscriptions are re-evaluated once per successful
commit so listeners only ever observe post-commit state.
"""
from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Callable, Iterable, Mapping, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..database import create_session
from ..models import Document

logger = logging.getLogger(__name__)


class _ServerTimestamp:
    """Sentinel replaced by the commit time of the batch that writes it."""

    _instance: "_ServerTimestamp | None" = None

    def __new__(cls) -> "_ServerTimestamp":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()

_DATETIME_KEY = "__datetime__"


class DocumentStoreError(RuntimeError):
    """Base class for document store failures."""


class DocumentNotFound(DocumentStoreError):
    """Raised when an update targets a document that does not exist."""


class DocumentAlreadyExists(DocumentStoreError):
    """Raised when a create targets a document that already exists."""


class PreconditionFailed(DocumentStoreError):
    """Raised when a write's expected field values do not match the stored document."""


class StoreUnavailableError(DocumentStoreError):
    """Raised when the backing database cannot complete a read or commit."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def split_path(path: str) -> tuple[str, str]:
    """Split a document path into ``(collection_path, doc_id)``."""

    segments = [segment for segment in path.strip("/").split("/")]
    if len(segments) < 2 or len(segments) % 2 != 0 or any(not segment for segment in segments):
        raise ValueError(f"Invalid document path: {path!r}")
    return "/".join(segments[:-1]), segments[-1]


def _validate_collection(path: str) -> str:
    segments = path.strip("/").split("/")
    if len(segments) % 2 != 1 or any(not segment for segment in segments):
        raise ValueError(f"Invalid collection path: {path!r}")
    return "/".join(segments)


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return {_DATETIME_KEY: value.isoformat()}
    if isinstance(value, Mapping):
        return {str(key): _encode(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(item) for item in value]
    return value


def _decode(value: Any) -> Any:
    if isinstance(value, dict):
        if set(value) == {_DATETIME_KEY}:
            return datetime.fromisoformat(value[_DATETIME_KEY])
        return {key: _decode(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_decode(item) for item in value]
    return value


def _resolve_timestamps(value: Any, now: datetime) -> Any:
    if value is SERVER_TIMESTAMP:
        return now
    if isinstance(value, Mapping):
        return {key: _resolve_timestamps(item, now) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_resolve_timestamps(item, now) for item in value]
    return value


def _deep_merge(base: dict[str, Any], updates: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in updates.items():
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, dict):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged


@dataclass(frozen=True, slots=True)
class DocumentSnapshot:
    """Immutable view of a document at a point in time."""

    path: str
    data: dict[str, Any] | None
    create_time: datetime | None = None
    update_time: datetime | None = None

    @property
    def id(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @property
    def exists(self) -> bool:
        return self.data is not None

    def get(self, key: str, default: Any = None) -> Any:
        if self.data is None:
            return default
        return self.data.get(key, default)

    def to_dict(self) -> dict[str, Any] | None:
        return dict(self.data) if self.data is not None else None


_MISSING = object()


@dataclass(frozen=True, slots=True)
class FieldFilter:
    """A single ``field <op> value`` predicate evaluated against document data."""

    field_path: str
    op: str
    value: Any

    _OPS = ("==", "!=", "<", "<=", ">", ">=", "in", "not-in", "array-contains")

    def __post_init__(self) -> None:
        if self.op not in self._OPS:
            raise ValueError(f"Unsupported filter operator: {self.op!r}")

    def matches(self, data: Mapping[str, Any]) -> bool:
        current = data.get(self.field_path, _MISSING)
        if current is _MISSING:
            return self.op == "!=" or self.op == "not-in"
        try:
            if self.op == "==":
                return current == self.value
            if self.op == "!=":
                return current != self.value
            if self.op == "in":
                return current in self.value
            if self.op == "not-in":
                return current not in self.value
            if self.op == "array-contains":
                return isinstance(current, list) and self.value in current
            if self.op == "<":
                return current < self.value
            if self.op == "<=":
                return current <= self.value
            if self.op == ">":
                return current > self.value
            return current >= self.value
        except TypeError:
            return False


@dataclass(frozen=True, slots=True)
class OrderBy:
    field_path: str
    descending: bool = False


@dataclass(frozen=True, slots=True)
class Query:
    """Immutable description of a collection query; build with ``where``/``order_by``/``limit``."""

    collection: str
    filters: tuple[FieldFilter, ...] = ()
    orders: tuple[OrderBy, ...] = ()
    max_results: int | None = None

    def where(self, field_path: str, op: str, value: Any) -> "Query":
        return Query(self.collection, self.filters + (FieldFilter(field_path, op, value),), self.orders, self.max_results)

    def order_by(self, field_path: str, *, descending: bool = False) -> "Query":
        return Query(self.collection, self.filters, self.orders + (OrderBy(field_path, descending),), self.max_results)

    def limit(self, count: int) -> "Query":
        if count < 1:
            raise ValueError("limit must be positive")
        return Query(self.collection, self.filters, self.orders, count)

    def apply(self, snapshots: Iterable[DocumentSnapshot]) -> list[DocumentSnapshot]:
        results = [snap for snap in snapshots if snap.data is not None and all(f.matches(snap.data) for f in self.filters)]
        # Documents missing an ordered field are excluded, as in Firestore.
        for order in self.orders:
            results = [snap for snap in results if order.field_path in snap.data]
        for order in reversed(self.orders):
            results.sort(key=lambda snap: snap.data[order.field_path], reverse=order.descending)
        if self.max_results is not None:
            results = results[: self.max_results]
        return results


@dataclass(slots=True)
class _Write:
    kind: str
    path: str
    fields: Mapping[str, Any] | None = None
    merge: bool = False
    expected: Mapping[str, Any] | None = None


class WriteBatch:
    """Collects writes and applies them atomically on :meth:`commit`."""

    def __init__(self, store: "DocumentStore") -> None:
        self._store = store
        self._writes: list[_Write] = []
        self._committed = False

    def __len__(self) -> int:
        return len(self._writes)

    def _add(self, write: _Write) -> "WriteBatch":
        if self._committed:
            raise RuntimeError("Batch already committed")
        split_path(write.path)
        self._writes.append(write)
        return self

    def set(self, path: str, fields: Mapping[str, Any], *, merge: bool = False) -> "WriteBatch":
        return self._add(_Write("set", path, dict(fields), merge=merge))

    def create(self, path: str, fields: Mapping[str, Any]) -> "WriteBatch":
        return self._add(_Write("create", path, dict(fields)))

    def update(self, path: str, fields: Mapping[str, Any], *, expected: Mapping[str, Any] | None = None) -> "WriteBatch":
        return self._add(_Write("update", path, dict(fields), expected=expected))

    def delete(self, path: str, *, expected: Mapping[str, Any] | None = None) -> "WriteBatch":
        return self._add(_Write("delete", path, expected=expected))

    def commit(self) -> datetime:
        if self._committed:
            raise RuntimeError("Batch already committed")
        self._committed = True
        return self._store._commit(self._writes)


@dataclass(eq=False)
class Subscription:
    """Handle for a live document or query listener."""

    store: "DocumentStore"
    target: str | Query
    on_next: Callable[[Any], None]
    on_error: Callable[[Exception], None] | None = None
    key: int = 0
    active: bool = field(default=True)

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self.store._remove_subscription(self.key)

    def __call__(self) -> None:
        self.unsubscribe()


class DocumentStore:
    """Document database with atomic batches and live subscriptions.

    Parameters
    ----------
    session_factory:
        Callable returning a fresh SQLAlchemy :class:`Session`; one session is
        opened per read or commit.
    clock:
        Source of server timestamps. Defaults to the current UTC time.
    """

    def __init__(self, session_factory: Callable[[], Session], *, clock: Callable[[], datetime] | None = None) -> None:
        self._session_factory = session_factory
        self._clock = clock or _utcnow
        self._lock = threading.RLock()
        self._subscriptions: dict[int, Subscription] = {}
        self._keys = itertools.count(1)

    # -- reads -----------------------------------------------------------------

    def collection(self, path: str) -> Query:
        return Query(_validate_collection(path))

    def get(self, path: str) -> DocumentSnapshot:
        collection, doc_id = split_path(path)
        session = self._session_factory()
        try:
            row = session.get(Document, (collection, doc_id))
            return self._snapshot(f"{collection}/{doc_id}", row)
        except SQLAlchemyError as exc:
            logger.exception("Document read failed for %s", path)
            raise StoreUnavailableError("document store unavailable") from exc
        finally:
            session.close()

    def query(self, query: Query | str) -> list[DocumentSnapshot]:
        if isinstance(query, str):
            query = self.collection(query)
        session = self._session_factory()
        try:
            rows = session.scalars(select(Document).where(Document.collection == query.collection)).all()
            snapshots = [self._snapshot(row.path, row) for row in rows]
        except SQLAlchemyError as exc:
            logger.exception("Query failed for collection %s", query.collection)
            raise StoreUnavailableError("document store unavailable") from exc
        finally:
            session.close()
        return query.apply(snapshots)

    @staticmethod
    def _snapshot(path: str, row: Document | None) -> DocumentSnapshot:
        if row is None:
            return DocumentSnapshot(path=path, data=None)
        return DocumentSnapshot(
            path=path,
            data=_decode(row.data or {}),
            create_time=row.created_at,
            update_time=row.updated_at,
        )

    # -- single writes ---------------------------------------------------------

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    def set(self, path: str, fields: Mapping[str, Any], *, merge: bool = False) -> datetime:
        return self.batch().set(path, fields, merge=merge).commit()

    def create(self, path: str, fields: Mapping[str, Any]) -> datetime:
        return self.batch().create(path, fields).commit()

    def update(self, path: str, fields: Mapping[str, Any], *, expected: Mapping[str, Any] | None = None) -> datetime:
        return self.batch().update(path, fields, expected=expected).commit()

    def delete(self, path: str, *, expected: Mapping[str, Any] | None = None) -> datetime:
        return self.batch().delete(path, expected=expected).commit()

    # -- commit ----------------------------------------------------------------

    def _commit(self, writes: Sequence[_Write]) -> datetime:
        now = self._clock()
        if not writes:
            return now

        session = self._session_factory()
        # Rows touched by this batch; None marks a document deleted earlier in the batch.
        staged: dict[tuple[str, str], Document | None] = {}
        changed_paths: set[str] = set()

        def _load(key: tuple[str, str]) -> Document | None:
            if key in staged:
                return staged[key]
            row = session.get(Document, key)
            staged[key] = row
            return row

        try:
            for write in writes:
                key = split_path(write.path)
                path = "/".join(key)
                row = _load(key)
                current = _decode(row.data or {}) if row is not None else None

                if write.expected is not None:
                    if current is None:
                        raise PreconditionFailed(f"{path} does not exist")
                    for name, value in write.expected.items():
                        if current.get(name) != value:
                            raise PreconditionFailed(f"{path}: expected {name}={value!r}, found {current.get(name)!r}")

                if write.kind == "delete":
                    if row is not None:
                        session.delete(row)
                        staged[key] = None
                        changed_paths.add(path)
                    continue

                fields = _resolve_timestamps(write.fields or {}, now)
                if write.kind == "create" and current is not None:
                    raise DocumentAlreadyExists(path)
                if write.kind == "update" and current is None:
                    raise DocumentNotFound(path)

                if write.kind == "set" and not write.merge:
                    data = dict(fields)
                elif current is None:
                    data = dict(fields)
                else:
                    data = _deep_merge(current, fields)

                if row is None:
                    row = Document(collection=key[0], doc_id=key[1], data=_encode(data), created_at=now, updated_at=now)
                    session.add(row)
                    staged[key] = row
                else:
                    row.data = _encode(data)
                    row.updated_at = now
                changed_paths.add(path)

            session.commit()
        except DocumentStoreError:
            session.rollback()
            raise
        except IntegrityError as exc:
            # A concurrent writer created one of our documents first.
            session.rollback()
            raise DocumentAlreadyExists("document created concurrently") from exc
        except StaleDataError as exc:
            # A concurrent writer changed or deleted a row after we read it.
            session.rollback()
            if any(write.expected is not None for write in writes):
                raise PreconditionFailed("document changed concurrently") from exc
            logger.warning("Batch lost a concurrent write race (%d writes)", len(writes))
            raise StoreUnavailableError("document changed concurrently, retry") from exc
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("Batch commit failed (%d writes)", len(writes))
            raise StoreUnavailableError("document store unavailable") from exc
        finally:
            session.close()

        self._notify(changed_paths)
        return now

    # -- subscriptions ---------------------------------------------------------

    def subscribe(
        self,
        target: str | Query,
        on_next: Callable[[Any], None],
        on_error: Callable[[Exception], None] | None = None,
    ) -> Subscription:
        """Listen to a document path or a :class:`Query`.

        ``on_next`` receives a :class:`DocumentSnapshot` for document targets
        and a list of snapshots for queries, immediately and after every
        commit that touches the target.
        """

        if isinstance(target, str):
            split_path(target)
        with self._lock:
            key = next(self._keys)
            subscription = Subscription(self, target, on_next, on_error, key=key)
            self._subscriptions[key] = subscription
        self._deliver(subscription)
        return subscription

    def _remove_subscription(self, key: int) -> None:
        with self._lock:
            self._subscriptions.pop(key, None)

    @property
    def active_subscriptions(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def _notify(self, changed_paths: set[str]) -> None:
        if not changed_paths:
            return
        changed_collections = {path.rsplit("/", 1)[0] for path in changed_paths}
        with self._lock:
            targets = list(self._subscriptions.values())
        for subscription in targets:
            target = subscription.target
            if isinstance(target, Query):
                if target.collection in changed_collections:
                    self._deliver(subscription)
            elif target.strip("/") in changed_paths:
                self._deliver(subscription)

    def _deliver(self, subscription: Subscription) -> None:
        if not subscription.active:
            return
        try:
            if isinstance(subscription.target, Query):
                payload: Any = self.query(subscription.target)
            else:
                payload = self.get(subscription.target)
        except DocumentStoreError as exc:
            if subscription.on_error is not None:
                subscription.on_error(exc)
            else:
                logger.warning("Subscription %d lost its snapshot: %s", subscription.key, exc)
            return

        if not subscription.active:
            return
        try:
            subscription.on_next(payload)
        except Exception as exc:
            logger.exception("Subscription listener %d failed", subscription.key)
            if subscription.on_error is not None:
                subscription.on_error(exc)


@lru_cache(maxsize=1)
def get_store() -> DocumentStore:
    """Process-wide store bound to the application's session factory."""

    return DocumentStore(create_session)


__all__ = [
    "get_store",
    "SERVER_TIMESTAMP",
    "DocumentStore",
    "DocumentSnapshot",
    "DocumentStoreError",
    "DocumentNotFound",
    "DocumentAlreadyExists",
    "PreconditionFailed",
    "StoreUnavailableError",
    "FieldFilter",
    "OrderBy",
    "Query",
    "Subscription",
    "WriteBatch",
    "split_path",
]
