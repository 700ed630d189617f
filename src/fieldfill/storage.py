"""
Quota-aware storage adapter.

Two storage areas mirror the browser's: "sync" (small, roamed) and "local"
(large, device only). Values are JSON-serializable and stored inside an
envelope that records whether the payload is compressed:

    {"compressed": bool, "data": ..., "original_size": int, "timestamp": ms}

A value too large for one item is split: the item under its key holds a
chunked envelope ({"chunked": true, "total_chunks": n, ...}) and the
compressed payload is spread over "<key>_chunk_<i>" items.

Writes are queued and flushed in one backend call per storage area once the
batch window elapses. A write that breaks a quota, or that the backend
rejects, is trimmed by the trimmer registered for its key and retried once;
if that still fails the error is reported as a warning and the write is
dropped.
"""

import base64
import json
import logging
import sqlite3
import time
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from fieldfill.config import CoreConfig, settings
from fieldfill.errors import ErrorReporter, StorageQuotaError
from fieldfill.intelligence.field_cache import CacheManager
from fieldfill.scheduling import TaskQueue, TimerHandle

logger = logging.getLogger(__name__)

STORAGE_TYPES = ("sync", "local")

# Chunk keys are sized for this many chunks
MAX_CHUNKS = 999

# Backend failures handled like quota violations
BACKEND_ERRORS = (sqlite3.Error, OSError)

CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS storage_items (
    storage_type TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    updated_at REAL NOT NULL,
    PRIMARY KEY (storage_type, key)
);
"""


def item_size(key: str, raw: str) -> int:
    """Bytes an item counts against its quota: key plus serialized value."""
    return len(key.encode("utf-8")) + len(raw.encode("utf-8"))


# =========================================================================
# Envelope encoding
# =========================================================================

def _now_ms() -> int:
    return int(time.time() * 1000)


def _dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


def encode_value(value: Any, compression_threshold: int = 1000) -> str:
    """
    Serialize a value into its storage envelope.

    Payloads whose JSON is longer than compression_threshold bytes are
    zlib-compressed and base64 encoded.
    """
    payload = _dumps(value)
    size = len(payload.encode("utf-8"))
    envelope: Dict[str, Any] = {
        "compressed": False,
        "data": value,
        "original_size": size,
        "timestamp": _now_ms(),
    }
    if size > compression_threshold:
        packed = base64.b64encode(zlib.compress(payload.encode("utf-8"), 9)).decode("ascii")
        if len(packed) < size:
            envelope["compressed"] = True
            envelope["data"] = packed
    return json.dumps(envelope, separators=(",", ":"))


def is_envelope(obj: Any) -> bool:
    return isinstance(obj, dict) and "compressed" in obj and "data" in obj


def is_chunked(obj: Any) -> bool:
    return is_envelope(obj) and bool(obj.get("chunked"))


def chunk_key(key: str, index: int) -> str:
    return f"{key}_chunk_{index}"


def chunk_keys(key: str, envelope: Dict[str, Any]) -> List[str]:
    return [chunk_key(key, i) for i in range(int(envelope["total_chunks"]))]


def encode_chunked(key: str, value: Any, item_quota: int) -> Dict[str, str]:
    """
    Split a value across chunk items that each fit item_quota.

    Returns every item to write, the chunked envelope under key included.

    Raises:
        ValueError: if the value cannot be split within item_quota
    """
    payload = _dumps(value).encode("utf-8")
    packed = base64.b64encode(zlib.compress(payload, 9)).decode("ascii")

    # Each slice is stored as a JSON string: two bytes of quotes
    chunk_size = item_quota - len(chunk_key(key, MAX_CHUNKS).encode("utf-8")) - 2
    if chunk_size <= 0:
        raise ValueError(f"item quota of {item_quota} bytes leaves no room for chunks of '{key}'")
    pieces = [packed[i:i + chunk_size] for i in range(0, len(packed), chunk_size)] or [""]
    if len(pieces) > MAX_CHUNKS:
        raise ValueError(f"'{key}' needs {len(pieces)} chunks, more than {MAX_CHUNKS}")

    envelope = json.dumps({
        "compressed": True,
        "chunked": True,
        "total_chunks": len(pieces),
        "data": None,
        "original_size": len(payload),
        "timestamp": _now_ms(),
    }, separators=(",", ":"))
    if item_size(key, envelope) > item_quota:
        raise ValueError(f"chunk index for '{key}' does not fit the {item_quota} byte item quota")

    items = {chunk_key(key, i): json.dumps(piece) for i, piece in enumerate(pieces)}
    items[key] = envelope
    return items


def join_chunks(key: str, envelope: Dict[str, Any], raws: Dict[str, str]) -> Any:
    """
    Reassemble a chunked value from its raw chunk items.

    Raises:
        ValueError: if a chunk is missing or the payload is corrupt
    """
    parts = []
    for name in chunk_keys(key, envelope):
        if name not in raws:
            raise ValueError(f"missing chunk '{name}'")
        parts.append(json.loads(raws[name]))
    try:
        payload = zlib.decompress(base64.b64decode("".join(parts)))
    except zlib.error as e:
        raise ValueError(f"corrupt chunks for '{key}': {e}") from e
    return json.loads(payload.decode("utf-8"))


def decode_value(raw: Optional[str]) -> Any:
    """
    Decode a stored envelope back into its value.

    Raw JSON written before envelopes existed is returned as-is.

    Raises:
        ValueError: for chunked envelopes, which need their chunk items
    """
    if raw is None:
        return None
    obj = json.loads(raw)
    if not is_envelope(obj):
        return obj
    if is_chunked(obj):
        raise ValueError("chunked value must be joined from its chunk items")
    if obj["compressed"]:
        payload = zlib.decompress(base64.b64decode(obj["data"])).decode("utf-8")
        return json.loads(payload)
    return obj["data"]


def _parse(raw: Optional[str]) -> Any:
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return None


# =========================================================================
# Backends
# =========================================================================

class StorageBackend(ABC):
    """Raw key/value persistence per storage area. Values are envelope strings."""

    @abstractmethod
    def get_many(self, storage_type: str, keys: Iterable[str]) -> Dict[str, str]:
        """Fetch the raw values of the given keys that exist."""
        pass

    @abstractmethod
    def set_many(self, storage_type: str, items: Dict[str, str]) -> None:
        """Write several raw values in one operation."""
        pass

    @abstractmethod
    def remove(self, storage_type: str, keys: Iterable[str]) -> None:
        pass

    @abstractmethod
    def items(self, storage_type: str) -> Dict[str, str]:
        """All raw values in a storage area."""
        pass

    def bytes_in_use(self, storage_type: str) -> int:
        return sum(item_size(k, v) for k, v in self.items(storage_type).items())

    def close(self) -> None:
        pass


class MemoryBackend(StorageBackend):
    """Dict-backed storage for tests and ephemeral sessions."""

    def __init__(self):
        self._areas: Dict[str, Dict[str, str]] = {t: {} for t in STORAGE_TYPES}
        self.set_many_calls = 0
        self.get_many_calls = 0

    def get_many(self, storage_type: str, keys: Iterable[str]) -> Dict[str, str]:
        self.get_many_calls += 1
        area = self._areas.setdefault(storage_type, {})
        return {k: area[k] for k in keys if k in area}

    def set_many(self, storage_type: str, items: Dict[str, str]) -> None:
        self.set_many_calls += 1
        self._areas.setdefault(storage_type, {}).update(items)

    def remove(self, storage_type: str, keys: Iterable[str]) -> None:
        area = self._areas.setdefault(storage_type, {})
        for key in keys:
            area.pop(key, None)

    def items(self, storage_type: str) -> Dict[str, str]:
        return dict(self._areas.setdefault(storage_type, {}))


class SqliteBackend(StorageBackend):
    """SQLite key/value table, one connection per backend."""

    def __init__(self, db_path: Optional[str] = None):
        """Initialize the SQLite backend.

        Args:
            db_path: Database file path (":memory:" allowed). Defaults to settings.STORAGE_PATH.
        """
        self.db_path = db_path or settings.STORAGE_PATH
        self.conn: Optional[sqlite3.Connection] = None
        self.connect()
        self.create_schema()

    def connect(self) -> None:
        self.conn = sqlite3.connect(self.db_path)
        self.conn.row_factory = sqlite3.Row
        logger.debug(f"Connected to storage database: {self.db_path}")

    def close(self) -> None:
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.debug("Closed storage database connection")

    def create_schema(self) -> None:
        with self.conn:
            self.conn.execute(CREATE_TABLE_SQL)

    def get_many(self, storage_type: str, keys: Iterable[str]) -> Dict[str, str]:
        keys = list(keys)
        if not keys:
            return {}
        placeholders = ", ".join("?" for _ in keys)
        cursor = self.conn.execute(
            f"SELECT key, value FROM storage_items WHERE storage_type = ? AND key IN ({placeholders})",
            (storage_type, *keys),
        )
        return {row["key"]: row["value"] for row in cursor.fetchall()}

    def set_many(self, storage_type: str, items: Dict[str, str]) -> None:
        now = time.time()
        with self.conn:
            self.conn.executemany(
                "INSERT OR REPLACE INTO storage_items (storage_type, key, value, updated_at) "
                "VALUES (?, ?, ?, ?)",
                [(storage_type, k, v, now) for k, v in items.items()],
            )
        logger.debug(f"Wrote {len(items)} items to {storage_type} storage")

    def remove(self, storage_type: str, keys: Iterable[str]) -> None:
        with self.conn:
            self.conn.executemany(
                "DELETE FROM storage_items WHERE storage_type = ? AND key = ?",
                [(storage_type, k) for k in keys],
            )

    def items(self, storage_type: str) -> Dict[str, str]:
        cursor = self.conn.execute(
            "SELECT key, value FROM storage_items WHERE storage_type = ?",
            (storage_type,),
        )
        return {row["key"]: row["value"] for row in cursor.fetchall()}

    def bytes_in_use(self, storage_type: str) -> int:
        cursor = self.conn.execute(
            "SELECT COALESCE(SUM(LENGTH(CAST(key AS BLOB)) + LENGTH(CAST(value AS BLOB))), 0) AS used "
            "FROM storage_items WHERE storage_type = ?",
            (storage_type,),
        )
        return int(cursor.fetchone()["used"])


def get_backend(backend: Optional[str] = None, **kwargs) -> StorageBackend:
    """Factory for the configured storage backend.

    Args:
        backend: 'sqlite' or 'memory'. Defaults to settings.STORAGE_BACKEND.
        **kwargs: Passed to the backend constructor.

    Raises:
        ValueError: If an unknown backend is specified.
    """
    backend = backend or settings.STORAGE_BACKEND

    if backend == "sqlite":
        logger.info("Using SQLite storage backend")
        return SqliteBackend(**kwargs)
    elif backend == "memory":
        logger.info("Using in-memory storage backend")
        return MemoryBackend()
    else:
        raise ValueError(
            f"Unknown storage backend: '{backend}'. "
            "Supported backends: 'sqlite', 'memory'"
        )


# =========================================================================
# Adapter
# =========================================================================

@dataclass
class PendingWrite:
    key: str
    value: Any
    storage_type: str
    queued_at: float


class StorageAdapter:
    """
    Boundary between the core and persistent storage.

    Reads go through the storage_cache; writes are queued on the task queue
    and flushed in batches.
    """

    def __init__(
        self,
        backend: StorageBackend,
        cache: CacheManager,
        task_queue: TaskQueue,
        reporter: Optional[ErrorReporter] = None,
        config: Optional[CoreConfig] = None,
    ):
        self.backend = backend
        self.cache = cache
        self.task_queue = task_queue
        self.reporter = reporter or ErrorReporter()
        self.config = config or CoreConfig()
        self._pending: Dict[Tuple[str, str], PendingWrite] = {}
        self._flush_timer: Optional[TimerHandle] = None
        self._trimmers: Dict[str, Callable[[Any], Any]] = {}
        self.flush_count = 0

    def quota_for(self, storage_type: str) -> Tuple[int, int]:
        """(total quota, per-item quota) in bytes."""
        self._check_type(storage_type)
        if storage_type == "sync":
            return self.config.sync_quota_bytes, self.config.sync_item_quota_bytes
        return self.config.local_quota_bytes, self.config.local_item_quota_bytes

    def register_trimmer(self, key: str, trimmer: Callable[[Any], Any]) -> None:
        """
        Register a function that shrinks the value of key.

        Called with the rejected value when a write breaks a quota or the
        backend refuses it; its return value is retried once.
        """
        self._trimmers[key] = trimmer

    # ---------------------------------------------------------------------
    # Reads
    # ---------------------------------------------------------------------

    def read(self, key: str, storage_type: str = "local") -> Any:
        """Read a value, or None if it was never written."""
        return self.read_many([key], storage_type).get(key)

    def read_many(self, keys: Iterable[str], storage_type: str = "local") -> Dict[str, Any]:
        """
        Read several values with at most two backend calls.

        Keys that were never written are absent from the result. A chunked
        value with missing or corrupt chunks is logged and treated as absent.
        """
        self._check_type(storage_type)
        results: Dict[str, Any] = {}
        missing = []

        for key in keys:
            cached = self.cache.storage_cache.get(self.cache.storage_key(key, storage_type))
            if cached is not None:
                results[key] = cached.data
                continue
            pending = self._pending.get((storage_type, key))
            if pending is not None:
                results[key] = pending.value
                continue
            missing.append(key)

        if not missing:
            return results

        raws = self.backend.get_many(storage_type, missing)
        chunked = {}
        for key, raw in raws.items():
            envelope = _parse(raw)
            if is_chunked(envelope):
                chunked[key] = envelope
        chunk_names = [name for key, env in chunked.items() for name in chunk_keys(key, env)]
        chunks = self.backend.get_many(storage_type, chunk_names) if chunk_names else {}

        for key, raw in raws.items():
            try:
                if key in chunked:
                    value = join_chunks(key, chunked[key], chunks)
                else:
                    value = decode_value(raw)
            except ValueError as e:
                logger.warning(f"Unreadable {storage_type} item '{key}': {e}")
                continue
            results[key] = value
            self.cache.storage_cache.put(self.cache.storage_key(key, storage_type), value)
        return results

    # ---------------------------------------------------------------------
    # Writes
    # ---------------------------------------------------------------------

    def write(self, key: str, value: Any, storage_type: str = "local") -> None:
        """
        Queue a write. Later writes to the same key replace earlier queued ones.

        Raises:
            TypeError: if value is not JSON-serializable
        """
        self._check_type(storage_type)
        json.dumps(value)

        self._pending[(storage_type, key)] = PendingWrite(
            key=key,
            value=value,
            storage_type=storage_type,
            queued_at=self.task_queue.clock.now_ms(),
        )
        self.cache.storage_cache.put(self.cache.storage_key(key, storage_type), value)

        if self._flush_timer is None:
            self._flush_timer = self.task_queue.call_later(
                self.config.batch_window_ms, self.flush, label="storage-flush"
            )

    def remove(self, key: str, storage_type: str = "local") -> None:
        """Remove a value and any chunk items it was split into."""
        self._check_type(storage_type)
        self._pending.pop((storage_type, key), None)
        self.cache.storage_cache.invalidate(self.cache.storage_key(key, storage_type))
        existing = self._existing_items(storage_type, [key])
        self.backend.remove(storage_type, list(existing) or [key])

    def flush(self) -> int:
        """
        Commit every queued write now.

        Never raises for backend failures; those are reported.

        Returns:
            Number of values persisted
        """
        if self._flush_timer is not None:
            self.task_queue.cancel(self._flush_timer)
            self._flush_timer = None
        if not self._pending:
            return 0

        pending, self._pending = self._pending, {}
        by_type: Dict[str, List[PendingWrite]] = {}
        for write in pending.values():
            by_type.setdefault(write.storage_type, []).append(write)

        written = 0
        for storage_type, writes in by_type.items():
            try:
                written += self._commit(storage_type, writes)
            except BACKEND_ERRORS as e:
                self._give_up(
                    self._backend_error(storage_type, writes, e),
                    [w.key for w in writes],
                    storage_type=storage_type,
                )
        self.flush_count += 1
        return written

    def _commit(self, storage_type: str, writes: List[PendingWrite]) -> int:
        total_quota, item_quota = self.quota_for(storage_type)
        prepared: Dict[str, Dict[str, str]] = {}

        for write in writes:
            items = self._prepare(write, item_quota)
            if items is not None:
                prepared[write.key] = items

        if not prepared:
            return 0

        existing = self._existing_items(storage_type, prepared.keys())
        try:
            self._check_total(storage_type, prepared, existing, total_quota)
        except StorageQuotaError as e:
            prepared = self._trim_batch(storage_type, prepared, writes, item_quota)
            try:
                self._check_total(storage_type, prepared, existing, total_quota)
            except StorageQuotaError:
                self._give_up(e, [w.key for w in writes])
                return 0

        try:
            self._store(storage_type, prepared, existing)
        except BACKEND_ERRORS as e:
            logger.warning(f"{storage_type} backend rejected {len(prepared)} writes, trimming and retrying: {e}")
            error = self._backend_error(storage_type, writes, e)
            prepared = self._trim_batch(storage_type, prepared, writes, item_quota)
            try:
                self._store(storage_type, prepared, existing)
            except BACKEND_ERRORS:
                self._give_up(error, [w.key for w in writes])
                return 0

        logger.debug(f"Flushed {len(prepared)} writes to {storage_type} storage")
        return len(prepared)

    def _store(self, storage_type: str, prepared: Dict[str, Dict[str, str]], existing: Dict[str, str]) -> None:
        items = {k: v for group in prepared.values() for k, v in group.items()}
        self.backend.set_many(storage_type, items)
        stale = [k for k in existing if k not in items]
        if stale:
            self.backend.remove(storage_type, stale)

    def _encode_items(self, key: str, value: Any, item_quota: int) -> Dict[str, str]:
        raw = encode_value(value, self.config.compression_threshold)
        if item_size(key, raw) <= item_quota:
            return {key: raw}
        items = encode_chunked(key, value, item_quota)
        logger.debug(f"Split '{key}' into {len(items) - 1} chunks")
        return items

    def _prepare(self, write: PendingWrite, item_quota: int) -> Optional[Dict[str, str]]:
        try:
            return self._encode_items(write.key, write.value, item_quota)
        except ValueError as e:
            error = StorageQuotaError(
                f"Item '{write.key}' cannot be stored within the {item_quota} byte "
                f"{write.storage_type} item quota: {e}",
                storage_type=write.storage_type,
                key=write.key,
                quota_bytes=item_quota,
                stage="storage_write",
            )

        trimmer = self._trimmers.get(write.key)
        if trimmer is not None:
            trimmed_value = trimmer(write.value)
            try:
                items = self._encode_items(write.key, trimmed_value, item_quota)
            except ValueError:
                pass
            else:
                self._remember(write.key, write.storage_type, trimmed_value)
                return items
        self._give_up(error, [write.key], storage_type=write.storage_type)
        return None

    def _existing_items(self, storage_type: str, keys: Iterable[str]) -> Dict[str, str]:
        """Raw items currently stored for keys, their chunk items included."""
        keys = list(keys)
        existing = self.backend.get_many(storage_type, keys)
        names = []
        for key in keys:
            envelope = _parse(existing.get(key))
            if is_chunked(envelope):
                names.extend(chunk_keys(key, envelope))
        if names:
            existing.update(self.backend.get_many(storage_type, names))
        return existing

    def _check_total(
        self,
        storage_type: str,
        prepared: Dict[str, Dict[str, str]],
        existing: Dict[str, str],
        total_quota: int,
    ) -> None:
        used = self.backend.bytes_in_use(storage_type)
        used -= sum(item_size(k, v) for k, v in existing.items())
        used += sum(item_size(k, v) for group in prepared.values() for k, v in group.items())
        if used > total_quota:
            raise StorageQuotaError(
                f"{storage_type} storage would use {used} bytes, over its {total_quota} byte quota",
                storage_type=storage_type,
                required_bytes=used,
                quota_bytes=total_quota,
                stage="storage_write",
            )

    def _trim_batch(
        self,
        storage_type: str,
        prepared: Dict[str, Dict[str, str]],
        writes: List[PendingWrite],
        item_quota: int,
    ) -> Dict[str, Dict[str, str]]:
        trimmed = dict(prepared)
        for write in writes:
            trimmer = self._trimmers.get(write.key)
            if trimmer is None or write.key not in trimmed:
                continue
            value = trimmer(write.value)
            try:
                trimmed[write.key] = self._encode_items(write.key, value, item_quota)
            except ValueError as e:
                logger.debug(f"Trimmed value of '{write.key}' still does not fit: {e}")
                continue
            self._remember(write.key, storage_type, value)
        return trimmed

    @staticmethod
    def _backend_error(storage_type: str, writes: List[PendingWrite], error: Exception) -> StorageQuotaError:
        return StorageQuotaError(
            f"{storage_type} storage rejected {len(writes)} writes: {error}",
            storage_type=storage_type,
            key=writes[0].key if len(writes) == 1 else None,
            stage="storage_write",
        )

    def _remember(self, key: str, storage_type: str, value: Any) -> None:
        self.cache.storage_cache.put(self.cache.storage_key(key, storage_type), value)

    def _give_up(self, error: StorageQuotaError, keys: List[str], storage_type: Optional[str] = None) -> None:
        for key in keys:
            self.cache.storage_cache.invalidate(self.cache.storage_key(key, storage_type or error.storage_type))
        self.reporter.report(error)

    # ---------------------------------------------------------------------
    # Stats
    # ---------------------------------------------------------------------

    def pending_count(self) -> int:
        return len(self._pending)

    def usage(self, storage_type: str) -> Dict[str, Any]:
        """Bytes used against the quota of one storage area."""
        total_quota, item_quota = self.quota_for(storage_type)
        used = self.backend.bytes_in_use(storage_type)
        return {
            "bytes_in_use": used,
            "quota_bytes": total_quota,
            "item_quota_bytes": item_quota,
            "percent_used": round(used / total_quota * 100, 2) if total_quota else 0.0,
        }

    def storage_stats(self) -> Dict[str, Any]:
        return {
            "sync": self.usage("sync"),
            "local": self.usage("local"),
            "pending_writes": self.pending_count(),
            "flushes": self.flush_count,
            "cache": self.cache.storage_cache.stats().to_dict(),
        }

    def close(self) -> None:
        """Flush pending writes and close the backend."""
        self.flush()
        self.backend.close()

    @staticmethod
    def _check_type(storage_type: str) -> None:
        if storage_type not in STORAGE_TYPES:
            raise ValueError(f"Unknown storage type '{storage_type}', expected one of {STORAGE_TYPES}")
