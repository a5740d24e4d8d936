"""
Client-local persistent key-value storage.

Holds the session identity and the per-category results mirror. Every
store is namespaced; ``scoped()`` derives a child namespace sharing the same
backend, and ``clear()`` only ever touches its own namespace.
"""
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Optional

import redis

logger = logging.getLogger(__name__)


# Key templates for the different kinds of stored data
STORAGE_KEYS = {
    'session': 'session',              # JSON object: id, username, role, credential
    'results': 'results:{}',           # JSON object: nominee_id -> last known count
    'voted': 'voted:{}',               # nominee id the user voted for in a category
    'busy': 'busy:{}',                 # in-flight vote exchange marker for a category
    'nomination': 'nomination:{}',     # JSON object: local page state (state, selected, error)
}


def get_storage_key(key_type: str, *args) -> str:
    """
    Get formatted storage key.

    Args:
        key_type: Type of key from STORAGE_KEYS
        *args: Arguments to format into key

    Returns:
        str: Formatted key
    """
    key_template = STORAGE_KEYS[key_type]
    if '{}' in key_template:
        return key_template.format(*args)
    return key_template


class KeyValueStore(ABC):
    """Namespaced string key-value store."""

    def __init__(self, namespace: str = ""):
        self.namespace = namespace

    def _full_key(self, key: str) -> str:
        return f"{self.namespace}:{key}" if self.namespace else key

    def _child_namespace(self, namespace: str) -> str:
        return f"{self.namespace}:{namespace}" if self.namespace else namespace

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored value or None."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store a value, replacing any previous one."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a key if present."""

    @abstractmethod
    def keys(self) -> Iterable[str]:
        """Keys in this namespace, without the namespace prefix."""

    @abstractmethod
    def scoped(self, namespace: str) -> "KeyValueStore":
        """Child store sharing this backend."""

    @abstractmethod
    def acquire(self, key: str, ttl: int) -> bool:
        """
        Atomically create ``key`` unless it is already held.

        Args:
            key: Marker key
            ttl: Seconds after which the marker lapses on its own

        Returns:
            bool: True if this caller now holds the marker
        """

    @abstractmethod
    def is_held(self, key: str) -> bool:
        """True while a marker created by ``acquire`` is live."""

    def release(self, key: str) -> None:
        self.delete(key)

    def clear(self) -> None:
        """Remove every key in this namespace."""
        removed = 0
        for key in list(self.keys()):
            self.delete(key)
            removed += 1
        logger.debug(f"Cleared {removed} keys from namespace '{self.namespace}'")

    def get_json(self, key: str, default: Any = None) -> Any:
        raw = self.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding unreadable value for key '{self._full_key(key)}'")
            self.delete(key)
            return default

    def set_json(self, key: str, value: Any) -> None:
        self.set(key, json.dumps(value))


class MemoryStore(KeyValueStore):
    """Process-local store. Scoped children share the same dict and lock."""

    def __init__(
        self,
        namespace: str = "",
        data: Optional[Dict[str, str]] = None,
        lock: Optional[threading.Lock] = None
    ):
        super().__init__(namespace)
        self._data: Dict[str, str] = {} if data is None else data
        self._lock = lock or threading.Lock()

    def get(self, key: str) -> Optional[str]:
        return self._data.get(self._full_key(key))

    def set(self, key: str, value: str) -> None:
        self._data[self._full_key(key)] = value

    def delete(self, key: str) -> None:
        self._data.pop(self._full_key(key), None)

    def keys(self) -> Iterable[str]:
        prefix = f"{self.namespace}:" if self.namespace else ""
        return [k[len(prefix):] for k in self._data if k.startswith(prefix)]

    def scoped(self, namespace: str) -> "MemoryStore":
        return MemoryStore(self._child_namespace(namespace), self._data, self._lock)

    def _expiry(self, key: str) -> Optional[float]:
        try:
            return float(self._data[self._full_key(key)])
        except (KeyError, ValueError):
            return None

    def acquire(self, key: str, ttl: int) -> bool:
        # Marker value is its expiry time
        with self._lock:
            expiry = self._expiry(key)
            if expiry is not None and expiry > time.time():
                return False
            self._data[self._full_key(key)] = str(time.time() + ttl)
            return True

    def is_held(self, key: str) -> bool:
        with self._lock:
            expiry = self._expiry(key)
            return expiry is not None and expiry > time.time()


class RedisStore(KeyValueStore):
    """Redis backed store for running the front-end with more than one process."""

    def __init__(
        self,
        url: Optional[str] = None,
        namespace: str = "",
        max_connections: int = 20,
        client: Optional[redis.Redis] = None
    ):
        """Initialize Redis connection pool (or reuse a parent's client)."""
        super().__init__(namespace)
        if client is None:
            self.pool = redis.ConnectionPool.from_url(
                url,
                max_connections=max_connections,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_keepalive=True,
                health_check_interval=30
            )
            client = redis.Redis(connection_pool=self.pool)
        self.client = client

    def ping(self) -> bool:
        """Check the Redis connection."""
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            logger.error(f"Redis ping failed: {e}")
            return False

    def get(self, key: str) -> Optional[str]:
        try:
            return self.client.get(self._full_key(key))
        except redis.RedisError as e:
            logger.error(f"Redis error reading '{key}': {e}")
            raise

    def set(self, key: str, value: str) -> None:
        try:
            self.client.set(self._full_key(key), value)
        except redis.RedisError as e:
            logger.error(f"Redis error writing '{key}': {e}")
            raise

    def delete(self, key: str) -> None:
        try:
            self.client.delete(self._full_key(key))
        except redis.RedisError as e:
            logger.error(f"Redis error deleting '{key}': {e}")
            raise

    def keys(self) -> Iterable[str]:
        prefix = f"{self.namespace}:" if self.namespace else ""
        try:
            return [k[len(prefix):] for k in self.client.scan_iter(match=f"{prefix}*")]
        except redis.RedisError as e:
            logger.error(f"Redis error scanning '{prefix}*': {e}")
            raise

    def scoped(self, namespace: str) -> "RedisStore":
        return RedisStore(namespace=self._child_namespace(namespace), client=self.client)

    def acquire(self, key: str, ttl: int) -> bool:
        try:
            return bool(self.client.set(self._full_key(key), "1", nx=True, ex=ttl))
        except redis.RedisError as e:
            logger.error(f"Redis error acquiring '{key}': {e}")
            raise

    def is_held(self, key: str) -> bool:
        try:
            return bool(self.client.exists(self._full_key(key)))
        except redis.RedisError as e:
            logger.error(f"Redis error checking '{key}': {e}")
            raise

    def close(self):
        """Close Redis connection pool."""
        try:
            self.client.close()
            logger.info("Redis connection pool closed")
        except Exception as e:
            logger.error(f"Error closing Redis connection: {e}")


def open_store(url: str, namespace: str = "", max_connections: int = 20) -> KeyValueStore:
    """
    Open a store from a URL.

    Args:
        url: ``memory://`` or a ``redis://`` / ``rediss://`` URL
        namespace: Root namespace for all keys
        max_connections: Redis pool size

    Returns:
        KeyValueStore: The opened store
    """
    if not url or url.startswith("memory://"):
        logger.info("Using in-memory local storage")
        return MemoryStore(namespace)
    if url.startswith(("redis://", "rediss://", "unix://")):
        logger.info("Using Redis local storage")
        return RedisStore(url, namespace=namespace, max_connections=max_connections)
    raise ValueError(f"Unsupported storage URL: {url}")
