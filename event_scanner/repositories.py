"""
Local Storage Repositories for Event Scanner

This module implements the durable local store the offline queue and read
caches sit on. Every backend exposes the same table-like interface (get,
put, delete, items) with string keys, so the queue does not care whether
it is persisted to a JSON file, to Redis, or only held in memory.
"""

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from typing import Dict, Iterator, Optional, Tuple

import redis

from .exceptions import DataAccessException

logger = logging.getLogger(__name__)


class LocalStore(ABC):
    """
    Abstract base class for local durable stores

    Records are JSON-serializable dicts grouped into named tables and
    addressed by string keys.
    """

    @abstractmethod
    def get(self, table: str, key: str) -> Optional[Dict]:
        """
        Read one record

        Returns:
            The stored record, or None if the key is absent

        Raises:
            DataAccessException: If the store cannot be read
        """
        pass

    @abstractmethod
    def put(self, table: str, key: str, record: Dict) -> None:
        """
        Insert or replace one record

        Raises:
            DataAccessException: If the store cannot be written
        """
        pass

    @abstractmethod
    def delete(self, table: str, key: str) -> bool:
        """
        Remove one record

        Returns:
            True if the record existed
        """
        pass

    @abstractmethod
    def items(self, table: str) -> Iterator[Tuple[str, Dict]]:
        """Iterate over (key, record) pairs of a table"""
        pass

    @abstractmethod
    def clear(self, table: str) -> int:
        """
        Remove every record of a table

        Returns:
            Number of records removed
        """
        pass


class JSONLocalStore(LocalStore):
    """
    JSON file-based local store

    The whole store is one JSON document ``{table: {key: record}}``.
    Writes go through a temporary file and an atomic rename so a crash
    never leaves a half-written queue behind.
    """

    def __init__(self, file_path: str):
        """
        Initialize JSON store

        Args:
            file_path: Path to the JSON file
        """
        self.file_path = file_path
        self._lock = threading.RLock()

    def exists(self) -> bool:
        return os.path.exists(self.file_path)

    def load_data(self) -> Dict:
        """
        Load the whole document

        Raises:
            DataAccessException: If file reading or JSON parsing fails
        """
        try:
            if not self.exists():
                return {}
            with open(self.file_path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as e:
            raise DataAccessException("read", f"Invalid JSON in {self.file_path}: {str(e)}")
        except OSError as e:
            raise DataAccessException("read", f"Cannot read {self.file_path}: {str(e)}")

    def save_data(self, data: Dict) -> None:
        """
        Replace the whole document

        Raises:
            DataAccessException: If file writing fails
        """
        directory = os.path.dirname(os.path.abspath(self.file_path))
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-", suffix=".json")
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump(data, f, indent=2, ensure_ascii=False)
                os.replace(tmp_path, self.file_path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise
        except (OSError, TypeError, ValueError) as e:
            raise DataAccessException("write", f"Cannot write {self.file_path}: {str(e)}")

    def get(self, table: str, key: str) -> Optional[Dict]:
        with self._lock:
            return self.load_data().get(table, {}).get(key)

    # Writes are read-modify-write on the whole document
    def put(self, table: str, key: str, record: Dict) -> None:
        with self._lock:
            data = self.load_data()
            data.setdefault(table, {})[key] = record
            self.save_data(data)

    def delete(self, table: str, key: str) -> bool:
        with self._lock:
            data = self.load_data()
            if key not in data.get(table, {}):
                return False
            del data[table][key]
            self.save_data(data)
            return True

    def items(self, table: str) -> Iterator[Tuple[str, Dict]]:
        with self._lock:
            return iter(list(self.load_data().get(table, {}).items()))

    def clear(self, table: str) -> int:
        with self._lock:
            data = self.load_data()
            removed = len(data.pop(table, {}))
            if removed:
                self.save_data(data)
            return removed


class RedisLocalStore(LocalStore):
    """
    Redis-backed local store

    Each table is one hash named ``<namespace>:<table>`` whose fields are
    record keys and whose values are JSON documents.
    """

    def __init__(self, client: redis.Redis, namespace: str = "event_scanner"):
        """
        Initialize Redis store

        Args:
            client: Redis client created with ``decode_responses=True``
            namespace: Prefix for every hash this store owns
        """
        self.client = client
        self.namespace = namespace

    @classmethod
    def from_settings(cls, host: str, port: int, namespace: str = "event_scanner") -> 'RedisLocalStore':
        client = redis.Redis(host=host, port=port, decode_responses=True)
        return cls(client, namespace)

    def _hash(self, table: str) -> str:
        return f"{self.namespace}:{table}"

    def get(self, table: str, key: str) -> Optional[Dict]:
        try:
            raw = self.client.hget(self._hash(table), key)
        except redis.RedisError as e:
            raise DataAccessException("read", f"Redis hget {self._hash(table)}: {str(e)}")
        return json.loads(raw) if raw else None

    def put(self, table: str, key: str, record: Dict) -> None:
        try:
            self.client.hset(self._hash(table), key, json.dumps(record))
        except redis.RedisError as e:
            raise DataAccessException("write", f"Redis hset {self._hash(table)}: {str(e)}")

    def delete(self, table: str, key: str) -> bool:
        try:
            return bool(self.client.hdel(self._hash(table), key))
        except redis.RedisError as e:
            raise DataAccessException("delete", f"Redis hdel {self._hash(table)}: {str(e)}")

    def items(self, table: str) -> Iterator[Tuple[str, Dict]]:
        try:
            raw = self.client.hgetall(self._hash(table))
        except redis.RedisError as e:
            raise DataAccessException("read", f"Redis hgetall {self._hash(table)}: {str(e)}")
        return iter([(key, json.loads(value)) for key, value in raw.items()])

    def clear(self, table: str) -> int:
        try:
            count = self.client.hlen(self._hash(table))
            self.client.delete(self._hash(table))
        except redis.RedisError as e:
            raise DataAccessException("delete", f"Redis delete {self._hash(table)}: {str(e)}")
        return count


class InMemoryLocalStore(LocalStore):
    """
    In-memory store for testing

    Not durable; useful for unit tests and development.
    """

    def __init__(self, initial_data: Optional[Dict] = None):
        self._data: Dict[str, Dict[str, Dict]] = {
            table: dict(records) for table, records in (initial_data or {}).items()
        }
        self._lock = threading.Lock()

    def get(self, table: str, key: str) -> Optional[Dict]:
        with self._lock:
            record = self._data.get(table, {}).get(key)
            return json.loads(json.dumps(record)) if record is not None else None

    def put(self, table: str, key: str, record: Dict) -> None:
        # Round-trip through JSON so stored records behave like persisted ones
        copy = json.loads(json.dumps(record))
        with self._lock:
            self._data.setdefault(table, {})[key] = copy

    def delete(self, table: str, key: str) -> bool:
        with self._lock:
            return self._data.get(table, {}).pop(key, None) is not None

    def items(self, table: str) -> Iterator[Tuple[str, Dict]]:
        with self._lock:
            return iter([(k, json.loads(json.dumps(v))) for k, v in self._data.get(table, {}).items()])

    def clear(self, table: str) -> int:
        with self._lock:
            return len(self._data.pop(table, {}))


class OperatorRepository:
    """
    Scanner operator credentials, read from a JSON file

    The file maps operator IDs to passwords.
    """

    def __init__(self, file_path: Optional[str] = None, initial_data: Optional[Dict] = None):
        self.file_path = file_path
        self._initial_data = initial_data

    def load_data(self) -> Dict:
        """
        Raises:
            DataAccessException: If the file exists but cannot be parsed
        """
        if self._initial_data is not None:
            return dict(self._initial_data)
        if not self.file_path:
            return {}
        return JSONLocalStore(self.file_path).load_data()


class RepositoryFactory:
    """
    Factory class for creating local store instances

    Centralizes the choice of local backend based on configuration.
    """

    @staticmethod
    def create_json_store(file_path: str) -> JSONLocalStore:
        return JSONLocalStore(file_path)

    @staticmethod
    def create_redis_store(host: str, port: int, namespace: str = "event_scanner") -> RedisLocalStore:
        return RedisLocalStore.from_settings(host, port, namespace)

    @staticmethod
    def create_memory_store(initial_data: Optional[Dict] = None) -> InMemoryLocalStore:
        return InMemoryLocalStore(initial_data)

    @staticmethod
    def create_store(store_type: str, **kwargs) -> LocalStore:
        """
        Create a local store based on type

        Args:
            store_type: Type of store ('json', 'redis' or 'memory')
            **kwargs: Backend-specific arguments

        Returns:
            LocalStore instance

        Raises:
            ValueError: If the store type is not supported
        """
        store_type = store_type.lower()
        if store_type == 'json':
            if 'file_path' not in kwargs:
                raise ValueError("file_path is required for JSON store")
            return RepositoryFactory.create_json_store(kwargs['file_path'])

        elif store_type == 'redis':
            return RepositoryFactory.create_redis_store(
                kwargs.get('host', 'localhost'),
                int(kwargs.get('port', 6379)),
                kwargs.get('namespace', 'event_scanner'),
            )

        elif store_type == 'memory':
            return RepositoryFactory.create_memory_store(kwargs.get('initial_data'))

        else:
            raise ValueError(f"Unsupported local store type: {store_type}")
