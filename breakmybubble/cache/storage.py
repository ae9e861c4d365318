"""
Key-value persistence backends for the tiered cache.

The cache only needs ``get/set/remove`` on string values. Backends raise
PersistenceError on failure; the cache decides whether to swallow it.
"""
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional, Protocol

from sqlalchemy import Column, DateTime, String, Text, create_engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..errors import PersistenceError

logger = logging.getLogger("cache.storage")

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class KeyValueStore(Protocol):
    """Minimal persistence interface consumed by TieredCache."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def remove(self, key: str) -> None:
        ...


class MemoryStore:
    """In-process store. Nothing survives a restart."""

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class JsonFileStore:
    """
    Stores each key as ``<directory>/<key>.json``.

    The directory is created lazily on first write.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self._lock = threading.Lock()

    def _path(self, key: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in key)
        return self.directory / f"{safe}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        with self._lock:
            try:
                if not path.exists():
                    return None
                with open(path, "r", encoding="utf-8") as f:
                    return f.read()
            except IOError as e:
                raise PersistenceError(f"Failed to read {path}: {e}") from e

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        with self._lock:
            try:
                self.directory.mkdir(parents=True, exist_ok=True)
                tmp_path = path.with_suffix(".json.tmp")
                with open(tmp_path, "w", encoding="utf-8") as f:
                    f.write(value)
                tmp_path.replace(path)
            except IOError as e:
                raise PersistenceError(f"Failed to write {path}: {e}") from e

    def remove(self, key: str) -> None:
        path = self._path(key)
        with self._lock:
            try:
                if path.exists():
                    path.unlink()
            except IOError as e:
                raise PersistenceError(f"Failed to remove {path}: {e}") from e


class KeyValueRecord(Base):
    """One persisted value per storage key."""
    __tablename__ = "kv_store"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    def __repr__(self):
        return f"<KeyValueRecord(key='{self.key}')>"


class SqlAlchemyStore:
    """
    Key-value store on a relational database via SQLAlchemy.

    Defaults to SQLite; the table is created on construction.
    """

    def __init__(self, database_url: str = "sqlite:///./cache/feed_cache.db"):
        connect_args = {}
        if database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False  # Needed for SQLite
            db_file = database_url[len("sqlite:///"):] if database_url.startswith("sqlite:///") else ""
            if db_file and db_file != ":memory:":
                Path(db_file).parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(database_url, connect_args=connect_args, echo=False)
        self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        Base.metadata.create_all(bind=self.engine)

    def get(self, key: str) -> Optional[str]:
        session = self._session_factory()
        try:
            record = session.get(KeyValueRecord, key)
            return record.value if record else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to read key {key}: {e}") from e
        finally:
            session.close()

    def set(self, key: str, value: str) -> None:
        try:
            self._write(key, value)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to write key {key}: {e}") from e

    def remove(self, key: str) -> None:
        try:
            self._delete(key)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to remove key {key}: {e}") from e

    # SQLite answers "database is locked" while another writer holds the file
    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.05, max=1),
        retry=retry_if_exception_type(OperationalError),
        reraise=True,
    )
    def _write(self, key: str, value: str) -> None:
        session = self._session_factory()
        try:
            record = session.get(KeyValueRecord, key)
            if record is None:
                session.add(KeyValueRecord(key=key, value=value))
            else:
                record.value = value
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.05, max=1),
        retry=retry_if_exception_type(OperationalError),
        reraise=True,
    )
    def _delete(self, key: str) -> None:
        session = self._session_factory()
        try:
            session.query(KeyValueRecord).filter(KeyValueRecord.key == key).delete()
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()


def create_store(
    backend: str,
    directory: Optional[Path] = None,
    database_url: Optional[str] = None,
) -> KeyValueStore:
    """Build a store from a backend name ("memory", "file" or "sql")."""
    logger.debug(f"Creating {backend} cache store")
    if backend == "memory":
        return MemoryStore()
    if backend == "file":
        return JsonFileStore(directory or Path("./cache"))
    if backend == "sql":
        if database_url:
            return SqlAlchemyStore(database_url)
        return SqlAlchemyStore()
    raise ValueError(f"Unknown cache backend: {backend}")

