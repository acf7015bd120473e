"""
Conversation partitions: one SQLite database per participant pair.

Each partition owns its engine, its session factory and a lock. Every
engine operation runs inside ``partition.transaction()``, which holds the
lock for the whole transaction, so calls against one conversation are
serialized while different conversations never wait on each other.
"""

import hashlib
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Generator, List, Optional, Tuple

from sqlalchemy import create_engine, event, select, text
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from chatrelay.errors import StorageError
from chatrelay.utils import unix_now

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()


def _configure_sqlite(engine) -> None:
    """
    Enable foreign keys and take the write lock when a transaction begins.

    pysqlite defers BEGIN until the first write, which would let two
    connections read the same knock count before either one writes.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def partition_key(remote_id: str, local_id: str) -> str:
    """File-safe digest of a participant pair."""
    raw = f"{remote_id}\x00{local_id}".encode("utf-8")
    return hashlib.sha1(raw).hexdigest()


class ConversationPartition:
    """Isolated durable storage for one (remote, local) participant pair."""

    def __init__(self, remote_id: str, local_id: str, path: Path):
        self.remote_id = remote_id
        self.local_id = local_id
        self.path = path
        self.engine = create_engine(
            f"sqlite:///{path}",
            connect_args={"check_same_thread": False},
            echo=False,
        )
        _configure_sqlite(self.engine)
        self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        self._lock = threading.RLock()

    def init_schema(self, created_at: int) -> None:
        """Create the tables and write the metadata row if it is missing."""
        from chatrelay.models import PartitionMeta

        logger.debug(f"Initializing partition schema at {self.path}")
        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            logger.error(f"Failed to create partition schema at {self.path}: {e}")
            raise StorageError(f"cannot initialize partition: {e}") from e

        with self.transaction() as db:
            db.execute(
                sqlite_insert(PartitionMeta.__table__)
                .values(remote_id=self.remote_id, local_id=self.local_id, created_at=created_at)
                .on_conflict_do_nothing()
            )

    @contextmanager
    def transaction(self) -> Generator[Session, None, None]:
        """
        Run one serialized transaction against this partition.

        Commits on success. SQLAlchemy failures are rolled back and raised
        as StorageError; any other exception is rolled back and re-raised.
        """
        with self._lock:
            db = self._session_factory()
            try:
                yield db
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Partition transaction failed ({self.remote_id}, {self.local_id}): {e}")
                raise StorageError(str(e)) from e
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

    def metadata(self) -> dict:
        from chatrelay.models import PartitionMeta

        with self.transaction() as db:
            row = db.execute(select(PartitionMeta)).scalars().first()
            if row is None:
                return {"remote_id": self.remote_id, "local_id": self.local_id, "created_at": None}
            return {"remote_id": row.remote_id, "local_id": row.local_id, "created_at": row.created_at}

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Partition health check failed for {self.path}: {e}")
            return False

    def dispose(self) -> None:
        self.engine.dispose()


class PartitionRegistry:
    """
    Keyed map from participant pair to its partition.

    Partitions are created lazily on first use and kept for the life of
    the registry. The registry lock only guards the map itself.
    """

    def __init__(self, base_dir: str, clock: Callable[[], int] = unix_now):
        self.base_dir = Path(base_dir)
        self.clock = clock
        self._partitions: Dict[Tuple[str, str], ConversationPartition] = {}
        self._lock = threading.Lock()

    def _path_for(self, remote_id: str, local_id: str) -> Path:
        return self.base_dir / f"{partition_key(remote_id, local_id)}.db"

    def exists(self, remote_id: str, local_id: str) -> bool:
        with self._lock:
            if (remote_id, local_id) in self._partitions:
                return True
        return self._path_for(remote_id, local_id).exists()

    def get(self, remote_id: str, local_id: str) -> ConversationPartition:
        """Return the partition for this pair, creating it on first sighting."""
        key = (remote_id, local_id)
        with self._lock:
            partition = self._partitions.get(key)
            if partition is not None:
                return partition

            try:
                self.base_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StorageError(f"cannot create partition directory {self.base_dir}: {e}") from e

            path = self._path_for(remote_id, local_id)
            is_new = not path.exists()
            partition = ConversationPartition(remote_id, local_id, path)
            partition.init_schema(created_at=self.clock())
            self._partitions[key] = partition

        if is_new:
            logger.info(f"Created partition for ({remote_id}, {local_id}) at {path}")
        return partition

    def list_partitions(self) -> List[dict]:
        """Metadata of every partition stored under the base directory."""
        if not self.base_dir.is_dir():
            return []

        result = []
        for path in sorted(self.base_dir.glob("*.db")):
            partition = self._find_loaded(path)
            if partition is not None:
                result.append(partition.metadata())
                continue
            # Not opened by this process yet; read its metadata row directly
            reader = ConversationPartition("", "", path)
            try:
                meta = reader.metadata()
            except StorageError:
                logger.warning(f"Skipping unreadable partition file {path}")
                continue
            finally:
                reader.dispose()
            if meta["created_at"] is not None:
                result.append(meta)
        return result

    def _find_loaded(self, path: Path) -> Optional[ConversationPartition]:
        with self._lock:
            for partition in self._partitions.values():
                if partition.path == path:
                    return partition
        return None

    def check_health(self) -> bool:
        """
        Check that partitions can be created and opened partitions respond.

        Returns:
            True if the base directory is writable and every loaded
            partition answers a trivial query, False otherwise.
        """
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Partition directory not usable: {e}")
            return False
        if not os.access(self.base_dir, os.W_OK):
            logger.error(f"Partition directory not writable: {self.base_dir}")
            return False

        with self._lock:
            partitions = list(self._partitions.values())
        return all(partition.ping() for partition in partitions)

    def dispose(self) -> None:
        with self._lock:
            for partition in self._partitions.values():
                partition.dispose()
            self._partitions.clear()
