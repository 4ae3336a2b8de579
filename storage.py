import logging
import threading
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from database import SessionLocal, session_scope
from models import StoredFile

logger = logging.getLogger(__name__)


class FileStore(Protocol):
    def load(self, name: str) -> Optional[str]: ...

    def save(self, name: str, content: str) -> None: ...

    def names(self) -> list[str]: ...


class MemoryFileStore:
    def __init__(self, files: Optional[dict[str, str]] = None) -> None:
        self.files: dict[str, str] = dict(files or {})
        self._lock = threading.Lock()

    def load(self, name: str) -> Optional[str]:
        with self._lock:
            return self.files.get(name)

    def save(self, name: str, content: str) -> None:
        with self._lock:
            self.files[name] = content

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self.files)


class SqlFileStore:
    """Keeps each named file as one row of ``stored_files``."""

    def __init__(self, factory: Optional[sessionmaker] = None) -> None:
        self.factory = factory or SessionLocal

    def load(self, name: str) -> Optional[str]:
        with session_scope(self.factory) as session:
            row = session.scalar(select(StoredFile).where(StoredFile.name == name))
            return row.content if row else None

    def save(self, name: str, content: str) -> None:
        with session_scope(self.factory) as session:
            row = session.scalar(select(StoredFile).where(StoredFile.name == name))
            if row is None:
                session.add(StoredFile(name=name, content=content))
            else:
                row.content = content
        logger.debug(f"file_saved: name={name} bytes={len(content)}")

    def names(self) -> list[str]:
        with session_scope(self.factory) as session:
            return list(
                session.scalars(select(StoredFile.name).order_by(StoredFile.name))
            )
