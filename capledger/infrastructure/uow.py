from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .exceptions import handle_storage_error
from .notifier import ChangeNotifier


class UnitOfWork:
    """
    One atomic transaction per ``begin()`` block.

    ``begin(*tables)`` commits on success and, once committed, tells the
    notifier which tables changed. Database failures surface as StorageError.
    """

    def __init__(self, SessionLocal: sessionmaker, notifier: ChangeNotifier | None = None):
        self.SessionLocal = SessionLocal
        self.notifier = notifier or ChangeNotifier()

    @contextmanager
    def begin(self, *tables: str) -> Iterator[Session]:
        s = self.SessionLocal()
        try:
            yield s
            s.commit()
        except SQLAlchemyError as e:
            s.rollback()
            raise handle_storage_error(e, "commit transaction") from e
        except Exception:
            s.rollback()
            raise
        finally:
            s.close()
        self.notifier.notify(tables)

    @contextmanager
    def read(self) -> Iterator[Session]:
        """Session for queries only; nothing is committed."""
        s = self.SessionLocal()
        try:
            yield s
        except SQLAlchemyError as e:
            raise handle_storage_error(e, "query") from e
        finally:
            s.rollback()
            s.close()
