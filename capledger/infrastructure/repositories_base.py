# capledger/infrastructure/repositories_base.py
from __future__ import annotations

import builtins
from collections.abc import Iterable
from typing import Any, Generic, NoReturn, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .exceptions import NotFoundError, handle_storage_error
from .logging import get_logger

T = TypeVar("T")  # ORM model type


class BaseRepository(Generic[T]):
    """
    Lightweight generic repository with common CRUD + query helpers.
    - Every write flushes so callers see generated ids inside the transaction.
    - Entity repos add logging decorators and domain-specific queries.
    """

    model: type[T]  # must be set by subclasses
    not_found: type[NotFoundError] = NotFoundError

    def __init__(self, session: Session):
        if not hasattr(self, "model") or self.model is None:
            raise ValueError(f"{self.__class__.__name__}.model must be set to an ORM class.")
        self.s = session
        self._logger = get_logger(self.__class__.__module__)

    def _handle_error(self, exc: Exception, operation: str) -> NoReturn:
        """Log the driver failure and raise it as a StorageError."""
        self._logger.error(f"Database error in {operation}: {str(exc)}", exc_info=True)
        raise handle_storage_error(exc, operation) from exc

    # ---------- Read ----------
    def get(self, id_: Any) -> T | None:
        try:
            return self.s.get(self.model, id_)
        except SQLAlchemyError as e:
            self._handle_error(e, f"{self.model.__name__}.get")

    def get_required(self, id_: Any) -> T:
        obj = self.get(id_)
        if obj is None:
            raise self.not_found(id_)
        return obj

    def list(
        self,
        *filters: Any,
        order_by: Iterable[Any] | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> builtins.list[T]:
        q = self.s.query(self.model)
        for f in filters:
            q = q.filter(f)
        if order_by:
            for ob in order_by:
                q = q.order_by(ob)
        if offset:
            q = q.offset(offset)
        if limit:
            q = q.limit(limit)
        try:
            return list(q.all())
        except SQLAlchemyError as e:
            self._handle_error(e, f"{self.model.__name__}.list")

    def exists(self, *filters: Any) -> bool:
        q = self.s.query(self.model)
        for f in filters:
            q = q.filter(f)
        return bool(self.s.query(q.exists()).scalar())

    def count(self, *filters: Any) -> int:
        q = self.s.query(self.model)
        for f in filters:
            q = q.filter(f)
        return int(q.count())

    # ---------- Write ----------
    def create(self, **fields: Any) -> T:
        obj = self.model(**fields)
        self.s.add(obj)
        try:
            self.s.flush()  # get PKs without committing
        except SQLAlchemyError as e:
            self._handle_error(e, f"{self.model.__name__}.create")
        return obj

    def update(self, obj: T, **fields: Any) -> T:
        for k, v in fields.items():
            setattr(obj, k, v)
        try:
            self.s.flush()
        except SQLAlchemyError as e:
            self._handle_error(e, f"{self.model.__name__}.update")
        return obj

    def delete(self, obj: T) -> None:
        self.s.delete(obj)
        try:
            self.s.flush()
        except SQLAlchemyError as e:
            self._handle_error(e, f"{self.model.__name__}.delete")
