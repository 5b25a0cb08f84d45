"""Storage interface for the user table and its SQLAlchemy adapter."""

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine, Result
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .errors import IntegrityViolation, StorageError


logger = logging.getLogger(__name__)

Params = Optional[Mapping[str, Any]]


class Storage(ABC):
    """Operations the user components need from a relational store.

    SQL statements use named parameters (``:id``). Transactions are
    optional; callers check ``supports_transactions`` or go through
    :meth:`transaction`, which degrades to a plain block without them.
    """

    supports_transactions: bool = False

    @abstractmethod
    def fetch_one(self, sql: str, params: Params = None) -> Optional[Dict[str, Any]]:
        """Run a query and return its first row, or ``None``."""

    @abstractmethod
    def fetch_all(self, sql: str, params: Params = None) -> List[Dict[str, Any]]:
        """Run a query and return every row."""

    @abstractmethod
    def execute(self, sql: str, params: Params = None) -> int:
        """Run a write statement and return the affected row count."""

    def begin(self) -> None:
        raise StorageError("storage does not support transactions")

    def commit(self) -> None:
        raise StorageError("storage does not support transactions")

    def rollback(self) -> None:
        raise StorageError("storage does not support transactions")

    @contextmanager
    def transaction(self) -> Iterator["Storage"]:
        """Group statements into one unit, rolling back if the block raises."""
        if not self.supports_transactions:
            yield self
            return
        self.begin()
        try:
            yield self
        except BaseException:
            self.rollback()
            raise
        self.commit()

    def close(self) -> None:
        pass


class SQLAlchemyStorage(Storage):
    """Storage backed by a single connection checked out from an engine.

    Statements issued outside :meth:`begin`/:meth:`commit` are committed
    one by one. Pass ``transactional=False`` to treat the backend as one
    without transactions.
    """

    def __init__(self, engine: Engine, transactional: Optional[bool] = None):
        self.engine = engine
        self.supports_transactions = True if transactional is None else transactional
        try:
            self._conn = engine.connect()
        except SQLAlchemyError as exc:
            logger.error("could not connect to %s", engine.url)
            raise StorageError(f"Could not connect to database: {exc}") from exc
        self._tx = None

    def _run(self, sql: str, params: Params, consume: Callable[[Result], Any]) -> Any:
        try:
            result = self._conn.execute(text(sql), dict(params or {}))
            value = consume(result)
        except IntegrityError as exc:
            self._abort_implicit()
            logger.info("constraint violation: %s", exc.orig)
            raise IntegrityViolation(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            self._abort_implicit()
            logger.error("query failed: %s", sql.split()[0] if sql else sql)
            raise StorageError(f"Query failed: {exc}") from exc
        if self._tx is None:
            self._conn.commit()
        return value

    def _abort_implicit(self) -> None:
        # Inside an explicit transaction the caller decides what to roll back
        if self._tx is None:
            self._conn.rollback()

    def fetch_one(self, sql: str, params: Params = None) -> Optional[Dict[str, Any]]:
        row = self._run(sql, params, lambda result: result.mappings().first())
        return dict(row) if row is not None else None

    def fetch_all(self, sql: str, params: Params = None) -> List[Dict[str, Any]]:
        rows = self._run(sql, params, lambda result: result.mappings().all())
        return [dict(row) for row in rows]

    def execute(self, sql: str, params: Params = None) -> int:
        return self._run(sql, params, lambda result: result.rowcount)

    def begin(self) -> None:
        if not self.supports_transactions:
            raise StorageError("storage configured without transactions")
        if self._tx is not None:
            raise StorageError("transaction already in progress")
        try:
            if self._conn.in_transaction():
                self._conn.commit()
            self._tx = self._conn.begin()
        except SQLAlchemyError as exc:
            raise StorageError(f"Could not begin transaction: {exc}") from exc

    def commit(self) -> None:
        if self._tx is None:
            raise StorageError("no transaction in progress")
        tx, self._tx = self._tx, None
        try:
            tx.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"Could not commit transaction: {exc}") from exc

    def rollback(self) -> None:
        if self._tx is None:
            return
        tx, self._tx = self._tx, None
        try:
            tx.rollback()
        except SQLAlchemyError as exc:
            raise StorageError(f"Could not roll back transaction: {exc}") from exc

    def close(self) -> None:
        if self._tx is not None:
            self.rollback()
        self._conn.close()
