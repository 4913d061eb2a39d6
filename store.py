from __future__ import annotations
from enum import Enum
from sqlalchemy import create_engine, text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.sql.elements import ClauseElement

import os
import logging
logger = logging.getLogger(__name__)



# sqlite3 result codes, surfaced through StoreError.code
SQLITE_ERROR = 1
SQLITE_MISMATCH = 20
SQLITE_MISUSE = 21
SQLITE_RANGE = 25

INT32_MIN, INT32_MAX = -2**31, 2**31 - 1
INT64_MIN, INT64_MAX = -2**63, 2**63 - 1


class StoreError(Exception):
    """
    Engine level failure carrying sqlite's numeric result code and message.
    """

    def __init__(self, code: int, message: str):
        super().__init__(f'[{code}] {message}')
        self.code = code
        self.message = message


class StepResult(Enum):
    ROW = 100
    DONE = 101


def translate_error(exc: Exception) -> StoreError:
    if isinstance(exc, StoreError):
        return exc

    if isinstance(exc, DBAPIError):
        orig = exc.orig
        code = getattr(orig, 'sqlite_errorcode', SQLITE_ERROR)
        return StoreError(code, str(orig))

    if isinstance(exc, SQLAlchemyError):
        return StoreError(SQLITE_MISUSE, str(exc))

    return StoreError(SQLITE_ERROR, str(exc))


def as_text(value):
    if value is None:
        return None
    if isinstance(value, bool):
        return '1' if value else '0'
    return str(value)


class Statement:
    """
    A prepared statement with named parameters (`:name`).

    Bound values and the open cursor belong to the statement and are released by finalize(),
    which may be called any number of times but only releases once.
    """

    def __init__(self, store: Store, sql: str):
        self._store = store
        self.sql = sql
        self._clause = text(sql)
        compiled = self._clause.compile(dialect=store.engine.dialect)
        self._names = set(compiled.binds)
        self._params = {name: None for name in self._names} # unbound parameters are NULL, like sqlite
        self._result = None
        self._row = None
        self.finalized = False


    def __enter__(self):
        return self


    def __exit__(self, exc_type, exc, tb):
        self.finalize()
        return False


    def _check_open(self):
        if self.finalized:
            raise StoreError(SQLITE_MISUSE, f'statement already finalized: {self.sql}')


    def _set(self, name: str, value):
        self._check_open()
        if self._result is not None:
            raise StoreError(SQLITE_MISUSE, f'cannot bind "{name}" after the statement has been stepped')
        if name not in self._names:
            raise StoreError(SQLITE_RANGE, f'unknown parameter "{name}" for: {self.sql}')
        self._params[name] = value


    def bind_text(self, name: str, value):
        self._set(name, None if value is None else str(value))


    def bind_int(self, name: str, value):
        if value is None:
            return self._set(name, None)
        value = int(value)
        if not INT32_MIN <= value <= INT32_MAX:
            raise StoreError(SQLITE_RANGE, f'value {value} for "{name}" does not fit in 32 bits')
        self._set(name, value)


    def bind_int64(self, name: str, value):
        if value is None:
            return self._set(name, None)
        value = int(value)
        if not INT64_MIN <= value <= INT64_MAX:
            raise StoreError(SQLITE_RANGE, f'value {value} for "{name}" does not fit in 64 bits')
        self._set(name, value)


    def bind_double(self, name: str, value):
        if value is None:
            return self._set(name, None)
        try:
            self._set(name, float(value))
        except (TypeError, ValueError) as e:
            raise StoreError(SQLITE_MISMATCH, f'value {value!r} for "{name}" is not a number') from e


    def bind_bool(self, name: str, value):
        self._set(name, None if value is None else int(bool(value)))


    def bind(self, name: str, value):
        """Bind by python type."""
        if isinstance(value, bool):
            self.bind_bool(name, value)
        elif isinstance(value, int):
            self.bind_int64(name, value)
        elif isinstance(value, float):
            self.bind_double(name, value)
        else:
            self.bind_text(name, value)


    def step(self) -> StepResult:
        self._check_open()
        try:
            if self._result is None:
                self._result = self._store.connection.execute(self._clause, self._params)

            if not self._result.returns_rows:
                self._row = None
                return StepResult.DONE

            self._row = self._result.fetchone()
        except SQLAlchemyError as e:
            raise translate_error(e) from e

        return StepResult.ROW if self._row is not None else StepResult.DONE


    def step_and_get_row(self) -> tuple[StepResult, list]:
        """
        Step once and return the current row with every column rendered as text.

        NULL stays None; the caller parses each value to its semantic type.
        """
        status = self.step()
        if status is StepResult.DONE:
            return status, []
        return status, [as_text(value) for value in self._row]


    def finalize(self):
        if self.finalized:
            return

        self.finalized = True
        try:
            if self._result is not None:
                self._result.close()
        finally:
            self._result = None
            self._row = None
            self._params.clear()
            self._store._forget(self)



class Store:
    """
    Single SQLite connection in autocommit mode.

    Every statement commits on its own unless execute('BEGIN') opened an explicit transaction.
    Not reentrant: one logical caller at a time.
    """

    def __init__(self, path: str):
        self.path = path
        self.engine = None
        self.connection = None
        self._statements = set()


    def __enter__(self):
        if self.connection is None:
            self.open()
        return self


    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


    def open(self):
        if self.path != ':memory:':
            folder = os.path.dirname(os.path.abspath(self.path))
            os.makedirs(folder, exist_ok=True)

        try:
            self.engine = create_engine(
                f'sqlite:///{self.path}',
                connect_args={"check_same_thread": False},
                future=True
            )
            self.connection = self.engine.connect().execution_options(isolation_level='AUTOCOMMIT')
            self.connection.exec_driver_sql('PRAGMA foreign_keys=ON')
        except SQLAlchemyError as e:
            logger.critical(f'failed to open database "{self.path}"', exc_info=True)
            raise translate_error(e) from e

        logger.debug(f'database opened: "{self.path}"')
        return self


    def _require_connection(self):
        if self.connection is None:
            raise StoreError(SQLITE_MISUSE, 'store is not open')


    def execute(self, sql):
        """
        Run a statement that returns no rows: DDL, BEGIN/COMMIT/ROLLBACK, pragmas.
        """
        self._require_connection()
        try:
            if isinstance(sql, ClauseElement):
                self.connection.execute(sql)
            else:
                self.connection.exec_driver_sql(sql)
        except SQLAlchemyError as e:
            raise translate_error(e) from e


    def prepare(self, sql: str) -> Statement:
        self._require_connection()
        try:
            statement = Statement(self, sql)
        except SQLAlchemyError as e:
            raise translate_error(e) from e

        self._statements.add(statement)
        return statement


    def _forget(self, statement: Statement):
        self._statements.discard(statement)


    def last_insert_id(self) -> int:
        self._require_connection()
        try:
            return int(self.connection.exec_driver_sql('SELECT last_insert_rowid()').scalar())
        except SQLAlchemyError as e:
            raise translate_error(e) from e


    @property
    def open_statements(self) -> int:
        return len(self._statements)


    def close(self):
        for statement in list(self._statements):
            statement.finalize()

        if self.connection is not None:
            self.connection.close()
            self.connection = None
        if self.engine is not None:
            self.engine.dispose()
            self.engine = None
        logger.debug(f'database closed: "{self.path}"')
