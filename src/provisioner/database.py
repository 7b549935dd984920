"""SQL Server sessions over TDS (pymssql).

One MssqlSession wraps one connection and is used for exactly one logical
unit of work. Identifiers are validated against VALID_IDENTIFIER_PATTERN
before they are bracket-quoted into DDL; values always go through
parameters.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence

import pymssql

from .context import DatabaseSession
from .errors import ProbeUnavailable, ProvisioningError
from .models import VALID_IDENTIFIER_PATTERN, ColumnSpec, SeedValue

logger = logging.getLogger(__name__)

LOGIN_TIMEOUT_SECONDS = 15
QUERY_TIMEOUT_SECONDS = 60


def quote_identifier(name: str) -> str:
    """Bracket-quote a validated SQL Server identifier."""
    if not re.match(VALID_IDENTIFIER_PATTERN, name):
        raise ProvisioningError(f"Invalid SQL identifier: {name!r}")
    return f"[{name}]"


class MssqlSession(DatabaseSession):
    """A single autocommit connection to a SQL Server instance."""

    def __init__(
        self,
        server: str,
        user: str,
        password: str,
        database: str | None = None,
    ) -> None:
        self._database = database or "master"
        try:
            self._conn = pymssql.connect(
                server=server,
                user=user,
                password=password,
                database=self._database,
                login_timeout=LOGIN_TIMEOUT_SECONDS,
                timeout=QUERY_TIMEOUT_SECONDS,
                autocommit=True,
            )
        except pymssql.OperationalError as e:
            raise ProbeUnavailable(f"Cannot connect to SQL Server {server}/{self._database}: {e}") from e
        logger.debug("Opened database connection", extra={"server": server, "database": self._database})

    def close(self) -> None:
        self._conn.close()
        logger.debug("Closed database connection", extra={"database": self._database})

    def _scalar(self, sql: str, params: tuple[object, ...] = ()) -> object:
        try:
            with self._conn.cursor() as cursor:
                cursor.execute(sql, params)
                row = cursor.fetchone()
        except pymssql.Error as e:
            raise ProvisioningError(f"Query failed on {self._database}: {e}") from e
        return None if row is None else row[0]

    def _execute(self, sql: str, params: tuple[object, ...] = ()) -> int:
        try:
            with self._conn.cursor() as cursor:
                cursor.execute(sql, params)
                return cursor.rowcount
        except pymssql.Error as e:
            raise ProvisioningError(f"Statement failed on {self._database}: {e}") from e

    def database_exists(self, name: str) -> bool:
        return self._scalar("SELECT DB_ID(%s)", (name,)) is not None

    def create_database(self, name: str) -> None:
        self._execute(f"CREATE DATABASE {quote_identifier(name)}")

    def table_exists(self, table: str) -> bool:
        return self._scalar("SELECT OBJECT_ID(%s, 'U')", (f"dbo.{table}",)) is not None

    def table_has_rows(self, table: str) -> bool:
        return self._scalar(f"SELECT TOP 1 1 FROM [dbo].{quote_identifier(table)}") is not None

    def create_table(self, table: str, columns: Sequence[ColumnSpec]) -> None:
        definition = ", ".join(column.to_ddl() for column in columns)
        self._execute(f"CREATE TABLE [dbo].{quote_identifier(table)} ({definition})")

    def insert_rows(
        self,
        table: str,
        columns: Sequence[str],
        rows: Sequence[Sequence[SeedValue]],
    ) -> int:
        if not rows:
            return 0
        column_list = ", ".join(quote_identifier(column) for column in columns)
        placeholders = "(" + ", ".join(["%s"] * len(columns)) + ")"
        values = ", ".join([placeholders] * len(rows))
        params = tuple(value for row in rows for value in row)
        # A single multi-row INSERT is atomic even in autocommit mode
        self._execute(
            f"INSERT INTO [dbo].{quote_identifier(table)} ({column_list}) VALUES {values}",
            params,
        )
        return len(rows)
