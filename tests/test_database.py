"""Tests for the pymssql session.

pymssql.connect is patched; no SQL Server is needed.
"""

from __future__ import annotations

from collections.abc import Iterator
from unittest import mock

import pymssql
import pytest

from provisioner.database import MssqlSession, quote_identifier
from provisioner.errors import ProbeUnavailable, ProvisioningError
from provisioner.models import ColumnSpec


@pytest.fixture
def connection() -> Iterator[mock.MagicMock]:
    with mock.patch("provisioner.database.pymssql.connect") as connect:
        yield connect.return_value


def _cursor(connection: mock.MagicMock) -> mock.MagicMock:
    return connection.cursor.return_value.__enter__.return_value


class TestQuoteIdentifier:
    """Tests for quote_identifier."""

    def test_valid(self) -> None:
        assert quote_identifier("Users") == "[Users]"

    @pytest.mark.parametrize("name", ["Users]; DROP TABLE x; --", "a b", "1st"])
    def test_rejected(self, name: str) -> None:
        with pytest.raises(ProvisioningError):
            quote_identifier(name)


class TestMssqlSession:
    """Tests for MssqlSession."""

    def test_connect_failure_is_unavailable(self) -> None:
        """Test that an unreachable server is reported as unavailable."""
        with mock.patch(
            "provisioner.database.pymssql.connect",
            side_effect=pymssql.OperationalError("Adaptive Server is unavailable"),
        ):
            with pytest.raises(ProbeUnavailable):
                MssqlSession("localhost", "sa", "x")

    def test_connects_to_master_by_default(self) -> None:
        with mock.patch("provisioner.database.pymssql.connect") as connect:
            MssqlSession("localhost", "sa", "x")

        assert connect.call_args.kwargs["database"] == "master"
        assert connect.call_args.kwargs["autocommit"] is True

    def test_closed_on_exit(self, connection: mock.MagicMock) -> None:
        with MssqlSession("localhost", "sa", "x", "WebShellsDB"):
            pass

        connection.close.assert_called_once()

    def test_database_exists(self, connection: mock.MagicMock) -> None:
        cursor = _cursor(connection)
        cursor.fetchone.return_value = (None,)
        session = MssqlSession("localhost", "sa", "x")

        assert session.database_exists("WebShellsDB") is False
        cursor.execute.assert_called_with("SELECT DB_ID(%s)", ("WebShellsDB",))

        cursor.fetchone.return_value = (5,)
        assert session.database_exists("WebShellsDB") is True

    def test_create_table_ddl(self, connection: mock.MagicMock) -> None:
        cursor = _cursor(connection)
        session = MssqlSession("localhost", "sa", "x", "WebShellsDB")

        session.create_table(
            "Users",
            [
                ColumnSpec(name="Id", sql_type="INT", primary_key=True),
                ColumnSpec(name="Email", sql_type="NVARCHAR(128)"),
            ],
        )

        cursor.execute.assert_called_with(
            "CREATE TABLE [dbo].[Users] ([Id] INT NOT NULL PRIMARY KEY, [Email] NVARCHAR(128) NULL)",
            (),
        )

    def test_insert_rows_single_statement(self, connection: mock.MagicMock) -> None:
        cursor = _cursor(connection)
        session = MssqlSession("localhost", "sa", "x", "WebShellsDB")

        inserted = session.insert_rows("Users", ["Id", "Username"], [(1, "admin"), (2, "guest")])

        assert inserted == 2
        assert cursor.execute.call_count == 1
        sql, params = cursor.execute.call_args.args
        assert sql == "INSERT INTO [dbo].[Users] ([Id], [Username]) VALUES (%s, %s), (%s, %s)"
        assert params == (1, "admin", 2, "guest")

    def test_statement_failure_wrapped(self, connection: mock.MagicMock) -> None:
        _cursor(connection).execute.side_effect = pymssql.ProgrammingError("There is already an object")
        session = MssqlSession("localhost", "sa", "x", "WebShellsDB")

        with pytest.raises(ProvisioningError):
            session.create_database("WebShellsDB")
