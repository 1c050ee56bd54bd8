"""Database Domain - read-only access to a SQLite database.

Connections are opened read-only for each call and always closed.
Caller-supplied SQL must pass the StatementPolicy first.
"""

import re
import sqlite3
from pathlib import Path
from typing import Any, Optional

from pydantic import Field

from shared.config import DatabaseSettings
from shared.logging import get_logger
from shared.models import ToolArguments, ToolCategory, ToolDescriptor, ToolResult
from domains.base import BaseAdapter
from mcp_server.policy import StatementPolicy
from mcp_server.registry import ToolRegistry

logger = get_logger(__name__)

TABLE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_LIMIT_RE = re.compile(r"\blimit\b", re.IGNORECASE)

NOT_AVAILABLE = "Database not configured or not available"


class QueryArguments(ToolArguments):
    query: str = Field(..., description="SQL SELECT query to execute")
    limit: Optional[int] = Field(
        default=None,
        ge=1,
        description="Maximum rows to return (default: 100, max: 1000)"
    )


class TableArguments(ToolArguments):
    table: str = Field(..., description="Name of the table to inspect")


def apply_row_limit(statement: str, limit: int) -> str:
    """Append ``LIMIT n`` unless the statement already limits itself."""
    if _LIMIT_RE.search(statement):
        return statement
    return f"{statement.rstrip().rstrip(';').rstrip()} LIMIT {limit}"


class DatabaseAdapter(BaseAdapter):
    """
    Database domain adapter.

    Provides tools for:
    - Listing tables and views with their columns
    - Running read-only SELECT queries
    - Inspecting a table's schema
    """

    category = ToolCategory.DATABASE

    def __init__(self, settings: DatabaseSettings, policy: StatementPolicy) -> None:
        self.settings = settings
        self.policy = policy

    def descriptors(self) -> list[ToolDescriptor]:
        return [
            self._tool(
                "list_tables",
                "List all tables in the configured SQLite database",
                self.list_tables,
            ),
            self._tool(
                "query_sqlite",
                "Execute a read-only SQL query on the configured SQLite database. Only SELECT queries are allowed.",
                self.query_sqlite,
                QueryArguments,
            ),
            self._tool(
                "get_table_schema",
                "Get detailed schema information for a specific table",
                self.get_table_schema,
                TableArguments,
            ),
        ]

    def _connect(self) -> Optional[sqlite3.Connection]:
        """Open the database read-only, or None when it is not available."""
        if not self.settings.path:
            return None

        path = Path(self.settings.path).expanduser().resolve()
        if not path.is_file():
            logger.warning("Database file not found", path=str(path))
            return None

        try:
            conn = sqlite3.connect(f"{path.as_uri()}?mode=ro", uri=True)
        except sqlite3.Error as e:
            logger.warning("Database could not be opened", path=str(path), error=str(e))
            return None
        conn.row_factory = sqlite3.Row
        return conn

    @staticmethod
    def _columns(conn: sqlite3.Connection, table: str) -> list[sqlite3.Row]:
        return conn.execute(f'PRAGMA table_info("{table}")').fetchall()

    def list_tables(self, args: Any) -> ToolResult:
        conn = self._connect()
        if conn is None:
            return self._error("list_tables", NOT_AVAILABLE, code="NOT_CONFIGURED")

        try:
            tables = conn.execute(
                """
                SELECT name, type
                FROM sqlite_master
                WHERE type IN ('table', 'view')
                AND name NOT LIKE 'sqlite_%'
                ORDER BY type, name
                """
            ).fetchall()

            result = [
                {
                    "name": t["name"],
                    "type": t["type"],
                    "columns": [
                        {
                            "name": c["name"],
                            "type": c["type"],
                            "nullable": not c["notnull"],
                            "primaryKey": bool(c["pk"]),
                        }
                        for c in self._columns(conn, t["name"].replace('"', '""'))
                    ],
                }
                for t in tables
            ]
        except sqlite3.Error as e:
            return self._error("list_tables", f"Failed to list tables: {e}", code="DATABASE_ERROR")
        finally:
            conn.close()

        return self._json("list_tables", result)

    def query_sqlite(self, args: QueryArguments) -> ToolResult:
        decision = self.policy.evaluate(args.query)
        if not decision:
            return self._denied(
                "query_sqlite",
                decision,
                hint="Use list_tables to see available tables."
            )

        conn = self._connect()
        if conn is None:
            return self._error("query_sqlite", NOT_AVAILABLE, code="NOT_CONFIGURED")

        limit = min(args.limit or self.settings.default_limit, self.settings.max_limit)
        statement = apply_row_limit(decision.target, limit)

        try:
            # Row cap also applies past a caller LIMIT or a trailing comment
            rows = [dict(row) for row in conn.execute(statement).fetchmany(limit)]
        except sqlite3.Error as e:
            return self._error("query_sqlite", f"Query failed: {e}", code="DATABASE_ERROR")
        finally:
            conn.close()

        logger.debug("Query executed", row_count=len(rows))
        return self._json("query_sqlite", {"rowCount": len(rows), "rows": rows})

    def get_table_schema(self, args: TableArguments) -> ToolResult:
        table = args.table
        if not TABLE_NAME_RE.match(table):
            return self._error("get_table_schema", "Invalid table name", code="INVALID_TABLE")

        conn = self._connect()
        if conn is None:
            return self._error("get_table_schema", NOT_AVAILABLE, code="NOT_CONFIGURED")

        try:
            columns = self._columns(conn, table)
            if not columns:
                return self._not_found("get_table_schema", f"Table not found: {table}")

            indexes = conn.execute(f'PRAGMA index_list("{table}")').fetchall()
            foreign_keys = conn.execute(f'PRAGMA foreign_key_list("{table}")').fetchall()
            row_count = conn.execute(f'SELECT COUNT(*) AS count FROM "{table}"').fetchone()["count"]
        except sqlite3.Error as e:
            return self._error("get_table_schema", f"Failed to get schema: {e}", code="DATABASE_ERROR")
        finally:
            conn.close()

        return self._json("get_table_schema", {
            "table": table,
            "rowCount": row_count,
            "columns": [
                {
                    "name": c["name"],
                    "type": c["type"],
                    "nullable": not c["notnull"],
                    "defaultValue": c["dflt_value"],
                    "primaryKey": bool(c["pk"]),
                }
                for c in columns
            ],
            "indexes": [
                {"name": i["name"], "unique": bool(i["unique"])}
                for i in indexes
            ],
            "foreignKeys": [
                {
                    "column": fk["from"],
                    "referencesTable": fk["table"],
                    "referencesColumn": fk["to"],
                }
                for fk in foreign_keys
            ],
        })


def register_database_domain(
    registry: ToolRegistry,
    settings: DatabaseSettings,
    policy: StatementPolicy
) -> DatabaseAdapter:
    """Register the database domain with the gateway."""
    adapter = DatabaseAdapter(settings, policy)
    adapter.register(registry)
    return adapter
