from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from loguru import logger
from psycopg import Connection
from psycopg_pool import ConnectionPool


SCHEMA_PATH = Path(__file__).with_name("schema.sql")


class Database:
    """
    owns the Postgres connection pool.

    build one at process start, hand it to every component that touches
    storage, and close it at shutdown. there is no module-level connection.
    """

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 10, open: bool = True):
        self.dsn = dsn
        self.pool = ConnectionPool(
            dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"autocommit": False},
            open=open,
        )

    @classmethod
    def from_settings(cls, settings) -> "Database":
        return cls(
            settings.database_url,
            min_size=settings.pool_min_size,
            max_size=settings.pool_max_size,
        )

    @contextmanager
    def get_conn(self) -> Iterator[Connection]:
        """
        borrow a connection from the pool.
        autocommit is disabled so we can manage transactions explicitly.
        """
        with self.pool.connection() as conn:
            yield conn

    def apply_schema(self) -> None:
        """create tables and indexes if they don't exist yet."""
        ddl = SCHEMA_PATH.read_text(encoding="utf-8")
        with self.get_conn() as conn:
            try:
                conn.execute(ddl)
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        logger.info("Ledger schema applied")

    def close(self) -> None:
        self.pool.close()
