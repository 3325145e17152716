"""
Relational state: processing-state rows and the identifier map.

The processing-state table is the commit barrier: a (group, date key) pair
with a row in status 'downloaded' is never processed again. Rows are only
ever inserted, and only after the archive object has been verified.

All statements are SQLAlchemy Core constructs with bound parameters.
"""

import asyncio
import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    MetaData,
    String,
    Table,
    Text,
    column,
    create_engine,
    literal_column,
    select,
    table,
)
from sqlalchemy import exc as sa_exc
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from config.config import DatabaseSettings
from core.errors.exceptions import ConfigurationError, PermanentError, StateStoreError
from core.resilience.retry import DB_RETRY, with_retry
from logarchive.models import EntityRef, IdentifierCacheEntry

logger = logging.getLogger(__name__)

STATUS_DOWNLOADED = "downloaded"

_TRANSIENT_DB_ERRORS = (
    sa_exc.OperationalError,
    sa_exc.InterfaceError,
    sa_exc.DisconnectionError,
    sa_exc.TimeoutError,
)


def _translate_db_error(exc: Exception, operation: str) -> Exception:
    context = {"operation": operation}
    if isinstance(exc, _TRANSIENT_DB_ERRORS):
        return StateStoreError(f"State store {operation} failed", cause=exc, context=context)
    return PermanentError(f"State store {operation} failed", cause=exc, context=context)


def build_engine(settings: DatabaseSettings) -> Engine:
    """Create an engine with a bounded pool (default pooling for SQLite files)."""
    url = settings.url
    if url.startswith("sqlite"):
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url.rstrip("/") == "sqlite:":
            # One shared connection, or each worker thread sees its own empty database
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=settings.echo, **kwargs)

    return create_engine(
        url,
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
        pool_recycle=settings.pool_recycle_seconds,
        pool_pre_ping=settings.pool_pre_ping,
        echo=settings.echo,
    )


def _split_table(qualified: str) -> tuple[Optional[str], str]:
    if "." in qualified:
        schema, name = qualified.split(".", 1)
        return schema, name
    return None, qualified


class StateStore:
    """
    Processing state and identifier map access.

    Example:
        store = StateStore(config.database)
        done = store.processed_date_keys("main")
        if store.record_processed("main", "20240101", "s3://archive-main/20240101.txt"):
            ...
    """

    def __init__(self, settings: DatabaseSettings, engine: Optional[Engine] = None):
        self.settings = settings
        try:
            self.engine = engine or build_engine(settings)
        except sa_exc.SQLAlchemyError as e:
            raise _translate_db_error(e, "connect") from e
        self.metadata = MetaData()
        self.state_table = Table(
            settings.state_table,
            self.metadata,
            Column("group_name", String(64), primary_key=True),
            Column("day", String(8), primary_key=True),
            Column("status", String(32), nullable=False),
            Column("archive_path", String(1024)),
            Column("created_at", DateTime(timezone=True)),
        )
        self.identifier_table = Table(
            settings.identifier_table,
            self.metadata,
            Column("id", String(32), primary_key=True),
            Column("url", Text),
            Column("site", String(64)),
            Column("dbandtable", String(128), nullable=False),
            Column("identifier", String(128), nullable=False),
            Column("status", String(32)),
            Column("date_added", Date),
        )

    def create_tables(self) -> None:
        try:
            self.metadata.create_all(self.engine)
        except sa_exc.SQLAlchemyError as e:
            raise _translate_db_error(e, "create_tables") from e
        logger.info(
            "State tables ensured: %s, %s",
            self.settings.state_table,
            self.settings.identifier_table,
            extra={"database_url": self.settings.url},
        )

    def close(self) -> None:
        self.engine.dispose()

    # =========================================================================
    # Processing state
    # =========================================================================

    @with_retry(config=DB_RETRY)
    def processed_date_keys(self, group: str) -> Set[str]:
        """Date keys of group that already have a committed processing-state row."""
        t = self.state_table
        stmt = select(t.c.day).where(t.c.group_name == group, t.c.status == STATUS_DOWNLOADED)
        try:
            with self.engine.connect() as conn:
                return {str(row[0]) for row in conn.execute(stmt)}
        except sa_exc.SQLAlchemyError as e:
            raise _translate_db_error(e, "processed_date_keys") from e

    @with_retry(config=DB_RETRY)
    def record_processed(self, group: str, day: str, archive_path: str) -> bool:
        """
        Insert the commit barrier row for one group's partition.

        Returns:
            True if the row was written, False if it already existed
        """
        stmt = self.state_table.insert().values(
            group_name=group,
            day=day,
            status=STATUS_DOWNLOADED,
            archive_path=archive_path,
            created_at=datetime.now(timezone.utc),
        )
        try:
            with self.engine.begin() as conn:
                conn.execute(stmt)
        except sa_exc.IntegrityError:
            logger.warning(
                "Processing state already recorded for %s/%s",
                group,
                day,
                extra={"date_key": day, "archive_path": archive_path},
            )
            return False
        except sa_exc.SQLAlchemyError as e:
            raise _translate_db_error(e, "record_processed") from e
        return True

    # =========================================================================
    # Identifier map
    # =========================================================================

    @with_retry(config=DB_RETRY)
    def load_identifiers(self) -> Dict[str, IdentifierCacheEntry]:
        t = self.identifier_table
        stmt = select(t.c.id, t.c.dbandtable, t.c.identifier, t.c.url, t.c.site, t.c.status, t.c.date_added)
        entries: Dict[str, IdentifierCacheEntry] = {}
        try:
            with self.engine.connect() as conn:
                for row in conn.execute(stmt):
                    entries[str(row.id)] = IdentifierCacheEntry(
                        content_hash=str(row.id),
                        entity=EntityRef(table=str(row.dbandtable), entity_id=str(row.identifier)),
                        url=row.url or "",
                        site=row.site or "",
                        status=row.status or "",
                        date_added=row.date_added,
                    )
        except sa_exc.SQLAlchemyError as e:
            raise _translate_db_error(e, "load_identifiers") from e
        return entries

    def _upsert_statement(self, rows: List[Dict[str, Any]]):
        t = self.identifier_table
        update_columns = ["url", "site", "dbandtable", "identifier", "status", "date_added"]
        dialect = self.engine.dialect.name

        if dialect == "mysql":
            stmt = mysql.insert(t).values(rows)
            return stmt.on_duplicate_key_update({c: stmt.inserted[c] for c in update_columns})
        if dialect in ("sqlite", "postgresql"):
            insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
            stmt = insert(t).values(rows)
            return stmt.on_conflict_do_update(
                index_elements=[t.c.id],
                set_={c: stmt.excluded[c] for c in update_columns},
            )
        raise ConfigurationError(f"Identifier upsert not supported for dialect '{dialect}'")

    @with_retry(config=DB_RETRY)
    def upsert_identifiers(self, entries: Iterable[IdentifierCacheEntry]) -> int:
        rows = [
            {
                "id": e.content_hash,
                "url": e.url,
                "site": e.site,
                "dbandtable": e.entity.table,
                "identifier": e.entity.entity_id,
                "status": e.status,
                "date_added": e.date_added or date.today(),
            }
            for e in entries
        ]
        if not rows:
            return 0
        stmt = self._upsert_statement(rows)
        try:
            with self.engine.begin() as conn:
                conn.execute(stmt)
        except sa_exc.SQLAlchemyError as e:
            raise _translate_db_error(e, "upsert_identifiers") from e
        return len(rows)

    # =========================================================================
    # Entity lookups
    # =========================================================================

    @with_retry(config=DB_RETRY)
    def lookup_entity(self, qualified_table: str, key_column: str, value: str) -> Optional[Dict[str, Any]]:
        """First row of qualified_table where key_column = value, as a dict."""
        schema, name = _split_table(qualified_table)
        tbl = table(name, column(key_column), schema=schema)
        stmt = (
            select(literal_column("*"))
            .select_from(tbl)
            .where(tbl.c[key_column] == value)
            .limit(1)
        )
        try:
            with self.engine.connect() as conn:
                row = conn.execute(stmt).mappings().first()
        except sa_exc.SQLAlchemyError as e:
            raise _translate_db_error(e, "lookup_entity") from e
        return dict(row) if row is not None else None

    @with_retry(config=DB_RETRY)
    def lookup_alias(self, qualified_table: str, from_column: str, to_column: str, value: str) -> Optional[str]:
        """Translate a merged/renamed key through an alias table."""
        schema, name = _split_table(qualified_table)
        tbl = table(name, column(from_column), column(to_column), schema=schema)
        stmt = select(tbl.c[to_column]).where(tbl.c[from_column] == value).limit(1)
        try:
            with self.engine.connect() as conn:
                result = conn.execute(stmt).scalar()
        except sa_exc.SQLAlchemyError as e:
            raise _translate_db_error(e, "lookup_alias") from e
        return str(result) if result is not None else None

    # =========================================================================
    # Async wrappers
    # =========================================================================

    async def async_processed_date_keys(self, group: str) -> Set[str]:
        return await asyncio.to_thread(self.processed_date_keys, group)

    async def async_record_processed(self, group: str, day: str, archive_path: str) -> bool:
        return await asyncio.to_thread(self.record_processed, group, day, archive_path)

    async def async_load_identifiers(self) -> Dict[str, IdentifierCacheEntry]:
        return await asyncio.to_thread(self.load_identifiers)

    async def async_upsert_identifiers(self, entries: List[IdentifierCacheEntry]) -> int:
        return await asyncio.to_thread(self.upsert_identifiers, entries)

    async def async_lookup_entity(self, qualified_table: str, key_column: str, value: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self.lookup_entity, qualified_table, key_column, value)

    async def async_lookup_alias(
        self, qualified_table: str, from_column: str, to_column: str, value: str
    ) -> Optional[str]:
        return await asyncio.to_thread(self.lookup_alias, qualified_table, from_column, to_column, value)
