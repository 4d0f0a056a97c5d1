"""SQLite store handle: engine, schema version guard, migrations, sessions."""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Callable, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from pageledger.config import META_FILENAME, STORE_FILENAME, read_json_file, write_json_file
from pageledger.db.location import migrate_storage_location, store_files
from pageledger.errors import InitializationError, SchemaVersionMismatch, StoreNotInitialized
from pageledger.identity import content_key_for_path
from pageledger.timeutil import Clock, utcnow

Base = declarative_base()

log = logging.getLogger(__name__)

# Bump together with a new entry at the end of pageledger.db.migrations.MIGRATIONS.
CURRENT_SCHEMA_VERSION = 5

_VERSION_KEY = "schema_version"


class SchemaStore:
    """
    The single on-disk store shared by history, catalog and session groups.

    Created once at startup and passed to every component. The schema version
    lives in a JSON side file so it can be checked before SQLite is opened:
    a store written by a newer build raises SchemaVersionMismatch and is
    never opened. Other open failures leave the store uninitialized
    (is_initialized False) until reset() succeeds.
    """

    def __init__(
        self,
        data_dir: Union[str, Path],
        legacy_dir: Optional[Union[str, Path]] = None,
        current_version: int = CURRENT_SCHEMA_VERSION,
        content_key_resolver: Optional[Callable[[str], Optional[str]]] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.legacy_dir = Path(legacy_dir) if legacy_dir else None
        self.current_version = current_version
        # Used by the corrupted-key repair: live file path -> content key (None if unreadable)
        self.content_key_resolver = content_key_resolver or content_key_for_path
        self.clock = clock
        self.initialization_error: Optional[BaseException] = None
        self.failed_migrations: List[int] = []
        self._engine: Optional[AsyncEngine] = None
        self._sessionmaker: Optional[async_sessionmaker] = None
        self._write_lock = asyncio.Lock()

    @property
    def db_path(self) -> Path:
        return self.data_dir / STORE_FILENAME

    @property
    def meta_path(self) -> Path:
        return self.data_dir / META_FILENAME

    @property
    def is_initialized(self) -> bool:
        """True once open() succeeded and until close()."""
        return self._engine is not None and self.initialization_error is None

    @property
    def engine(self) -> Optional[AsyncEngine]:
        return self._engine

    # Version side channel

    def read_stored_version(self) -> Optional[int]:
        """Schema version recorded on disk, or None if never recorded."""
        data = read_json_file(self.meta_path)
        if data is None:
            return None
        value = data.get(_VERSION_KEY)
        if isinstance(value, bool) or not isinstance(value, int):
            log.warning("Ignoring invalid schema version %r in %s", value, self.meta_path)
            return None
        return value

    def write_stored_version(self, version: int) -> None:
        """Persist the schema version."""
        data = read_json_file(self.meta_path) or {}
        data[_VERSION_KEY] = version
        write_json_file(self.meta_path, data)

    def clear_stored_version(self) -> None:
        """Remove the recorded schema version."""
        self.meta_path.unlink(missing_ok=True)

    # Lifecycle

    async def open(self) -> None:
        """
        Move a legacy store into place, check the version, create tables and migrate.

        Raises SchemaVersionMismatch if the store is newer than this build. Any other
        failure is logged and recorded in initialization_error.
        """
        if self._engine is not None:
            return
        self.initialization_error = None
        self.failed_migrations = []
        try:
            migrate_storage_location(self.legacy_dir, self.data_dir)
        except OSError as e:
            log.warning("Could not move store from legacy location %s: %s", self.legacy_dir, e)

        stored = self.read_stored_version()
        if stored is not None and stored > self.current_version:
            err = SchemaVersionMismatch(stored, self.current_version)
            self.initialization_error = err
            log.error("Refusing to open store: %s", err)
            raise err

        db_existed = self.db_path.exists()
        engine: Optional[AsyncEngine] = None
        try:
            from pageledger.db import migrations

            self.data_dir.mkdir(parents=True, exist_ok=True)
            engine = create_async_engine(f"sqlite+aiosqlite:///{self.db_path}", echo=False)
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            if stored is None:
                # Database without version file predates versioning
                start = 0 if db_existed else self.current_version
            else:
                start = stored
            version, failed = await migrations.apply_migrations(engine, start, self.current_version, self)
            self.failed_migrations = failed
            self.write_stored_version(version)
        except (SQLAlchemyError, OSError) as e:
            log.exception("Failed to open store at %s", self.db_path)
            self.initialization_error = InitializationError(str(e))
            if engine is not None:
                await engine.dispose()
            return

        self._engine = engine
        self._sessionmaker = async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
        )
        log.info(
            "Store opened at %s (schema version %d%s)",
            self.db_path, version, ", migrations failed: %s" % failed if failed else "",
        )

    async def close(self) -> None:
        """Dispose the engine. Idempotent."""
        engine = self._engine
        self._engine = None
        self._sessionmaker = None
        if engine is not None:
            await engine.dispose()
            log.debug("Store closed")

    async def reset(self) -> bool:
        """
        Delete the store files and the version record, then open an empty store.
        Returns True if the new store is usable.
        """
        log.warning("Resetting store at %s", self.data_dir)
        async with self._write_lock:
            await self.close()
            try:
                for path in store_files(self.data_dir):
                    path.unlink(missing_ok=True)
            except OSError as e:
                log.error("Could not delete store files: %s", e)
                self.initialization_error = InitializationError(str(e))
                return False
            self.initialization_error = None
        await self.open()
        return self.is_initialized

    # Sessions

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[AsyncSession, None]:
        """Yield a session under the single-writer lock; commit on success, roll back on error."""
        if self._sessionmaker is None:
            raise StoreNotInitialized("Store is not open")
        async with self._write_lock:
            async with self._sessionmaker() as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Yield a read session (no commit)."""
        if self._sessionmaker is None:
            raise StoreNotInitialized("Store is not open")
        async with self._sessionmaker() as session:
            yield session
