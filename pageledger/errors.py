"""Error types raised by the store. Lookup misses are not errors (None / empty)."""


class PageLedgerError(Exception):
    """Base class for store errors."""


class InitializationError(PageLedgerError):
    """The store could not be opened (disk, permission, corrupt file)."""


class SchemaVersionMismatch(InitializationError):
    """
    The store on disk was written by a newer build.

    Raised by SchemaStore.open() before the database file is touched; the store
    stays unopened until the user upgrades or resets it.
    """

    def __init__(self, stored_version: int, current_version: int) -> None:
        self.stored_version = stored_version
        self.current_version = current_version
        super().__init__(
            f"Store schema version {stored_version} is newer than supported version {current_version}"
        )


class StoreNotInitialized(PageLedgerError):
    """A write was attempted while the store is not open."""


class ImportDecodeError(PageLedgerError):
    """An export document could not be decoded or is not supported."""
