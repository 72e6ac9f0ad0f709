"""
Error taxonomy for the store.

Validation problems raise ``ValueError`` from the record constructors and the
query surface; everything else derives from :class:`StoreError`.
"""


class StoreError(Exception):
    """Base exception for store operations."""
    pass


# Transient -----------------------------------------------------------------

class StoreBusyError(StoreError):
    """Raised when a mutation still hits lock contention after all retries."""
    pass


class LockTimeoutError(StoreError):
    """Raised by the lock-wait helper when the store stays locked past the timeout."""
    pass


class PoolTimeoutError(StoreError):
    """Raised when no pooled handle becomes available within the timeout."""
    pass


# Pool ----------------------------------------------------------------------

class PoolClosedError(StoreError):
    """Raised when acquiring from a pool that has been closed."""
    pass


class MaintenanceInProgressError(StoreError):
    """Raised when an exclusive operation is requested while another runs."""
    pass


# Transactional / maintenance -----------------------------------------------

class DataImportError(StoreError):
    """Raised when a bulk import fails; the store is left as before the call."""
    pass


class BackupError(StoreError):
    pass


class RestoreError(StoreError):
    pass


class RecoveryError(StoreError):
    """Raised when the store is still not healthy after a recovery attempt."""
    pass


class SchemaError(StoreError):
    pass


class MigrationError(StoreError):
    """Raised when a migration fails; that migration is rolled back."""
    pass


# Repository mapping --------------------------------------------------------

class DuplicateKeyError(StoreError):
    """Raised when inserting a row whose primary key already exists."""
    pass


class ForeignKeyError(StoreError):
    """Raised when a row references a parent that does not exist."""
    pass
