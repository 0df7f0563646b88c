"""
Sync error taxonomy.

Every remote-facing failure is raised as one of these and caught at the
SyncCoordinator boundary, where it becomes SyncState.status = error.
"""


class SyncError(Exception):
    """Base class for persistence and sync failures."""
    pass


class LocalPersistenceError(SyncError):
    """Local store could not be written (disk full, locked, unsupported)."""
    pass


class CredentialInvalid(SyncError):
    """Remote credential rejected. Terminal for the tier until the user fixes it."""
    pass


class RemoteUnavailable(SyncError):
    """Network, timeout, or server error. Retried on the next natural sync cycle."""
    pass


class SchemaVersionUnsupported(SyncError):
    """Record was written by a newer version than this one understands."""

    def __init__(self, found: int, supported: int):
        self.found = found
        self.supported = supported
        super().__init__(
            f"Board data version {found} is newer than supported version {supported}"
        )


class ParseError(SyncError):
    """Payload is not a valid board record."""
    pass
