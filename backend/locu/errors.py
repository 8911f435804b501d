from typing import Optional


class LocuError(Exception):
    """Base class for engine errors."""


class SchemaUnavailable(LocuError):
    """The local store failed to migrate or was used before ``open()``."""


class StorageExhausted(LocuError):
    """The device ran out of space while writing."""


class SyncTransient(LocuError):
    """Remote push failed in a way that is worth retrying."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SyncPermanent(LocuError):
    """Remote rejected a mutation; retrying will not help."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ReconcileAmbiguous(LocuError):
    """More than one device left a session running. Logged, never raised."""


class EntityNotFound(LocuError):
    def __init__(self, kind: str, entity_id: Optional[str]):
        super().__init__(f"{kind} not found: {entity_id}")
        self.kind = kind
        self.entity_id = entity_id


class ProviderError(LocuError):
    def __init__(self, code: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code
