class ReconciliationError(Exception):
    """Base class for identity reconciliation failures."""


class InvalidInput(ReconciliationError):
    """Neither email nor phoneNumber was supplied."""


class ValidationError(ReconciliationError):
    """A supplied email or phoneNumber has an invalid format."""


class NotFound(ReconciliationError):
    """A primary contact that should exist could not be resolved."""


class TransientStoreFailure(ReconciliationError):
    """The store (or an identity lock) timed out; the resolution can be retried."""


class ConflictingMerge(ReconciliationError):
    """A merge target changed after the snapshot was taken."""
