"""
Error taxonomy for store calls and caller-side validation.

Store errors are raised by the document backends and the Entity Store Client;
the Reconciliation Controller handles all of them the same way (resync).
ValidationError is raised before any network call is attempted.
"""


class LeadboardError(Exception):
    """Base class for all leadboard errors."""
    pass


class StoreError(LeadboardError):
    """A remote store call failed."""
    pass


class StoreUnavailable(StoreError):
    """Transient network, service or auth failure."""
    pass


class NotFound(StoreError):
    """The entity does not exist (often benign, e.g. already deleted)."""
    pass


class StoreConflict(StoreError):
    """A uniqueness constraint was violated."""
    pass


class ValidationError(LeadboardError):
    """Raised when a user action is rejected locally (e.g. deleting the last column)."""
    pass


class UnknownEntity(LeadboardError):
    """Raised when a user action names a column, lead or customer not on the board."""
    pass
