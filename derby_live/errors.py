"""
Failure taxonomy for the race server.

Every tick handler maps these onto a safe retry state; only
InsufficientCatalog is surfaced to whoever triggered the tick.
"""


class DerbyError(Exception):
    """Base class for all race server errors."""


class TransientStoreError(DerbyError):
    """A read or write against the race row or rating book failed."""


class OwnershipConflict(DerbyError):
    """Another actor currently owns the race timer."""

    def __init__(self, actor_id, owner=None):
        self.actor_id = actor_id
        self.owner = owner
        super().__init__(f"Actor {actor_id!r} does not own the race timer (owner: {owner!r})")


class InsufficientCatalog(DerbyError):
    """The catalog cannot supply enough unique names for a field."""

    def __init__(self, available, required):
        self.available = available
        self.required = required
        super().__init__(f"Catalog has {available} unique names, {required} required")


class InvariantViolation(DerbyError):
    """A computed race state breaks a lifecycle invariant and must not be persisted."""
