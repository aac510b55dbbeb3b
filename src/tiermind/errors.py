"""Error taxonomy for the identity engine."""

from __future__ import annotations


class TiermindError(Exception):
    """Base class for every engine error."""


class NotFound(TiermindError, KeyError):
    """Identity missing from a tier (or from every tier)."""

    def __init__(self, identity_id: str, tier: str | None = None):
        self.identity_id = identity_id
        self.tier = tier
        where = f" in tier {tier!r}" if tier else ""
        super().__init__(f"identity {identity_id!r} not found{where}")

    def __str__(self) -> str:
        return self.args[0]


class PermissionDenied(TiermindError, PermissionError):
    """Forbidden operation, e.g. deleting or merging away the anchor."""


class StorageFault(TiermindError):
    """I/O failure on a durable tier."""


class CacheFault(TiermindError):
    """Cache malfunction. Never fatal: callers fall through to the store."""


class MalformedRecord(TiermindError, ValueError):
    """Persisted record that cannot be decoded."""
